from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobboard-payments-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_auto_migrate: bool = False
    store_backend: Literal["postgres", "memory"] = "postgres"
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_realtime_alerts_price_id: str | None = None
    charge_amount_cents: int = 9900
    charge_currency: str = "usd"
    checkout_product_name: str = "Featured job listing"
    site_url: str = "http://localhost:3000"
    featured_days: int = 30
    gateway_timeout_seconds: float = 10.0
    staging_ttl_hours: int = 72
    staging_reaper_interval_seconds: float = 900.0
    staging_reaper_batch_size: int = 100
    privileged_identities: list[str] = []
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "jobboard-payments-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JB_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
