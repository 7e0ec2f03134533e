from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any, Callable

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import format_span_id, format_trace_id

from jobboard.core.config import Settings

_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging() -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = setup_telemetry(settings)
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider, excluded_urls="healthz")
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    shutdown_telemetry(runtime)


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                "service.namespace": "jobboard",
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = _exporter_endpoint(settings)
    if endpoint is None:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; payment spans stay in-process service=%s",
            settings.otel_service_name,
        )
        return None

    options: dict[str, object] = {"endpoint": endpoint}
    headers = _exporter_headers(settings)
    if headers:
        options["headers"] = headers
    return OTLPSpanExporter(**options)


def _exporter_endpoint(settings: Settings) -> str | None:
    candidates = (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    )
    return next((candidate.strip() for candidate in candidates if candidate and candidate.strip()), None)


def _exporter_headers(settings: Settings) -> dict[str, str]:
    # Explicit settings override the ambient OTEL_* variable key by key.
    return {
        **_parse_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS")),
        **_parse_headers(settings.otel_exporter_otlp_headers),
    }


def _parse_headers(raw: str | None) -> dict[str, str]:
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


class _TraceContextRecordFactory:
    """Log record factory that stamps the active span's ids onto every record."""

    def __init__(self, base: Callable[..., logging.LogRecord]) -> None:
        self.base = base

    def __call__(self, *args: Any, **kwargs: Any) -> logging.LogRecord:
        record = self.base(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format_trace_id(context.trace_id) if context.is_valid else _NO_TRACE_ID
        record.span_id = format_span_id(context.span_id) if context.is_valid else _NO_SPAN_ID
        return record


def _install_log_correlation() -> None:
    current = logging.getLogRecordFactory()
    if isinstance(current, _TraceContextRecordFactory):
        return
    logging.setLogRecordFactory(_TraceContextRecordFactory(current))
