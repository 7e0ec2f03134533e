from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from jobboard.core.config import Settings, get_settings
from jobboard.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from jobboard.services.repository import get_repository
from jobboard.services.staging import StagingStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def sweep_once(staging: StagingStore, settings: Settings) -> int:
    """Expire stale staged submissions in batches until a batch comes back short."""
    total = 0
    while True:
        expired = await staging.expire_stale(
            ttl_hours=settings.staging_ttl_hours,
            limit=settings.staging_reaper_batch_size,
        )
        total += expired
        if expired < settings.staging_reaper_batch_size:
            return total


async def run_staging_reaper(*, max_cycles: int | None = None) -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()
    staging = StagingStore(repository)

    backoff = settings.staging_reaper_interval_seconds
    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                with tracer.start_as_current_span("staging_reaper.cycle") as span:
                    expired = await sweep_once(staging, settings)
                    span.set_attribute("staging.expired", expired)
                    if expired:
                        logger.info("staging reaper expired submissions: %s", expired)
                backoff = settings.staging_reaper_interval_seconds
                await asyncio.sleep(settings.staging_reaper_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.staging_reaper_interval_seconds * 8)
                logger.exception("staging reaper iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_staging_reaper())
