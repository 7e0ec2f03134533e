from fastapi import APIRouter, Depends

from jobboard.core.config import Settings, get_settings

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(settings: Settings = Depends(get_settings)) -> dict[str, object]:
    checks = {
        "store": settings.store_backend == "memory" or bool(settings.database_url),
        "gateway": bool(settings.stripe_secret_key),
        "webhook_secret": bool(settings.stripe_webhook_secret),
        "realtime_price": bool(settings.stripe_realtime_alerts_price_id),
    }
    return {"status": "ok" if all(checks.values()) else "degraded", "checks": checks}
