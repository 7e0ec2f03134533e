from fastapi import APIRouter, Depends, Query

from jobboard.api.deps import get_staging_store, http_error
from jobboard.core.config import Settings, get_settings
from jobboard.core.security import require_privileged
from jobboard.schemas.payments import StagedSubmissionOut, StagingExpiryOut
from jobboard.services.errors import PaymentsError
from jobboard.services.repository import DocumentStore, get_repository
from jobboard.services.staging import StagingStore, should_expire

router = APIRouter()


@router.get("/payments/{gateway_reference_id}", response_model=StagedSubmissionOut)
async def get_payment(
    gateway_reference_id: str,
    identity=Depends(require_privileged),
    staging: StagingStore = Depends(get_staging_store),
    repository: DocumentStore = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> StagedSubmissionOut:
    try:
        record = await staging.find_by_gateway_ref(gateway_reference_id)
        published = await repository.get_published_job(record.id) if record.purpose == "new_job" else None
    except PaymentsError as exc:
        raise http_error(exc) from exc

    return StagedSubmissionOut(
        id=record.id,
        purpose=record.purpose,
        owner_ref=record.owner_ref,
        state=record.state,
        gateway_reference_id=record.gateway_reference_id,
        payload=record.payload,
        created_at=record.created_at,
        updated_at=record.updated_at,
        paid_at=record.paid_at,
        published_job_id=published.id if published is not None else None,
        stale=should_expire(record, ttl_hours=settings.staging_ttl_hours),
    )


@router.post("/staged-submissions/expire", response_model=StagingExpiryOut)
async def expire_staged_submissions(
    identity=Depends(require_privileged),
    staging: StagingStore = Depends(get_staging_store),
    settings: Settings = Depends(get_settings),
    limit: int = Query(default=100, ge=1, le=1000),
) -> StagingExpiryOut:
    try:
        expired = await staging.expire_stale(ttl_hours=settings.staging_ttl_hours, limit=limit)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    return StagingExpiryOut(expired=expired, ttl_hours=settings.staging_ttl_hours)
