from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from jobboard.services.errors import ConflictError, NotFoundError, ValidationError
from jobboard.services.repository import DocumentStore, StagedSubmissionRecord

logger = logging.getLogger(__name__)

STAGED_PURPOSES = {"new_job", "promote_job"}
REQUIRED_PAYLOAD_FIELDS: dict[str, tuple[str, ...]] = {
    "new_job": ("title",),
    "promote_job": ("job_id",),
}


class StagingStore:
    """Holds not-yet-paid submissions until the gateway confirms payment.

    ``mark_paid`` is the idempotency primitive shared by the client
    confirmation path and the webhook path: the first caller receives the
    payload, every later caller receives ``None``. Expiry only stops a
    submission from lingering; a verified payment still wins over it.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def create(self, payload: Any, owner_ref: Any, purpose: str = "new_job") -> str:
        normalized_payload = self._validate_payload(payload, purpose=purpose)
        normalized_owner = _coerce_text(owner_ref)
        if not normalized_owner:
            raise ValidationError("ownerRef must be a non-empty string")

        record = await self.store.insert_staged_submission(
            purpose=purpose,
            payload=normalized_payload,
            owner_ref=normalized_owner,
        )
        logger.info("staged submission created id=%s purpose=%s", record.id, purpose)
        return record.id

    async def attach_gateway_ref(self, submission_id: str, gateway_reference_id: str) -> StagedSubmissionRecord:
        if not _coerce_text(gateway_reference_id):
            raise ValidationError("gateway reference id must be a non-empty string")
        record = await self.store.set_staged_gateway_ref(submission_id, gateway_reference_id)
        logger.info("staged submission correlated id=%s gateway_ref=%s", submission_id, gateway_reference_id)
        return record

    async def mark_paid(self, submission_id: str) -> dict[str, Any] | None:
        # Callers only get here after the gateway reported the charge as paid,
        # so a payment that outlived the staging TTL still lands.
        for from_state in ("pending_payment", "expired"):
            record = await self.store.transition_staged_submission(
                submission_id,
                from_state=from_state,
                to_state="paid",
            )
            if record is None:
                continue
            if from_state == "expired":
                logger.warning("late payment revived expired staged submission id=%s", submission_id)
            else:
                logger.info("staged submission paid id=%s", submission_id)
            return record.payload

        current = await self.get(submission_id)
        if current.state == "paid":
            logger.info("staged submission already paid id=%s", submission_id)
            return None
        raise ConflictError(f"staged submission is {current.state} and cannot be marked paid")

    async def get(self, submission_id: str) -> StagedSubmissionRecord:
        record = await self.store.get_staged_submission(submission_id)
        if record is None:
            raise NotFoundError("staged submission not found")
        return record

    async def find_by_gateway_ref(self, gateway_reference_id: str) -> StagedSubmissionRecord:
        record = await self.store.find_staged_submission_by_gateway_ref(gateway_reference_id)
        if record is None:
            raise NotFoundError("no staged submission for gateway reference")
        return record

    async def expire_stale(self, *, ttl_hours: int, limit: int, now: datetime | None = None) -> int:
        current = now or datetime.now(timezone.utc)
        cutoff = current - timedelta(hours=max(1, ttl_hours))
        expired = await self.store.expire_staged_submissions(created_before=cutoff, limit=limit)
        if expired:
            logger.info("expired stale staged submissions count=%s cutoff=%s", expired, cutoff.isoformat())
        return expired

    @staticmethod
    def _validate_payload(payload: Any, *, purpose: str) -> dict[str, Any]:
        if purpose not in STAGED_PURPOSES:
            raise ValidationError(f"purpose must be one of: {', '.join(sorted(STAGED_PURPOSES))}")
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("payload must be a non-empty object")

        missing = [name for name in REQUIRED_PAYLOAD_FIELDS[purpose] if not _coerce_text(payload.get(name))]
        if missing:
            raise ValidationError(f"payload is missing required fields: {', '.join(missing)}")
        return dict(payload)


def _coerce_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def should_expire(record: StagedSubmissionRecord, now: datetime | None = None, ttl_hours: int = 72) -> bool:
    now = now or datetime.now(timezone.utc)
    if record.state != "pending_payment":
        return False
    return record.created_at <= now - timedelta(hours=max(1, ttl_hours))
