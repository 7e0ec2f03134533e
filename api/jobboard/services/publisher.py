from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jobboard.services.errors import ValidationError
from jobboard.services.repository import DocumentStore, PublishedJobRecord, StagedSubmissionRecord
from jobboard.services.staging import StagingStore

logger = logging.getLogger(__name__)


class JobPublisher:
    """Turns a paid staged submission into visible job content.

    Publishing is keyed by the staged submission id and the feature window is
    anchored on the paid timestamp, so calling it again for the same
    submission leaves the stored job unchanged.
    """

    def __init__(self, store: DocumentStore, *, featured_days: int = 30) -> None:
        self.store = store
        self.featured_days = max(1, featured_days)

    async def publish(
        self,
        staged: StagedSubmissionRecord,
        payload: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> PublishedJobRecord:
        current = now or datetime.now(timezone.utc)
        featured_until = (staged.paid_at or current) + timedelta(days=self.featured_days)
        fields = dict(payload if payload is not None else staged.payload)

        if staged.purpose == "promote_job":
            job_id = fields.get("job_id")
            if not isinstance(job_id, str) or not job_id.strip():
                raise ValidationError("promotion payload is missing job_id")
            job = await self.store.feature_published_job(job_id.strip(), featured_until=featured_until)
            logger.info("job featured id=%s until=%s staged=%s", job.id, featured_until.isoformat(), staged.id)
            return job

        candidate = PublishedJobRecord(
            id=staged.id,
            staged_submission_id=staged.id,
            owner_ref=staged.owner_ref,
            fields=fields,
            status="active",
            is_featured=True,
            featured_until=featured_until,
            created_at=current,
            updated_at=current,
        )
        inserted = await self.store.insert_published_job_if_absent(candidate)
        if inserted:
            logger.info("job published id=%s owner=%s", candidate.id, candidate.owner_ref)
        else:
            logger.info("job already published id=%s", candidate.id)

        job = await self.store.get_published_job(candidate.id)
        return job if job is not None else candidate


@dataclass(slots=True)
class CommitResult:
    submission_id: str
    committed: bool
    job: PublishedJobRecord | None
    payload: dict[str, Any] | None


async def commit_staged_payment(
    staging: StagingStore,
    publisher: JobPublisher,
    submission_id: str,
    *,
    complete_if_already_paid: bool = False,
) -> CommitResult:
    """Apply the paid transition and publish when this caller won it.

    With ``complete_if_already_paid`` a caller that lost the transition still
    re-runs the keyed publish, which finishes a publication whose first attempt
    died after the transition committed.
    """
    payload = await staging.mark_paid(submission_id)
    if payload is None and not complete_if_already_paid:
        return CommitResult(submission_id=submission_id, committed=False, job=None, payload=None)

    staged = await staging.get(submission_id)
    job = await publisher.publish(staged, payload)
    return CommitResult(submission_id=submission_id, committed=payload is not None, job=job, payload=payload)
