import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from jobboard.services.errors import ConflictError, NotFoundError
from jobboard.services.repository import (
    ALERT_MUTABLE_COLUMNS,
    AlertSubscriptionRecord,
    PublishedJobRecord,
    StagedSubmissionRecord,
)


class InMemoryStore:
    """Process-local document store with the same conditional-write contract as Postgres.

    Each method yields to the event loop once before touching state, so callers
    interleave the way they would against a remote store. The check and the
    write that follow the yield run without another suspension point, which is
    what makes the state transitions compare-and-set.
    """

    def __init__(self) -> None:
        self.staged_submissions: dict[str, StagedSubmissionRecord] = {}
        self.published_jobs: dict[str, PublishedJobRecord] = {}
        self.alert_subscriptions: dict[str, AlertSubscriptionRecord] = {}

    async def close(self) -> None:
        return None

    async def insert_staged_submission(
        self, *, purpose: str, payload: dict[str, Any], owner_ref: str
    ) -> StagedSubmissionRecord:
        await asyncio.sleep(0)
        now = _now()
        record = StagedSubmissionRecord(
            id=uuid4().hex,
            purpose=purpose,
            payload=dict(payload),
            owner_ref=owner_ref,
            state="pending_payment",
            gateway_reference_id=None,
            created_at=now,
            updated_at=now,
        )
        self.staged_submissions[record.id] = record
        return replace(record)

    async def get_staged_submission(self, submission_id: str) -> StagedSubmissionRecord | None:
        await asyncio.sleep(0)
        record = self.staged_submissions.get(submission_id)
        return replace(record) if record else None

    async def find_staged_submission_by_gateway_ref(
        self, gateway_reference_id: str
    ) -> StagedSubmissionRecord | None:
        await asyncio.sleep(0)
        for record in self.staged_submissions.values():
            if record.gateway_reference_id == gateway_reference_id:
                return replace(record)
        return None

    async def set_staged_gateway_ref(
        self, submission_id: str, gateway_reference_id: str
    ) -> StagedSubmissionRecord:
        await asyncio.sleep(0)
        record = self.staged_submissions.get(submission_id)
        if record is None:
            raise NotFoundError("staged submission not found")
        if record.gateway_reference_id == gateway_reference_id:
            return replace(record)
        if record.gateway_reference_id is not None:
            raise ConflictError("staged submission already correlated to a different gateway reference")
        for other in self.staged_submissions.values():
            if other.id != submission_id and other.gateway_reference_id == gateway_reference_id:
                raise ConflictError("gateway reference already correlated to another submission")

        record.gateway_reference_id = gateway_reference_id
        record.updated_at = _now()
        return replace(record)

    async def transition_staged_submission(
        self, submission_id: str, *, from_state: str, to_state: str
    ) -> StagedSubmissionRecord | None:
        await asyncio.sleep(0)
        record = self.staged_submissions.get(submission_id)
        if record is None:
            raise NotFoundError("staged submission not found")
        if record.state != from_state:
            return None

        now = _now()
        record.state = to_state
        record.updated_at = now
        if to_state == "paid":
            record.paid_at = now
        return replace(record)

    async def expire_staged_submissions(self, *, created_before: datetime, limit: int) -> int:
        await asyncio.sleep(0)
        due = sorted(
            (
                record
                for record in self.staged_submissions.values()
                if record.state == "pending_payment" and record.created_at < created_before
            ),
            key=lambda record: record.created_at,
        )[:limit]
        now = _now()
        for record in due:
            record.state = "expired"
            record.updated_at = now
        return len(due)

    async def insert_published_job_if_absent(self, job: PublishedJobRecord) -> bool:
        await asyncio.sleep(0)
        if job.id in self.published_jobs:
            return False
        if job.staged_submission_id and any(
            existing.staged_submission_id == job.staged_submission_id for existing in self.published_jobs.values()
        ):
            return False
        self.published_jobs[job.id] = replace(job)
        return True

    async def get_published_job(self, job_id: str) -> PublishedJobRecord | None:
        await asyncio.sleep(0)
        job = self.published_jobs.get(job_id)
        return replace(job) if job else None

    async def feature_published_job(self, job_id: str, *, featured_until: datetime) -> PublishedJobRecord:
        await asyncio.sleep(0)
        job = self.published_jobs.get(job_id)
        if job is None:
            raise NotFoundError("published job not found")
        job.is_featured = True
        if job.featured_until is None or job.featured_until < featured_until:
            job.featured_until = featured_until
        job.status = "active"
        job.updated_at = _now()
        return replace(job)

    async def get_alert_subscription(self, alert_id: str) -> AlertSubscriptionRecord | None:
        await asyncio.sleep(0)
        record = self.alert_subscriptions.get(alert_id)
        return replace(record) if record else None

    async def get_alert_subscription_by_email(self, email: str) -> AlertSubscriptionRecord | None:
        await asyncio.sleep(0)
        for record in self.alert_subscriptions.values():
            if record.email == email:
                return replace(record)
        return None

    async def insert_alert_subscription_if_absent(
        self, *, email: str, frequency: str, state: str
    ) -> AlertSubscriptionRecord:
        await asyncio.sleep(0)
        for record in self.alert_subscriptions.values():
            if record.email == email:
                return replace(record)

        now = _now()
        record = AlertSubscriptionRecord(
            id=uuid4().hex,
            email=email,
            frequency=frequency,
            state=state,
            created_at=now,
            updated_at=now,
        )
        self.alert_subscriptions[record.id] = record
        return replace(record)

    async def update_alert_subscription(
        self, alert_id: str, *, expected_version: int, changes: dict[str, Any]
    ) -> AlertSubscriptionRecord | None:
        unknown = set(changes) - ALERT_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported alert subscription columns: {sorted(unknown)}")

        await asyncio.sleep(0)
        record = self.alert_subscriptions.get(alert_id)
        if record is None:
            raise NotFoundError("alert subscription not found")
        if record.version != expected_version:
            return None

        for column, value in changes.items():
            setattr(record, column, value)
        record.version += 1
        record.updated_at = _now()
        return replace(record)


def _now() -> datetime:
    return datetime.now(timezone.utc)
