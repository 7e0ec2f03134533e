from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from jobboard.core.config import get_settings
from jobboard.services.errors import ConflictError, NotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

ALERT_MUTABLE_COLUMNS = {
    "state",
    "frequency",
    "gateway_subscription_id",
    "gateway_customer_id",
    "gateway_status",
    "current_period_end",
    "last_paid_invoice_id",
    "last_paid_invoice_created",
    "paid_invoice_ids",
    "last_failed_invoice_id",
    "payment_failure_count",
    "reopen_count",
    "cancelled_at",
}


@dataclass(slots=True)
class StagedSubmissionRecord:
    id: str
    purpose: str
    payload: dict[str, Any]
    owner_ref: str
    state: str
    gateway_reference_id: str | None
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None = None


@dataclass(slots=True)
class PublishedJobRecord:
    id: str
    staged_submission_id: str | None
    owner_ref: str
    fields: dict[str, Any]
    status: str
    is_featured: bool
    featured_until: datetime | None
    created_at: datetime
    updated_at: datetime
    clicks: int = 0
    views: int = 0


@dataclass(slots=True)
class AlertSubscriptionRecord:
    id: str
    email: str
    frequency: str
    state: str
    created_at: datetime
    updated_at: datetime
    gateway_subscription_id: str | None = None
    gateway_customer_id: str | None = None
    gateway_status: str | None = None
    current_period_end: datetime | None = None
    last_paid_invoice_id: str | None = None
    last_paid_invoice_created: datetime | None = None
    last_failed_invoice_id: str | None = None
    payment_failure_count: int = 0
    reopen_count: int = 0
    cancelled_at: datetime | None = None
    version: int = 1
    paid_invoice_ids: list[str] = field(default_factory=list)


class DocumentStore(Protocol):
    """Storage contract the payment pipeline relies on.

    ``transition_staged_submission`` and ``update_alert_subscription`` must be
    conditional writes: the change lands only if the stored state (or version)
    still matches what the caller read, otherwise ``None`` is returned.
    """

    async def insert_staged_submission(
        self, *, purpose: str, payload: dict[str, Any], owner_ref: str
    ) -> StagedSubmissionRecord: ...

    async def get_staged_submission(self, submission_id: str) -> StagedSubmissionRecord | None: ...

    async def find_staged_submission_by_gateway_ref(
        self, gateway_reference_id: str
    ) -> StagedSubmissionRecord | None: ...

    async def set_staged_gateway_ref(
        self, submission_id: str, gateway_reference_id: str
    ) -> StagedSubmissionRecord: ...

    async def transition_staged_submission(
        self, submission_id: str, *, from_state: str, to_state: str
    ) -> StagedSubmissionRecord | None: ...

    async def expire_staged_submissions(self, *, created_before: datetime, limit: int) -> int: ...

    async def insert_published_job_if_absent(self, job: PublishedJobRecord) -> bool: ...

    async def get_published_job(self, job_id: str) -> PublishedJobRecord | None: ...

    async def feature_published_job(self, job_id: str, *, featured_until: datetime) -> PublishedJobRecord: ...

    async def get_alert_subscription(self, alert_id: str) -> AlertSubscriptionRecord | None: ...

    async def get_alert_subscription_by_email(self, email: str) -> AlertSubscriptionRecord | None: ...

    async def insert_alert_subscription_if_absent(
        self, *, email: str, frequency: str, state: str
    ) -> AlertSubscriptionRecord: ...

    async def update_alert_subscription(
        self, alert_id: str, *, expected_version: int, changes: dict[str, Any]
    ) -> AlertSubscriptionRecord | None: ...

    async def close(self) -> None: ...


SCHEMA_DDL = """
create table if not exists staged_submissions (
  id                   text primary key,
  purpose              text not null,
  payload              jsonb not null,
  owner_ref            text not null,
  state                text not null check (state in ('pending_payment', 'paid', 'expired')),
  gateway_reference_id text unique,
  created_at           timestamptz not null default now(),
  updated_at           timestamptz not null default now(),
  paid_at              timestamptz
);

create index if not exists idx_staged_submissions_pending_created
on staged_submissions (created_at)
where state = 'pending_payment';

create table if not exists published_jobs (
  id                   text primary key,
  staged_submission_id text unique,
  owner_ref            text not null,
  fields               jsonb not null,
  status               text not null,
  is_featured          boolean not null default false,
  featured_until       timestamptz,
  clicks               int not null default 0,
  views                int not null default 0,
  created_at           timestamptz not null default now(),
  updated_at           timestamptz not null default now()
);

create table if not exists alert_subscriptions (
  id                      text primary key,
  email                   text not null unique,
  frequency               text not null check (frequency in ('daily', 'weekly', 'realtime')),
  state                   text not null check (state in ('pending_payment', 'active', 'payment_lapsed', 'cancelled')),
  gateway_subscription_id text,
  gateway_customer_id     text,
  gateway_status          text,
  current_period_end      timestamptz,
  last_paid_invoice_id    text,
  last_paid_invoice_created timestamptz,
  paid_invoice_ids        text[] not null default '{}',
  last_failed_invoice_id  text,
  payment_failure_count   int not null default 0,
  reopen_count            int not null default 0,
  cancelled_at            timestamptz,
  version                 int not null default 1,
  created_at              timestamptz not null default now(),
  updated_at              timestamptz not null default now()
);

alter table alert_subscriptions add column if not exists last_paid_invoice_created timestamptz;
alter table alert_subscriptions add column if not exists paid_invoice_ids text[] not null default '{}';
"""

_STAGED_COLUMNS = """
  id,
  purpose,
  payload,
  owner_ref,
  state,
  gateway_reference_id,
  created_at,
  updated_at,
  paid_at
"""

_JOB_COLUMNS = """
  id,
  staged_submission_id,
  owner_ref,
  fields,
  status,
  is_featured,
  featured_until,
  clicks,
  views,
  created_at,
  updated_at
"""

_ALERT_COLUMNS = """
  id,
  email,
  frequency,
  state,
  gateway_subscription_id,
  gateway_customer_id,
  gateway_status,
  current_period_end,
  last_paid_invoice_id,
  last_paid_invoice_created,
  paid_invoice_ids,
  last_failed_invoice_id,
  payment_failure_count,
  reopen_count,
  cancelled_at,
  version,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        await pool.execute(SCHEMA_DDL)

    async def insert_staged_submission(
        self, *, purpose: str, payload: dict[str, Any], owner_ref: str
    ) -> StagedSubmissionRecord:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            insert into staged_submissions (id, purpose, payload, owner_ref, state)
            values ($1, $2, $3::jsonb, $4, 'pending_payment')
            returning {_STAGED_COLUMNS}
            """,
            uuid4().hex,
            purpose,
            json.dumps(payload),
            owner_ref,
        )
        return self._staged_row_to_record(row)

    async def get_staged_submission(self, submission_id: str) -> StagedSubmissionRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"select {_STAGED_COLUMNS} from staged_submissions where id = $1",
            submission_id,
        )
        return self._staged_row_to_record(row) if row else None

    async def find_staged_submission_by_gateway_ref(
        self, gateway_reference_id: str
    ) -> StagedSubmissionRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"select {_STAGED_COLUMNS} from staged_submissions where gateway_reference_id = $1",
            gateway_reference_id,
        )
        return self._staged_row_to_record(row) if row else None

    async def set_staged_gateway_ref(
        self, submission_id: str, gateway_reference_id: str
    ) -> StagedSubmissionRecord:
        pool = await self._get_pool()
        try:
            row = await self._fetchrow(
                pool,
                f"""
                update staged_submissions
                set
                  gateway_reference_id = $2,
                  updated_at = case when gateway_reference_id is null then now() else updated_at end
                where id = $1
                  and (gateway_reference_id is null or gateway_reference_id = $2)
                returning {_STAGED_COLUMNS}
                """,
                submission_id,
                gateway_reference_id,
            )
        except pg_exc.UniqueViolationError as exc:
            raise ConflictError("gateway reference already correlated to another submission") from exc

        if row:
            return self._staged_row_to_record(row)

        exists = await pool.fetchval("select 1 from staged_submissions where id = $1", submission_id)
        if not exists:
            raise NotFoundError("staged submission not found")
        raise ConflictError("staged submission already correlated to a different gateway reference")

    async def transition_staged_submission(
        self, submission_id: str, *, from_state: str, to_state: str
    ) -> StagedSubmissionRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            update staged_submissions
            set
              state = $3,
              updated_at = now(),
              paid_at = case when $3 = 'paid' then now() else paid_at end
            where id = $1 and state = $2
            returning {_STAGED_COLUMNS}
            """,
            submission_id,
            from_state,
            to_state,
        )
        if row:
            return self._staged_row_to_record(row)

        exists = await pool.fetchval("select 1 from staged_submissions where id = $1", submission_id)
        if not exists:
            raise NotFoundError("staged submission not found")
        return None

    async def expire_staged_submissions(self, *, created_before: datetime, limit: int) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with due as (
              select id
              from staged_submissions
              where state = 'pending_payment' and created_at < $1
              order by created_at
              limit $2
              for update skip locked
            )
            update staged_submissions s
            set state = 'expired', updated_at = now()
            from due
            where s.id = due.id and s.state = 'pending_payment'
            returning s.id
            """,
            created_before,
            limit,
        )
        return len(rows)

    async def insert_published_job_if_absent(self, job: PublishedJobRecord) -> bool:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            """
            insert into published_jobs (
              id,
              staged_submission_id,
              owner_ref,
              fields,
              status,
              is_featured,
              featured_until,
              clicks,
              views
            )
            values ($1, $2, $3, $4::jsonb, $5, $6, $7, 0, 0)
            on conflict do nothing
            returning id
            """,
            job.id,
            job.staged_submission_id,
            job.owner_ref,
            json.dumps(job.fields),
            job.status,
            job.is_featured,
            job.featured_until,
        )
        return row is not None

    async def get_published_job(self, job_id: str) -> PublishedJobRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(pool, f"select {_JOB_COLUMNS} from published_jobs where id = $1", job_id)
        return self._job_row_to_record(row) if row else None

    async def feature_published_job(self, job_id: str, *, featured_until: datetime) -> PublishedJobRecord:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            update published_jobs
            set
              is_featured = true,
              featured_until = greatest(coalesce(featured_until, $2), $2),
              status = 'active',
              updated_at = now()
            where id = $1
            returning {_JOB_COLUMNS}
            """,
            job_id,
            featured_until,
        )
        if not row:
            raise NotFoundError("published job not found")
        return self._job_row_to_record(row)

    async def get_alert_subscription(self, alert_id: str) -> AlertSubscriptionRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"select {_ALERT_COLUMNS} from alert_subscriptions where id = $1",
            alert_id,
        )
        return self._alert_row_to_record(row) if row else None

    async def get_alert_subscription_by_email(self, email: str) -> AlertSubscriptionRecord | None:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"select {_ALERT_COLUMNS} from alert_subscriptions where email = $1",
            email,
        )
        return self._alert_row_to_record(row) if row else None

    async def insert_alert_subscription_if_absent(
        self, *, email: str, frequency: str, state: str
    ) -> AlertSubscriptionRecord:
        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            insert into alert_subscriptions (id, email, frequency, state)
            values ($1, $2, $3, $4)
            on conflict (email) do nothing
            returning {_ALERT_COLUMNS}
            """,
            uuid4().hex,
            email,
            frequency,
            state,
        )
        if row:
            return self._alert_row_to_record(row)

        existing = await self.get_alert_subscription_by_email(email)
        if existing is None:
            raise StoreUnavailableError("alert subscription vanished during upsert")
        return existing

    async def update_alert_subscription(
        self, alert_id: str, *, expected_version: int, changes: dict[str, Any]
    ) -> AlertSubscriptionRecord | None:
        unknown = set(changes) - ALERT_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"unsupported alert subscription columns: {sorted(unknown)}")

        assignments: list[str] = []
        values: list[Any] = [alert_id, expected_version]
        for column, value in changes.items():
            values.append(value)
            assignments.append(f"{column} = ${len(values)}")
        assignments.append("version = version + 1")
        assignments.append("updated_at = now()")

        pool = await self._get_pool()
        row = await self._fetchrow(
            pool,
            f"""
            update alert_subscriptions
            set {", ".join(assignments)}
            where id = $1 and version = $2
            returning {_ALERT_COLUMNS}
            """,
            *values,
        )
        if row:
            return self._alert_row_to_record(row)

        exists = await pool.fetchval("select 1 from alert_subscriptions where id = $1", alert_id)
        if not exists:
            raise NotFoundError("alert subscription not found")
        return None

    async def _fetchrow(self, pool: asyncpg.Pool, query: str, *args: Any) -> asyncpg.Record | None:
        try:
            return await pool.fetchrow(query, *args)
        except (OSError, pg_exc.InterfaceError, pg_exc.ConnectionDoesNotExistError) as exc:
            raise StoreUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("JB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @classmethod
    def _staged_row_to_record(cls, row: asyncpg.Record) -> StagedSubmissionRecord:
        return StagedSubmissionRecord(
            id=row["id"],
            purpose=row["purpose"],
            payload=cls._coerce_json_dict(row["payload"]),
            owner_ref=row["owner_ref"],
            state=row["state"],
            gateway_reference_id=row["gateway_reference_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            paid_at=row["paid_at"],
        )

    @classmethod
    def _job_row_to_record(cls, row: asyncpg.Record) -> PublishedJobRecord:
        return PublishedJobRecord(
            id=row["id"],
            staged_submission_id=row["staged_submission_id"],
            owner_ref=row["owner_ref"],
            fields=cls._coerce_json_dict(row["fields"]),
            status=row["status"],
            is_featured=bool(row["is_featured"]),
            featured_until=row["featured_until"],
            clicks=int(row["clicks"] or 0),
            views=int(row["views"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _alert_row_to_record(row: asyncpg.Record) -> AlertSubscriptionRecord:
        return AlertSubscriptionRecord(
            id=row["id"],
            email=row["email"],
            frequency=row["frequency"],
            state=row["state"],
            gateway_subscription_id=row["gateway_subscription_id"],
            gateway_customer_id=row["gateway_customer_id"],
            gateway_status=row["gateway_status"],
            current_period_end=row["current_period_end"],
            last_paid_invoice_id=row["last_paid_invoice_id"],
            last_paid_invoice_created=row["last_paid_invoice_created"],
            paid_invoice_ids=list(row["paid_invoice_ids"] or []),
            last_failed_invoice_id=row["last_failed_invoice_id"],
            payment_failure_count=int(row["payment_failure_count"] or 0),
            reopen_count=int(row["reopen_count"] or 0),
            cancelled_at=row["cancelled_at"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> DocumentStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        from jobboard.services.store import InMemoryStore

        logger.warning("using in-process document store; state is lost on restart")
        return InMemoryStore()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
