from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from jobboard.services.confirmation import ClientConfirmation
from jobboard.services.correlation import PaymentCorrelation
from jobboard.services.gateway import WebhookEvent
from jobboard.services.publisher import JobPublisher
from jobboard.services.repository import PublishedJobRecord, StagedSubmissionRecord
from jobboard.services.staging import StagingStore
from jobboard.services.store import InMemoryStore
from jobboard.services.subscriptions import SubscriptionTracker
from jobboard.services.webhooks import WebhookReconciler


class NaiveStore(InMemoryStore):
    """Read-then-write store without conditional writes."""

    async def transition_staged_submission(
        self, submission_id: str, *, from_state: str, to_state: str
    ) -> StagedSubmissionRecord | None:
        record = self.staged_submissions[submission_id]
        observed = record.state
        await asyncio.sleep(0)
        if observed != from_state:
            return None
        record.state = to_state
        record.paid_at = datetime.now(timezone.utc)
        return replace(record)

    async def insert_published_job_if_absent(self, job: PublishedJobRecord) -> bool:
        await asyncio.sleep(0)
        self.published_jobs[uuid4().hex] = replace(job)
        return True


async def _prepare(store: InMemoryStore, gateway) -> tuple[ClientConfirmation, WebhookReconciler, str, WebhookEvent]:
    staging = StagingStore(store)
    publisher = JobPublisher(store)
    tracker = SubscriptionTracker(store)

    submission_id = await staging.create({"title": "Platform Engineer", "company": "Acme"}, "owner-7")
    correlation = PaymentCorrelation(purpose="new_job", owner_ref="owner-7", staged_submission_id=submission_id)
    charge = await gateway.open_one_time_charge(9900, correlation)
    await staging.attach_gateway_ref(submission_id, charge.gateway_reference_id)
    gateway.succeed(charge.gateway_reference_id)

    event = WebhookEvent(
        id="evt_race",
        type="payment_intent.succeeded",
        data_object={
            "id": charge.gateway_reference_id,
            "object": "payment_intent",
            "status": "succeeded",
            "metadata": correlation.to_metadata(),
        },
    )
    return (
        ClientConfirmation(gateway, staging, publisher, tracker),
        WebhookReconciler(gateway, staging, publisher, tracker),
        charge.gateway_reference_id,
        event,
    )


def test_client_first_then_webhook_publishes_once(memory_store: InMemoryStore, fake_gateway) -> None:
    async def scenario() -> tuple[str, str]:
        confirmation, reconciler, reference, event = await _prepare(memory_store, fake_gateway)
        client_result = await confirmation.confirm(reference)
        webhook_outcome = await reconciler.handle(event)
        return client_result.status, webhook_outcome

    assert asyncio.run(scenario()) == ("published", "already_published")
    assert len(memory_store.published_jobs) == 1


def test_webhook_first_then_client_publishes_once(memory_store: InMemoryStore, fake_gateway) -> None:
    async def scenario() -> tuple[str, str]:
        confirmation, reconciler, reference, event = await _prepare(memory_store, fake_gateway)
        webhook_outcome = await reconciler.handle(event)
        client_result = await confirmation.confirm(reference)
        return webhook_outcome, client_result.status

    assert asyncio.run(scenario()) == ("published", "already_published")
    assert len(memory_store.published_jobs) == 1


@pytest.mark.parametrize("client_starts_first", [True, False])
def test_simultaneous_paths_publish_once(memory_store: InMemoryStore, fake_gateway, client_starts_first: bool) -> None:
    async def scenario() -> list[str]:
        confirmation, reconciler, reference, event = await _prepare(memory_store, fake_gateway)
        client = confirmation.confirm(reference)
        webhook = reconciler.handle(event)
        if client_starts_first:
            client_result, webhook_outcome = await asyncio.gather(client, webhook)
        else:
            webhook_outcome, client_result = await asyncio.gather(webhook, client)
        return sorted([client_result.status, webhook_outcome])

    assert asyncio.run(scenario()) == ["already_published", "published"]
    assert len(memory_store.published_jobs) == 1
    job = next(iter(memory_store.published_jobs.values()))
    assert job.is_featured
    assert job.fields["title"] == "Platform Engineer"


def test_naive_store_double_publishes_under_simultaneous_confirmation(fake_gateway) -> None:
    store = NaiveStore()

    async def scenario() -> list[str]:
        confirmation, reconciler, reference, event = await _prepare(store, fake_gateway)
        client_result, webhook_outcome = await asyncio.gather(confirmation.confirm(reference), reconciler.handle(event))
        return [client_result.status, webhook_outcome]

    assert asyncio.run(scenario()) == ["published", "published"]
    assert len(store.published_jobs) == 2


def test_webhook_replay_is_idempotent(memory_store: InMemoryStore, fake_gateway) -> None:
    async def scenario() -> list[str]:
        _, reconciler, _, event = await _prepare(memory_store, fake_gateway)
        return [await reconciler.handle(event) for _ in range(3)]

    assert asyncio.run(scenario()) == ["published", "already_published", "already_published"]
    assert len(memory_store.published_jobs) == 1


def test_sweeper_racing_paid_paths_still_publishes_once(memory_store: InMemoryStore, fake_gateway) -> None:
    async def scenario() -> list[str]:
        confirmation, reconciler, reference, event = await _prepare(memory_store, fake_gateway)
        staging = StagingStore(memory_store)
        for record in memory_store.staged_submissions.values():
            record.created_at -= timedelta(days=5)
        _, client_result, webhook_outcome = await asyncio.gather(
            staging.expire_stale(ttl_hours=72, limit=10),
            confirmation.confirm(reference),
            reconciler.handle(event),
        )
        return sorted([client_result.status, webhook_outcome])

    assert asyncio.run(scenario()) == ["already_published", "published"]
    assert len(memory_store.published_jobs) == 1
    assert next(iter(memory_store.staged_submissions.values())).state == "paid"
