"""Asynchronous reconciliation of gateway webhook events.

Each handler is an idempotent upsert keyed by a correlation id carried in
gateway metadata, so redelivered and reordered events converge on the same
records. Events this service does not act on are acknowledged and ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from opentelemetry import trace

from jobboard.services.correlation import ONE_TIME_PURPOSES, PaymentCorrelation
from jobboard.services.gateway import StripeGateway, WebhookEvent
from jobboard.services.publisher import JobPublisher, commit_staged_payment
from jobboard.services.staging import StagingStore
from jobboard.services.subscriptions import SubscriptionTracker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[str]]

PAYMENT_COMPLETED_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")
INVOICE_PAID_EVENTS = ("invoice.payment_succeeded", "invoice.paid")
ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}


class WebhookReconciler:
    def __init__(
        self,
        gateway: StripeGateway,
        staging: StagingStore,
        publisher: JobPublisher,
        tracker: SubscriptionTracker,
    ) -> None:
        self.gateway = gateway
        self.staging = staging
        self.publisher = publisher
        self.tracker = tracker
        self._handlers: dict[str, Handler] = {
            "customer.subscription.created": self._on_subscription_created,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_invoice_failed,
        }
        for event_type in PAYMENT_COMPLETED_EVENTS:
            self._handlers[event_type] = self._on_payment_completed
        for event_type in INVOICE_PAID_EVENTS:
            self._handlers[event_type] = self._on_invoice_paid

    async def handle(self, event: WebhookEvent) -> str:
        """Apply one verified event and return a short outcome label."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("ignoring unhandled webhook event id=%s type=%s", event.id, event.type)
            return "ignored"

        with tracer.start_as_current_span("payments.webhook") as span:
            span.set_attribute("webhook.event_id", event.id)
            span.set_attribute("webhook.event_type", event.type)
            outcome = await handler(event.data_object)
            span.set_attribute("webhook.outcome", outcome)
            logger.info("webhook processed id=%s type=%s outcome=%s", event.id, event.type, outcome)
            return outcome

    async def _on_payment_completed(self, obj: dict[str, Any]) -> str:
        if obj.get("object") == "checkout.session" and obj.get("payment_status") == "unpaid":
            return "awaiting_payment"

        metadata = obj.get("metadata") or {}
        correlation = PaymentCorrelation.from_metadata(metadata)
        if not correlation.correlation_id:
            logger.warning("payment event without correlation id object=%s", obj.get("id"))
            return "ignored"

        if correlation.purpose in ONE_TIME_PURPOSES:
            outcome = await commit_staged_payment(
                self.staging,
                self.publisher,
                correlation.correlation_id,
                complete_if_already_paid=True,
            )
            return "published" if outcome.committed else "already_published"

        if correlation.purpose == "realtime_alert":
            subscription_id = obj.get("subscription") or metadata.get("subscriptionId")
            await self.tracker.activate(
                correlation.correlation_id,
                gateway_subscription_id=_identifier(subscription_id),
                gateway_customer_id=_identifier(obj.get("customer")),
            )
            return "activated"

        logger.warning("payment event with unknown purpose=%s object=%s", correlation.purpose, obj.get("id"))
        return "ignored"

    async def _on_subscription_created(self, obj: dict[str, Any]) -> str:
        alert_id = _alert_id(obj.get("metadata"))
        if alert_id is None:
            return "ignored"

        status = obj.get("status")
        if status not in ACTIVE_SUBSCRIPTION_STATUSES:
            # default_incomplete subscriptions start unpaid; the invoice event activates them.
            await self.tracker.refresh(
                alert_id,
                gateway_subscription_id=obj.get("id"),
                gateway_customer_id=_identifier(obj.get("customer")),
                gateway_status=status,
                current_period_end=_period_end(obj),
            )
            return "recorded"

        await self.tracker.activate(
            alert_id,
            gateway_subscription_id=obj.get("id"),
            gateway_customer_id=_identifier(obj.get("customer")),
            gateway_status=status,
            current_period_end=_period_end(obj),
        )
        return "activated"

    async def _on_subscription_updated(self, obj: dict[str, Any]) -> str:
        alert_id = _alert_id(obj.get("metadata"))
        if alert_id is None:
            return "ignored"

        await self.tracker.refresh(
            alert_id,
            gateway_subscription_id=obj.get("id"),
            gateway_customer_id=_identifier(obj.get("customer")),
            gateway_status=obj.get("status"),
            current_period_end=_period_end(obj),
        )
        return "refreshed"

    async def _on_subscription_deleted(self, obj: dict[str, Any]) -> str:
        alert_id = _alert_id(obj.get("metadata"))
        if alert_id is None:
            return "ignored"

        await self.tracker.cancel(alert_id, gateway_subscription_id=obj.get("id"))
        return "cancelled"

    async def _on_invoice_paid(self, obj: dict[str, Any]) -> str:
        subscription_id, alert_id = await self._resolve_invoice_alert(obj)
        if alert_id is None:
            return "ignored"

        await self.tracker.activate(
            alert_id,
            gateway_subscription_id=subscription_id,
            gateway_customer_id=_identifier(obj.get("customer")),
            invoice_id=obj.get("id"),
            invoice_created=_timestamp(obj.get("created")),
        )
        return "activated"

    async def _on_invoice_failed(self, obj: dict[str, Any]) -> str:
        _, alert_id = await self._resolve_invoice_alert(obj)
        if alert_id is None:
            return "ignored"

        attempt_count = obj.get("attempt_count")
        await self.tracker.record_lapsed(
            alert_id,
            invoice_id=obj.get("id"),
            invoice_created=_timestamp(obj.get("created")),
            attempt_count=attempt_count if isinstance(attempt_count, int) else None,
        )
        return "lapsed"

    async def _resolve_invoice_alert(self, invoice: dict[str, Any]) -> tuple[str | None, str | None]:
        subscription = invoice.get("subscription")
        if isinstance(subscription, dict):
            return subscription.get("id"), _alert_id(subscription.get("metadata"))

        details = invoice.get("subscription_details")
        if not isinstance(details, dict):
            parent = invoice.get("parent") or {}
            details = parent.get("subscription_details") if isinstance(parent, dict) else None
        details = details if isinstance(details, dict) else {}

        subscription_id = subscription if isinstance(subscription, str) else _identifier(details.get("subscription"))
        alert_id = _alert_id(details.get("metadata"))
        if alert_id is None and subscription_id:
            retrieved = await self.gateway.retrieve_subscription(subscription_id)
            alert_id = _alert_id(retrieved.get("metadata"))

        if alert_id is None:
            logger.info("invoice without alert correlation invoice=%s subscription=%s", invoice.get("id"), subscription_id)
        return subscription_id, alert_id


def _alert_id(metadata: Any) -> str | None:
    if not isinstance(metadata, dict):
        return None
    return PaymentCorrelation.from_metadata(metadata).alert_id


def _identifier(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        ends = [item.get("current_period_end") for item in items if isinstance(item, dict)]
        ends = [end for end in ends if isinstance(end, int)]
        value = max(ends) if ends else None
    return _timestamp(value)


def _timestamp(value: Any) -> datetime | None:
    if not isinstance(value, int) or isinstance(value, bool):
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
