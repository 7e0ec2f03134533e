from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from jobboard.services.errors import ConflictError, NotFoundError, ValidationError
from jobboard.services.repository import AlertSubscriptionRecord, DocumentStore

logger = logging.getLogger(__name__)

PAID_INVOICE_HISTORY = 24
FREE_FREQUENCIES = {"daily", "weekly"}

Decision = Callable[[AlertSubscriptionRecord], dict[str, Any] | None]


def normalize_email(email: Any) -> str:
    if not isinstance(email, str):
        raise ValidationError("email is required")
    normalized = email.strip().lower()
    local, separator, domain = normalized.partition("@")
    if not separator or not local or "." not in domain:
        raise ValidationError("email is not a valid address")
    return normalized


class SubscriptionTracker:
    """State accessor for realtime alert subscriptions.

    Every mutation is a read-decide-write cycle guarded by the record version.
    A decision that finds the record already in the requested state returns no
    changes, so repeated or reordered webhook deliveries converge on the same
    end state instead of failing.
    """

    max_attempts = 5

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, alert_id: str) -> AlertSubscriptionRecord:
        record = await self.store.get_alert_subscription(alert_id)
        if record is None:
            raise NotFoundError("alert subscription not found")
        return record

    async def find_by_email(self, email: str) -> AlertSubscriptionRecord:
        record = await self.store.get_alert_subscription_by_email(normalize_email(email))
        if record is None:
            raise NotFoundError("alert subscription not found")
        return record

    async def open_for_email(self, email: str) -> AlertSubscriptionRecord:
        normalized = normalize_email(email)
        record = await self.store.insert_alert_subscription_if_absent(
            email=normalized,
            frequency="realtime",
            state="pending_payment",
        )

        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            if current.state != "cancelled":
                return None
            return {
                "state": "pending_payment",
                "frequency": "realtime",
                "cancelled_at": None,
                "reopen_count": current.reopen_count + 1,
            }

        return await self._mutate(record.id, decide, action="reopen")

    async def activate(
        self,
        alert_id: str,
        *,
        gateway_subscription_id: str | None = None,
        gateway_customer_id: str | None = None,
        invoice_id: str | None = None,
        invoice_created: datetime | None = None,
        gateway_status: str | None = None,
        current_period_end: datetime | None = None,
    ) -> AlertSubscriptionRecord:
        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            if current.state == "cancelled":
                if not gateway_subscription_id or gateway_subscription_id == current.gateway_subscription_id:
                    logger.info("ignoring activation for cancelled alert id=%s", alert_id)
                    return None
            if invoice_id and _is_paid_invoice(current, invoice_id):
                logger.info("ignoring replayed invoice payment alert=%s invoice=%s", alert_id, invoice_id)
                return None

            changes: dict[str, Any] = {"state": "active", "frequency": "realtime"}
            if gateway_subscription_id:
                changes["gateway_subscription_id"] = gateway_subscription_id
            if gateway_customer_id:
                changes["gateway_customer_id"] = gateway_customer_id
            if gateway_status:
                changes["gateway_status"] = gateway_status
            if current_period_end:
                changes["current_period_end"] = current_period_end
            if invoice_id:
                changes["last_paid_invoice_id"] = invoice_id
                changes["paid_invoice_ids"] = [*current.paid_invoice_ids, invoice_id][-PAID_INVOICE_HISTORY:]
                changes["payment_failure_count"] = 0
                if invoice_created and (
                    current.last_paid_invoice_created is None or invoice_created > current.last_paid_invoice_created
                ):
                    changes["last_paid_invoice_created"] = invoice_created
            if current.state == "cancelled":
                changes["cancelled_at"] = None
            return _drop_unchanged(current, changes)

        return await self._mutate(alert_id, decide, action="activate")

    async def record_lapsed(
        self,
        alert_id: str,
        *,
        invoice_id: str | None = None,
        invoice_created: datetime | None = None,
        attempt_count: int | None = None,
    ) -> AlertSubscriptionRecord:
        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            if invoice_id and _is_paid_invoice(current, invoice_id):
                logger.info("ignoring late payment failure for paid invoice alert=%s invoice=%s", alert_id, invoice_id)
                return None
            if (
                invoice_created
                and current.last_paid_invoice_created
                and invoice_created <= current.last_paid_invoice_created
            ):
                logger.info("ignoring payment failure for superseded invoice alert=%s invoice=%s", alert_id, invoice_id)
                return None

            changes: dict[str, Any] = {
                "payment_failure_count": max(current.payment_failure_count, attempt_count or 1),
            }
            if invoice_id:
                changes["last_failed_invoice_id"] = invoice_id
            if current.state == "active":
                changes["state"] = "payment_lapsed"
            return _drop_unchanged(current, changes)

        return await self._mutate(alert_id, decide, action="record_lapsed")

    async def cancel(self, alert_id: str, *, gateway_subscription_id: str | None = None) -> AlertSubscriptionRecord:
        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            if (
                gateway_subscription_id
                and current.gateway_subscription_id
                and gateway_subscription_id != current.gateway_subscription_id
            ):
                logger.info(
                    "ignoring cancellation of superseded subscription alert=%s subscription=%s",
                    alert_id,
                    gateway_subscription_id,
                )
                return None

            changes: dict[str, Any] = {"state": "cancelled"}
            if current.state != "cancelled":
                # Leaving a paid tier drops to the free weekly digest; a free-tier choice already made stays.
                changes["frequency"] = "weekly"
                changes["cancelled_at"] = datetime.now(timezone.utc)
            if gateway_subscription_id and not current.gateway_subscription_id:
                changes["gateway_subscription_id"] = gateway_subscription_id
            return _drop_unchanged(current, changes)

        return await self._mutate(alert_id, decide, action="cancel")

    async def change_frequency(self, alert_id: str, frequency: str) -> AlertSubscriptionRecord:
        """Move an alert to a free digest frequency.

        Leaving the paid realtime tier ends the subscription state; the caller
        cancels the gateway subscription first.
        """
        if frequency not in FREE_FREQUENCIES:
            raise ValidationError(f"frequency must be one of: {', '.join(sorted(FREE_FREQUENCIES))}")

        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            changes: dict[str, Any] = {"state": "cancelled", "frequency": frequency}
            if current.state != "cancelled":
                changes["cancelled_at"] = datetime.now(timezone.utc)
            return _drop_unchanged(current, changes)

        return await self._mutate(alert_id, decide, action="change_frequency")

    async def refresh(
        self,
        alert_id: str,
        *,
        gateway_subscription_id: str | None = None,
        gateway_customer_id: str | None = None,
        gateway_status: str | None = None,
        current_period_end: datetime | None = None,
    ) -> AlertSubscriptionRecord:
        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            if (
                gateway_subscription_id
                and current.gateway_subscription_id
                and gateway_subscription_id != current.gateway_subscription_id
            ):
                return None

            changes: dict[str, Any] = {}
            if gateway_subscription_id and not current.gateway_subscription_id:
                changes["gateway_subscription_id"] = gateway_subscription_id
            if gateway_customer_id:
                changes["gateway_customer_id"] = gateway_customer_id
            if gateway_status:
                changes["gateway_status"] = gateway_status
            if current_period_end:
                changes["current_period_end"] = current_period_end
            return _drop_unchanged(current, changes)

        return await self._mutate(alert_id, decide, action="refresh")

    async def attach_checkout(
        self,
        alert_id: str,
        *,
        gateway_subscription_id: str,
        gateway_customer_id: str | None = None,
    ) -> AlertSubscriptionRecord:
        """Record the subscription opened for a pending checkout, replacing a superseded one."""

        def decide(current: AlertSubscriptionRecord) -> dict[str, Any] | None:
            if current.state != "pending_payment":
                return None
            changes: dict[str, Any] = {"gateway_subscription_id": gateway_subscription_id}
            if gateway_customer_id:
                changes["gateway_customer_id"] = gateway_customer_id
            return _drop_unchanged(current, changes)

        return await self._mutate(alert_id, decide, action="attach_checkout")

    async def _mutate(self, alert_id: str, decide: Decision, *, action: str) -> AlertSubscriptionRecord:
        for attempt in range(1, self.max_attempts + 1):
            current = await self.get(alert_id)
            changes = decide(current)
            if not changes:
                return current

            updated = await self.store.update_alert_subscription(
                alert_id,
                expected_version=current.version,
                changes=changes,
            )
            if updated is not None:
                logger.info(
                    "alert subscription %s id=%s state=%s->%s",
                    action,
                    alert_id,
                    current.state,
                    updated.state,
                )
                return updated

            logger.info("alert subscription version conflict id=%s action=%s attempt=%s", alert_id, action, attempt)

        raise ConflictError(f"alert subscription {alert_id} changed concurrently; retry {action}")


def _drop_unchanged(current: AlertSubscriptionRecord, changes: dict[str, Any]) -> dict[str, Any] | None:
    remaining = {column: value for column, value in changes.items() if getattr(current, column) != value}
    return remaining or None


def _is_paid_invoice(current: AlertSubscriptionRecord, invoice_id: str) -> bool:
    return invoice_id == current.last_paid_invoice_id or invoice_id in current.paid_invoice_ids
