from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from jobboard.services.correlation import ONE_TIME_PURPOSES
from jobboard.services.errors import (
    GatewayUnavailableError,
    MissingCorrelationError,
    PaymentNotCompletedError,
    PaymentsError,
    PublishPendingError,
    ValidationError,
)
from jobboard.services.gateway import ChargeVerification, StripeGateway
from jobboard.services.publisher import JobPublisher, commit_staged_payment
from jobboard.services.staging import StagingStore
from jobboard.services.subscriptions import SubscriptionTracker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PENDING_MESSAGE = "We could not confirm your payment yet. Check back shortly."


@dataclass(slots=True)
class ConfirmationResult:
    success: bool
    status: str
    gateway_reference_id: str
    payload: dict[str, Any] | None = None
    message: str | None = None

    @property
    def pending(self) -> bool:
        return self.status == "pending"


class ClientConfirmation:
    """Synchronous confirmation requested by the browser after checkout.

    The browser's own success report is never trusted: the charge is looked up
    at the gateway first and only a ``succeeded`` charge moves anything. The
    webhook path may commit the same payment concurrently; whichever side wins
    the paid transition publishes and the other reports ``already_published``.
    """

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

    async def confirm(self, gateway_reference_id: str) -> ConfirmationResult:
        reference = (gateway_reference_id or "").strip()
        if not reference:
            raise ValidationError("gatewayReferenceId is required")

        with tracer.start_as_current_span("payments.client_confirm") as span:
            span.set_attribute("payment.gateway_reference_id", reference)
            try:
                verification = await self.gateway.verify_charge(reference)
            except GatewayUnavailableError as exc:
                logger.warning("charge verification unavailable ref=%s error=%s", reference, exc)
                span.set_attribute("payment.outcome", "pending")
                return ConfirmationResult(
                    success=False,
                    status="pending",
                    gateway_reference_id=reference,
                    message=PENDING_MESSAGE,
                )

            if not verification.succeeded:
                raise PaymentNotCompletedError(f"payment status is {verification.status or 'unknown'}")

            correlation = verification.correlation
            span.set_attribute("payment.purpose", correlation.purpose)
            if not correlation.correlation_id:
                raise MissingCorrelationError("payment is missing its correlation id")

            try:
                if correlation.purpose in ONE_TIME_PURPOSES:
                    result = await self._commit_submission(reference, correlation.correlation_id)
                elif correlation.purpose == "realtime_alert":
                    result = await self._activate_alert(reference, correlation.correlation_id, verification)
                else:
                    raise MissingCorrelationError(f"unknown payment purpose: {correlation.purpose}")
            except (MissingCorrelationError, PublishPendingError):
                raise
            except Exception as exc:
                logger.exception("publish pending after verified payment ref=%s", reference)
                raise PublishPendingError(reference) from exc

            span.set_attribute("payment.outcome", result.status)
            return result

    async def _commit_submission(self, reference: str, submission_id: str) -> ConfirmationResult:
        outcome = await commit_staged_payment(self.staging, self.publisher, submission_id)
        if not outcome.committed:
            logger.info("client confirmation found submission already paid id=%s ref=%s", submission_id, reference)
            return ConfirmationResult(success=True, status="already_published", gateway_reference_id=reference)

        logger.info("client confirmation published id=%s ref=%s", submission_id, reference)
        return ConfirmationResult(
            success=True,
            status="published",
            gateway_reference_id=reference,
            payload=outcome.payload,
        )

    async def _activate_alert(
        self,
        reference: str,
        alert_id: str,
        verification: ChargeVerification,
    ) -> ConfirmationResult:
        before = await self.tracker.get(alert_id)
        record = await self.tracker.activate(
            alert_id,
            gateway_subscription_id=verification.gateway_subscription_id,
            gateway_customer_id=verification.gateway_customer_id,
        )
        if record.state != "active":
            raise PaymentsError(f"alert {alert_id} is {record.state} after a verified payment")

        status = "already_published" if before.state == "active" else "published"
        return ConfirmationResult(
            success=True,
            status=status,
            gateway_reference_id=reference,
            payload={"alertId": record.id, "email": record.email, "frequency": record.frequency},
        )
