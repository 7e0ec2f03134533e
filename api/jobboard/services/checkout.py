from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from jobboard.services.correlation import PaymentCorrelation
from jobboard.services.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from jobboard.services.gateway import ChargeHandle, CheckoutSessionHandle, StripeGateway, validate_price_id
from jobboard.services.repository import AlertSubscriptionRecord, DocumentStore, StagedSubmissionRecord
from jobboard.services.staging import StagingStore
from jobboard.services.subscriptions import SubscriptionTracker

logger = logging.getLogger(__name__)

PAID_ALERT_STATES = {"active", "payment_lapsed"}


@dataclass(slots=True)
class JobCheckout:
    staged_submission_id: str
    charge: ChargeHandle


@dataclass(slots=True)
class HostedJobCheckout:
    staged_submission_id: str
    session: CheckoutSessionHandle


@dataclass(slots=True)
class AlertCheckout:
    client_secret: str
    gateway_subscription_id: str
    gateway_customer_id: str
    alert_id: str


@dataclass(slots=True)
class HostedAlertCheckout:
    alert_id: str
    gateway_customer_id: str
    session: CheckoutSessionHandle


class CheckoutService:
    """Opens gateway payments for staged submissions and realtime alerts.

    Two flavours exist for each: an embedded one that hands the browser a
    client secret, and a hosted Checkout Session that hands back a redirect
    url. Both carry the same correlation ids, so confirmation and webhook
    reconciliation treat them alike.
    """

    def __init__(
        self,
        gateway: StripeGateway,
        staging: StagingStore,
        tracker: SubscriptionTracker,
        store: DocumentStore,
        *,
        charge_amount_cents: int,
        realtime_price_id: str | None,
        site_url: str = "http://localhost:3000",
        product_name: str = "Featured job listing",
    ) -> None:
        self.gateway = gateway
        self.staging = staging
        self.tracker = tracker
        self.store = store
        self.charge_amount_cents = charge_amount_cents
        self.realtime_price_id = realtime_price_id
        self.site_url = site_url.rstrip("/")
        self.product_name = product_name

    async def start_job_payment(self, payload: Any, owner_ref: Any, purpose: str = "new_job") -> JobCheckout:
        staged = await self._stage(payload, owner_ref, purpose)
        charge = await self.gateway.open_one_time_charge(
            self.charge_amount_cents,
            _job_correlation(staged),
            idempotency_key=f"charge:{staged.id}",
        )
        await self.staging.attach_gateway_ref(staged.id, charge.gateway_reference_id)
        return JobCheckout(staged_submission_id=staged.id, charge=charge)

    async def start_job_checkout(self, payload: Any, owner_ref: Any, purpose: str = "new_job") -> HostedJobCheckout:
        staged = await self._stage(payload, owner_ref, purpose)
        session = await self.gateway.open_job_checkout(
            self.charge_amount_cents,
            _job_correlation(staged),
            product_name=self.product_name,
            success_url=self._return_url(payment="success", session_id="{CHECKOUT_SESSION_ID}"),
            cancel_url=self._return_url(payment="cancelled"),
            idempotency_key=f"checkout:{staged.id}",
        )
        await self.staging.attach_gateway_ref(staged.id, session.session_id)
        logger.info("job checkout session opened staged=%s session=%s", staged.id, session.session_id)
        return HostedJobCheckout(staged_submission_id=staged.id, session=session)

    async def start_realtime_subscription(self, email: Any) -> AlertCheckout:
        price_id = validate_price_id(self.realtime_price_id)
        record, customer_id = await self._open_alert(email)
        correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref=record.email, alert_id=record.id)
        handle = await self.gateway.open_subscription(
            customer_id,
            price_id,
            correlation,
            idempotency_key=f"subscription:{record.id}:{record.reopen_count}",
        )
        await self.tracker.attach_checkout(
            record.id,
            gateway_subscription_id=handle.gateway_subscription_id,
            gateway_customer_id=customer_id,
        )
        logger.info(
            "realtime subscription opened alert=%s subscription=%s",
            record.id,
            handle.gateway_subscription_id,
        )
        return AlertCheckout(
            client_secret=handle.client_secret,
            gateway_subscription_id=handle.gateway_subscription_id,
            gateway_customer_id=customer_id,
            alert_id=record.id,
        )

    async def start_realtime_checkout(self, email: Any) -> HostedAlertCheckout:
        price_id = validate_price_id(self.realtime_price_id)
        record, customer_id = await self._open_alert(email)
        correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref=record.email, alert_id=record.id)
        session = await self.gateway.open_subscription_checkout(
            customer_id,
            price_id,
            correlation,
            success_url=self._return_url(alert_subscription="success", alert_id=record.id),
            cancel_url=self._return_url(alert_subscription="cancelled"),
            idempotency_key=f"checkout:{record.id}:{record.reopen_count}",
        )
        # The subscription only exists once the session completes; its webhook records the id.
        await self.tracker.refresh(record.id, gateway_customer_id=customer_id)
        logger.info("realtime checkout session opened alert=%s session=%s", record.id, session.session_id)
        return HostedAlertCheckout(alert_id=record.id, gateway_customer_id=customer_id, session=session)

    async def unsubscribe(self, email: Any) -> AlertSubscriptionRecord:
        record = await self.tracker.find_by_email(email)
        if record.gateway_subscription_id and record.state != "cancelled":
            try:
                await self.gateway.cancel_subscription(record.gateway_subscription_id)
            except GatewayError as exc:
                logger.warning(
                    "gateway cancellation failed alert=%s subscription=%s error=%s",
                    record.id,
                    record.gateway_subscription_id,
                    exc,
                )
        return await self.tracker.cancel(record.id, gateway_subscription_id=record.gateway_subscription_id)

    async def update_frequency(self, email: Any, frequency: str) -> AlertSubscriptionRecord:
        record = await self.tracker.find_by_email(email)
        if frequency == "realtime":
            if record.state == "active":
                return record
            raise ValidationError("realtime alerts need a paid subscription; start one with /create-realtime-subscription")

        if record.gateway_subscription_id and record.state != "cancelled":
            # A failed cancel leaves the record untouched so the caller can retry.
            await self.gateway.cancel_subscription(record.gateway_subscription_id)
            logger.info(
                "realtime subscription cancelled for frequency change alert=%s subscription=%s",
                record.id,
                record.gateway_subscription_id,
            )
        return await self.tracker.change_frequency(record.id, frequency)

    async def _stage(self, payload: Any, owner_ref: Any, purpose: str) -> StagedSubmissionRecord:
        staged_id = await self.staging.create(payload, owner_ref, purpose=purpose)
        staged = await self.staging.get(staged_id)
        if purpose == "promote_job":
            job = await self.store.get_published_job(staged.payload["job_id"].strip())
            if job is None:
                raise NotFoundError("job to promote not found")
        return staged

    async def _open_alert(self, email: Any) -> tuple[AlertSubscriptionRecord, str]:
        record = await self.tracker.open_for_email(email)
        if record.state in PAID_ALERT_STATES:
            raise ConflictError("a realtime alert subscription already exists for this email")

        customer_id = await self.gateway.ensure_customer(
            record.email,
            alert_id=record.id,
            existing_customer_id=record.gateway_customer_id,
        )
        return record, customer_id

    def _return_url(self, **params: str) -> str:
        # Stripe substitutes the literal {CHECKOUT_SESSION_ID} placeholder, so it must stay unescaped.
        return f"{self.site_url}/?{urlencode(params, safe='{}')}"


def _job_correlation(staged: StagedSubmissionRecord) -> PaymentCorrelation:
    return PaymentCorrelation(
        purpose=staged.purpose,
        owner_ref=staged.owner_ref,
        staged_submission_id=staged.id,
    )
