"""Stripe-backed payment gateway client.

Every Stripe call runs in a worker thread with a bounded wait, carries this
client's own API key, and comes back as plain dicts so the rest of the
pipeline never touches ``stripe`` objects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable

import stripe

from jobboard.core.config import get_settings
from jobboard.services.correlation import PaymentCorrelation
from jobboard.services.errors import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    SignatureError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChargeHandle:
    client_secret: str
    gateway_reference_id: str


@dataclass(slots=True)
class SubscriptionHandle:
    client_secret: str
    gateway_subscription_id: str
    gateway_reference_id: str


@dataclass(slots=True)
class CheckoutSessionHandle:
    session_id: str
    url: str


@dataclass(slots=True)
class ChargeVerification:
    succeeded: bool
    status: str
    correlation: PaymentCorrelation
    gateway_subscription_id: str | None = None
    gateway_customer_id: str | None = None


@dataclass(slots=True)
class WebhookEvent:
    id: str
    type: str
    data_object: dict[str, Any]
    created: int | None = None


class StripeGateway:
    def __init__(
        self,
        api_key: str | None,
        *,
        webhook_secret: str | None = None,
        timeout_seconds: float = 10.0,
        webhook_tolerance_seconds: int = 300,
        currency: str = "usd",
    ) -> None:
        if not api_key or not api_key.strip():
            raise ConfigurationError("JB_STRIPE_SECRET_KEY is required")

        self.api_key = api_key.strip()
        self.webhook_secret = (webhook_secret or "").strip() or None
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.currency = currency

    async def open_one_time_charge(
        self,
        amount: int,
        correlation: PaymentCorrelation,
        *,
        idempotency_key: str | None = None,
    ) -> ChargeHandle:
        if amount <= 0:
            raise ConfigurationError("charge amount must be a positive number of cents")

        intent = await self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=self.currency,
            metadata=correlation.to_metadata(),
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        client_secret = intent.get("client_secret")
        if not client_secret:
            raise GatewayError("payment intent returned without a client secret")
        return ChargeHandle(client_secret=client_secret, gateway_reference_id=intent["id"])

    async def ensure_customer(self, email: str, *, alert_id: str, existing_customer_id: str | None = None) -> str:
        if existing_customer_id:
            return existing_customer_id
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            metadata={"alertId": alert_id},
            idempotency_key=f"customer:{alert_id}",
        )
        return customer["id"]

    async def open_subscription(
        self,
        customer_ref: str,
        price_id: str | None,
        correlation: PaymentCorrelation,
        *,
        idempotency_key: str | None = None,
    ) -> SubscriptionHandle:
        price_id = validate_price_id(price_id)
        metadata = correlation.to_metadata()
        subscription = await self._call(
            "subscription.create",
            stripe.Subscription.create,
            customer=customer_ref,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.confirmation_secret", "latest_invoice.payments"],
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

        client_secret, payment_intent_id = _invoice_secret(subscription.get("latest_invoice"))
        if not client_secret or not payment_intent_id:
            # A subscription without a payable first invoice means the price or plan is misconfigured.
            raise ConfigurationError(
                f"subscription {subscription.get('id')} has no payable invoice; check price {price_id}"
            )

        await self._call(
            "payment_intent.modify",
            stripe.PaymentIntent.modify,
            payment_intent_id,
            metadata={**metadata, "subscriptionId": subscription["id"]},
        )

        return SubscriptionHandle(
            client_secret=client_secret,
            gateway_subscription_id=subscription["id"],
            gateway_reference_id=payment_intent_id,
        )

    async def open_job_checkout(
        self,
        amount: int,
        correlation: PaymentCorrelation,
        *,
        product_name: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str | None = None,
    ) -> CheckoutSessionHandle:
        if amount <= 0:
            raise ConfigurationError("charge amount must be a positive number of cents")

        metadata = correlation.to_metadata()
        return await self._open_checkout_session(
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": amount,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            client_reference_id=correlation.correlation_id,
            success_url=success_url,
            cancel_url=cancel_url,
            idempotency_key=idempotency_key,
        )

    async def open_subscription_checkout(
        self,
        customer_ref: str,
        price_id: str | None,
        correlation: PaymentCorrelation,
        *,
        success_url: str,
        cancel_url: str,
        idempotency_key: str | None = None,
    ) -> CheckoutSessionHandle:
        price_id = validate_price_id(price_id)
        metadata = correlation.to_metadata()
        return await self._open_checkout_session(
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            customer=customer_ref,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            client_reference_id=correlation.correlation_id,
            success_url=success_url,
            cancel_url=cancel_url,
            idempotency_key=idempotency_key,
        )

    async def verify_charge(self, gateway_reference_id: str) -> ChargeVerification:
        if gateway_reference_id.startswith("cs_"):
            return await self._verify_checkout_session(gateway_reference_id)

        intent = await self._call("payment_intent.retrieve", stripe.PaymentIntent.retrieve, gateway_reference_id)
        status = str(intent.get("status") or "")
        metadata = intent.get("metadata") or {}
        customer = intent.get("customer")
        return ChargeVerification(
            succeeded=status == "succeeded",
            status=status,
            correlation=PaymentCorrelation.from_metadata(metadata),
            gateway_subscription_id=metadata.get("subscriptionId") or None,
            gateway_customer_id=customer if isinstance(customer, str) else None,
        )

    async def retrieve_subscription(self, gateway_subscription_id: str) -> dict[str, Any]:
        return await self._call("subscription.retrieve", stripe.Subscription.retrieve, gateway_subscription_id)

    async def cancel_subscription(self, gateway_subscription_id: str) -> dict[str, Any]:
        return await self._call("subscription.cancel", stripe.Subscription.cancel, gateway_subscription_id)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None) -> WebhookEvent:
        if not self.webhook_secret:
            raise ConfigurationError("JB_STRIPE_WEBHOOK_SECRET is required")
        if not signature_header:
            raise SignatureError("missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureError("webhook payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                tolerance=self.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(str(exc)) from exc

        try:
            body = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise SignatureError("webhook payload is not valid JSON") from exc

        event_id = body.get("id") if isinstance(body, dict) else None
        event_type = body.get("type") if isinstance(body, dict) else None
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            raise SignatureError("webhook payload is not a Stripe event")

        data = body.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        return WebhookEvent(
            id=event_id,
            type=event_type,
            data_object=data_object if isinstance(data_object, dict) else {},
            created=body.get("created") if isinstance(body.get("created"), int) else None,
        )

    async def _open_checkout_session(self, *, idempotency_key: str | None, **params: Any) -> CheckoutSessionHandle:
        session = await self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            idempotency_key=idempotency_key,
            **params,
        )
        url = session.get("url")
        if not url:
            raise GatewayError("checkout session returned without a url")
        return CheckoutSessionHandle(session_id=session["id"], url=url)

    async def _verify_checkout_session(self, session_id: str) -> ChargeVerification:
        session = await self._call("checkout.session.retrieve", stripe.checkout.Session.retrieve, session_id)
        payment_status = str(session.get("payment_status") or "")
        metadata = session.get("metadata") or {}
        return ChargeVerification(
            succeeded=session.get("status") == "complete" and payment_status in {"paid", "no_payment_required"},
            status=payment_status,
            correlation=PaymentCorrelation.from_metadata(metadata),
            gateway_subscription_id=_identifier(session.get("subscription")),
            gateway_customer_id=_identifier(session.get("customer")),
        )

    async def _call(self, operation: str, func: Callable[..., Any], /, *args: Any, **params: Any) -> dict[str, Any]:
        if params.get("idempotency_key") is None:
            params.pop("idempotency_key", None)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **params),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("stripe call timed out operation=%s timeout=%.1fs", operation, self.timeout_seconds)
            raise GatewayTimeoutError(f"{operation} timed out") from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("transient stripe error operation=%s error=%s", operation, exc)
            raise GatewayUnavailableError(f"{operation} failed: {exc}") from exc
        except stripe.APIError as exc:
            logger.warning("stripe api error operation=%s error=%s", operation, exc)
            raise GatewayUnavailableError(f"{operation} failed: {exc}") from exc
        except stripe.AuthenticationError as exc:
            raise ConfigurationError(f"Stripe rejected the configured secret key: {exc}") from exc
        except stripe.StripeError as exc:
            logger.error("stripe request rejected operation=%s error=%s", operation, exc)
            raise GatewayError(f"{operation} failed: {exc}") from exc

        return _plain(result)


def validate_price_id(price_id: str | None) -> str:
    if not price_id or not price_id.strip():
        raise ConfigurationError("JB_STRIPE_REALTIME_ALERTS_PRICE_ID is required")
    price_id = price_id.strip()
    if not price_id.startswith("price_"):
        raise ConfigurationError(f"invalid Stripe price id format: {price_id}")
    return price_id


def _invoice_secret(invoice: Any) -> tuple[str | None, str | None]:
    """Return the first invoice's client secret and the PaymentIntent behind it.

    The intent id comes from the default invoice payment. When the payments
    list is missing, a PaymentIntent secret (``pi_..._secret_...``) still names
    its intent.
    """
    if not isinstance(invoice, dict):
        return None, None

    confirmation_secret = invoice.get("confirmation_secret")
    client_secret = None
    if isinstance(confirmation_secret, dict):
        client_secret = confirmation_secret.get("client_secret") or None
    if not client_secret:
        return None, None

    payment_intent_id = None
    payments = (invoice.get("payments") or {}).get("data") or []
    for entry in sorted(payments, key=lambda item: not item.get("is_default")):
        payment = entry.get("payment") or {}
        if payment.get("type") == "payment_intent":
            payment_intent_id = _identifier(payment.get("payment_intent"))
            if payment_intent_id:
                break

    if payment_intent_id is None and client_secret.startswith("pi_") and "_secret_" in client_secret:
        payment_intent_id = client_secret.split("_secret_", 1)[0]
    return client_secret, payment_intent_id


def _identifier(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def _plain(value: Any) -> dict[str, Any]:
    if isinstance(value, stripe.StripeObject):
        return json.loads(str(value))
    if isinstance(value, dict):
        return value
    raise GatewayError(f"unexpected Stripe response type: {type(value).__name__}")


@lru_cache
def get_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.gateway_timeout_seconds,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        currency=settings.charge_currency,
    )

