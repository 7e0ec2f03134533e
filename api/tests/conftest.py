from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from jobboard.api.deps import require_gateway
from jobboard.core.config import get_settings
from jobboard.main import app
from jobboard.services.correlation import PaymentCorrelation
from jobboard.services.errors import GatewayError
from jobboard.services.gateway import (
    ChargeHandle,
    ChargeVerification,
    CheckoutSessionHandle,
    StripeGateway,
    SubscriptionHandle,
    WebhookEvent,
    validate_price_id,
)
from jobboard.services.repository import get_repository
from jobboard.services.store import InMemoryStore

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_ID = "price_realtime_alerts"


class FakeGateway:
    """Records gateway calls and keeps charges in memory; signatures use the real scheme."""

    def __init__(self) -> None:
        self.charges: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.cancelled: list[str] = []
        self.idempotency_keys: list[str | None] = []
        self.verify_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self._signer = StripeGateway("sk_test_fake", webhook_secret=WEBHOOK_SECRET)

    def succeed(self, gateway_reference_id: str) -> None:
        self.charges[gateway_reference_id]["status"] = "succeeded"

    async def open_one_time_charge(
        self,
        amount: int,
        correlation: PaymentCorrelation,
        *,
        idempotency_key: str | None = None,
    ) -> ChargeHandle:
        self.idempotency_keys.append(idempotency_key)
        reference = f"pi_{len(self.charges) + 1}"
        self.charges[reference] = {
            "amount": amount,
            "status": "requires_payment_method",
            "metadata": correlation.to_metadata(),
        }
        return ChargeHandle(client_secret=f"{reference}_secret", gateway_reference_id=reference)

    async def ensure_customer(self, email: str, *, alert_id: str, existing_customer_id: str | None = None) -> str:
        return existing_customer_id or f"cus_{alert_id[:8]}"

    async def open_subscription(
        self,
        customer_ref: str,
        price_id: str | None,
        correlation: PaymentCorrelation,
        *,
        idempotency_key: str | None = None,
    ) -> SubscriptionHandle:
        validate_price_id(price_id)
        self.idempotency_keys.append(idempotency_key)
        subscription_id = f"sub_{len(self.subscriptions) + 1}"
        reference = f"pi_sub_{len(self.subscriptions) + 1}"
        metadata = correlation.to_metadata()
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "customer": customer_ref,
            "status": "incomplete",
            "metadata": metadata,
        }
        self.charges[reference] = {
            "status": "requires_payment_method",
            "metadata": {**metadata, "subscriptionId": subscription_id},
            "customer": customer_ref,
        }
        return SubscriptionHandle(
            client_secret=f"{reference}_secret",
            gateway_subscription_id=subscription_id,
            gateway_reference_id=reference,
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
        self.idempotency_keys.append(idempotency_key)
        return self._open_session(
            correlation,
            mode="payment",
            amount=amount,
            product_name=product_name,
            success_url=success_url,
            cancel_url=cancel_url,
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
        validate_price_id(price_id)
        self.idempotency_keys.append(idempotency_key)
        return self._open_session(
            correlation,
            mode="subscription",
            customer=customer_ref,
            success_url=success_url,
            cancel_url=cancel_url,
        )

    def complete_session(self, session_id: str, **fields: Any) -> dict[str, Any]:
        session = self.sessions[session_id]
        session.update({"status": "complete", "payment_status": "paid", **fields})
        return session

    def _open_session(self, correlation: PaymentCorrelation, **fields: Any) -> CheckoutSessionHandle:
        session_id = f"cs_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "status": "open",
            "payment_status": "unpaid",
            "metadata": correlation.to_metadata(),
            **fields,
        }
        return CheckoutSessionHandle(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def verify_charge(self, gateway_reference_id: str) -> ChargeVerification:
        if self.verify_error is not None:
            raise self.verify_error
        if gateway_reference_id in self.sessions:
            session = self.sessions[gateway_reference_id]
            return ChargeVerification(
                succeeded=session["status"] == "complete" and session["payment_status"] == "paid",
                status=session["payment_status"],
                correlation=PaymentCorrelation.from_metadata(session["metadata"]),
                gateway_subscription_id=session.get("subscription"),
                gateway_customer_id=session.get("customer"),
            )
        charge = self.charges.get(gateway_reference_id)
        if charge is None:
            raise GatewayError(f"No such payment_intent: {gateway_reference_id}")
        metadata = charge["metadata"]
        return ChargeVerification(
            succeeded=charge["status"] == "succeeded",
            status=charge["status"],
            correlation=PaymentCorrelation.from_metadata(metadata),
            gateway_subscription_id=metadata.get("subscriptionId"),
            gateway_customer_id=charge.get("customer"),
        )

    async def retrieve_subscription(self, gateway_subscription_id: str) -> dict[str, Any]:
        return self.subscriptions[gateway_subscription_id]

    async def cancel_subscription(self, gateway_subscription_id: str) -> dict[str, Any]:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(gateway_subscription_id)
        return {"id": gateway_subscription_id, "status": "canceled"}

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None) -> WebhookEvent:
        return self._signer.verify_webhook_signature(raw_body, signature_header)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    signed_at = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{signed_at}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={signed_at},v1={signature}"


def event_payload(event_type: str, data_object: dict[str, Any], event_id: str = "evt_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": data_object},
        }
    )


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sign_webhook() -> Callable[..., str]:
    return sign_payload


@pytest.fixture
def make_event() -> Callable[..., str]:
    return event_payload


@pytest.fixture
def payments_client(
    monkeypatch: pytest.MonkeyPatch,
    memory_store: InMemoryStore,
    fake_gateway: FakeGateway,
) -> TestClient:
    monkeypatch.setenv("JB_STRIPE_REALTIME_ALERTS_PRICE_ID", PRICE_ID)
    monkeypatch.setenv("JB_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("JB_SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("JB_PRIVILEGED_IDENTITIES", '["support@jobboard.test"]')
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: memory_store
    app.dependency_overrides[require_gateway] = lambda: fake_gateway

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()
