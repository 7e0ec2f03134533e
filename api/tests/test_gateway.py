import asyncio
import time
from typing import Any

import pytest
import stripe

from jobboard.services.correlation import PaymentCorrelation
from jobboard.services.errors import (
    ConfigurationError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    SignatureError,
)
from jobboard.services.gateway import StripeGateway

from conftest import WEBHOOK_SECRET, event_payload, sign_payload

CORRELATION = PaymentCorrelation(purpose="new_job", owner_ref="owner-1", staged_submission_id="staged-1")


def test_gateway_requires_secret_key() -> None:
    with pytest.raises(ConfigurationError):
        StripeGateway(None)
    with pytest.raises(ConfigurationError):
        StripeGateway("   ")


def test_open_one_time_charge_sends_only_correlation(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def _fake_create(**params: Any) -> dict[str, Any]:
        calls.append(params)
        return {"id": "pi_123", "client_secret": "pi_123_secret_abc"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", _fake_create)
    gateway = StripeGateway("sk_test_key")

    handle = asyncio.run(gateway.open_one_time_charge(9900, CORRELATION, idempotency_key="charge:staged-1"))

    assert handle.gateway_reference_id == "pi_123"
    assert handle.client_secret == "pi_123_secret_abc"
    assert calls == [
        {
            "amount": 9900,
            "currency": "usd",
            "metadata": {"purpose": "new_job", "ownerRef": "owner-1", "stagedSubmissionId": "staged-1"},
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": "charge:staged-1",
            "api_key": "sk_test_key",
        }
    ]


def test_open_subscription_without_payable_invoice_is_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_create(**_: Any) -> dict[str, Any]:
        return {"id": "sub_1", "latest_invoice": {"id": "in_1", "confirmation_secret": None, "payments": {"data": []}}}

    monkeypatch.setattr(stripe.Subscription, "create", _fake_create)
    gateway = StripeGateway("sk_test_key")
    correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref="a@b.co", alert_id="alert-1")

    with pytest.raises(ConfigurationError):
        asyncio.run(gateway.open_subscription("cus_1", "price_123", correlation))


def test_open_subscription_rejects_malformed_price_before_calling_stripe(monkeypatch: pytest.MonkeyPatch) -> None:
    def _unexpected(**_: Any) -> dict[str, Any]:
        raise AssertionError("stripe must not be called")

    monkeypatch.setattr(stripe.Subscription, "create", _unexpected)
    gateway = StripeGateway("sk_test_key")
    correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref="a@b.co", alert_id="alert-1")

    with pytest.raises(ConfigurationError):
        asyncio.run(gateway.open_subscription("cus_1", "prod_123", correlation))
    with pytest.raises(ConfigurationError):
        asyncio.run(gateway.open_subscription("cus_1", None, correlation))


def _invoice(payments: list[dict[str, Any]], secret: str = "pi_9_secret_xyz") -> dict[str, Any]:
    return {
        "id": "in_9",
        "object": "invoice",
        "confirmation_secret": {"client_secret": secret, "type": "payment_intent"},
        "payments": {"object": "list", "data": payments},
    }


def test_open_subscription_tags_invoice_payment_intent(monkeypatch: pytest.MonkeyPatch) -> None:
    modified: list[tuple[str, dict[str, Any]]] = []

    def _fake_create(**params: Any) -> dict[str, Any]:
        assert params["payment_behavior"] == "default_incomplete"
        assert params["expand"] == ["latest_invoice.confirmation_secret", "latest_invoice.payments"]
        payments = [
            {"id": "inpay_old", "is_default": False, "payment": {"type": "payment_intent", "payment_intent": "pi_old"}},
            {"id": "inpay_1", "is_default": True, "payment": {"type": "payment_intent", "payment_intent": "pi_9"}},
        ]
        return {"id": "sub_9", "latest_invoice": _invoice(payments)}

    def _fake_modify(intent_id: str, **params: Any) -> dict[str, Any]:
        modified.append((intent_id, params["metadata"]))
        return {"id": intent_id}

    monkeypatch.setattr(stripe.Subscription, "create", _fake_create)
    monkeypatch.setattr(stripe.PaymentIntent, "modify", _fake_modify)
    gateway = StripeGateway("sk_test_key")
    correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref="a@b.co", alert_id="alert-1")

    handle = asyncio.run(gateway.open_subscription("cus_1", "price_123", correlation, idempotency_key="subscription:alert-1:0"))

    assert handle.gateway_subscription_id == "sub_9"
    assert handle.gateway_reference_id == "pi_9"
    assert handle.client_secret == "pi_9_secret_xyz"
    assert modified == [
        (
            "pi_9",
            {"purpose": "realtime_alert", "ownerRef": "a@b.co", "alertId": "alert-1", "subscriptionId": "sub_9"},
        )
    ]


def test_open_subscription_reads_intent_from_secret_without_payments(monkeypatch: pytest.MonkeyPatch) -> None:
    modified: list[str] = []

    def _fake_create(**_: Any) -> dict[str, Any]:
        invoice = _invoice([], secret="pi_3Abc_secret_def")
        del invoice["payments"]
        return {"id": "sub_3", "latest_invoice": invoice}

    def _fake_modify(intent_id: str, **_: Any) -> dict[str, Any]:
        modified.append(intent_id)
        return {"id": intent_id}

    monkeypatch.setattr(stripe.Subscription, "create", _fake_create)
    monkeypatch.setattr(stripe.PaymentIntent, "modify", _fake_modify)
    correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref="a@b.co", alert_id="alert-1")

    handle = asyncio.run(StripeGateway("sk_test_key").open_subscription("cus_1", "price_123", correlation))

    assert handle.gateway_reference_id == "pi_3Abc"
    assert modified == ["pi_3Abc"]


def test_job_checkout_session_carries_correlation(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def _fake_create(**params: Any) -> dict[str, Any]:
        calls.append(params)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}

    monkeypatch.setattr(stripe.checkout.Session, "create", _fake_create)
    gateway = StripeGateway("sk_test_key")

    handle = asyncio.run(
        gateway.open_job_checkout(
            9900,
            CORRELATION,
            product_name="Featured job listing",
            success_url="https://jobs.test/?payment=success",
            cancel_url="https://jobs.test/?payment=cancelled",
            idempotency_key="checkout:staged-1",
        )
    )

    assert handle.session_id == "cs_test_1"
    assert handle.url.endswith("cs_test_1")
    [params] = calls
    metadata = {"purpose": "new_job", "ownerRef": "owner-1", "stagedSubmissionId": "staged-1"}
    assert params["mode"] == "payment"
    assert params["metadata"] == metadata
    assert params["payment_intent_data"] == {"metadata": metadata}
    assert params["client_reference_id"] == "staged-1"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 9900
    assert params["idempotency_key"] == "checkout:staged-1"


def test_subscription_checkout_tags_subscription_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def _fake_create(**params: Any) -> dict[str, Any]:
        calls.append(params)
        return {"id": "cs_test_2", "url": "https://checkout.stripe.com/c/pay/cs_test_2"}

    monkeypatch.setattr(stripe.checkout.Session, "create", _fake_create)
    correlation = PaymentCorrelation(purpose="realtime_alert", owner_ref="a@b.co", alert_id="alert-1")

    asyncio.run(
        StripeGateway("sk_test_key").open_subscription_checkout(
            "cus_1",
            "price_123",
            correlation,
            success_url="https://jobs.test/?alert_subscription=success",
            cancel_url="https://jobs.test/?alert_subscription=cancelled",
        )
    )

    [params] = calls
    assert params["mode"] == "subscription"
    assert params["customer"] == "cus_1"
    assert params["line_items"] == [{"price": "price_123", "quantity": 1}]
    assert params["subscription_data"]["metadata"]["alertId"] == "alert-1"


def test_verify_checkout_session_reference(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_retrieve(session_id: str, **_: Any) -> dict[str, Any]:
        return {
            "id": session_id,
            "status": "complete",
            "payment_status": "paid",
            "subscription": "sub_5",
            "customer": "cus_5",
            "metadata": {"purpose": "realtime_alert", "ownerRef": "a@b.co", "alertId": "alert-5"},
        }

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", _fake_retrieve)

    verification = asyncio.run(StripeGateway("sk_test_key").verify_charge("cs_test_5"))

    assert verification.succeeded
    assert verification.correlation.alert_id == "alert-5"
    assert verification.gateway_subscription_id == "sub_5"
    assert verification.gateway_customer_id == "cus_5"


def test_slow_gateway_call_times_out(monkeypatch: pytest.MonkeyPatch) -> None:
    def _slow_retrieve(intent_id: str, **_: Any) -> dict[str, Any]:
        time.sleep(0.5)
        return {"id": intent_id, "status": "succeeded", "metadata": {}}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _slow_retrieve)
    gateway = StripeGateway("sk_test_key", timeout_seconds=0.1)

    with pytest.raises(GatewayTimeoutError):
        asyncio.run(gateway.verify_charge("pi_slow"))


def test_connection_errors_are_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(intent_id: str, **_: Any) -> dict[str, Any]:
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _broken)
    gateway = StripeGateway("sk_test_key")

    with pytest.raises(GatewayUnavailableError):
        asyncio.run(gateway.verify_charge("pi_1"))


def test_verify_charge_reads_status_and_correlation(monkeypatch: pytest.MonkeyPatch) -> None:
    def _fake_retrieve(intent_id: str, **_: Any) -> dict[str, Any]:
        return {
            "id": intent_id,
            "status": "processing",
            "customer": "cus_1",
            "metadata": {"purpose": "new_job", "ownerRef": "owner-1", "stagedSubmissionId": "staged-1"},
        }

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _fake_retrieve)
    verification = asyncio.run(StripeGateway("sk_test_key").verify_charge("pi_1"))

    assert not verification.succeeded
    assert verification.status == "processing"
    assert verification.correlation.correlation_id == "staged-1"
    assert verification.gateway_customer_id == "cus_1"


def test_webhook_signature_round_trip() -> None:
    gateway = StripeGateway("sk_test_key", webhook_secret=WEBHOOK_SECRET)
    payload = event_payload("payment_intent.succeeded", {"id": "pi_1", "metadata": {}}, event_id="evt_42")

    event = gateway.verify_webhook_signature(payload.encode("utf-8"), sign_payload(payload))

    assert event.id == "evt_42"
    assert event.type == "payment_intent.succeeded"
    assert event.data_object["id"] == "pi_1"


def test_webhook_signature_rejections() -> None:
    gateway = StripeGateway("sk_test_key", webhook_secret=WEBHOOK_SECRET)
    payload = event_payload("payment_intent.succeeded", {"id": "pi_1"})
    raw = payload.encode("utf-8")

    with pytest.raises(SignatureError):
        gateway.verify_webhook_signature(raw, None)
    with pytest.raises(SignatureError):
        gateway.verify_webhook_signature(raw, sign_payload(payload, secret="whsec_other"))
    with pytest.raises(SignatureError):
        gateway.verify_webhook_signature(raw, sign_payload(payload, timestamp=int(time.time()) - 3600))
    with pytest.raises(SignatureError):
        gateway.verify_webhook_signature(raw + b" ", sign_payload(payload))


def test_webhook_verification_requires_secret() -> None:
    gateway = StripeGateway("sk_test_key")
    with pytest.raises(ConfigurationError):
        gateway.verify_webhook_signature(b"{}", "t=1,v1=abc")
