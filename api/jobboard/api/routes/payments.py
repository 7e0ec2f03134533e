import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from jobboard.api.deps import get_checkout, get_client_confirmation, http_error
from jobboard.schemas.payments import (
    AlertSubscriptionOut,
    ConfirmPaymentOut,
    ConfirmPaymentRequest,
    CreateCheckoutOut,
    CreatePaymentIntentOut,
    CreatePaymentIntentRequest,
    CreateRealtimeCheckoutOut,
    CreateRealtimeSubscriptionOut,
    CreateRealtimeSubscriptionRequest,
    UnsubscribeRequest,
    UpdateAlertFrequencyRequest,
)
from jobboard.services.checkout import CheckoutService
from jobboard.services.confirmation import ClientConfirmation
from jobboard.services.errors import PaymentsError
from jobboard.services.repository import AlertSubscriptionRecord

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/create-payment-intent", response_model=CreatePaymentIntentOut)
async def create_payment_intent(
    payload: CreatePaymentIntentRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> CreatePaymentIntentOut:
    try:
        started = await checkout.start_job_payment(payload.payload, payload.owner_ref, purpose=payload.purpose)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    return CreatePaymentIntentOut(
        client_secret=started.charge.client_secret,
        gateway_reference_id=started.charge.gateway_reference_id,
        staged_submission_id=started.staged_submission_id,
    )


@router.post(
    "/confirm-payment",
    response_model=ConfirmPaymentOut,
    responses={status.HTTP_202_ACCEPTED: {"model": ConfirmPaymentOut}},
)
async def confirm_payment(
    payload: ConfirmPaymentRequest,
    confirmation: ClientConfirmation = Depends(get_client_confirmation),
):
    try:
        result = await confirmation.confirm(payload.gateway_reference_id)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    body = ConfirmPaymentOut(
        success=result.success,
        status=result.status,
        pending=result.pending,
        payload=result.payload,
        message=result.message,
        gateway_reference_id=result.gateway_reference_id,
    )
    if result.pending:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(mode="json", by_alias=True))
    return body


@router.post("/create-realtime-subscription", response_model=CreateRealtimeSubscriptionOut)
async def create_realtime_subscription(
    payload: CreateRealtimeSubscriptionRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> CreateRealtimeSubscriptionOut:
    try:
        started = await checkout.start_realtime_subscription(payload.email)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    return CreateRealtimeSubscriptionOut(
        client_secret=started.client_secret,
        subscription_id=started.gateway_subscription_id,
        customer_id=started.gateway_customer_id,
        alert_id=started.alert_id,
    )


@router.post("/unsubscribe", response_model=AlertSubscriptionOut)
async def unsubscribe(
    payload: UnsubscribeRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> AlertSubscriptionOut:
    try:
        record = await checkout.unsubscribe(payload.email)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    logger.info("alert unsubscribed id=%s", record.id)
    return _alert_out(record)


@router.post("/create-checkout", response_model=CreateCheckoutOut)
async def create_checkout(
    payload: CreatePaymentIntentRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> CreateCheckoutOut:
    try:
        started = await checkout.start_job_checkout(payload.payload, payload.owner_ref, purpose=payload.purpose)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    return CreateCheckoutOut(
        session_id=started.session.session_id,
        url=started.session.url,
        staged_submission_id=started.staged_submission_id,
    )


@router.post("/create-realtime-checkout", response_model=CreateRealtimeCheckoutOut)
async def create_realtime_checkout(
    payload: CreateRealtimeSubscriptionRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> CreateRealtimeCheckoutOut:
    try:
        started = await checkout.start_realtime_checkout(payload.email)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    return CreateRealtimeCheckoutOut(
        session_id=started.session.session_id,
        url=started.session.url,
        customer_id=started.gateway_customer_id,
        alert_id=started.alert_id,
    )


@router.post("/update-alert-frequency", response_model=AlertSubscriptionOut)
async def update_alert_frequency(
    payload: UpdateAlertFrequencyRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> AlertSubscriptionOut:
    try:
        record = await checkout.update_frequency(payload.email, payload.frequency)
    except PaymentsError as exc:
        raise http_error(exc) from exc

    logger.info("alert frequency updated id=%s frequency=%s", record.id, record.frequency)
    return _alert_out(record)


def _alert_out(record: AlertSubscriptionRecord) -> AlertSubscriptionOut:
    return AlertSubscriptionOut(
        alert_id=record.id,
        email=record.email,
        frequency=record.frequency,
        state=record.state,
        cancelled_at=record.cancelled_at,
    )
