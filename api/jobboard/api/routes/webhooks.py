import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from jobboard.api.deps import get_reconciler, require_gateway
from jobboard.schemas.payments import WebhookAckOut
from jobboard.services.errors import ConfigurationError, SignatureError
from jobboard.services.gateway import StripeGateway
from jobboard.services.webhooks import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe-webhook", response_model=WebhookAckOut)
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(require_gateway),
    reconciler: WebhookReconciler = Depends(get_reconciler),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookAckOut:
    raw_body = await request.body()
    try:
        event = gateway.verify_webhook_signature(raw_body, stripe_signature)
    except SignatureError as exc:
        logger.warning("webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {exc}") from exc
    except ConfigurationError as exc:
        logger.error("webhook secret is not configured: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    try:
        await reconciler.handle(event)
    except Exception as exc:
        logger.exception("webhook processing failed id=%s type=%s", event.id, event.type)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAckOut(received=True)
