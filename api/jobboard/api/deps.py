import logging

from fastapi import Depends, HTTPException, status

from jobboard.core.config import Settings, get_settings
from jobboard.services.checkout import CheckoutService
from jobboard.services.confirmation import ClientConfirmation
from jobboard.services.errors import (
    ConfigurationError,
    ConflictError,
    GatewayError,
    GatewayUnavailableError,
    MissingCorrelationError,
    NotFoundError,
    PaymentNotCompletedError,
    PaymentsError,
    PublishPendingError,
    SignatureError,
    StoreUnavailableError,
    ValidationError,
)
from jobboard.services.gateway import StripeGateway, get_gateway
from jobboard.services.publisher import JobPublisher
from jobboard.services.repository import DocumentStore, get_repository
from jobboard.services.staging import StagingStore
from jobboard.services.subscriptions import SubscriptionTracker
from jobboard.services.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

# Ordered most specific first; the first matching class wins.
_ERROR_STATUS: tuple[tuple[type[PaymentsError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (PaymentNotCompletedError, status.HTTP_400_BAD_REQUEST),
    (MissingCorrelationError, status.HTTP_400_BAD_REQUEST),
    (SignatureError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (GatewayUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PublishPendingError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: PaymentsError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.error("request failed status=%s error=%s", status_code, exc)
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.error("unclassified payments error: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def require_gateway() -> StripeGateway:
    try:
        return get_gateway()
    except ConfigurationError as exc:
        logger.error("payment gateway is not configured: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def get_staging_store(repository: DocumentStore = Depends(get_repository)) -> StagingStore:
    return StagingStore(repository)


def get_tracker(repository: DocumentStore = Depends(get_repository)) -> SubscriptionTracker:
    return SubscriptionTracker(repository)


def get_publisher(
    repository: DocumentStore = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> JobPublisher:
    return JobPublisher(repository, featured_days=settings.featured_days)


def get_checkout(
    gateway: StripeGateway = Depends(require_gateway),
    staging: StagingStore = Depends(get_staging_store),
    tracker: SubscriptionTracker = Depends(get_tracker),
    repository: DocumentStore = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> CheckoutService:
    return CheckoutService(
        gateway,
        staging,
        tracker,
        repository,
        charge_amount_cents=settings.charge_amount_cents,
        realtime_price_id=settings.stripe_realtime_alerts_price_id,
        site_url=settings.site_url,
        product_name=settings.checkout_product_name,
    )


def get_client_confirmation(
    gateway: StripeGateway = Depends(require_gateway),
    staging: StagingStore = Depends(get_staging_store),
    publisher: JobPublisher = Depends(get_publisher),
    tracker: SubscriptionTracker = Depends(get_tracker),
) -> ClientConfirmation:
    return ClientConfirmation(gateway, staging, publisher, tracker)


def get_reconciler(
    gateway: StripeGateway = Depends(require_gateway),
    staging: StagingStore = Depends(get_staging_store),
    publisher: JobPublisher = Depends(get_publisher),
    tracker: SubscriptionTracker = Depends(get_tracker),
) -> WebhookReconciler:
    return WebhookReconciler(gateway, staging, publisher, tracker)
