class PaymentsError(Exception):
    """Base error for the payment-gated publication pipeline."""


class ValidationError(PaymentsError):
    """Raised when a submission is malformed before any gateway call."""


class NotFoundError(PaymentsError):
    """Raised when the requested record does not exist."""


class ConflictError(PaymentsError):
    """Raised when an operation violates a state or correlation rule."""


class PaymentNotCompletedError(PaymentsError):
    """Raised when the gateway does not confirm a client-reported payment."""


class MissingCorrelationError(PaymentsError):
    """Raised when gateway metadata lacks the id needed to commit."""


class SignatureError(PaymentsError):
    """Raised when a webhook payload fails the authenticity check."""


class ConfigurationError(PaymentsError):
    """Raised when gateway credentials or price identifiers are missing or invalid."""


class GatewayError(PaymentsError):
    """Raised when the payment gateway rejects a request."""


class GatewayUnavailableError(GatewayError):
    """Raised for transient gateway failures that are safe to retry."""


class GatewayTimeoutError(GatewayUnavailableError):
    """Raised when a gateway call exceeds its time budget."""


class StoreUnavailableError(PaymentsError):
    """Raised when the document store is unavailable or not configured."""


class PublishPendingError(PaymentsError):
    """Raised when a verified payment could not be published yet."""

    def __init__(self, gateway_reference_id: str) -> None:
        super().__init__(
            "payment succeeded but publishing is pending; "
            f"contact support with reference {gateway_reference_id}"
        )
        self.gateway_reference_id = gateway_reference_id
