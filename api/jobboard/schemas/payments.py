from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StagedPurpose = Literal["new_job", "promote_job"]
ConfirmationStatus = Literal["published", "already_published", "pending"]
AlertState = Literal["pending_payment", "active", "payment_lapsed", "cancelled"]
AlertFrequency = Literal["daily", "weekly", "realtime"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePaymentIntentRequest(CamelModel):
    payload: dict[str, Any]
    owner_ref: str = Field(min_length=1)
    purpose: StagedPurpose = "new_job"


class CreatePaymentIntentOut(CamelModel):
    client_secret: str
    gateway_reference_id: str
    staged_submission_id: str


class CreateCheckoutOut(CamelModel):
    session_id: str
    url: str
    staged_submission_id: str


class ConfirmPaymentRequest(CamelModel):
    gateway_reference_id: str = Field(min_length=1)


class ConfirmPaymentOut(CamelModel):
    success: bool
    status: ConfirmationStatus
    pending: bool = False
    payload: dict[str, Any] | None = None
    message: str | None = None
    gateway_reference_id: str


class CreateRealtimeSubscriptionRequest(CamelModel):
    email: str = Field(min_length=3, max_length=320)


class CreateRealtimeSubscriptionOut(CamelModel):
    client_secret: str
    subscription_id: str
    customer_id: str
    alert_id: str


class CreateRealtimeCheckoutOut(CamelModel):
    session_id: str
    url: str
    customer_id: str
    alert_id: str


class UnsubscribeRequest(CamelModel):
    email: str = Field(min_length=3, max_length=320)


class UpdateAlertFrequencyRequest(CamelModel):
    email: str = Field(min_length=3, max_length=320)
    frequency: AlertFrequency


class AlertSubscriptionOut(CamelModel):
    alert_id: str
    email: str
    frequency: AlertFrequency
    state: AlertState
    cancelled_at: datetime | None = None


class WebhookAckOut(BaseModel):
    received: bool = True


class StagedSubmissionOut(CamelModel):
    id: str
    purpose: StagedPurpose
    owner_ref: str
    state: Literal["pending_payment", "paid", "expired"]
    gateway_reference_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None = None
    published_job_id: str | None = None
    stale: bool = False


class StagingExpiryOut(CamelModel):
    expired: int
    ttl_hours: int
