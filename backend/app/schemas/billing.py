"""Provider-agnostic billing event envelope"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.subscription import SubscriptionStatus
from app.utils.dates import as_utc


class BillingEventType:
    CHECKOUT_COMPLETED = "checkout.completed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"


class BillingEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    external_subscription_id: Optional[str] = None
    subscription_ref: Optional[int] = None  # Local subscription id echoed back through checkout metadata
    customer_ref: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[datetime] = None

    @field_validator("current_period_start", "current_period_end", "canceled_at")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v)


class BillingEvent(BaseModel):
    external_event_id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=100)
    occurred_at: datetime
    data: BillingEventData = Field(default_factory=BillingEventData)
    # Set when the provider's data could not be validated; the event is recorded as failed
    invalid_data: Optional[str] = Field(default=None, exclude=True)

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_utc(cls, v):
        return as_utc(v)


class WebhookAck(BaseModel):
    status: str
    event_id: Optional[str] = None
