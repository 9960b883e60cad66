"""Pydantic schemas for subscriptions"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import Optional


class SubscriptionCreate(BaseModel):
    plan_id: int
    payment_method_ref: Optional[str] = None
    trial_days: Optional[int] = None
    coupon_code: Optional[str] = None


class CancelRequest(BaseModel):
    immediately: bool = False


class CheckoutResponse(BaseModel):
    checkout_url: str
    subscription_id: int


class PortalResponse(BaseModel):
    url: str


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscriber_id: int
    plan_id: int
    external_subscription_id: Optional[str] = None
    status: str
    cancel_at_period_end: bool
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class AccessLevelResponse(BaseModel):
    access_level: str


class EntitlementResponse(BaseModel):
    plan_id: int
    entitled: bool
