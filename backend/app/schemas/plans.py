"""Pydantic schemas for subscription plans"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import List, Optional


class PlanCreate(BaseModel):
    name: str
    description: str
    price: int
    currency: str = "USD"
    features: List[str]
    external_price_id: Optional[str] = None


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    creator_id: int
    name: str
    description: str
    price: int
    currency: str
    features: List[str]
    is_active: bool
    external_price_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PlanDetailResponse(PlanResponse):
    subscriber_count: int = 0
    monthly_revenue: int = 0
