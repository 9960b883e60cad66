"""Pydantic schemas for revenue and churn analytics"""
from pydantic import BaseModel


class SubscriptionStats(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    canceled_subscriptions: int
    monthly_revenue: int
    churn_rate: float
    average_revenue_per_user: int


class RevenueResponse(BaseModel):
    creator_id: int
    monthly_recurring_revenue: int
    average_revenue_per_user: int
    stats: SubscriptionStats


class ChurnResponse(BaseModel):
    window_days: int
    churn_rate: float
