"""Subscription model"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class SubscriptionStatus(str, enum.Enum):
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses that count as a live subscription for the one-per-plan rule
LIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)

_LIVE_PREDICATE = "status IN ('active', 'past_due')"


class Subscription(Base):
    """Binds one subscriber to one plan"""
    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one active/past_due subscription per (subscriber, plan)
        Index(
            "uq_subscriptions_live_subscriber_plan",
            "subscriber_id",
            "plan_id",
            unique=True,
            sqlite_where=text(_LIVE_PREDICATE),
            postgresql_where=text(_LIVE_PREDICATE),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscriber_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False, index=True)
    external_subscription_id = Column(String(255), unique=True, nullable=True, index=True)  # Set once checkout completes
    status = Column(String(20), nullable=False, default=SubscriptionStatus.INCOMPLETE.value, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)  # First time the subscription became active
    last_event_at = Column(DateTime(timezone=True), nullable=True)  # occurred_at of the latest applied event/action
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscriber = relationship("User", back_populates="subscriptions")
    plan = relationship("Plan", back_populates="subscriptions")

    @property
    def status_enum(self) -> SubscriptionStatus:
        return SubscriptionStatus(self.status)
