"""Plan model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class Plan(Base):
    """Creator-owned subscription offering"""
    __tablename__ = "subscription_plans"
    __table_args__ = (
        CheckConstraint("price > 0", name="ck_subscription_plans_price_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=False)
    price = Column(Integer, nullable=False)  # Minor currency units (cents)
    currency = Column(String(3), nullable=False, default="USD")
    features = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    external_price_id = Column(String(255), nullable=True)  # Required before a subscription may reference the plan
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    creator = relationship("User", back_populates="plans")
    subscriptions = relationship("Subscription", back_populates="plan")
