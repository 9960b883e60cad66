"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class User(Base):
    """Subscribers, creators and administrators"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    billing_customer_id = Column(String(255), nullable=True, index=True)  # Provider-side customer reference
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    plans = relationship("Plan", back_populates="creator")
    subscriptions = relationship("Subscription", back_populates="subscriber")
