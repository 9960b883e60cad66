"""WebhookEvent model"""
import enum

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class WebhookOutcome(str, enum.Enum):
    APPLIED = "applied"
    IGNORED_STALE = "ignored_stale"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_UNHANDLED = "ignored_unhandled"
    FAILED = "failed"


class WebhookEvent(Base):
    """Append-only ledger of billing provider webhook deliveries"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    external_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    subscription_external_id = Column(String(255), nullable=True, index=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processing_outcome = Column(String(32), nullable=True)  # Written at most once
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
