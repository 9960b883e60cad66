"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.plan import Plan
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.webhook_event import WebhookEvent, WebhookOutcome

# Export all for convenience
__all__ = [
    "Base", "User", "Plan", "Subscription", "SubscriptionStatus",
    "WebhookEvent", "WebhookOutcome"
]
