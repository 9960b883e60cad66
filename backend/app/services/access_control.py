"""Entitlement checks consumed by content-serving code"""
import enum

from sqlalchemy.orm import Session

from app.models.subscription import Subscription, SubscriptionStatus


class AccessLevel(str, enum.Enum):
    FREE = "free"
    PREMIUM = "premium"


def has_entitlement(subscriber_id: int, plan_id: int, db: Session) -> bool:
    """True if the subscriber has an active subscription to the plan"""
    return db.query(
        db.query(Subscription).filter(
            Subscription.subscriber_id == subscriber_id,
            Subscription.plan_id == plan_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value
        ).exists()
    ).scalar()


def access_level(subscriber_id: int, db: Session) -> AccessLevel:
    """Premium iff any of the subscriber's subscriptions is active"""
    has_active = db.query(
        db.query(Subscription).filter(
            Subscription.subscriber_id == subscriber_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value
        ).exists()
    ).scalar()
    return AccessLevel.PREMIUM if has_active else AccessLevel.FREE
