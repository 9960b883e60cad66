"""Revenue and churn rollups over subscription history"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.exceptions import ValidationError
from app.core.metrics import active_subscriptions_gauge
from app.models.plan import Plan
from app.models.subscription import Subscription, SubscriptionStatus
from app.utils.dates import as_utc, utc_now

logger = logging.getLogger(__name__)

ACTIVE = SubscriptionStatus.ACTIVE.value
CANCELED = SubscriptionStatus.CANCELED.value


def _scoped(query, creator_id: Optional[int]):
    if creator_id is None:
        return query
    return query.select_from(Subscription).join(Plan, Plan.id == Subscription.plan_id).filter(Plan.creator_id == creator_id)


def churn_rate(window_days: int, db: Session, now: Optional[datetime] = None, creator_id: Optional[int] = None) -> float:
    """
    Percentage of subscriptions lost over the trailing window.

    Canceled within (window start, now] divided by subscriptions that were
    live at the window start: activated at or before it and not canceled by
    then. Returns 0 when nothing was live at the window start.

    Args:
        window_days: Window length in days
        db: Database session
        now: End of the window (defaults to the current time)
        creator_id: Restrict to one creator's plans

    Returns:
        Churn as a percentage rounded to two decimals
    """
    if window_days <= 0:
        raise ValidationError("window_days must be positive")

    now = as_utc(now) or utc_now()
    window_start = now - timedelta(days=window_days)

    canceled_in_window = _scoped(db.query(func.count(Subscription.id)), creator_id).filter(
        Subscription.canceled_at.isnot(None),
        Subscription.canceled_at > window_start,
        Subscription.canceled_at <= now
    ).scalar() or 0

    active_at_start = _scoped(db.query(func.count(Subscription.id)), creator_id).filter(
        Subscription.activated_at.isnot(None),
        Subscription.activated_at <= window_start,
        or_(Subscription.canceled_at.is_(None), Subscription.canceled_at > window_start)
    ).scalar() or 0

    if active_at_start == 0:
        return 0.0
    return round(canceled_in_window / active_at_start * 100, 2)


def monthly_recurring_revenue(creator_id: int, db: Session) -> int:
    """Sum of plan prices over the creator's currently active subscriptions (minor units)"""
    total = db.query(func.coalesce(func.sum(Plan.price), 0)).select_from(Plan).join(
        Subscription, Subscription.plan_id == Plan.id
    ).filter(
        Plan.creator_id == creator_id,
        Subscription.status == ACTIVE
    ).scalar()
    return int(total or 0)


def active_subscriber_count(creator_id: int, db: Session) -> int:
    return db.query(func.count(func.distinct(Subscription.subscriber_id))).select_from(Subscription).join(
        Plan, Plan.id == Subscription.plan_id
    ).filter(
        Plan.creator_id == creator_id,
        Subscription.status == ACTIVE
    ).scalar() or 0


def average_revenue_per_user(creator_id: int, db: Session) -> int:
    """MRR divided by distinct active subscribers, 0 when there are none"""
    subscribers = active_subscriber_count(creator_id, db)
    if subscribers == 0:
        return 0
    return round(monthly_recurring_revenue(creator_id, db) / subscribers)


def plan_subscriber_count(plan_id: int, db: Session) -> int:
    return db.query(func.count(Subscription.id)).filter(
        Subscription.plan_id == plan_id,
        Subscription.status == ACTIVE
    ).scalar() or 0


def plan_monthly_revenue(plan_id: int, db: Session) -> int:
    plan = db.query(Plan).filter(Plan.id == plan_id).first()
    if not plan:
        return 0
    return plan.price * plan_subscriber_count(plan_id, db)


def subscription_stats(db: Session, creator_id: Optional[int] = None, window_days: int = 30) -> Dict:
    """Headline numbers for a creator's dashboard, or platform-wide when creator_id is None"""
    counts = dict(
        _scoped(db.query(Subscription.status, func.count(Subscription.id)), creator_id)
        .group_by(Subscription.status)
        .all()
    )
    total = sum(counts.values())
    active = counts.get(ACTIVE, 0)

    if creator_id is None:
        active_subscriptions_gauge.set(active)
        revenue = int(db.query(func.coalesce(func.sum(Plan.price), 0)).select_from(Plan).join(
            Subscription, Subscription.plan_id == Plan.id
        ).filter(Subscription.status == ACTIVE).scalar() or 0)
        subscribers = db.query(func.count(func.distinct(Subscription.subscriber_id))).filter(
            Subscription.status == ACTIVE
        ).scalar() or 0
        arpu = round(revenue / subscribers) if subscribers else 0
    else:
        revenue = monthly_recurring_revenue(creator_id, db)
        arpu = average_revenue_per_user(creator_id, db)

    return {
        "total_subscriptions": total,
        "active_subscriptions": active,
        "canceled_subscriptions": counts.get(CANCELED, 0),
        "monthly_revenue": revenue,
        "churn_rate": churn_rate(window_days, db, creator_id=creator_id),
        "average_revenue_per_user": arpu,
    }
