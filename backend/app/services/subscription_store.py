"""Persistence for plans and subscriptions.

``SubscriptionStore`` is the only writer of ``Plan`` and ``Subscription`` rows.
Status changes go exclusively through ``apply_transition``, which expresses the
ordering guard and the expected-source check as a single conditional UPDATE so
two writers racing on the same subscription cannot both succeed.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.plan import Plan
from app.models.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus
from app.models.user import User
from app.utils.dates import utc_now

logger = logging.getLogger(__name__)

PLAN_EDITABLE_FIELDS = ("name", "description", "features", "is_active")


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    # ========================================================================
    # USERS
    # ========================================================================

    def get_user(self, user_id: int) -> User:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    # ========================================================================
    # PLANS
    # ========================================================================

    def find_plan(self, plan_id: int) -> Optional[Plan]:
        return self.db.query(Plan).filter(Plan.id == plan_id).first()

    def get_plan(self, plan_id: int) -> Plan:
        plan = self.find_plan(plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    def list_plans(self, creator_id: Optional[int] = None, active_only: bool = True) -> List[Plan]:
        query = self.db.query(Plan)
        if creator_id is not None:
            query = query.filter(Plan.creator_id == creator_id)
        if active_only:
            query = query.filter(Plan.is_active.is_(True))
        return query.order_by(Plan.price.asc(), Plan.id.asc()).all()

    def add_plan(self, plan: Plan) -> Plan:
        self.db.add(plan)
        self.db.flush()
        return plan

    def update_plan(self, plan: Plan, changes: Dict[str, Any]) -> Plan:
        """Apply descriptive changes; price, currency and creator are not editable"""
        for field in changes:
            if field not in PLAN_EDITABLE_FIELDS:
                raise ValidationError(f"Plan field '{field}' cannot be changed")
        for field, value in changes.items():
            setattr(plan, field, value)
        self.db.flush()
        return plan

    def plans_missing_price(self) -> List[Plan]:
        return self.db.query(Plan).filter(
            Plan.external_price_id.is_(None),
            Plan.is_active.is_(True)
        ).order_by(Plan.id.asc()).all()

    def set_plan_price(self, plan: Plan, external_price_id: str) -> Plan:
        """Bind a provider price to a plan that has none yet"""
        updated = self.db.query(Plan).filter(
            Plan.id == plan.id,
            Plan.external_price_id.is_(None)
        ).update({Plan.external_price_id: external_price_id}, synchronize_session=False)
        if not updated:
            raise ConflictError(f"Plan {plan.id} already has a provider price")
        self.db.refresh(plan)
        return plan

    def count_plan_subscriptions(self, plan_id: int) -> int:
        return self.db.query(func.count(Subscription.id)).filter(Subscription.plan_id == plan_id).scalar() or 0

    def delete_plan(self, plan: Plan) -> None:
        """Hard delete; only valid for a plan no subscription has ever referenced"""
        if self.count_plan_subscriptions(plan.id) > 0:
            raise ConflictError(f"Plan {plan.id} has subscriptions and can only be deactivated")
        self.db.delete(plan)
        self.db.flush()

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def find_by_id(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self.find_by_id(subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    def find_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.external_subscription_id == external_subscription_id
        ).first()

    def find_live(self, subscriber_id: int, plan_id: int) -> Optional[Subscription]:
        """The active or past_due subscription for a (subscriber, plan) pair, if any"""
        return self.db.query(Subscription).filter(
            Subscription.subscriber_id == subscriber_id,
            Subscription.plan_id == plan_id,
            Subscription.status.in_(LIVE_STATUSES)
        ).first()

    def list_for_subscriber(self, subscriber_id: int, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        query = self.db.query(Subscription).filter(Subscription.subscriber_id == subscriber_id)
        if status is not None:
            query = query.filter(Subscription.status == status.value)
        return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()

    def find_expiring(self, days: int, now: Optional[datetime] = None) -> List[Subscription]:
        """Active subscriptions whose current period ends within the next ``days`` days"""
        now = now or utc_now()
        return self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end > now,
            Subscription.current_period_end <= now + timedelta(days=days)
        ).order_by(Subscription.current_period_end.asc()).all()

    def create_incomplete(self, subscriber_id: int, plan_id: int) -> Subscription:
        subscription = Subscription(
            subscriber_id=subscriber_id,
            plan_id=plan_id,
            status=SubscriptionStatus.INCOMPLETE.value,
            cancel_at_period_end=False,
        )
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def apply_transition(
        self,
        subscription_id: int,
        expected_source: SubscriptionStatus,
        target: SubscriptionStatus,
        occurred_at: datetime,
        changes: Optional[Dict[str, Any]] = None,
        require_cancel_flag: Optional[bool] = None,
        bind_external_id: Optional[str] = None,
    ) -> bool:
        """Conditionally move a subscription from ``expected_source`` to ``target``.

        The write only happens when the row is still in ``expected_source`` and
        ``occurred_at`` is strictly newer than its ``last_event_at`` (a row that
        was never touched accepts any timestamp).

        Args:
            subscription_id: Local subscription id
            expected_source: Status the caller observed
            target: Status to write
            occurred_at: Timestamp of the event or action being applied
            changes: Extra column values (periods, cancel flag, canceled_at)
            require_cancel_flag: Additionally require this cancel_at_period_end value
            bind_external_id: Provider subscription id to bind if not yet set

        Returns:
            True if the row was updated, False if it was stale or a concurrent
            writer changed it first

        Raises:
            ConflictError: The write would break a uniqueness rule (a second live
                subscription for the pair, or an external id already bound elsewhere)
        """
        values = {getattr(Subscription, name): value for name, value in (changes or {}).items()}
        values.update({
            Subscription.status: target.value,
            Subscription.last_event_at: occurred_at,
            Subscription.updated_at: utc_now(),
        })
        if target == SubscriptionStatus.ACTIVE:
            values[Subscription.activated_at] = func.coalesce(Subscription.activated_at, occurred_at)

        query = self.db.query(Subscription).filter(
            Subscription.id == subscription_id,
            Subscription.status == expected_source.value,
            or_(Subscription.last_event_at.is_(None), Subscription.last_event_at < occurred_at)
        )
        if require_cancel_flag is not None:
            query = query.filter(Subscription.cancel_at_period_end.is_(require_cancel_flag))
        if bind_external_id:
            query = query.filter(or_(
                Subscription.external_subscription_id.is_(None),
                Subscription.external_subscription_id == bind_external_id
            ))
            values[Subscription.external_subscription_id] = bind_external_id

        try:
            rowcount = query.update(values, synchronize_session=False)
        except IntegrityError as e:
            logger.error(f"Transition of subscription {subscription_id} to {target.value} violates a uniqueness rule: {e.orig}")
            raise ConflictError(
                f"Subscription {subscription_id} cannot become {target.value}: "
                "another live subscription or external binding already exists"
            )
        finally:
            self.db.expire_all()

        return rowcount == 1
