"""Subscription state machine.

Turns a normalized provider event, or a user action that the provider already
acknowledged, into a validated transition and applies it through the store's
conditional write. The engine keeps no state of its own.

States: incomplete, active, past_due, canceled (terminal). A scheduled
cancellation is the ``cancel_at_period_end`` flag on an active (or past_due)
subscription, not a separate state, so reactivation never leaves ``canceled``.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, InvalidStateTransition, NotFoundError, ValidationError
from app.core.metrics import stale_transitions_counter, transitions_counter
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.webhook_event import WebhookOutcome
from app.schemas.billing import BillingEvent, BillingEventType
from app.services.subscription_store import SubscriptionStore
from app.utils.dates import as_utc, utc_now

logger = logging.getLogger("reconciliation")


class Trigger(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PROVIDER_UPDATED = "provider_updated"
    PROVIDER_DELETED = "provider_deleted"
    CANCEL_ACTION = "cancel_action"
    SCHEDULE_CANCEL = "schedule_cancel"
    REACTIVATE_ACTION = "reactivate_action"


_I = SubscriptionStatus.INCOMPLETE
_A = SubscriptionStatus.ACTIVE
_P = SubscriptionStatus.PAST_DUE
_C = SubscriptionStatus.CANCELED

# (source, target) -> triggers allowed to drive that edge.
# Self-loops refresh periods and the cancel flag without changing status.
TRANSITIONS = {
    (_I, _A): frozenset({Trigger.CHECKOUT_COMPLETED, Trigger.PAYMENT_SUCCEEDED, Trigger.PROVIDER_UPDATED}),
    (_A, _P): frozenset({Trigger.PAYMENT_FAILED, Trigger.PROVIDER_UPDATED}),
    (_P, _A): frozenset({Trigger.PAYMENT_SUCCEEDED, Trigger.PROVIDER_UPDATED}),
    (_A, _C): frozenset({Trigger.CANCEL_ACTION, Trigger.PROVIDER_DELETED, Trigger.PROVIDER_UPDATED}),
    (_P, _C): frozenset({Trigger.PROVIDER_DELETED, Trigger.PROVIDER_UPDATED}),
    (_A, _A): frozenset({
        Trigger.PAYMENT_SUCCEEDED, Trigger.PROVIDER_UPDATED,
        Trigger.SCHEDULE_CANCEL, Trigger.REACTIVATE_ACTION,
    }),
    (_P, _P): frozenset({Trigger.PAYMENT_FAILED, Trigger.PROVIDER_UPDATED, Trigger.SCHEDULE_CANCEL}),
}

EVENT_TRIGGERS = {
    BillingEventType.CHECKOUT_COMPLETED: Trigger.CHECKOUT_COMPLETED,
    BillingEventType.PAYMENT_SUCCEEDED: Trigger.PAYMENT_SUCCEEDED,
    BillingEventType.PAYMENT_FAILED: Trigger.PAYMENT_FAILED,
    BillingEventType.SUBSCRIPTION_UPDATED: Trigger.PROVIDER_UPDATED,
    BillingEventType.SUBSCRIPTION_DELETED: Trigger.PROVIDER_DELETED,
}

# Fixed targets; PROVIDER_UPDATED takes the status carried by the event
TRIGGER_TARGETS = {
    Trigger.CHECKOUT_COMPLETED: _A,
    Trigger.PAYMENT_SUCCEEDED: _A,
    Trigger.PAYMENT_FAILED: _P,
    Trigger.PROVIDER_DELETED: _C,
    Trigger.CANCEL_ACTION: _C,
}

NOTIFY_STATUSES = (_P, _C)

# Re-reads after losing a race to a concurrent writer
MAX_APPLY_ATTEMPTS = 3


def is_allowed(source: SubscriptionStatus, target: SubscriptionStatus, trigger: Trigger) -> bool:
    return trigger in TRANSITIONS.get((source, target), frozenset())


def next_status(source: SubscriptionStatus, trigger: Trigger, target: SubscriptionStatus) -> SubscriptionStatus:
    """Validate an edge of the state machine.

    Raises:
        InvalidStateTransition: The trigger cannot move ``source`` to ``target``
    """
    if not is_allowed(source, target, trigger):
        raise InvalidStateTransition(
            f"Cannot move subscription from {source.value} to {target.value} on {trigger.value}"
        )
    return target


@dataclass
class Transition:
    trigger: Trigger
    target: SubscriptionStatus
    occurred_at: datetime
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[datetime] = None
    external_subscription_id: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        if self.current_period_start is not None:
            values["current_period_start"] = self.current_period_start
        if self.current_period_end is not None:
            values["current_period_end"] = self.current_period_end
        if self.trigger == Trigger.SCHEDULE_CANCEL:
            values["cancel_at_period_end"] = True
        elif self.trigger == Trigger.REACTIVATE_ACTION:
            values["cancel_at_period_end"] = False
        elif self.cancel_at_period_end is not None:
            values["cancel_at_period_end"] = self.cancel_at_period_end
        if self.target == _C:
            values["canceled_at"] = self.canceled_at or self.occurred_at
            values["cancel_at_period_end"] = False
        return values


@dataclass
class ReconciliationResult:
    outcome: WebhookOutcome
    subscription_id: Optional[int] = None
    source: Optional[SubscriptionStatus] = None
    target: Optional[SubscriptionStatus] = None
    trigger: Optional[Trigger] = None

    @property
    def applied(self) -> bool:
        return self.outcome == WebhookOutcome.APPLIED

    @property
    def should_notify(self) -> bool:
        """Status actually changed into one the subscriber must hear about"""
        return self.applied and self.target in NOTIFY_STATUSES and self.source != self.target


class ReconciliationEngine:
    def __init__(self, db: Session, store: Optional[SubscriptionStore] = None):
        self.db = db
        self.store = store or SubscriptionStore(db)

    # ========================================================================
    # PROVIDER EVENTS
    # ========================================================================

    def apply_event(self, event: BillingEvent) -> ReconciliationResult:
        """Apply a normalized provider event.

        Stale, out-of-order and not-applicable events are reported through the
        result outcome, never raised.

        Raises:
            ValidationError: Event lacks the data needed to act on it
            NotFoundError: Event refers to a subscription we do not have
            ConflictError: Applying it would break a uniqueness rule
        """
        trigger = EVENT_TRIGGERS.get(event.type)
        if trigger is None:
            logger.info(f"Ignoring unhandled event type {event.type} ({event.external_event_id})")
            return ReconciliationResult(outcome=WebhookOutcome.IGNORED_UNHANDLED, trigger=None)

        subscription = self._locate(event)
        data = event.data

        if trigger == Trigger.PROVIDER_UPDATED:
            if data.status is None:
                raise ValidationError(f"Event {event.external_event_id} carries no subscription status")
            target = data.status
        else:
            target = TRIGGER_TARGETS[trigger]

        bind = None
        if data.external_subscription_id and not subscription.external_subscription_id:
            bind = data.external_subscription_id

        transition = Transition(
            trigger=trigger,
            target=target,
            occurred_at=event.occurred_at,
            current_period_start=data.current_period_start,
            current_period_end=data.current_period_end,
            cancel_at_period_end=data.cancel_at_period_end,
            canceled_at=data.canceled_at,
            external_subscription_id=bind,
        )
        return self._apply(subscription, transition, strict=False)

    def _locate(self, event: BillingEvent) -> Subscription:
        data = event.data
        subscription = None

        if data.external_subscription_id:
            subscription = self.store.find_by_external_id(data.external_subscription_id)

        if subscription is None and data.subscription_ref is not None:
            subscription = self.store.find_by_id(data.subscription_ref)
            if (
                subscription is not None
                and subscription.external_subscription_id
                and data.external_subscription_id
                and subscription.external_subscription_id != data.external_subscription_id
            ):
                raise ConflictError(
                    f"Subscription {subscription.id} is bound to {subscription.external_subscription_id}, "
                    f"not {data.external_subscription_id}"
                )

        if subscription is None:
            if not data.external_subscription_id and data.subscription_ref is None:
                raise ValidationError(f"Event {event.external_event_id} carries no subscription reference")
            raise NotFoundError(
                f"No subscription for external id {data.external_subscription_id} / ref {data.subscription_ref}"
            )
        return subscription

    # ========================================================================
    # USER ACTIONS
    # ========================================================================

    def apply_action(
        self,
        subscription: Subscription,
        trigger: Trigger,
        target: SubscriptionStatus,
        occurred_at: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """Apply a user action that the billing gateway has already acknowledged.

        Actions are stamped with the current time unless told otherwise.

        Raises:
            InvalidStateTransition: The action is not valid from the current status
        """
        transition = Transition(trigger=trigger, target=target, occurred_at=as_utc(occurred_at) or utc_now())
        return self._apply(subscription, transition, strict=True)

    # ========================================================================
    # APPLY
    # ========================================================================

    def _apply(self, subscription: Subscription, transition: Transition, strict: bool) -> ReconciliationResult:
        subscription_id = subscription.id
        source = subscription.status_enum

        for _ in range(MAX_APPLY_ATTEMPTS):
            result = ReconciliationResult(
                outcome=WebhookOutcome.IGNORED_STALE,
                subscription_id=subscription_id,
                source=source,
                target=transition.target,
                trigger=transition.trigger,
            )

            if not is_allowed(source, transition.target, transition.trigger):
                if strict:
                    next_status(source, transition.trigger, transition.target)
                logger.warning(
                    f"Subscription {subscription_id}: {transition.trigger.value} cannot move "
                    f"{source.value} -> {transition.target.value}; ignoring"
                )
                stale_transitions_counter.labels(trigger=transition.trigger.value).inc()
                return result

            applied = self.store.apply_transition(
                subscription_id,
                expected_source=source,
                target=transition.target,
                occurred_at=transition.occurred_at,
                changes=transition.changes(),
                require_cancel_flag=True if transition.trigger == Trigger.REACTIVATE_ACTION else None,
                bind_external_id=transition.external_subscription_id,
            )

            if applied:
                result.outcome = WebhookOutcome.APPLIED
                transitions_counter.labels(
                    source=source.value, target=transition.target.value, trigger=transition.trigger.value
                ).inc()
                logger.info(
                    f"Subscription {subscription_id}: {source.value} -> {transition.target.value} "
                    f"({transition.trigger.value} at {transition.occurred_at.isoformat()})"
                )
                return result

            current = self.store.find_by_id(subscription_id)
            last_event_at = as_utc(current.last_event_at) if current else None
            newer = last_event_at is None or last_event_at < transition.occurred_at
            if current is None or current.status == source.value or not newer:
                break
            # An older write changed the status after we read it; re-check the edge from there
            logger.info(f"Subscription {subscription_id} moved to {current.status} concurrently; retrying")
            source = current.status_enum

        if current and current.status == transition.target.value and last_event_at == transition.occurred_at:
            result.outcome = WebhookOutcome.IGNORED_DUPLICATE
        stale_transitions_counter.labels(trigger=transition.trigger.value).inc()
        logger.info(
            f"Subscription {subscription_id}: {transition.trigger.value} at {transition.occurred_at.isoformat()} "
            f"not applied (last_event_at={last_event_at}, status={current.status if current else None}) -> {result.outcome.value}"
        )
        return result
