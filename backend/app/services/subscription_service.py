"""Subscription service - checkout, cancellation, reactivation and webhook processing"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConflictError, InvalidStateTransition, InvalidWebhookSignature, NotFoundError, UnauthorizedError, ValidationError
)
from app.core.metrics import webhook_events_counter, webhook_signature_failures_counter
from app.core.otel import get_tracer
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.webhook_event import WebhookOutcome
from app.services.billing_gateway import BillingGateway
from app.services.email_service import send_payment_failed_email, send_subscription_canceled_email
from app.services.reconciliation import ReconciliationEngine, ReconciliationResult, Trigger, next_status
from app.services.subscription_store import SubscriptionStore
from app.services.webhook_ledger import WebhookLedger

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")
tracer = get_tracer(__name__)

# Provider limit on free trial length
MAX_TRIAL_DAYS = 730


def _authorize(subscription: Subscription, requester_id: int, store: SubscriptionStore) -> None:
    """Owner or administrator only"""
    if subscription.subscriber_id == requester_id:
        return
    requester = store.get_user(requester_id)
    if not requester.is_admin:
        raise UnauthorizedError(f"User {requester_id} may not manage subscription {subscription.id}")


# ============================================================================
# QUERIES
# ============================================================================

def list_subscriptions(
    subscriber_id: int,
    db: Session,
    status: Optional[SubscriptionStatus] = None
) -> List[Subscription]:
    """The subscriber's subscriptions, newest first, optionally only those in ``status``"""
    return SubscriptionStore(db).list_for_subscriber(subscriber_id, status=status)


def get_subscription(subscription_id: int, requester_id: int, db: Session) -> Subscription:
    store = SubscriptionStore(db)
    subscription = store.get_subscription(subscription_id)
    _authorize(subscription, requester_id, store)
    return subscription


# ============================================================================
# USER ACTIONS
# ============================================================================

def create_subscription(
    subscriber_id: int,
    plan_id: int,
    db: Session,
    gateway: BillingGateway,
    payment_method_ref: Optional[str] = None,
    trial_days: Optional[int] = None,
    coupon_code: Optional[str] = None
) -> Dict[str, Any]:
    """Start a checkout for a plan.

    Creates the local subscription in ``incomplete`` and hands its id to the
    provider through checkout metadata, so the completion event can find it.

    Args:
        subscriber_id: Subscribing user
        plan_id: Plan to subscribe to
        db: Database session
        gateway: Billing provider adapter
        payment_method_ref: Optional provider payment method reference
        trial_days: Optional free trial length
        coupon_code: Optional provider coupon

    Returns:
        Dict with 'checkout_url' and 'subscription_id'

    Raises:
        NotFoundError: Plan or subscriber missing
        ValidationError: Plan not purchasable or bad trial length
        ConflictError: Subscriber already has an active/past_due subscription to the plan
        ExternalGatewayError: Provider call failed
    """
    if trial_days is not None and not 0 <= trial_days <= MAX_TRIAL_DAYS:
        raise ValidationError(f"trial_days must be between 0 and {MAX_TRIAL_DAYS}")

    store = SubscriptionStore(db)
    plan = store.get_plan(plan_id)
    if not plan.is_active:
        raise ValidationError(f"Plan {plan_id} is not active")
    if not plan.external_price_id:
        raise ValidationError(f"Plan {plan_id} has no provider price yet")

    subscriber = store.get_user(subscriber_id)
    if store.find_live(subscriber_id, plan_id):
        raise ConflictError(f"User {subscriber_id} already has an active subscription to plan {plan_id}")

    if not subscriber.billing_customer_id:
        subscriber.billing_customer_id = gateway.resolve_or_create_customer(subscriber.email, subscriber.name)
        db.commit()

    subscription = store.create_incomplete(subscriber_id, plan_id)
    metadata = {
        "subscription_ref": subscription.id,
        "subscriber_id": subscriber_id,
        "plan_id": plan_id,
    }
    if payment_method_ref:
        metadata["payment_method_ref"] = payment_method_ref

    try:
        checkout_url = gateway.create_checkout_session(
            subscriber.billing_customer_id,
            plan.external_price_id,
            trial_days=trial_days,
            coupon_code=coupon_code,
            metadata=metadata,
        )
    except Exception:
        db.rollback()
        raise

    db.commit()
    logger.info(f"Checkout started for subscription {subscription.id} (user {subscriber_id}, plan {plan_id})")
    return {"checkout_url": checkout_url, "subscription_id": subscription.id}


def cancel_subscription(
    subscription_id: int,
    requester_id: int,
    db: Session,
    gateway: BillingGateway,
    immediately: bool = False
) -> Subscription:
    """Cancel a subscription, by default at the end of the current period.

    A scheduled cancellation keeps the subscription active with
    ``cancel_at_period_end`` set; the provider's deletion event ends it later.
    An immediate cancellation of an active subscription is applied locally
    straight away. For a past_due subscription the provider's deletion event
    is what moves it to canceled.

    Raises:
        NotFoundError: Subscription missing
        UnauthorizedError: Requester is neither owner nor administrator
        InvalidStateTransition: Subscription is not cancelable in its current status
        ExternalGatewayError: Provider call failed
    """
    store = SubscriptionStore(db)
    subscription = store.get_subscription(subscription_id)
    _authorize(subscription, requester_id, store)

    source = subscription.status_enum
    if source not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        raise InvalidStateTransition(f"Subscription {subscription_id} is {source.value} and cannot be canceled")
    if not subscription.external_subscription_id:
        raise InvalidStateTransition(f"Subscription {subscription_id} is not bound to the billing provider")

    if immediately:
        apply_locally = source == SubscriptionStatus.ACTIVE
        if apply_locally:
            next_status(source, Trigger.CANCEL_ACTION, SubscriptionStatus.CANCELED)
        gateway.cancel_subscription(subscription.external_subscription_id, at_period_end=False)
        result = None
        if apply_locally:
            result = ReconciliationEngine(db, store).apply_action(subscription, Trigger.CANCEL_ACTION, SubscriptionStatus.CANCELED)
        else:
            logger.info(f"Subscription {subscription_id} is past_due; waiting for provider deletion event")
    else:
        next_status(source, Trigger.SCHEDULE_CANCEL, source)
        gateway.cancel_subscription(subscription.external_subscription_id, at_period_end=True)
        result = ReconciliationEngine(db, store).apply_action(subscription, Trigger.SCHEDULE_CANCEL, source)

    db.commit()
    if result is not None:
        _log_action_result(result)
        _notify(result, db)
    return store.get_subscription(subscription_id)


def reactivate_subscription(
    subscription_id: int,
    requester_id: int,
    db: Session,
    gateway: BillingGateway
) -> Subscription:
    """Undo a scheduled cancellation.

    Only valid while the subscription is active with ``cancel_at_period_end``
    set. Once canceled, the provider object is gone and a new checkout is needed.

    Raises:
        NotFoundError: Subscription missing
        UnauthorizedError: Requester is neither owner nor administrator
        InvalidStateTransition: Not active, or no cancellation scheduled
        ExternalGatewayError: Provider call failed
    """
    store = SubscriptionStore(db)
    subscription = store.get_subscription(subscription_id)
    _authorize(subscription, requester_id, store)

    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidStateTransition(
            f"Subscription {subscription_id} is {subscription.status}; only active subscriptions can be reactivated"
        )
    if not subscription.cancel_at_period_end:
        raise InvalidStateTransition(f"Subscription {subscription_id} has no scheduled cancellation")

    gateway.reactivate_subscription(subscription.external_subscription_id)
    result = ReconciliationEngine(db, store).apply_action(
        subscription, Trigger.REACTIVATE_ACTION, SubscriptionStatus.ACTIVE
    )
    db.commit()
    _log_action_result(result)
    return store.get_subscription(subscription_id)


def get_billing_portal_url(subscriber_id: int, db: Session, gateway: BillingGateway, return_url: Optional[str] = None) -> str:
    """Self-service portal for payment methods and invoices"""
    subscriber = SubscriptionStore(db).get_user(subscriber_id)
    if not subscriber.billing_customer_id:
        raise NotFoundError(f"User {subscriber_id} has no billing account")
    return gateway.open_billing_portal(subscriber.billing_customer_id, return_url or f"{settings.FRONTEND_URL}/dashboard")


def _log_action_result(result: ReconciliationResult) -> None:
    if not result.applied:
        # The provider accepted the action; its own event will bring local state in line
        logger.warning(
            f"Action {result.trigger.value} on subscription {result.subscription_id} acknowledged by provider "
            f"but not applied locally ({result.outcome.value})"
        )


# ============================================================================
# WEBHOOKS
# ============================================================================

def process_billing_webhook(
    payload: bytes,
    signature: Optional[str],
    db: Session,
    gateway: BillingGateway
) -> Dict[str, Any]:
    """Authenticate, deduplicate and apply one provider webhook delivery.

    The ledger insert, the conditional subscription update and the outcome
    are committed together. Stale, duplicate and unusable events are
    acknowledged so the provider stops retrying; anything unexpected is
    rolled back and re-raised so it retries.

    Args:
        payload: Raw request body
        signature: Provider signature header value
        db: Database session
        gateway: Billing provider adapter

    Returns:
        Dict with 'status' (the ledger outcome) and 'event_id'

    Raises:
        InvalidWebhookSignature: Delivery could not be authenticated (nothing is written)
        ValidationError: Authenticated body has no usable event id, type or time
    """
    try:
        event = gateway.parse_webhook(payload, signature)
    except InvalidWebhookSignature as e:
        webhook_signature_failures_counter.inc()
        webhook_logger.warning(f"Rejected webhook delivery: {e.message}")
        raise

    with tracer.start_as_current_span("billing.webhook") as span:
        span.set_attribute("billing.event_id", event.external_event_id)
        span.set_attribute("billing.event_type", event.type)

        ledger = WebhookLedger(db)
        if event.invalid_data:
            return _acknowledge_unusable(event, ledger, db, span)

        if not ledger.record_if_new(event):
            webhook_events_counter.labels(event_type=event.type, outcome=WebhookOutcome.IGNORED_DUPLICATE.value).inc()
            return {"status": WebhookOutcome.IGNORED_DUPLICATE.value, "event_id": event.external_event_id}

        engine = ReconciliationEngine(db)
        try:
            result = engine.apply_event(event)
        except (ValidationError, NotFoundError, ConflictError) as e:
            # Retrying cannot fix these; keep the failure for follow-up and acknowledge
            db.rollback()
            webhook_logger.error(f"Event {event.external_event_id} ({event.type}) failed: {e.message}")
            ledger.record_failure(event, e.message)
            db.commit()
            webhook_events_counter.labels(event_type=event.type, outcome=WebhookOutcome.FAILED.value).inc()
            span.set_attribute("billing.outcome", WebhookOutcome.FAILED.value)
            return {"status": WebhookOutcome.FAILED.value, "event_id": event.external_event_id}
        except Exception:
            db.rollback()
            webhook_logger.error(f"Event {event.external_event_id} ({event.type}) raised; provider will retry", exc_info=True)
            raise

        ledger.finalize(event.external_event_id, result.outcome)
        db.commit()

        webhook_events_counter.labels(event_type=event.type, outcome=result.outcome.value).inc()
        span.set_attribute("billing.outcome", result.outcome.value)
        webhook_logger.info(f"Event {event.external_event_id} ({event.type}) -> {result.outcome.value}")

    _notify(result, db)
    return {"status": result.outcome.value, "event_id": event.external_event_id}


def _acknowledge_unusable(event, ledger: WebhookLedger, db: Session, span) -> Dict[str, Any]:
    """Authentic event whose data cannot be read: keep a failed row and ack"""
    webhook_logger.error(f"Event {event.external_event_id} ({event.type}) failed: {event.invalid_data}")
    if not ledger.record_failure(event, event.invalid_data):
        webhook_events_counter.labels(event_type=event.type, outcome=WebhookOutcome.IGNORED_DUPLICATE.value).inc()
        return {"status": WebhookOutcome.IGNORED_DUPLICATE.value, "event_id": event.external_event_id}
    db.commit()
    webhook_events_counter.labels(event_type=event.type, outcome=WebhookOutcome.FAILED.value).inc()
    span.set_attribute("billing.outcome", WebhookOutcome.FAILED.value)
    return {"status": WebhookOutcome.FAILED.value, "event_id": event.external_event_id}


def _notify(result: ReconciliationResult, db: Session) -> None:
    """Post-commit notices for transitions into past_due or canceled"""
    if not result.should_notify:
        return
    subscription = SubscriptionStore(db).find_by_id(result.subscription_id)
    if not subscription:
        return
    email = subscription.subscriber.email
    plan_name = subscription.plan.name
    if result.target == SubscriptionStatus.PAST_DUE:
        send_payment_failed_email(email, plan_name)
    elif result.target == SubscriptionStatus.CANCELED:
        send_subscription_canceled_email(email, plan_name)
