"""
Tests for the subscription transition table.
Pure functions, no database.
"""
from datetime import datetime, timezone

import pytest

from app.core.exceptions import ConflictError, InvalidStateTransition
from app.models.subscription import SubscriptionStatus
from app.models.webhook_event import WebhookOutcome
from app.services.reconciliation import (
    ReconciliationResult, Transition, Trigger, is_allowed, next_status
)

I = SubscriptionStatus.INCOMPLETE
A = SubscriptionStatus.ACTIVE
P = SubscriptionStatus.PAST_DUE
C = SubscriptionStatus.CANCELED

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.mark.critical
class TestTransitionTable:
    """Allowed and forbidden edges"""

    @pytest.mark.parametrize("source,target,trigger", [
        (I, A, Trigger.CHECKOUT_COMPLETED),
        (I, A, Trigger.PAYMENT_SUCCEEDED),
        (A, P, Trigger.PAYMENT_FAILED),
        (P, A, Trigger.PAYMENT_SUCCEEDED),
        (A, C, Trigger.CANCEL_ACTION),
        (A, C, Trigger.PROVIDER_DELETED),
        (P, C, Trigger.PROVIDER_DELETED),
        (A, A, Trigger.SCHEDULE_CANCEL),
        (A, A, Trigger.REACTIVATE_ACTION),
    ])
    def test_allowed_edges(self, source, target, trigger):
        """Every documented edge is accepted"""
        assert is_allowed(source, target, trigger)
        assert next_status(source, trigger, target) == target

    @pytest.mark.parametrize("target", [I, A, P])
    @pytest.mark.parametrize("trigger", list(Trigger))
    def test_canceled_is_terminal(self, target, trigger):
        """Nothing leaves canceled"""
        assert not is_allowed(C, target, trigger)

    def test_canceled_to_canceled_not_allowed(self):
        """A second deletion event is not a valid edge either"""
        assert not is_allowed(C, C, Trigger.PROVIDER_DELETED)

    def test_reactivate_cannot_resurrect_canceled(self):
        """Reactivation only clears a scheduled cancellation"""
        with pytest.raises(InvalidStateTransition):
            next_status(C, Trigger.REACTIVATE_ACTION, A)

    def test_payment_failed_cannot_activate(self):
        """A failure event never produces active"""
        assert not is_allowed(I, A, Trigger.PAYMENT_FAILED)
        assert not is_allowed(P, A, Trigger.PAYMENT_FAILED)

    def test_incomplete_cannot_go_past_due(self):
        """No dunning before the first successful payment"""
        assert not is_allowed(I, P, Trigger.PAYMENT_FAILED)

    def test_cancel_action_not_allowed_from_incomplete(self):
        """Checkout never completed, nothing to cancel"""
        assert not is_allowed(I, C, Trigger.CANCEL_ACTION)

    def test_invalid_transition_is_conflict(self):
        """Invalid transitions render as 409"""
        with pytest.raises(ConflictError) as exc_info:
            next_status(I, Trigger.SCHEDULE_CANCEL, I)
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "invalid_state_transition"


@pytest.mark.high
class TestTransitionChanges:
    """Column values produced for a transition"""

    def test_schedule_cancel_sets_flag(self):
        """Scheduling a cancellation sets cancel_at_period_end"""
        changes = Transition(trigger=Trigger.SCHEDULE_CANCEL, target=A, occurred_at=NOW).changes()
        assert changes == {"cancel_at_period_end": True}

    def test_reactivate_clears_flag(self):
        """Reactivation clears cancel_at_period_end"""
        changes = Transition(trigger=Trigger.REACTIVATE_ACTION, target=A, occurred_at=NOW).changes()
        assert changes == {"cancel_at_period_end": False}

    def test_cancel_stamps_canceled_at(self):
        """Canceled target records canceled_at and clears the flag"""
        changes = Transition(
            trigger=Trigger.PROVIDER_DELETED, target=C, occurred_at=NOW, cancel_at_period_end=True
        ).changes()
        assert changes["canceled_at"] == NOW
        assert changes["cancel_at_period_end"] is False

    def test_cancel_prefers_provider_canceled_at(self):
        """Provider-supplied canceled_at wins over the event time"""
        earlier = datetime(2024, 2, 28, tzinfo=timezone.utc)
        changes = Transition(trigger=Trigger.PROVIDER_DELETED, target=C, occurred_at=NOW, canceled_at=earlier).changes()
        assert changes["canceled_at"] == earlier

    def test_periods_copied_when_present(self):
        """Billing periods travel with the transition"""
        end = datetime(2024, 4, 1, tzinfo=timezone.utc)
        changes = Transition(
            trigger=Trigger.PAYMENT_SUCCEEDED, target=A, occurred_at=NOW,
            current_period_start=NOW, current_period_end=end
        ).changes()
        assert changes == {"current_period_start": NOW, "current_period_end": end}


@pytest.mark.medium
class TestReconciliationResult:
    """Notification decision"""

    def test_notifies_on_applied_past_due(self):
        result = ReconciliationResult(outcome=WebhookOutcome.APPLIED, source=A, target=P)
        assert result.should_notify

    def test_no_notice_for_stale(self):
        result = ReconciliationResult(outcome=WebhookOutcome.IGNORED_STALE, source=A, target=C)
        assert not result.should_notify

    def test_no_notice_for_self_loop(self):
        """A repeated payment failure while already past_due sends nothing new"""
        result = ReconciliationResult(outcome=WebhookOutcome.APPLIED, source=P, target=P)
        assert not result.should_notify

    def test_no_notice_for_activation(self):
        result = ReconciliationResult(outcome=WebhookOutcome.APPLIED, source=I, target=A)
        assert not result.should_notify
