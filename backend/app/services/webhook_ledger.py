"""Append-only ledger of inbound billing events.

One row per distinct provider event id. The unique constraint on
``external_event_id`` is the idempotency primitive: whoever inserts first owns
the event, every later delivery sees a constraint violation and backs off.
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.webhook_event import WebhookEvent, WebhookOutcome
from app.schemas.billing import BillingEvent
from app.utils.dates import utc_now

logger = logging.getLogger("webhook")


class WebhookLedger:
    def __init__(self, db: Session):
        self.db = db

    def _entry(self, event: BillingEvent) -> WebhookEvent:
        return WebhookEvent(
            external_event_id=event.external_event_id,
            event_type=event.type,
            subscription_external_id=event.data.external_subscription_id,
            occurred_at=event.occurred_at,
            received_at=utc_now(),
            payload=event.model_dump(mode="json"),
        )

    def record_if_new(self, event: BillingEvent) -> bool:
        """Claim an event for processing.

        Must be the first write of the caller's unit of work: on a duplicate
        the session is rolled back, which discards nothing else.

        Returns:
            True if this caller inserted the row, False if the event was already seen
        """
        self.db.add(self._entry(event))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Duplicate delivery of event {event.external_event_id} ({event.type})")
            return False
        return True

    def finalize(self, external_event_id: str, outcome: WebhookOutcome, error_message: Optional[str] = None) -> bool:
        """Record the terminal outcome; a second call for the same event is a no-op"""
        updated = self.db.query(WebhookEvent).filter(
            WebhookEvent.external_event_id == external_event_id,
            WebhookEvent.processing_outcome.is_(None)
        ).update({
            WebhookEvent.processing_outcome: outcome.value,
            WebhookEvent.processed_at: utc_now(),
            WebhookEvent.error_message: error_message,
        }, synchronize_session=False)
        if not updated:
            logger.warning(f"Outcome for event {external_event_id} already recorded or row missing")
        return updated == 1

    def record_failure(self, event: BillingEvent, error_message: str) -> bool:
        """Write an already-finalized ``failed`` row after the processing transaction was rolled back"""
        entry = self._entry(event)
        entry.processing_outcome = WebhookOutcome.FAILED.value
        entry.processed_at = utc_now()
        entry.error_message = error_message[:2000]
        self.db.add(entry)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Event {event.external_event_id} was recorded concurrently; failure not written")
            return False
        return True

    def get(self, external_event_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(
            WebhookEvent.external_event_id == external_event_id
        ).first()

    def list_for_subscription(self, external_subscription_id: str) -> List[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(
            WebhookEvent.subscription_external_id == external_subscription_id
        ).order_by(WebhookEvent.occurred_at.asc(), WebhookEvent.id.asc()).all()
