"""
EVENT WATCHER
=============

Reactive rules run on ledger insert events, independent of the Scheduler:

- New loan:   due_date = created_at + loan term, only when still unset;
              the owning member's activity is refreshed.
- New saving: the owning member's last_activity_at moves forward to the
              later of the saving's timestamp and the time it was
              recorded, and is_active is set.

Delivery is at-least-once, so both reactions are safe to repeat.
An event is acked only after its update commits; transient failures
nack it for redelivery, up to AUTOMATION_MAX_RETRIES times.
"""

import logging
import threading

from chama.services.event_bus import EntityType, Operation
from chama.services.ledger_store import (
    LedgerError, TransientStoreError, ConcurrencyConflict, loan_key, member_key
)

logger = logging.getLogger(__name__)


class EventWatcher:
    def __init__(self, store, bus, settings, app=None, name="event-watcher"):
        self.store = store
        self.bus = bus
        self.settings = settings
        self.app = app
        self.name = name
        self.subscription = None
        self._attempts = {}
        self._thread = None

    def subscribe(self):
        if self.subscription is None or self.subscription.closed:
            self.subscription = self.bus.subscribe(self.name, [EntityType.LOAN, EntityType.SAVING])
        return self.subscription

    # ---------- consuming ----------

    def process_available(self):
        """Handle every event already queued; returns how many were acked."""
        sub = self.subscribe()
        acked = 0
        while True:
            event = sub.get_nowait()
            if event is None:
                return acked
            if self.handle(event):
                acked += 1

    def handle(self, event):
        """React to one event, then ack or nack it. Returns True when acked."""
        sub = self.subscription
        try:
            if event.operation == Operation.INSERT:
                if event.entity_type == EntityType.LOAN:
                    self._on_new_loan(event.entity_id)
                elif event.entity_type == EntityType.SAVING:
                    self._on_new_saving(event.entity_id, event.published_at)

        except (TransientStoreError, ConcurrencyConflict) as e:
            attempts = self._attempts.get(event.id, 0) + 1
            if attempts <= self.settings.max_retries:
                self._attempts[event.id] = attempts
                logger.warning("Requeueing %s %s event %s (attempt %d): %s",
                               event.entity_type, event.entity_id, event.id, attempts, e)
                sub.nack(event.id)
                return False
            logger.error("Giving up on %s %s event %s after %d attempts: %s",
                         event.entity_type, event.entity_id, event.id, attempts, e)

        except LedgerError as e:
            logger.warning("Dropping %s %s event %s: %s",
                           event.entity_type, event.entity_id, event.id, e)

        self._attempts.pop(event.id, None)
        sub.ack(event.id)
        return True

    # ---------- reactive rules ----------

    def _on_new_loan(self, loan_id):
        loan = self.store.get_loan(loan_id)
        if loan is None:
            logger.warning("Loan %s from insert event no longer exists", loan_id)
            return

        with self.store.entity_transaction(member_key(loan.member_id), loan_key(loan_id)):
            loan = self.store.get_loan(loan_id)
            if loan.due_date is None:
                loan.due_date = loan.created_at + self.settings.loan_term
                self.store.update_loan(loan)
                logger.info("Loan %s due date set to %s", loan.id, loan.due_date.isoformat())

            member = self.store.get_member(loan.member_id)
            if member is not None and member.record_activity(loan.created_at):
                self.store.update_member(member)

    def _on_new_saving(self, saving_id, recorded_at=None):
        saving = self.store.get_saving(saving_id)
        if saving is None:
            logger.warning("Saving %s from insert event no longer exists", saving_id)
            return

        with self.store.entity_transaction(member_key(saving.member_id)):
            member = self.store.get_member(saving.member_id)
            if member is None:
                logger.warning("Saving %s belongs to unknown member %s", saving_id, saving.member_id)
                return
            # a backdated saving still counts as activity when it was recorded
            active_at = max(saving.timestamp, recorded_at or saving.timestamp)
            if member.record_activity(active_at):
                self.store.update_member(member)
                logger.debug("Member %s active as of %s", member.member_code, active_at.isoformat())

    # ---------- background thread ----------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        sub = self.subscribe()
        self._thread = threading.Thread(target=self._consume, args=(sub,),
                                        name="chama-event-watcher", daemon=True)
        self._thread.start()
        logger.info("Event watcher subscribed to loan and saving inserts")

    def stop(self, timeout=None):
        """Unsubscribe; the consumer thread wakes up and exits."""
        if self.subscription is not None:
            self.bus.unsubscribe(self.subscription)
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Event watcher stopped")

    def _consume(self, sub):
        while not sub.closed:
            event = sub.get(timeout=self.settings.poll_seconds)
            if event is None:
                continue
            try:
                if self.app is not None:
                    with self.app.app_context():
                        self.handle(event)
                else:
                    self.handle(event)
            except Exception:
                logger.exception("Event watcher failed on event %s, dropping it", event.id)
                sub.ack(event.id)
