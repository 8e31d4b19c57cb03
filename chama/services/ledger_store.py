"""
LEDGER STORE
============

The one canonical gateway to members, loans, savings, fines and
automation logs. Rules, the event watcher and the CRUD services never
touch db.session for writes directly; they go through here.

CRITICAL RULES:
1. Every multi-step change runs inside entity_transaction(), which holds
   a per-entity lock across check-then-act and commits ONCE.
2. Outside a transaction each write commits on its own (individually atomic).
3. Insert events are published to the bus only after the commit succeeds.
4. Database failures are translated into the ledger error taxonomy:
   - OperationalError          -> TransientStoreError (retry)
   - StaleDataError            -> ConcurrencyConflict (re-fetch once)
   - duplicate automation log  -> DuplicateActionError (already applied)
   - other IntegrityError      -> ValidationError (skip)
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from chama.extensions import db
from chama.models import (
    Member, Loan, Saving, Fine, AutomationLog, MonthlyReport,
    LoanStatus, MemberStatus, ActionType
)
from chama.services.event_bus import EntityType, Operation

logger = logging.getLogger(__name__)


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger store operations"""
    pass


class TransientStoreError(LedgerError):
    """Raised for failures worth retrying (locked database, lock timeout)"""
    pass


class StoreUnavailableError(LedgerError):
    """Raised when the store cannot be reached at all"""
    pass


class ValidationError(LedgerError):
    """Raised when an entity is malformed"""
    pass


class ConcurrencyConflict(LedgerError):
    """Raised when an entity changed between read and write"""
    pass


class DuplicateActionError(LedgerError):
    """Raised when an automation log entry for the same key already exists"""
    pass


# ============================================================
# PER-ENTITY LOCKS
# ============================================================

class EntityLocks:
    """
    One re-entrant lock per (kind, id), created on first use.

    Locks are held weakly: once no caller holds or waits on an entity's
    lock it is dropped, so the map only tracks entities in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def __len__(self):
        with self._guard:
            return len(self._locks)

    def lock_for(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


def loan_key(loan_id):
    return (EntityType.LOAN, loan_id)


def member_key(member_id):
    return (EntityType.MEMBER, member_id)


def report_key(month):
    return ('report', month)


# ============================================================
# LEDGER STORE
# ============================================================

class LedgerStore:
    """
    SQLAlchemy-backed ledger.

    Must be used inside a Flask app context; each thread's app context
    gets its own session, so workers push their own context.
    """

    def __init__(self, bus=None, entity_timeout=10.0):
        self.bus = bus
        self.entity_timeout = entity_timeout
        self.locks = EntityLocks()
        self._local = threading.local()

    # ---------- transaction plumbing ----------

    def _depth(self):
        return getattr(self._local, 'depth', 0)

    def _pending_events(self):
        if not hasattr(self._local, 'events'):
            self._local.events = []
        return self._local.events

    def in_transaction(self):
        return self._depth() > 0

    @contextmanager
    def _store_errors(self):
        try:
            yield
        except StaleDataError as e:
            db.session.rollback()
            raise ConcurrencyConflict(str(e)) from e
        except IntegrityError as e:
            db.session.rollback()
            message = str(e.orig)
            if 'automation_logs' in message or 'unique_automation_action' in message:
                raise DuplicateActionError(message) from e
            raise ValidationError(message) from e
        except OperationalError as e:
            db.session.rollback()
            raise TransientStoreError(str(e.orig)) from e

    @contextmanager
    def entity_transaction(self, *keys):
        """
        Lock the given entities and run the block as one transaction.

        Locks are taken in sorted order so two callers locking the same
        pair cannot deadlock. Nested calls join the outer transaction.
        """
        acquired = []
        try:
            for key in sorted(set(keys), key=lambda k: (str(k[0]), str(k[1]))):
                lock = self.locks.lock_for(key)
                if not lock.acquire(timeout=self.entity_timeout):
                    raise TransientStoreError(
                        f"Timed out after {self.entity_timeout}s waiting for {key[0]} {key[1]}"
                    )
                acquired.append(lock)

            outer = not self.in_transaction()
            if outer:
                self._local.events = []
            self._local.depth = self._depth() + 1
            try:
                yield self
                if outer:
                    with self._store_errors():
                        db.session.commit()
            except Exception:
                db.session.rollback()
                if outer:
                    self._local.events = []
                raise
            finally:
                self._local.depth -= 1

            if outer:
                self._publish_pending()
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _persist(self, obj=None):
        with self._store_errors():
            if obj is not None:
                db.session.add(obj)
            if self.in_transaction():
                db.session.flush()
            else:
                db.session.commit()

    def _emit(self, entity_type, entity):
        event = (entity_type, Operation.INSERT, entity.id, entity.to_dict())
        if self.in_transaction():
            self._pending_events().append(event)
        else:
            self._publish(*event)

    def _publish_pending(self):
        events, self._local.events = self._pending_events(), []
        for event in events:
            self._publish(*event)

    def _publish(self, entity_type, operation, entity_id, payload):
        if self.bus is None:
            return
        self.bus.publish(entity_type, operation, entity_id, payload)

    def ping(self):
        """Fail fast when the database cannot be reached."""
        try:
            db.session.execute(text('SELECT 1'))
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StoreUnavailableError(f"Ledger store unreachable: {e}") from e

    # ---------- reads ----------

    def get_member(self, member_id):
        return db.session.get(Member, member_id, populate_existing=True)

    def get_loan(self, loan_id):
        return db.session.get(Loan, loan_id, populate_existing=True)

    def get_saving(self, saving_id):
        return db.session.get(Saving, saving_id)

    def get_fine(self, fine_id):
        return db.session.get(Fine, fine_id, populate_existing=True)

    def find_member_by_code(self, member_code):
        return Member.query.filter_by(member_code=member_code).first()

    def find_overdue_candidate_loans(self, as_of):
        """Approved, not yet flagged, due date already passed."""
        return Loan.query.filter(
            Loan.status == LoanStatus.APPROVED.value,
            Loan.is_overdue.is_(False),
            Loan.due_date.isnot(None),
            Loan.due_date < as_of
        ).order_by(Loan.id).all()

    def find_active_approved_loans(self):
        return Loan.query.filter(
            Loan.status == LoanStatus.APPROVED.value,
            Loan.is_overdue.is_(False)
        ).order_by(Loan.id).all()

    def find_overdue_loans(self):
        return Loan.query.filter(
            Loan.status == LoanStatus.APPROVED.value,
            Loan.is_overdue.is_(True)
        ).order_by(Loan.id).all()

    def find_inactive_candidate_members(self, threshold_days, as_of):
        """Active members whose last activity (or join date) is older than the threshold."""
        cutoff = as_of - timedelta(days=threshold_days)
        last_seen = func.coalesce(Member.last_activity_at, Member.created_at)
        return Member.query.filter(
            Member.is_active.is_(True),
            last_seen < cutoff
        ).order_by(Member.id).all()

    def find_active_members(self):
        return Member.query.filter(
            Member.is_active.is_(True),
            Member.status == MemberStatus.APPROVED.value
        ).order_by(Member.id).all()

    def find_approved_members(self):
        """Approved members whether or not they are currently active."""
        return Member.query.filter(
            Member.status == MemberStatus.APPROVED.value
        ).order_by(Member.id).all()

    def has_saving_between(self, member_id, start, end):
        return db.session.query(
            Saving.query.filter(
                Saving.member_id == member_id,
                Saving.timestamp >= start,
                Saving.timestamp < end
            ).exists()
        ).scalar()

    def find_last_saving(self, member_id, as_of=None):
        query = Saving.query.filter(Saving.member_id == member_id)
        if as_of is not None:
            query = query.filter(Saving.timestamp <= as_of)
        return query.order_by(Saving.timestamp.desc(), Saving.id.desc()).first()

    def fines_for(self, member_id=None, loan_id=None, fine_type=None):
        query = Fine.query
        if member_id is not None:
            query = query.filter(Fine.member_id == member_id)
        if loan_id is not None:
            query = query.filter(Fine.loan_id == loan_id)
        if fine_type is not None:
            query = query.filter(Fine.fine_type == fine_type)
        return query.order_by(Fine.id).all()

    # ---------- writes ----------

    def update_loan(self, loan):
        if loan.principal_amount is None or loan.current_amount is None:
            raise ValidationError(f"Loan {loan.id} has no amount")
        self._persist(loan)
        return loan

    def update_member(self, member):
        self._persist(member)
        return member

    def append_fine(self, fine):
        if fine.amount is None or fine.amount <= 0:
            raise ValidationError("Fine amount must be greater than 0")
        if fine.id is not None:
            raise ValidationError(f"Fine {fine.id} already recorded; fines are append-only")
        self._persist(fine)
        return fine

    def mark_fine_paid(self, fine, paid_at):
        if fine.paid:
            return fine
        fine.paid = True
        fine.paid_at = paid_at
        self._persist(fine)
        return fine

    def append_audit_log(self, entry):
        self._persist(entry)
        return entry

    def log_entry_exists(self, action_type, key):
        return db.session.query(
            AutomationLog.query.filter_by(
                action_type=action_type,
                idempotency_key=key
            ).exists()
        ).scalar()

    def recent_logs(self, limit=50, action_type=None, member_id=None):
        query = AutomationLog.query
        if action_type is not None:
            query = query.filter(AutomationLog.action_type == action_type)
        if member_id is not None:
            query = query.filter(AutomationLog.member_id == member_id)
        return query.order_by(AutomationLog.created_at.desc(), AutomationLog.id.desc()).limit(limit).all()

    # ---------- inserts (publish change events) ----------

    def insert_member(self, member):
        self._persist(member)
        self._emit(EntityType.MEMBER, member)
        return member

    def insert_loan(self, loan):
        if loan.principal_amount is None or loan.principal_amount <= 0:
            raise ValidationError("Loan principal must be greater than 0")
        self._persist(loan)
        self._emit(EntityType.LOAN, loan)
        return loan

    def insert_saving(self, saving):
        if saving.amount is None or saving.amount <= 0:
            raise ValidationError("Saving amount must be greater than 0")
        self._persist(saving)
        self._emit(EntityType.SAVING, saving)
        return saving

    # ---------- reporting ----------

    def summarize_period(self, start, end):
        """Aggregate ledger activity with start <= timestamp < end."""
        savings_count, savings_total = db.session.query(
            func.count(Saving.id), func.coalesce(func.sum(Saving.amount), 0.0)
        ).filter(Saving.timestamp >= start, Saving.timestamp < end).one()

        loans_count, loans_total = db.session.query(
            func.count(Loan.id), func.coalesce(func.sum(Loan.principal_amount), 0.0)
        ).filter(Loan.approved_at >= start, Loan.approved_at < end).one()

        fines_count, fines_total = db.session.query(
            func.count(Fine.id), func.coalesce(func.sum(Fine.amount), 0.0)
        ).filter(Fine.created_at >= start, Fine.created_at < end).one()

        fines_paid = db.session.query(
            func.coalesce(func.sum(Fine.amount), 0.0)
        ).filter(Fine.paid.is_(True), Fine.paid_at >= start, Fine.paid_at < end).scalar()

        interest = db.session.query(
            func.coalesce(func.sum(AutomationLog.amount), 0.0)
        ).filter(
            AutomationLog.action_type == ActionType.WEEKLY_INTEREST.value,
            AutomationLog.created_at >= start,
            AutomationLog.created_at < end
        ).scalar()

        return {
            'savings_count': savings_count,
            'total_savings': float(savings_total),
            'loans_approved_count': loans_count,
            'loans_approved_amount': float(loans_total),
            'fines_issued_count': fines_count,
            'fines_issued_amount': float(fines_total),
            'fines_paid_amount': float(fines_paid),
            'interest_accrued': float(interest),
        }

    def savings_leaderboard(self, limit=10):
        """Approved members ranked by total savings, highest first."""
        return Member.query.filter(
            Member.status == MemberStatus.APPROVED.value
        ).order_by(Member.total_savings.desc(), Member.id).limit(limit).all()

    def member_stats(self):
        approved = Member.query.filter_by(status=MemberStatus.APPROVED.value)
        total_savings = db.session.query(
            func.coalesce(func.sum(Member.total_savings), 0.0)
        ).filter(Member.status == MemberStatus.APPROVED.value).scalar()
        unpaid_fines = db.session.query(
            func.coalesce(func.sum(Fine.amount), 0.0)
        ).filter(Fine.paid.is_(False)).scalar()
        return {
            'total_members': approved.count(),
            'active_members': approved.filter(Member.is_active.is_(True)).count(),
            'pending_members': Member.query.filter_by(status=MemberStatus.PENDING.value).count(),
            'total_savings': float(total_savings),
            'unpaid_fines': float(unpaid_fines),
        }

    def find_report(self, report_month):
        return MonthlyReport.query.filter_by(report_month=report_month).first()

    def save_report(self, report):
        self._persist(report)
        return report
