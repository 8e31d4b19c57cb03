"""Shared clock, notifier double, constants and ledger factories for the tests."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from chama.models import Member, Loan, Saving, MemberStatus, LoanStatus
from chama.services.notifier import Notifier, NotifierError


# =============================================================================
# Constants (all naive UTC, as stored)
# =============================================================================

# Tuesday 2 Jan 2024, 10:00 in Nairobi: a meeting day
TUESDAY_MORNING = datetime(2024, 1, 2, 7, 0)
# Wednesday 3 Jan 2024, 10:00 in Nairobi
WEDNESDAY_MORNING = datetime(2024, 1, 3, 7, 0)
# Monday 1 Jan 2024, 09:00 in Nairobi: first day of the month, a Monday
NEW_YEAR_MORNING = datetime(2024, 1, 1, 6, 0)


# =============================================================================
# Clock
# =============================================================================

@dataclass
class FrozenClock:
    """Deterministic replacement for utcnow(); returns naive UTC."""
    now: datetime = TUESDAY_MORNING

    def __call__(self) -> datetime:
        return self.now

    def freeze_at(self, dt: datetime) -> None:
        if dt.tzinfo is not None:
            dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
        self.now = dt

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# =============================================================================
# Notifier double
# =============================================================================

@dataclass
class RecordingNotifier(Notifier):
    confirmations: List[tuple] = field(default_factory=list)
    reminders: List[tuple] = field(default_factory=list)
    fail: bool = False
    on_send: Optional[Callable] = None

    def _deliver(self, bucket, entry):
        if self.on_send is not None:
            self.on_send(entry)
        if self.fail:
            raise NotifierError("gateway down")
        bucket.append(entry)

    def notify_payment_confirmation(self, member, amount, payment_type, new_balance):
        self._deliver(self.confirmations, (member.member_code, amount, payment_type, new_balance))

    def notify_reminder(self, member, amount, payment_type, days_late=0):
        self._deliver(self.reminders, (member.member_code, amount, payment_type, days_late))


# =============================================================================
# Ledger factories
# =============================================================================

def make_member(store, code="M001", created_at=None, last_activity_at=None,
                status=MemberStatus.APPROVED.value, is_active=True, phone="+254700000001"):
    member = Member(
        member_code=code,
        name=f"Member {code}",
        email=f"{code.lower()}@chama.test",
        phone=phone,
        status=status,
        is_active=is_active,
        created_at=created_at or TUESDAY_MORNING,
        last_activity_at=last_activity_at,
    )
    return store.insert_member(member)


def make_loan(store, member, principal=1000.0, status=LoanStatus.APPROVED.value,
              due_date=None, created_at=None, approved_at=None, is_overdue=False):
    loan = Loan(
        member_id=member.id,
        principal_amount=principal,
        current_amount=principal,
        interest_accrued=0.0,
        penalty_accrued=0.0,
        status=status,
        due_date=due_date,
        is_overdue=is_overdue,
        created_at=created_at or TUESDAY_MORNING,
        approved_at=approved_at,
    )
    return store.insert_loan(loan)


def make_saving(store, member, amount=500.0, timestamp=None):
    return store.insert_saving(Saving(
        member_id=member.id,
        amount=amount,
        timestamp=timestamp or TUESDAY_MORNING,
    ))
