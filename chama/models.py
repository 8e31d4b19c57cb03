from datetime import datetime, timezone
from enum import Enum

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from chama.extensions import db


def utcnow():
    """Naive UTC timestamp; every DateTime column stores this form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# ENUMS
# ============================================================
class MemberStatus(Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class MemberRole(Enum):
    CHAIRPERSON = 'chairperson'
    SECRETARY = 'secretary'
    TREASURER = 'treasurer'
    MEMBER = 'member'
    GUEST = 'guest'


# Officials allowed to drive the automation control surface
OFFICIAL_ROLES = (
    MemberRole.CHAIRPERSON.value,
    MemberRole.SECRETARY.value,
    MemberRole.TREASURER.value,
)


class LoanStatus(Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    PAID = 'paid'
    REJECTED = 'rejected'


class FineType(Enum):
    AUTO_PENALTY = 'auto-penalty'
    AUTO_INACTIVITY = 'auto-inactivity'
    AUTO_MISSED_SAVING = 'auto-missed-saving'
    MANUAL = 'manual'


class ActionType(Enum):
    OVERDUE_FLAG = 'overdue-flag'
    WEEKLY_INTEREST = 'weekly-interest'
    WEEKLY_PENALTY = 'weekly-penalty'
    INACTIVITY_FLAG = 'inactivity-flag'
    MISSED_SAVING = 'missed-saving'
    MONTHLY_REPORT = 'monthly-report'
    SAVINGS_REMINDER = 'savings-reminder'
    MANUAL_REVIEW = 'manual-review'


def _iso(value):
    return value.isoformat() if value else None


# ============================================================
# MEMBER MODEL
# ============================================================
class Member(UserMixin, db.Model):
    """
    A member of the savings group.

    is_active is cleared only by the inactivity rule. Any new saving or
    loan for the member sets it back and refreshes last_activity_at.
    """
    __tablename__ = 'members'

    id = db.Column(db.Integer, primary_key=True)
    member_code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    password_hash = db.Column(db.String(256), nullable=True)

    role = db.Column(db.String(30), default=MemberRole.MEMBER.value, nullable=False)
    status = db.Column(db.String(20), default=MemberStatus.PENDING.value, nullable=False)

    # ===== ACTIVITY TRACKING =====
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_activity_at = db.Column(db.DateTime, nullable=True)

    # ===== FINANCIAL TOTALS =====
    total_savings = db.Column(db.Float, default=0.0, nullable=False)
    balance = db.Column(db.Float, default=0.0, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {'version_id_col': version}

    # Relationships
    loans = db.relationship('Loan', backref='member', lazy='dynamic')
    savings = db.relationship('Saving', backref='member', lazy='dynamic')
    fines = db.relationship('Fine', backref='member', lazy='dynamic')

    def set_password(self, password):
        """Hash and set the member's password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against stored hash."""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def is_official(self):
        """Chairperson, secretary and treasurer may run group automation."""
        return self.role in OFFICIAL_ROLES

    def record_activity(self, at):
        """
        Mark the member active as of `at`.

        Never moves last_activity_at backwards, so replaying the same event
        changes nothing. Returns True when a field actually changed.
        """
        changed = False
        if self.last_activity_at is None or at > self.last_activity_at:
            self.last_activity_at = at
            changed = True
        if not self.is_active:
            self.is_active = True
            changed = True
        return changed

    def to_dict(self):
        return {
            'id': self.id,
            'member_code': self.member_code,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
            'status': self.status,
            'is_active': self.is_active,
            'last_activity_at': _iso(self.last_activity_at),
            'total_savings': self.total_savings,
            'balance': self.balance,
        }

    def __repr__(self):
        return f'<Member {self.member_code} active={self.is_active}>'


# ============================================================
# LOAN MODEL
# ============================================================
class Loan(db.Model):
    """
    A loan owned by exactly one member.

    Lifecycle:
    1. Created with status='pending' (or inserted already approved)
    2. Approved -> due_date fixed once, loan_term days out
    3. While approved and unpaid past due_date -> is_overdue=True
    4. Paid (is_overdue cleared) or rejected

    current_amount = principal_amount + interest_accrued + penalty_accrued
    """
    __tablename__ = 'loans'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)

    principal_amount = db.Column(db.Float, nullable=False)
    current_amount = db.Column(db.Float, nullable=False)
    interest_accrued = db.Column(db.Float, default=0.0, nullable=False)
    penalty_accrued = db.Column(db.Float, default=0.0, nullable=False)

    status = db.Column(db.String(20), default=LoanStatus.PENDING.value, nullable=False)
    due_date = db.Column(db.DateTime, nullable=True)
    is_overdue = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    approved_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {'version_id_col': version}

    def is_past_due(self, as_of):
        return (
            self.status == LoanStatus.APPROVED.value
            and self.due_date is not None
            and self.due_date < as_of
        )

    def days_late(self, as_of):
        if not self.due_date or as_of <= self.due_date:
            return 0
        return (as_of - self.due_date).days

    def accrue_interest(self, rate):
        """Compound `rate` onto the current amount; returns the interest added."""
        interest = round(self.current_amount * rate, 2)
        self.current_amount = round(self.current_amount + interest, 2)
        self.interest_accrued = round(self.interest_accrued + interest, 2)
        return interest

    def accrue_penalty(self, amount):
        self.current_amount = round(self.current_amount + amount, 2)
        self.penalty_accrued = round(self.penalty_accrued + amount, 2)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'principal_amount': self.principal_amount,
            'current_amount': self.current_amount,
            'interest_accrued': self.interest_accrued,
            'penalty_accrued': self.penalty_accrued,
            'status': self.status,
            'due_date': _iso(self.due_date),
            'is_overdue': self.is_overdue,
            'created_at': _iso(self.created_at),
            'approved_at': _iso(self.approved_at),
            'paid_at': _iso(self.paid_at),
        }

    def __repr__(self):
        return f'<Loan #{self.id} Ksh{self.current_amount} status={self.status}>'


# ============================================================
# SAVING MODEL
# ============================================================
class Saving(db.Model):
    """Append-only savings contribution. Never mutated after creation."""
    __tablename__ = 'savings'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    reference = db.Column(db.String(64), unique=True, nullable=True)  # e.g. M-PESA receipt
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'amount': self.amount,
            'reference': self.reference,
            'timestamp': _iso(self.timestamp),
        }

    def __repr__(self):
        return f'<Saving member={self.member_id} amount={self.amount}>'


# ============================================================
# FINE MODEL
# ============================================================
class Fine(db.Model):
    """
    Append-only liability record.

    Only `paid` may change, and only from False to True.
    """
    __tablename__ = 'fines'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=False)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=True)
    amount = db.Column(db.Float, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    fine_type = db.Column(db.String(30), nullable=False)
    paid = db.Column(db.Boolean, default=False, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'loan_id': self.loan_id,
            'amount': self.amount,
            'reason': self.reason,
            'type': self.fine_type,
            'paid': self.paid,
            'paid_at': _iso(self.paid_at),
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Fine {self.fine_type} amount={self.amount} paid={self.paid}>'


# ============================================================
# AUTOMATION LOG MODEL
# ============================================================
class AutomationLog(db.Model):
    """
    Append-only record of every rule application.

    (action_type, idempotency_key) is unique: a rule may not repeat an
    action whose entry already exists for the same period key.
    """
    __tablename__ = 'automation_logs'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id'), nullable=True)
    loan_id = db.Column(db.Integer, db.ForeignKey('loans.id'), nullable=True)
    action_type = db.Column(db.String(30), nullable=False)
    idempotency_key = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('action_type', 'idempotency_key', name='unique_automation_action'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'loan_id': self.loan_id,
            'action_type': self.action_type,
            'key': self.idempotency_key,
            'description': self.description,
            'amount': self.amount,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<AutomationLog {self.action_type} {self.idempotency_key}>'


# ============================================================
# MONTHLY REPORT MODEL
# ============================================================
class MonthlyReport(db.Model):
    """Snapshot of the group's activity over one calendar month."""
    __tablename__ = 'monthly_reports'

    id = db.Column(db.Integer, primary_key=True)
    report_month = db.Column(db.String(7), unique=True, nullable=False)  # YYYY-MM
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)

    savings_count = db.Column(db.Integer, default=0, nullable=False)
    total_savings = db.Column(db.Float, default=0.0, nullable=False)
    loans_approved_count = db.Column(db.Integer, default=0, nullable=False)
    loans_approved_amount = db.Column(db.Float, default=0.0, nullable=False)
    interest_accrued = db.Column(db.Float, default=0.0, nullable=False)
    fines_issued_count = db.Column(db.Integer, default=0, nullable=False)
    fines_issued_amount = db.Column(db.Float, default=0.0, nullable=False)
    fines_paid_amount = db.Column(db.Float, default=0.0, nullable=False)

    generated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'report_month': self.report_month,
            'period_start': _iso(self.period_start),
            'period_end': _iso(self.period_end),
            'savings_count': self.savings_count,
            'total_savings': self.total_savings,
            'loans_approved_count': self.loans_approved_count,
            'loans_approved_amount': self.loans_approved_amount,
            'interest_accrued': self.interest_accrued,
            'fines_issued_count': self.fines_issued_count,
            'fines_issued_amount': self.fines_issued_amount,
            'fines_paid_amount': self.fines_paid_amount,
            'generated_at': _iso(self.generated_at),
        }

    def __repr__(self):
        return f'<MonthlyReport {self.report_month}>'
