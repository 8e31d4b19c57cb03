"""
LEDGER SERVICE
==============

Handles:
- Registering members
- Recording savings (with payment confirmation)
- Loan lifecycle: create, approve, reject, mark paid
- Manual fines and fine payment

All writes go through the LedgerStore so they take the same per-entity
locks as the automated rules.
"""

from chama.models import (
    Member, Loan, Saving, Fine, MemberStatus, MemberRole, LoanStatus, FineType, utcnow
)
from chama.services.automation_service import get_runtime
from chama.services.ledger_store import (
    ValidationError, loan_key, member_key
)
from chama.services.notifier import MemberContact


class LedgerServiceError(Exception):
    """Base exception for ledger CRUD operations"""
    pass


def _store():
    return get_runtime().store


def _require_id(value, what):
    if value is None:
        raise LedgerServiceError(f"{what} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise LedgerServiceError(f"{what} must be an integer")


def _positive_amount(amount, what):
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise LedgerServiceError(f"{what} must be a number")
    if amount <= 0:
        raise LedgerServiceError(f"{what} must be greater than 0")
    return amount


# ============================================================
# MEMBERS
# ============================================================

def register_member(member_code, name, email, phone, role=MemberRole.MEMBER.value,
                    status=MemberStatus.APPROVED.value, password=None):
    """Add a member to the group. Members join active, with no activity yet."""
    store = _store()
    if not member_code or not name or not email or not phone:
        raise LedgerServiceError("member_code, name, email and phone are required")
    if role not in [r.value for r in MemberRole]:
        raise LedgerServiceError(f"Unknown role {role!r}")
    if status not in [s.value for s in MemberStatus]:
        raise LedgerServiceError(f"Unknown status {status!r}")
    if store.find_member_by_code(member_code):
        raise LedgerServiceError(f"Member code {member_code} is already taken")

    member = Member(
        member_code=member_code,
        name=name,
        email=email,
        phone=phone,
        role=role,
        status=status,
        is_active=True,
        created_at=utcnow(),
    )
    if password:
        member.set_password(password)

    try:
        return store.insert_member(member)
    except ValidationError as e:
        raise LedgerServiceError(f"Failed to register member: {str(e)}")


def approve_member(member_id):
    return _set_member_status(member_id, MemberStatus.APPROVED.value)


def reject_member(member_id):
    return _set_member_status(member_id, MemberStatus.REJECTED.value)


def _set_member_status(member_id, status):
    store = _store()
    with store.entity_transaction(member_key(member_id)):
        member = store.get_member(member_id)
        if not member:
            raise LedgerServiceError(f"Member {member_id} not found")
        if member.status != MemberStatus.PENDING.value:
            raise LedgerServiceError(f"Member {member.member_code} is already {member.status}")
        member.status = status
        store.update_member(member)
    return member


# ============================================================
# SAVINGS
# ============================================================

def record_saving(member_id, amount, reference=None, at=None):
    """
    Record a savings contribution.

    The saving and the member's running totals commit together; the
    payment confirmation goes out only after that commit.
    """
    member_id = _require_id(member_id, "member_id")
    store = _store()
    amount = _positive_amount(amount, "Saving amount")

    try:
        with store.entity_transaction(member_key(member_id)):
            member = store.get_member(member_id)
            if not member:
                raise LedgerServiceError(f"Member {member_id} not found")
            if member.status != MemberStatus.APPROVED.value:
                raise LedgerServiceError(f"Member {member.member_code} is not approved")

            saving = Saving(
                member_id=member.id,
                amount=amount,
                reference=reference,
                timestamp=at or utcnow(),
            )
            store.insert_saving(saving)

            member.total_savings = round(member.total_savings + amount, 2)
            member.balance = round(member.balance + amount, 2)
            store.update_member(member)

            contact = MemberContact(member.id, member.member_code, member.name, member.phone, member.email)
            new_balance = member.balance
    except ValidationError as e:
        raise LedgerServiceError(f"Failed to record saving: {str(e)}")

    get_runtime().dispatcher.payment_confirmation(contact, amount, 'savings', new_balance)
    return saving


# ============================================================
# LOANS
# ============================================================

def create_loan(member_id, amount):
    """Create a pending loan request."""
    member_id = _require_id(member_id, "member_id")
    store = _store()
    amount = _positive_amount(amount, "Loan amount")

    member = store.get_member(member_id)
    if not member:
        raise LedgerServiceError(f"Member {member_id} not found")
    if member.status != MemberStatus.APPROVED.value:
        raise LedgerServiceError(f"Member {member.member_code} is not approved")

    loan = Loan(
        member_id=member.id,
        principal_amount=amount,
        current_amount=amount,
        interest_accrued=0.0,
        penalty_accrued=0.0,
        status=LoanStatus.PENDING.value,
        is_overdue=False,
        created_at=utcnow(),
    )
    try:
        return store.insert_loan(loan)
    except ValidationError as e:
        raise LedgerServiceError(f"Failed to create loan: {str(e)}")


def approve_loan(loan_id, at=None):
    """Approve a pending loan; the due date is fixed once, loan term days out."""
    store = _store()
    at = at or utcnow()
    with store.entity_transaction(loan_key(loan_id)):
        loan = store.get_loan(loan_id)
        if not loan:
            raise LedgerServiceError(f"Loan {loan_id} not found")
        if loan.status != LoanStatus.PENDING.value:
            raise LedgerServiceError(f"Loan {loan_id} is {loan.status}, only pending loans can be approved")

        loan.status = LoanStatus.APPROVED.value
        loan.approved_at = at
        if loan.due_date is None:
            loan.due_date = at + get_runtime().settings.loan_term
        store.update_loan(loan)
    return loan


def reject_loan(loan_id):
    store = _store()
    with store.entity_transaction(loan_key(loan_id)):
        loan = store.get_loan(loan_id)
        if not loan:
            raise LedgerServiceError(f"Loan {loan_id} not found")
        if loan.status != LoanStatus.PENDING.value:
            raise LedgerServiceError(f"Loan {loan_id} is {loan.status}, only pending loans can be rejected")
        loan.status = LoanStatus.REJECTED.value
        store.update_loan(loan)
    return loan


def mark_loan_paid(loan_id, at=None):
    """Settle an approved loan; clears the overdue flag."""
    store = _store()
    with store.entity_transaction(loan_key(loan_id)):
        loan = store.get_loan(loan_id)
        if not loan:
            raise LedgerServiceError(f"Loan {loan_id} not found")
        if loan.status != LoanStatus.APPROVED.value:
            raise LedgerServiceError(f"Loan {loan_id} is {loan.status}, only approved loans can be paid")
        loan.status = LoanStatus.PAID.value
        loan.is_overdue = False
        loan.paid_at = at or utcnow()
        store.update_loan(loan)
    return loan


# ============================================================
# FINES
# ============================================================

def add_manual_fine(member_id, amount, reason):
    member_id = _require_id(member_id, "member_id")
    store = _store()
    amount = _positive_amount(amount, "Fine amount")
    if not reason or not reason.strip():
        raise LedgerServiceError("A reason is required for a manual fine")

    with store.entity_transaction(member_key(member_id)):
        member = store.get_member(member_id)
        if not member:
            raise LedgerServiceError(f"Member {member_id} not found")
        fine = store.append_fine(Fine(
            member_id=member.id,
            amount=amount,
            reason=reason.strip(),
            fine_type=FineType.MANUAL.value,
            created_at=utcnow(),
        ))
    return fine


def pay_fine(fine_id, at=None):
    """Mark a fine paid. Paying an already paid fine changes nothing."""
    store = _store()
    fine = store.get_fine(fine_id)
    if not fine:
        raise LedgerServiceError(f"Fine {fine_id} not found")

    with store.entity_transaction(member_key(fine.member_id)):
        fine = store.get_fine(fine_id)
        store.mark_fine_paid(fine, at or utcnow())
    return fine


def list_fines(member_id=None, unpaid_only=False):
    fines = _store().fines_for(member_id=member_id)
    if unpaid_only:
        fines = [f for f in fines if not f.paid]
    return fines


# ============================================================
# LEADERBOARD & STATS
# ============================================================

def savings_leaderboard(limit=10):
    """Approved members ranked by total savings, with their rank."""
    members = _store().savings_leaderboard(limit=limit)
    return [
        {
            'rank': rank,
            'member_id': m.id,
            'member_code': m.member_code,
            'name': m.name,
            'total_savings': m.total_savings,
            'is_active': m.is_active,
        }
        for rank, m in enumerate(members, start=1)
    ]


def member_stats():
    return _store().member_stats()
