"""Test Suite - Ledger CRUD services and notifications."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from chama.models import FineType, LoanStatus, MemberStatus
from chama.services.ledger_service import (
    register_member, approve_member, record_saving, create_loan, approve_loan,
    reject_loan, mark_loan_paid, add_manual_fine, pay_fine, list_fines,
    LedgerServiceError
)
from chama.services.notifier import (
    LoggingNotifier, NotificationDispatcher, payment_confirmation_text, reminder_text
)
from tests.factories import make_member, make_loan, RecordingNotifier


# =============================================================================
# Members
# =============================================================================

def test_register_member_hashes_password(store):
    member = register_member("M010", "Wanjiru", "wanjiru@chama.test", "+254711000000", password="s3cret")

    assert member.status == MemberStatus.APPROVED.value
    assert member.is_active is True
    assert member.password_hash != "s3cret"
    assert member.check_password("s3cret") is True
    assert member.check_password("wrong") is False


def test_register_member_rejects_taken_code(store):
    register_member("M010", "Wanjiru", "wanjiru@chama.test", "+254711000000")

    with pytest.raises(LedgerServiceError, match="already taken"):
        register_member("M010", "Otieno", "otieno@chama.test", "+254722000000")


def test_pending_member_can_be_approved_once(store):
    member = register_member("M011", "Akinyi", "akinyi@chama.test", "+254733000000",
                             status=MemberStatus.PENDING.value)

    approve_member(member.id)

    assert store.get_member(member.id).status == MemberStatus.APPROVED.value
    with pytest.raises(LedgerServiceError):
        approve_member(member.id)


# =============================================================================
# Savings
# =============================================================================

def test_record_saving_updates_totals_and_confirms_payment(store, notifier, watcher, clock):
    member_id = make_member(store).id

    record_saving(member_id, 500, reference="QAB123", at=clock())
    record_saving(member_id, 250, at=clock())

    member = store.get_member(member_id)
    assert member.total_savings == 750
    assert member.balance == 750
    assert notifier.confirmations == [
        ('M001', 500.0, 'savings', 500.0),
        ('M001', 250.0, 'savings', 750.0),
    ]
    assert watcher.subscription.backlog() == 2


def test_record_saving_rejects_bad_amounts_and_unknown_members(store):
    member_id = make_member(store).id

    with pytest.raises(LedgerServiceError):
        record_saving(member_id, 0)
    with pytest.raises(LedgerServiceError):
        record_saving(member_id, "lots")
    with pytest.raises(LedgerServiceError, match="not found"):
        record_saving(999, 100)


def test_duplicate_payment_reference_is_rejected(store, clock):
    member_id = make_member(store).id
    record_saving(member_id, 500, reference="QAB123", at=clock())

    with pytest.raises(LedgerServiceError):
        record_saving(member_id, 500, reference="QAB123", at=clock())

    assert store.get_member(member_id).total_savings == 500


def test_notifier_failure_keeps_recorded_saving(store, notifier, clock):
    notifier.fail = True
    member_id = make_member(store).id

    record_saving(member_id, 500, at=clock())

    assert store.get_member(member_id).total_savings == 500
    assert notifier.confirmations == []


# =============================================================================
# Loans
# =============================================================================

def test_approval_sets_due_date_once(store, clock):
    member_id = make_member(store).id
    loan = create_loan(member_id, 1000)
    assert loan.status == LoanStatus.PENDING.value
    assert loan.due_date is None

    approve_loan(loan.id, at=clock())

    loan = store.get_loan(loan.id)
    assert loan.status == LoanStatus.APPROVED.value
    assert loan.approved_at == clock()
    assert loan.due_date == clock() + timedelta(days=30)
    with pytest.raises(LedgerServiceError):
        approve_loan(loan.id)


def test_approval_keeps_due_date_already_set_by_watcher(store, watcher, clock):
    member_id = make_member(store).id
    loan = create_loan(member_id, 1000)
    watcher.process_available()
    due = store.get_loan(loan.id).due_date

    approve_loan(loan.id, at=clock() + timedelta(days=2))

    assert store.get_loan(loan.id).due_date == due


def test_reject_only_pending_loans(store):
    member = make_member(store)
    pending = create_loan(member.id, 500)
    approved = make_loan(store, member)

    assert reject_loan(pending.id).status == LoanStatus.REJECTED.value
    with pytest.raises(LedgerServiceError):
        reject_loan(approved.id)


def test_paying_overdue_loan_clears_flag(store, engine, clock):
    member = make_member(store)
    loan_id = make_loan(store, member, due_date=clock() - timedelta(days=3)).id
    engine.detect_overdue_loans()

    mark_loan_paid(loan_id, at=clock())

    loan = store.get_loan(loan_id)
    assert loan.status == LoanStatus.PAID.value
    assert loan.is_overdue is False
    assert engine.apply_weekly_penalties().outcomes == []


# =============================================================================
# Fines
# =============================================================================

def test_manual_fine_and_payment(store, clock):
    member_id = make_member(store).id

    fine = add_manual_fine(member_id, 200, "  Late to meeting ")
    assert fine.fine_type == FineType.MANUAL.value
    assert fine.reason == "Late to meeting"
    assert [f.id for f in list_fines(member_id, unpaid_only=True)] == [fine.id]

    pay_fine(fine.id, at=clock())
    pay_fine(fine.id, at=clock() + timedelta(days=1))

    paid = store.get_fine(fine.id)
    assert paid.paid is True
    assert paid.paid_at == clock()
    assert list_fines(member_id, unpaid_only=True) == []


def test_manual_fine_needs_reason(store):
    member_id = make_member(store).id

    with pytest.raises(LedgerServiceError, match="reason"):
        add_manual_fine(member_id, 200, " ")


# =============================================================================
# Notifier
# =============================================================================

def test_message_text_matches_sms_templates():
    assert payment_confirmation_text("Wanjiru", 500, "savings", 1500) == (
        "Dear Wanjiru, payment of Ksh 500 for savings received successfully! "
        "Your new balance: Ksh 1,500. Thank you!"
    )
    assert reminder_text("Wanjiru", 1050, "loan", 3).startswith("Reminder Wanjiru!")
    assert reminder_text("Wanjiru", 1050, "loan", 8).startswith("URGENT: Reminder Wanjiru!")


def test_logging_notifier_without_phone_is_logged_not_raised(store, caplog):
    member = make_member(store, phone="")
    dispatcher = NotificationDispatcher(LoggingNotifier())

    dispatcher.reminder(member, 50, "savings")

    assert "no phone number" in caplog.text


def test_async_dispatch_delivers_in_background(store):
    member = make_member(store)
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier, executor=ThreadPoolExecutor(max_workers=1))

    dispatcher.payment_confirmation(member, 100, "savings", 100)
    dispatcher.shutdown()

    assert notifier.confirmations == [('M001', 100, 'savings', 100)]
