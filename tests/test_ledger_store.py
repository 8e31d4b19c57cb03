"""Test Suite - Ledger store transactions, locking and error translation."""

import gc
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text

from chama.extensions import db
from chama.models import Fine, FineType, Saving
from chama.services.event_bus import EntityType
from chama.services.ledger_store import (
    LedgerStore, TransientStoreError, ValidationError, ConcurrencyConflict,
    loan_key, member_key
)
from tests.factories import make_member, make_loan, make_saving


# =============================================================================
# Entity transactions
# =============================================================================

def test_entity_transaction_rolls_back_every_step_on_error(store, clock):
    member = make_member(store)
    member_id = member.id

    with pytest.raises(RuntimeError):
        with store.entity_transaction(member_key(member_id)):
            fresh = store.get_member(member_id)
            fresh.is_active = False
            store.update_member(fresh)
            store.append_fine(Fine(member_id=member_id, amount=100, reason="test",
                                   fine_type=FineType.AUTO_INACTIVITY.value, created_at=clock()))
            raise RuntimeError("crash between steps")

    assert store.get_member(member_id).is_active is True
    assert store.fines_for(member_id=member_id) == []


def test_insert_events_publish_only_after_commit(store, bus, watcher, clock):
    member = make_member(store)
    member_id = member.id
    sub = watcher.subscription

    with pytest.raises(RuntimeError):
        with store.entity_transaction(member_key(member_id)):
            make_saving(store, member, timestamp=clock())
            assert sub.backlog() == 0
            raise RuntimeError("abort")

    assert sub.backlog() == 0
    assert db.session.query(Saving).count() == 0

    with store.entity_transaction(member_key(member_id)):
        make_saving(store, store.get_member(member_id), timestamp=clock())
        assert sub.backlog() == 0

    assert sub.backlog() == 1
    assert sub.get_nowait().entity_type == EntityType.SAVING


def test_nested_transactions_commit_once_with_outer(store, clock):
    member_id = make_member(store).id

    with pytest.raises(RuntimeError):
        with store.entity_transaction(member_key(member_id)):
            with store.entity_transaction(member_key(member_id)):
                store.append_fine(Fine(member_id=member_id, amount=10, reason="inner",
                                       fine_type=FineType.MANUAL.value, created_at=clock()))
            raise RuntimeError("outer fails after inner finished")

    assert store.fines_for(member_id=member_id) == []


@pytest.mark.concurrency
def test_lock_wait_is_bounded_by_entity_timeout():
    store = LedgerStore(entity_timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with store.locks.lock_for(loan_key(1)):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    assert held.wait(5)
    try:
        with pytest.raises(TransientStoreError):
            with store.entity_transaction(loan_key(1)):
                pass
    finally:
        release.set()
        thread.join(5)


@pytest.mark.concurrency
def test_entity_locks_are_dropped_once_no_one_uses_them(store):
    member_ids = [make_member(store, f"M{n:03d}").id for n in range(1, 6)]

    for member_id in member_ids:
        with store.entity_transaction(member_key(member_id)):
            store.get_member(member_id)
    gc.collect()

    assert len(store.locks) == 0
    held = store.locks.lock_for(member_key(member_ids[0]))
    assert store.locks.lock_for(member_key(member_ids[0])) is held
    assert len(store.locks) == 1


# =============================================================================
# Error translation
# =============================================================================

def test_stale_version_becomes_concurrency_conflict(store):
    member = make_member(store)
    loan = make_loan(store, member)
    loan = store.get_loan(loan.id)
    db.session.execute(text("UPDATE loans SET version = version + 1 WHERE id = :id"), {"id": loan.id})

    loan.current_amount = 5
    with pytest.raises(ConcurrencyConflict):
        store.update_loan(loan)


def test_duplicate_unique_field_becomes_validation_error(store):
    make_member(store, "M001")

    with pytest.raises(ValidationError):
        make_member(store, "M001")


def test_fines_are_append_only_and_positive(store, clock):
    member_id = make_member(store).id
    fine = store.append_fine(Fine(member_id=member_id, amount=50, reason="late",
                                  fine_type=FineType.MANUAL.value, created_at=clock()))

    with pytest.raises(ValidationError):
        store.append_fine(fine)
    with pytest.raises(ValidationError):
        store.append_fine(Fine(member_id=member_id, amount=0, reason="zero",
                               fine_type=FineType.MANUAL.value, created_at=clock()))


def test_mark_fine_paid_only_moves_false_to_true(store, clock):
    member_id = make_member(store).id
    fine = store.append_fine(Fine(member_id=member_id, amount=50, reason="late",
                                  fine_type=FineType.MANUAL.value, created_at=clock()))

    store.mark_fine_paid(fine, clock())
    first_paid_at = store.get_fine(fine.id).paid_at
    store.mark_fine_paid(store.get_fine(fine.id), clock() + timedelta(days=1))

    assert store.get_fine(fine.id).paid is True
    assert store.get_fine(fine.id).paid_at == first_paid_at


# =============================================================================
# Queries
# =============================================================================

def test_last_saving_respects_as_of(store, clock):
    member = make_member(store)
    make_saving(store, member, 100, timestamp=clock() - timedelta(days=9))
    make_saving(store, member, 200, timestamp=clock() - timedelta(days=2))
    make_saving(store, member, 300, timestamp=clock() + timedelta(days=1))

    assert store.find_last_saving(member.id).amount == 300
    assert store.find_last_saving(member.id, as_of=clock()).amount == 200


def test_summarize_period_counts_half_open_window(store, clock):
    member = make_member(store)
    start, end = datetime(2023, 12, 1), datetime(2024, 1, 1)
    make_saving(store, member, 100, timestamp=start)
    make_saving(store, member, 200, timestamp=end)
    store.append_fine(Fine(member_id=member.id, amount=50, reason="late",
                           fine_type=FineType.MANUAL.value, created_at=datetime(2023, 12, 20)))

    totals = store.summarize_period(start, end)

    assert totals['savings_count'] == 1
    assert totals['total_savings'] == 100
    assert totals['fines_issued_count'] == 1
    assert totals['fines_issued_amount'] == 50
    assert totals['fines_paid_amount'] == 0


def test_ping_succeeds_on_live_store(store):
    store.ping()
