"""Test Suite - Scheduler timing, status and mutual exclusion.

Most tests drive the Scheduler with a stub engine so no database is
involved; the last ones run it against the real app wiring.
"""

import threading
from datetime import datetime, timedelta

import pytest

from chama.services.ledger_store import StoreUnavailableError
from chama.services.rule_engine import RuleGroup, RuleRun, OutcomeStatus
from chama.services.scheduler import (
    Scheduler, SchedulerBusyError, TriggerSource, next_fire
)
from chama.services.settings import AutomationSettings
from tests.factories import FrozenClock, TUESDAY_MORNING, make_member, make_loan


# =============================================================================
# Helpers
# =============================================================================

class StubEngine:
    """Records calls; optionally blocks until released or raises."""

    def __init__(self, block=False, error=None):
        self.calls = []
        self.error = error
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def run_group(self, group, as_of=None, cancel=None):
        self.calls.append((group, as_of))
        self.started.set()
        self.release.wait(5)
        if self.error is not None:
            raise self.error
        return [RuleRun(rule=f"{group.value}_rule", as_of=as_of, cancelled=cancel.is_set())]


@pytest.fixture
def nairobi():
    return AutomationSettings()


# =============================================================================
# Next fire time
# =============================================================================

def test_daily_fires_at_six_nairobi_time(nairobi):
    # 02:00 UTC = 05:00 Nairobi, before the 06:00 run
    assert next_fire(RuleGroup.DAILY, nairobi, datetime(2024, 1, 2, 2, 0)) == datetime(2024, 1, 2, 3, 0)
    # exactly at fire time the next run is tomorrow
    assert next_fire(RuleGroup.DAILY, nairobi, datetime(2024, 1, 2, 3, 0)) == datetime(2024, 1, 3, 3, 0)


def test_weekly_fires_monday_eight_nairobi_time(nairobi):
    # Tuesday 2 Jan -> Monday 8 Jan 08:00 Nairobi
    assert next_fire(RuleGroup.WEEKLY, nairobi, TUESDAY_MORNING) == datetime(2024, 1, 8, 5, 0)
    # Monday 1 Jan 04:00 UTC is 07:00 Nairobi, still before the run
    assert next_fire(RuleGroup.WEEKLY, nairobi, datetime(2024, 1, 1, 4, 0)) == datetime(2024, 1, 1, 5, 0)


def test_monthly_fires_first_of_month_and_rolls_over_year(nairobi):
    assert next_fire(RuleGroup.MONTHLY, nairobi, TUESDAY_MORNING) == datetime(2024, 2, 1, 6, 0)
    assert next_fire(RuleGroup.MONTHLY, nairobi, datetime(2023, 12, 15)) == datetime(2024, 1, 1, 6, 0)


def test_savings_reminders_fire_at_eight_and_twenty_nairobi_time(nairobi):
    # TUESDAY_MORNING is 10:00 Nairobi: the morning slot has passed, the evening one has not
    assert next_fire(RuleGroup.MORNING_REMINDER, nairobi, TUESDAY_MORNING) == datetime(2024, 1, 3, 5, 0)
    assert next_fire(RuleGroup.EVENING_REMINDER, nairobi, TUESDAY_MORNING) == datetime(2024, 1, 2, 17, 0)


def test_monthly_day_is_clamped_to_short_months():
    settings = AutomationSettings(monthly_day=31)

    assert next_fire(RuleGroup.MONTHLY, settings, datetime(2024, 2, 10)) == datetime(2024, 2, 29, 6, 0)


# =============================================================================
# Status
# =============================================================================

def test_initial_status_has_no_runs_and_computed_next_runs(nairobi):
    scheduler = Scheduler(StubEngine(), nairobi, clock=FrozenClock(now=TUESDAY_MORNING))

    status = scheduler.status()

    assert set(status) == {'daily', 'weekly', 'monthly', 'morning-reminder', 'evening-reminder'}
    assert all(group['last_run'] is None for group in status.values())
    assert status['daily']['next_run'] == '2024-01-03T03:00:00'
    assert status['daily']['next_run_local'] == '2024-01-03T06:00:00+03:00'
    assert status['weekly']['next_run'] == '2024-01-08T05:00:00'


def test_manual_trigger_is_recorded_as_last_run(nairobi):
    clock = FrozenClock(now=TUESDAY_MORNING)
    scheduler = Scheduler(StubEngine(), nairobi, clock=clock)

    record = scheduler.trigger(RuleGroup.WEEKLY)

    assert record.trigger == TriggerSource.MANUAL
    assert record.succeeded is True
    assert scheduler.last_run('weekly') is record
    assert scheduler.status()['weekly']['last_run']['rules'] == {
        'weekly_rule': {'succeeded': 0, 'skipped': 0, 'failed': 0}
    }
    # manual triggers do not move the schedule
    assert scheduler.next_run(RuleGroup.WEEKLY) == datetime(2024, 1, 8, 5, 0)


def test_unreachable_store_is_recorded_as_failed_run(nairobi):
    engine = StubEngine(error=StoreUnavailableError("connection refused"))
    scheduler = Scheduler(engine, nairobi, clock=FrozenClock())

    record = scheduler.trigger(RuleGroup.DAILY)

    assert record.succeeded is False
    assert 'connection refused' in record.error
    assert scheduler.status()['daily']['last_run']['error'] == record.error


# =============================================================================
# Ticks
# =============================================================================

def test_tick_fires_due_groups_once(nairobi):
    clock = FrozenClock(now=datetime(2024, 1, 1, 0, 0))  # Monday 03:00 Nairobi
    engine = StubEngine()
    scheduler = Scheduler(engine, nairobi, clock=clock)

    assert scheduler.tick() == []

    clock.freeze_at(datetime(2024, 1, 1, 6, 0))  # 09:00 Nairobi, 1 January
    fired = scheduler.tick()

    assert [r.group for r in fired] == ['daily', 'weekly', 'monthly', 'morning-reminder']
    assert all(r.trigger == TriggerSource.SCHEDULE for r in fired)
    assert scheduler.tick() == []
    assert scheduler.next_run('daily') == datetime(2024, 1, 2, 3, 0)
    assert scheduler.next_run('weekly') == datetime(2024, 1, 8, 5, 0)
    assert scheduler.next_run('monthly') == datetime(2024, 2, 1, 6, 0)
    assert scheduler.next_run('morning-reminder') == datetime(2024, 1, 2, 5, 0)
    # 20:00 Nairobi has not come round yet
    assert scheduler.next_run('evening-reminder') == datetime(2024, 1, 1, 17, 0)


# =============================================================================
# Mutual exclusion
# =============================================================================

@pytest.mark.concurrency
def test_second_trigger_for_running_group_is_rejected(nairobi):
    engine = StubEngine(block=True)
    scheduler = Scheduler(engine, nairobi, clock=FrozenClock())
    worker = threading.Thread(target=scheduler.trigger, args=(RuleGroup.DAILY,))
    worker.start()
    assert engine.started.wait(5)

    try:
        assert scheduler.status()['daily']['running'] is True
        with pytest.raises(SchedulerBusyError):
            scheduler.trigger(RuleGroup.DAILY)
    finally:
        engine.release.set()
        worker.join(5)

    assert len(engine.calls) == 1
    assert scheduler.is_running(RuleGroup.DAILY) is False


@pytest.mark.concurrency
def test_scheduled_tick_skips_group_already_running_manually(nairobi):
    clock = FrozenClock(now=datetime(2024, 1, 2, 2, 0))
    engine = StubEngine(block=True)
    scheduler = Scheduler(engine, nairobi, clock=clock)
    worker = threading.Thread(target=scheduler.trigger, args=(RuleGroup.DAILY,))
    worker.start()
    assert engine.started.wait(5)

    try:
        clock.freeze_at(datetime(2024, 1, 2, 3, 0))
        assert scheduler.tick() == []
    finally:
        engine.release.set()
        worker.join(5)

    assert len(engine.calls) == 1
    assert scheduler.last_run('daily').trigger == TriggerSource.MANUAL


@pytest.mark.concurrency
def test_different_groups_may_run_side_by_side(nairobi):
    engine = StubEngine(block=True)
    scheduler = Scheduler(engine, nairobi, clock=FrozenClock())
    worker = threading.Thread(target=scheduler.trigger, args=(RuleGroup.DAILY,))
    worker.start()
    assert engine.started.wait(5)

    try:
        weekly_worker = threading.Thread(target=scheduler.trigger, args=(RuleGroup.WEEKLY,))
        weekly_worker.start()
    finally:
        engine.release.set()
        worker.join(5)
        weekly_worker.join(5)

    assert sorted(group.value for group, _ in engine.calls) == ['daily', 'weekly']


@pytest.mark.concurrency
def test_cancel_marks_running_batch_cancelled(nairobi):
    engine = StubEngine(block=True)
    scheduler = Scheduler(engine, nairobi, clock=FrozenClock())
    records = []
    worker = threading.Thread(target=lambda: records.append(scheduler.trigger(RuleGroup.DAILY)))
    worker.start()
    assert engine.started.wait(5)

    assert scheduler.cancel(RuleGroup.DAILY) == 1
    engine.release.set()
    worker.join(5)

    assert records[0].cancelled is True
    assert records[0].succeeded is False


# =============================================================================
# Against the real engine
# =============================================================================

def test_trigger_runs_real_rule_group(scheduler, clock):
    record = scheduler.trigger(RuleGroup.DAILY)

    assert record.as_of == clock()
    assert [run.rule for run in record.runs] == [
        'overdue_detection', 'inactivity_detection', 'missed_savings_detection'
    ]
    assert record.succeeded is True


def test_store_lost_mid_group_keeps_finished_rule_outcomes(scheduler, store, clock, monkeypatch):
    member = make_member(store)
    loan_id = make_loan(store, member, due_date=clock() - timedelta(days=1)).id
    pings = []

    def down_after_first_rule():
        pings.append(clock())
        if len(pings) > 1:
            raise StoreUnavailableError("db down")

    monkeypatch.setattr(store, 'ping', down_after_first_rule)
    record = scheduler.trigger(RuleGroup.DAILY)

    assert record.succeeded is False
    assert record.error == "db down"
    assert [run.rule for run in record.runs] == ['overdue_detection', 'inactivity_detection']
    assert record.runs[0].outcome_for(loan_id).status == OutcomeStatus.SUCCEEDED
    assert record.runs[1].error == "db down"
    assert record.runs[1].outcomes == []
    assert scheduler.status()['daily']['last_run']['rules']['overdue_detection']['succeeded'] == 1
    monkeypatch.undo()
    assert store.get_loan(loan_id).is_overdue is True
