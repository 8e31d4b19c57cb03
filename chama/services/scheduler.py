"""
SCHEDULER
=========

Fires the rule groups at fixed wall-clock times in one timezone:

- daily:   every day at AUTOMATION_DAILY_AT
- weekly:  on AUTOMATION_WEEKLY_WEEKDAY at AUTOMATION_WEEKLY_AT
- monthly: on AUTOMATION_MONTHLY_DAY at AUTOMATION_MONTHLY_AT
- morning-reminder / evening-reminder: every day at
  AUTOMATION_MORNING_REMINDER_AT / AUTOMATION_EVENING_REMINDER_AT

Scheduled ticks and manual triggers share one lock per group, so two runs
of the same group never overlap; the second caller gets SchedulerBusyError.
Run history lives on the Scheduler instance as immutable RunRecords.
"""

import calendar
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from chama.models import utcnow
from chama.services.audit_log import to_local, to_storage
from chama.services.ledger_store import StoreUnavailableError
from chama.services.rule_engine import RuleGroup, RuleGroupAborted, GROUP_RULES

logger = logging.getLogger(__name__)


class SchedulerBusyError(Exception):
    """Raised when a rule group is already running"""
    pass


class TriggerSource:
    SCHEDULE = "schedule"
    MANUAL = "manual"


@dataclass(frozen=True)
class RunRecord:
    group: str
    trigger: str
    as_of: datetime
    started_at: datetime
    finished_at: datetime
    succeeded: bool
    cancelled: bool = False
    error: Optional[str] = None
    runs: tuple = field(default=(), repr=False)

    def summary(self):
        return {run.rule: run.summary() for run in self.runs}

    def to_dict(self):
        return {
            "group": self.group,
            "trigger": self.trigger,
            "as_of": self.as_of.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "succeeded": self.succeeded,
            "cancelled": self.cancelled,
            "error": self.error,
            "rules": self.summary(),
        }


# ============================================================
# NEXT FIRE TIME
# ============================================================

def _at(day, clock, tz):
    return datetime(day.year, day.month, day.day, clock.hour, clock.minute, tzinfo=tz)


def _monthly_candidate(year, month, settings):
    last_day = calendar.monthrange(year, month)[1]
    day = min(settings.monthly_day, last_day)
    return datetime(year, month, day, settings.monthly_at.hour, settings.monthly_at.minute,
                    tzinfo=settings.tz)


def _daily_clock(group, settings):
    return {
        RuleGroup.DAILY: settings.daily_at,
        RuleGroup.MORNING_REMINDER: settings.morning_reminder_at,
        RuleGroup.EVENING_REMINDER: settings.evening_reminder_at,
    }.get(group)


def next_fire(group, settings, after):
    """First fire time of `group` strictly after `after` (naive UTC in, naive UTC out)."""
    group = RuleGroup(group)
    tz = settings.tz
    local = to_local(after, tz)
    daily_at = _daily_clock(group, settings)

    if daily_at is not None:
        candidate = _at(local.date(), daily_at, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=1), daily_at, tz)

    elif group is RuleGroup.WEEKLY:
        days_ahead = (settings.weekly_weekday - local.weekday()) % 7
        candidate = _at(local.date() + timedelta(days=days_ahead), settings.weekly_at, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=days_ahead + 7), settings.weekly_at, tz)

    else:
        candidate = _monthly_candidate(local.year, local.month, settings)
        if candidate <= local:
            year, month = (local.year + 1, 1) if local.month == 12 else (local.year, local.month + 1)
            candidate = _monthly_candidate(year, month, settings)

    return to_storage(candidate)


# ============================================================
# SCHEDULER
# ============================================================

class Scheduler:
    def __init__(self, engine, settings, clock=utcnow, app=None):
        self.engine = engine
        self.settings = settings
        self.app = app
        self._clock = clock
        self._group_locks = {group: threading.Lock() for group in RuleGroup}
        self._state_lock = threading.Lock()
        self._last_run = {}
        self._cancel_events = {}
        now = clock()
        self._next_run = {group: next_fire(group, settings, now) for group in RuleGroup}
        self._stop = threading.Event()
        self._thread = None

    # ---------- triggering ----------

    def trigger(self, group, source=TriggerSource.MANUAL, as_of=None):
        """Run one group now. Raises SchedulerBusyError if it is already running."""
        group = RuleGroup(group)
        lock = self._group_locks[group]
        if not lock.acquire(blocking=False):
            raise SchedulerBusyError(f"{group.value} rules are already running")
        try:
            return self._run(group, source, as_of)
        finally:
            lock.release()

    def _run(self, group, source, as_of):
        cancel = threading.Event()
        with self._state_lock:
            self._cancel_events[group] = cancel

        started = self._clock()
        as_of = as_of or started
        logger.info("Running %s rules (%s) as of %s", group.value, source, as_of.isoformat())
        try:
            runs = self.engine.run_group(group, as_of=as_of, cancel=cancel)
        except StoreUnavailableError as e:
            logger.error("%s run aborted, ledger store unavailable: %s", group.value, e)
            finished = e.runs if isinstance(e, RuleGroupAborted) else ()
            record = RunRecord(
                group=group.value, trigger=source, as_of=as_of,
                started_at=started, finished_at=self._clock(),
                succeeded=False, error=str(e),
                runs=finished,
            )
        else:
            cancelled = cancel.is_set() or any(run.cancelled for run in runs)
            record = RunRecord(
                group=group.value, trigger=source, as_of=as_of,
                started_at=started, finished_at=self._clock(),
                succeeded=not cancelled and not any(run.failed for run in runs),
                cancelled=cancelled,
                runs=tuple(runs),
            )
            logger.info("%s rules finished: %s", group.value, record.summary())
        finally:
            with self._state_lock:
                self._cancel_events.pop(group, None)

        with self._state_lock:
            self._last_run[group] = record
        return record

    def cancel(self, group=None):
        """Stop running batches after their current entity."""
        with self._state_lock:
            events = [
                event for g, event in self._cancel_events.items()
                if group is None or g is RuleGroup(group)
            ]
        for event in events:
            event.set()
        return len(events)

    def tick(self, now=None):
        """Fire every group whose next run time has arrived; returns the RunRecords."""
        now = now or self._clock()
        fired = []
        for group in RuleGroup:
            with self._state_lock:
                due = self._next_run[group]
                if now < due:
                    continue
                self._next_run[group] = next_fire(group, self.settings, now)
            try:
                fired.append(self.trigger(group, source=TriggerSource.SCHEDULE, as_of=now))
            except SchedulerBusyError:
                logger.warning("Scheduled %s run skipped, a run is already in progress", group.value)
        return fired

    # ---------- status ----------

    def is_running(self, group):
        return self._group_locks[RuleGroup(group)].locked()

    def last_run(self, group):
        with self._state_lock:
            return self._last_run.get(RuleGroup(group))

    def next_run(self, group):
        with self._state_lock:
            return self._next_run[RuleGroup(group)]

    def status(self):
        tz = self.settings.tz
        with self._state_lock:
            last_runs = dict(self._last_run)
            next_runs = dict(self._next_run)
        result = {}
        for group in RuleGroup:
            last = last_runs.get(group)
            result[group.value] = {
                "rules": list(GROUP_RULES[group]),
                "running": self.is_running(group),
                "last_run": last.to_dict() if last else None,
                "next_run": next_runs[group].isoformat(),
                "next_run_local": to_local(next_runs[group], tz).isoformat(),
            }
        return result

    # ---------- background thread ----------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="chama-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started (%s), next runs: %s", self.settings.timezone,
                    {g.value: t.isoformat() for g, t in self._next_run.items()})

    def stop(self, timeout=None):
        self._stop.set()
        self.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    def _loop(self):
        while not self._stop.wait(self.settings.poll_seconds):
            try:
                if self.app is not None:
                    with self.app.app_context():
                        self.tick()
                else:
                    self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
