"""
AUDIT LOG
=========

Append-only record of every rule application.

Each entry is keyed by (action_type, idempotency_key) where the key is
the rule period key: entity id plus the calendar period the action
belongs to. Rules call exists() inside the same entity transaction that
performs the side effect, and record() the entry before that transaction
commits, so the check, the side effect and the witness land together.

Periods are computed in the schedule timezone, not UTC: a Monday 01:00
run in Nairobi belongs to the Nairobi ISO week.
"""

import logging
from datetime import datetime, time, timedelta, timezone

from chama.models import AutomationLog, utcnow

logger = logging.getLogger(__name__)


# ============================================================
# PERIOD KEYS
# ============================================================

def to_local(moment, tz):
    """Naive-UTC (as stored) -> aware local time in `tz`."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz)


def to_storage(moment):
    """Aware datetime -> naive UTC (as stored)."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def iso_week(moment, tz):
    year, week, _ = to_local(moment, tz).isocalendar()
    return f"{year}-W{week:02d}"


def iso_day(moment, tz):
    return to_local(moment, tz).date().isoformat()


def month_label(moment, tz):
    local = to_local(moment, tz)
    return f"{local.year:04d}-{local.month:02d}"


def local_day_bounds(moment, tz):
    """[start, end) of the local calendar day containing `moment`, as naive UTC."""
    day = to_local(moment, tz).date()
    start = datetime.combine(day, time(0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
    return to_storage(start), to_storage(end)


def loan_period_key(loan_id, period=None):
    return f"loan:{loan_id}" if period is None else f"loan:{loan_id}:{period}"


def member_period_key(member_id, period):
    return f"member:{member_id}:{period}"


def report_period_key(report_month):
    return f"report:{report_month}"


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog:
    def __init__(self, store, clock=utcnow):
        self.store = store
        self._clock = clock

    def exists(self, action_type, key):
        return self.store.log_entry_exists(_value(action_type), key)

    def record(self, action_type, key, description, member_id=None, loan_id=None,
               amount=None, at=None):
        """Append an entry; joins the caller's entity transaction when one is open."""
        entry = AutomationLog(
            action_type=_value(action_type),
            idempotency_key=key,
            description=description,
            member_id=member_id,
            loan_id=loan_id,
            amount=amount,
            created_at=at or self._clock(),
        )
        self.store.append_audit_log(entry)
        logger.info("[%s] %s (%s)", entry.action_type, description, key)
        return entry

    def recent(self, limit=50, action_type=None):
        return self.store.recent_logs(
            limit=limit,
            action_type=_value(action_type) if action_type else None
        )

    def for_member(self, member_id, limit=50):
        return self.store.recent_logs(limit=limit, member_id=member_id)


def _value(action_type):
    return getattr(action_type, 'value', action_type)

