"""
AUTOMATION SETTINGS
===================

Immutable view of the AUTOMATION_* keys in the Flask config.
Rules, scheduler and watcher read their constants from here,
never from module-level globals.
"""

from dataclasses import dataclass
from datetime import time, timedelta
from zoneinfo import ZoneInfo


def parse_clock(value):
    """'06:30' -> time(6, 30)"""
    if isinstance(value, time):
        return value
    hours, _, minutes = str(value).partition(':')
    return time(int(hours), int(minutes or 0))


@dataclass(frozen=True)
class AutomationSettings:
    interest_rate: float = 0.10
    weekly_penalty: float = 50.0
    overdue_fine: float = 50.0
    inactivity_fine: float = 100.0
    missed_saving_fine: float = 50.0
    reminder_amount: float = 30.0

    inactivity_days: int = 90
    loan_term_days: int = 30
    saving_window_days: int = 7
    meeting_weekday: int = 1  # Tuesday

    timezone: str = 'Africa/Nairobi'
    daily_at: time = time(6, 0)
    weekly_at: time = time(8, 0)
    weekly_weekday: int = 0  # Monday
    monthly_at: time = time(9, 0)
    monthly_day: int = 1
    morning_reminder_at: time = time(8, 0)
    evening_reminder_at: time = time(20, 0)
    poll_seconds: float = 30.0

    max_retries: int = 3
    retry_backoff: float = 0.5
    entity_timeout: float = 10.0
    event_trace_limit: int = 1000

    @property
    def tz(self):
        return ZoneInfo(self.timezone)

    @property
    def loan_term(self):
        return timedelta(days=self.loan_term_days)

    @property
    def saving_window(self):
        return timedelta(days=self.saving_window_days)

    @classmethod
    def from_mapping(cls, config):
        """Build settings from a Flask config (or any mapping)."""
        defaults = cls()
        return cls(
            interest_rate=float(config.get('AUTOMATION_INTEREST_RATE', defaults.interest_rate)),
            weekly_penalty=float(config.get('AUTOMATION_WEEKLY_PENALTY', defaults.weekly_penalty)),
            overdue_fine=float(config.get('AUTOMATION_OVERDUE_FINE', defaults.overdue_fine)),
            inactivity_fine=float(config.get('AUTOMATION_INACTIVITY_FINE', defaults.inactivity_fine)),
            missed_saving_fine=float(config.get('AUTOMATION_MISSED_SAVING_FINE', defaults.missed_saving_fine)),
            reminder_amount=float(config.get('AUTOMATION_REMINDER_AMOUNT', defaults.reminder_amount)),
            inactivity_days=int(config.get('AUTOMATION_INACTIVITY_DAYS', defaults.inactivity_days)),
            loan_term_days=int(config.get('AUTOMATION_LOAN_TERM_DAYS', defaults.loan_term_days)),
            saving_window_days=int(config.get('AUTOMATION_SAVING_WINDOW_DAYS', defaults.saving_window_days)),
            meeting_weekday=int(config.get('AUTOMATION_MEETING_WEEKDAY', defaults.meeting_weekday)),
            timezone=config.get('AUTOMATION_TIMEZONE', defaults.timezone),
            daily_at=parse_clock(config.get('AUTOMATION_DAILY_AT', defaults.daily_at)),
            weekly_at=parse_clock(config.get('AUTOMATION_WEEKLY_AT', defaults.weekly_at)),
            weekly_weekday=int(config.get('AUTOMATION_WEEKLY_WEEKDAY', defaults.weekly_weekday)),
            monthly_at=parse_clock(config.get('AUTOMATION_MONTHLY_AT', defaults.monthly_at)),
            monthly_day=int(config.get('AUTOMATION_MONTHLY_DAY', defaults.monthly_day)),
            morning_reminder_at=parse_clock(config.get('AUTOMATION_MORNING_REMINDER_AT', defaults.morning_reminder_at)),
            evening_reminder_at=parse_clock(config.get('AUTOMATION_EVENING_REMINDER_AT', defaults.evening_reminder_at)),
            poll_seconds=float(config.get('AUTOMATION_POLL_SECONDS', defaults.poll_seconds)),
            max_retries=int(config.get('AUTOMATION_MAX_RETRIES', defaults.max_retries)),
            retry_backoff=float(config.get('AUTOMATION_RETRY_BACKOFF', defaults.retry_backoff)),
            entity_timeout=float(config.get('AUTOMATION_ENTITY_TIMEOUT', defaults.entity_timeout)),
            event_trace_limit=int(config.get('AUTOMATION_EVENT_TRACE_LIMIT', defaults.event_trace_limit)),
        )
