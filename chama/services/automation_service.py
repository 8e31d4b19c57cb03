"""
AUTOMATION SERVICE
==================

Control surface for the HTTP layer. Pure pass-through to the
Scheduler / Rule Engine instances owned by the current app;
no business logic lives here.
"""

import logging
from dataclasses import dataclass

from flask import current_app

from chama.services.rule_engine import RuleGroup

logger = logging.getLogger(__name__)


@dataclass
class AutomationRuntime:
    """Everything create_app() wires together, stored in app.extensions['automation']."""
    settings: object
    bus: object
    store: object
    audit: object
    dispatcher: object
    engine: object
    scheduler: object
    watcher: object

    def start(self, scheduler=True, watcher=True):
        if watcher:
            self.watcher.start()
        if scheduler:
            self.scheduler.start()

    def shutdown(self):
        self.scheduler.stop()
        self.watcher.stop()
        self.dispatcher.shutdown()


def get_runtime(app=None):
    app = app or current_app
    return app.extensions['automation']


# ============================================================
# TRIGGERS
# ============================================================

def trigger_rules(group):
    """Run a rule group now; raises SchedulerBusyError if it is already running."""
    return get_runtime().scheduler.trigger(RuleGroup(group))


def trigger_daily_rules():
    return trigger_rules(RuleGroup.DAILY)


def trigger_weekly_rules():
    return trigger_rules(RuleGroup.WEEKLY)


def trigger_monthly_rules():
    return trigger_rules(RuleGroup.MONTHLY)


def trigger_morning_reminders():
    return trigger_rules(RuleGroup.MORNING_REMINDER)


def trigger_evening_reminders():
    return trigger_rules(RuleGroup.EVENING_REMINDER)


# ============================================================
# STATUS & LOGS
# ============================================================

def get_status():
    runtime = get_runtime()
    return {
        'timezone': runtime.settings.timezone,
        'groups': runtime.scheduler.status(),
    }


def recent_logs(limit=50, action_type=None, member_id=None):
    audit = get_runtime().audit
    if member_id is not None:
        entries = audit.for_member(member_id, limit=limit)
    else:
        entries = audit.recent(limit=limit, action_type=action_type)
    return [entry.to_dict() for entry in entries]
