"""
Services Package
================

Business logic layer for the chama.

The automated rules, their scheduler and the event watcher live here,
alongside the CRUD services the routes call.
Routes should call these services, not manipulate models directly.
"""

from chama.services.ledger_store import (
    LedgerStore,
    LedgerError,
    TransientStoreError,
    StoreUnavailableError,
    ValidationError,
    ConcurrencyConflict,
    DuplicateActionError
)

from chama.services.rule_engine import (
    RuleEngine,
    RuleGroup,
    RuleRun,
    RuleGroupAborted,
    EntityOutcome,
    OutcomeStatus
)

from chama.services.scheduler import (
    Scheduler,
    RunRecord,
    SchedulerBusyError
)

from chama.services.automation_service import (
    trigger_daily_rules,
    trigger_weekly_rules,
    trigger_monthly_rules,
    trigger_morning_reminders,
    trigger_evening_reminders,
    get_status,
    recent_logs
)

from chama.services.ledger_service import (
    register_member,
    record_saving,
    create_loan,
    approve_loan,
    reject_loan,
    mark_loan_paid,
    add_manual_fine,
    pay_fine,
    savings_leaderboard,
    member_stats,
    LedgerServiceError
)

from chama.services.notifier import NotifierError
