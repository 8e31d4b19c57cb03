"""
RULE ENGINE
===========

The automated financial rules, each idempotent per rule period key:

  Rule                      Period   Action type       Key
  ------------------------  -------  ----------------  ---------------------
  overdue_detection         daily    overdue-flag      loan:<id>
  weekly_interest           weekly   weekly-interest   loan:<id>:<ISO week>
  weekly_penalty            weekly   weekly-penalty    loan:<id>:<ISO week>
  inactivity_detection      daily    inactivity-flag   member:<id>:<ISO day>
  missed_savings_detection  daily*   missed-saving     member:<id>:<ISO week>
  monthly_report            monthly  monthly-report    report:<YYYY-MM>
  morning_savings_reminder  daily    savings-reminder  member:<id>:<ISO day>:morning
  evening_savings_reminder  daily    savings-reminder  member:<id>:<ISO day>:evening

  * only on the meeting weekday

CRITICAL RULES:
1. Each entity is handled in ONE entity transaction: re-read, check the
   audit log, mutate, append fine, append audit entry, commit.
2. One entity's failure never stops its siblings; every entity gets an
   EntityOutcome (succeeded / skipped / failed).
3. A store that is down at batch start aborts the batch before any
   entity is touched (StoreUnavailableError propagates). In a group run
   the rules that already finished keep their RuleRuns; they travel
   with the RuleGroupAborted error.
4. Notifications go out only after the entity's commit.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from chama.models import (
    Fine, MonthlyReport, LoanStatus, MemberStatus, FineType, ActionType, utcnow
)
from chama.services.audit_log import (
    iso_week, iso_day, month_label, local_day_bounds, to_local, to_storage,
    loan_period_key, member_period_key, report_period_key
)
from chama.services.event_bus import EntityType
from chama.services.ledger_store import (
    LedgerError, TransientStoreError, ValidationError, ConcurrencyConflict,
    DuplicateActionError, StoreUnavailableError, loan_key, member_key, report_key
)
from chama.services.notifier import MemberContact

logger = logging.getLogger(__name__)


# ============================================================
# OUTCOMES
# ============================================================

class OutcomeStatus:
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class EntityOutcome:
    entity_type: str
    entity_id: object
    status: str
    detail: str = ""
    attempts: int = 1
    needs_review: bool = False

    def to_dict(self):
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status,
            "detail": self.detail,
            "attempts": self.attempts,
            "needs_review": self.needs_review,
        }


@dataclass
class RuleRun:
    rule: str
    as_of: datetime
    outcomes: List[EntityOutcome] = field(default_factory=list)
    cancelled: bool = False
    note: str = ""
    error: Optional[str] = None

    def _with(self, status):
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self):
        return self._with(OutcomeStatus.SUCCEEDED)

    @property
    def skipped(self):
        return self._with(OutcomeStatus.SKIPPED)

    @property
    def failed(self):
        return self._with(OutcomeStatus.FAILED)

    def outcome_for(self, entity_id):
        for outcome in self.outcomes:
            if outcome.entity_id == entity_id:
                return outcome
        return None

    def summary(self):
        return {
            "succeeded": len(self.succeeded),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }

    def to_dict(self):
        return {
            "rule": self.rule,
            "as_of": self.as_of.isoformat(),
            "cancelled": self.cancelled,
            "note": self.note,
            "error": self.error,
            "summary": self.summary(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class AlreadyApplied(Exception):
    """The audit log (or entity state) shows this period was already handled"""
    pass


class NotEligible(Exception):
    """Fresh state no longer matches the rule's selection predicate"""
    pass


class RuleGroupAborted(StoreUnavailableError):
    """A group stopped because the store was unreachable; `runs` holds what did run."""

    def __init__(self, message, runs=()):
        super().__init__(message)
        self.runs = tuple(runs)


# ============================================================
# RULE GROUPS
# ============================================================

class RuleGroup(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MORNING_REMINDER = "morning-reminder"
    EVENING_REMINDER = "evening-reminder"


OVERDUE_DETECTION = "overdue_detection"
WEEKLY_INTEREST = "weekly_interest"
WEEKLY_PENALTY = "weekly_penalty"
INACTIVITY_DETECTION = "inactivity_detection"
MISSED_SAVINGS_DETECTION = "missed_savings_detection"
MONTHLY_REPORT = "monthly_report"
MORNING_SAVINGS_REMINDER = "morning_savings_reminder"
EVENING_SAVINGS_REMINDER = "evening_savings_reminder"

RULE_ORDER = (
    OVERDUE_DETECTION,
    WEEKLY_INTEREST,
    WEEKLY_PENALTY,
    INACTIVITY_DETECTION,
    MISSED_SAVINGS_DETECTION,
    MONTHLY_REPORT,
    MORNING_SAVINGS_REMINDER,
    EVENING_SAVINGS_REMINDER,
)

GROUP_RULES = {
    RuleGroup.DAILY: (OVERDUE_DETECTION, INACTIVITY_DETECTION, MISSED_SAVINGS_DETECTION),
    RuleGroup.WEEKLY: (WEEKLY_INTEREST, WEEKLY_PENALTY),
    RuleGroup.MONTHLY: (MONTHLY_REPORT,),
    RuleGroup.MORNING_REMINDER: (MORNING_SAVINGS_REMINDER,),
    RuleGroup.EVENING_REMINDER: (EVENING_SAVINGS_REMINDER,),
}

REMINDER_SLOTS = {
    MORNING_SAVINGS_REMINDER: "morning",
    EVENING_SAVINGS_REMINDER: "evening",
}


# ============================================================
# ENGINE
# ============================================================

class RuleEngine:
    def __init__(self, store, audit, settings, dispatcher=None, clock=utcnow, sleep=time.sleep):
        self.store = store
        self.audit = audit
        self.settings = settings
        self.dispatcher = dispatcher
        self._clock = clock
        self._sleep = sleep
        self._rules = {
            OVERDUE_DETECTION: self.detect_overdue_loans,
            WEEKLY_INTEREST: self.apply_weekly_interest,
            WEEKLY_PENALTY: self.apply_weekly_penalties,
            INACTIVITY_DETECTION: self.detect_inactive_members,
            MISSED_SAVINGS_DETECTION: self.detect_missed_savings,
            MONTHLY_REPORT: self.generate_monthly_report,
            MORNING_SAVINGS_REMINDER: self.send_morning_reminders,
            EVENING_SAVINGS_REMINDER: self.send_evening_reminders,
        }

    @property
    def rule_names(self):
        return RULE_ORDER

    def run(self, rule, as_of=None, cancel=None):
        if rule not in self._rules:
            raise KeyError(f"Unknown rule {rule!r}")
        return self._rules[rule](as_of=as_of, cancel=cancel)

    def run_group(self, group, as_of=None, cancel=None):
        """
        Run a group's rules in fixed order; returns one RuleRun per rule started.

        If a rule finds the store unreachable the group stops there and
        RuleGroupAborted carries the finished runs plus an errored RuleRun
        for the rule that could not start.
        """
        group = RuleGroup(group)
        as_of = self._as_of(as_of)
        runs = []
        for rule in GROUP_RULES[group]:
            if cancel is not None and cancel.is_set():
                logger.warning("%s group cancelled before %s", group.value, rule)
                break
            try:
                runs.append(self.run(rule, as_of=as_of, cancel=cancel))
            except StoreUnavailableError as e:
                logger.error("%s group stopped at %s, ledger store unavailable: %s",
                             group.value, rule, e)
                runs.append(RuleRun(rule=rule, as_of=as_of, note="ledger store unavailable",
                                    error=str(e)))
                raise RuleGroupAborted(str(e), runs) from e
        return runs

    # ------------------------------------------------------------
    # OVERDUE DETECTION (daily)
    # ------------------------------------------------------------

    def detect_overdue_loans(self, as_of=None, cancel=None):
        as_of = self._as_of(as_of)
        self.store.ping()
        candidates = [loan.id for loan in self.store.find_overdue_candidate_loans(as_of)]
        return self._batch(OVERDUE_DETECTION, as_of, EntityType.LOAN, candidates,
                           self._flag_overdue_loan, cancel)

    def _flag_overdue_loan(self, loan_id, as_of):
        key = loan_period_key(loan_id)
        fine_amount = self.settings.overdue_fine
        with self.store.entity_transaction(loan_key(loan_id)):
            loan = self._load_loan(loan_id)
            if loan.is_overdue or self.audit.exists(ActionType.OVERDUE_FLAG, key):
                raise AlreadyApplied(f"loan {loan_id} already flagged overdue")
            if not loan.is_past_due(as_of):
                raise NotEligible(f"loan {loan_id} is not past due")

            loan.is_overdue = True
            loan.accrue_penalty(fine_amount)
            self.store.update_loan(loan)
            self.store.append_fine(Fine(
                member_id=loan.member_id,
                loan_id=loan.id,
                amount=fine_amount,
                reason=f"Late loan repayment - Loan {loan.id}",
                fine_type=FineType.AUTO_PENALTY.value,
                created_at=as_of,
            ))
            self.audit.record(
                ActionType.OVERDUE_FLAG, key,
                f"Loan {loan.id} overdue since {loan.due_date:%Y-%m-%d}; fine Ksh {fine_amount:,.0f}",
                member_id=loan.member_id, loan_id=loan.id, amount=fine_amount, at=as_of,
            )
            contact = _contact(loan.member)
            outstanding, days_late = loan.current_amount, loan.days_late(as_of)

        self._remind(contact, outstanding, "loan", days_late)
        return f"flagged overdue ({days_late} day(s) late), fine Ksh {fine_amount:,.0f}"

    # ------------------------------------------------------------
    # WEEKLY INTEREST (weekly)
    # ------------------------------------------------------------

    def apply_weekly_interest(self, as_of=None, cancel=None):
        as_of = self._as_of(as_of)
        self.store.ping()
        candidates = [loan.id for loan in self.store.find_active_approved_loans()]
        return self._batch(WEEKLY_INTEREST, as_of, EntityType.LOAN, candidates,
                           self._accrue_interest, cancel)

    def _accrue_interest(self, loan_id, as_of):
        week = iso_week(as_of, self.settings.tz)
        key = loan_period_key(loan_id, week)
        with self.store.entity_transaction(loan_key(loan_id)):
            if self.audit.exists(ActionType.WEEKLY_INTEREST, key):
                raise AlreadyApplied(f"interest for {week} already applied")
            loan = self._load_loan(loan_id)
            if loan.status != LoanStatus.APPROVED.value or loan.is_overdue:
                raise NotEligible(f"loan {loan_id} is {loan.status}, overdue={loan.is_overdue}")

            interest = loan.accrue_interest(self.settings.interest_rate)
            self.store.update_loan(loan)
            self.audit.record(
                ActionType.WEEKLY_INTEREST, key,
                f"{self.settings.interest_rate:.0%} interest on Loan {loan.id}: "
                f"Ksh {interest:,.2f} -> Ksh {loan.current_amount:,.2f}",
                member_id=loan.member_id, loan_id=loan.id, amount=interest, at=as_of,
            )
        return f"interest Ksh {interest:,.2f} for {week}"

    # ------------------------------------------------------------
    # WEEKLY PENALTY (weekly)
    # ------------------------------------------------------------

    def apply_weekly_penalties(self, as_of=None, cancel=None):
        as_of = self._as_of(as_of)
        self.store.ping()
        candidates = [loan.id for loan in self.store.find_overdue_loans()]
        return self._batch(WEEKLY_PENALTY, as_of, EntityType.LOAN, candidates,
                           self._charge_weekly_penalty, cancel)

    def _charge_weekly_penalty(self, loan_id, as_of):
        week = iso_week(as_of, self.settings.tz)
        key = loan_period_key(loan_id, week)
        penalty = self.settings.weekly_penalty
        with self.store.entity_transaction(loan_key(loan_id)):
            if self.audit.exists(ActionType.WEEKLY_PENALTY, key):
                raise AlreadyApplied(f"penalty for {week} already charged")
            loan = self._load_loan(loan_id)
            if loan.status != LoanStatus.APPROVED.value or not loan.is_overdue:
                raise NotEligible(f"loan {loan_id} is {loan.status}, overdue={loan.is_overdue}")

            loan.accrue_penalty(penalty)
            self.store.update_loan(loan)
            self.store.append_fine(Fine(
                member_id=loan.member_id,
                loan_id=loan.id,
                amount=penalty,
                reason=f"Weekly late penalty - Loan {loan.id} ({week})",
                fine_type=FineType.AUTO_PENALTY.value,
                created_at=as_of,
            ))
            self.audit.record(
                ActionType.WEEKLY_PENALTY, key,
                f"Weekly penalty Ksh {penalty:,.0f} on overdue Loan {loan.id}",
                member_id=loan.member_id, loan_id=loan.id, amount=penalty, at=as_of,
            )
        return f"penalty Ksh {penalty:,.0f} for {week}"

    # ------------------------------------------------------------
    # INACTIVITY DETECTION (daily)
    # ------------------------------------------------------------

    def detect_inactive_members(self, as_of=None, cancel=None):
        as_of = self._as_of(as_of)
        self.store.ping()
        candidates = [
            member.id for member in
            self.store.find_inactive_candidate_members(self.settings.inactivity_days, as_of)
        ]
        return self._batch(INACTIVITY_DETECTION, as_of, EntityType.MEMBER, candidates,
                           self._flag_inactive_member, cancel)

    def _flag_inactive_member(self, member_id, as_of):
        key = member_period_key(member_id, iso_day(as_of, self.settings.tz))
        fine_amount = self.settings.inactivity_fine
        cutoff = as_of - timedelta(days=self.settings.inactivity_days)
        with self.store.entity_transaction(member_key(member_id)):
            if self.audit.exists(ActionType.INACTIVITY_FLAG, key):
                raise AlreadyApplied(f"member {member_id} already flagged today")
            member = self._load_member(member_id)
            if not member.is_active:
                raise NotEligible(f"member {member_id} already inactive")
            last_seen = member.last_activity_at or member.created_at
            if last_seen >= cutoff:
                raise NotEligible(f"member {member_id} active since {last_seen:%Y-%m-%d}")

            member.is_active = False
            self.store.update_member(member)
            self.store.append_fine(Fine(
                member_id=member.id,
                amount=fine_amount,
                reason=f"Inactivity for {self.settings.inactivity_days}+ days",
                fine_type=FineType.AUTO_INACTIVITY.value,
                created_at=as_of,
            ))
            self.audit.record(
                ActionType.INACTIVITY_FLAG, key,
                f"Member {member.member_code} inactive since {last_seen:%Y-%m-%d}; "
                f"fine Ksh {fine_amount:,.0f}",
                member_id=member.id, amount=fine_amount, at=as_of,
            )
        return f"flagged inactive, fine Ksh {fine_amount:,.0f}"

    # ------------------------------------------------------------
    # MISSED SAVINGS DETECTION (daily, meeting day only)
    # ------------------------------------------------------------

    def detect_missed_savings(self, as_of=None, cancel=None):
        as_of = self._as_of(as_of)
        local = to_local(as_of, self.settings.tz)
        if local.weekday() != self.settings.meeting_weekday:
            return RuleRun(rule=MISSED_SAVINGS_DETECTION, as_of=as_of,
                           note=f"{local:%A} is not a meeting day")
        self.store.ping()
        candidates = [member.id for member in self.store.find_active_members()]
        return self._batch(MISSED_SAVINGS_DETECTION, as_of, EntityType.MEMBER, candidates,
                           self._fine_missed_saving, cancel)

    def _fine_missed_saving(self, member_id, as_of):
        week = iso_week(as_of, self.settings.tz)
        key = member_period_key(member_id, week)
        fine_amount = self.settings.missed_saving_fine
        window = self.settings.saving_window
        with self.store.entity_transaction(member_key(member_id)):
            if self.audit.exists(ActionType.MISSED_SAVING, key):
                raise AlreadyApplied(f"missed saving for {week} already fined")
            member = self._load_member(member_id)
            if not member.is_active:
                raise NotEligible(f"member {member_id} is inactive")
            last = self.store.find_last_saving(member_id, as_of=as_of)
            if last is not None and as_of - last.timestamp <= window:
                raise NotEligible(f"saved on {last.timestamp:%Y-%m-%d}")

            self.store.append_fine(Fine(
                member_id=member.id,
                amount=fine_amount,
                reason="Missed weekly savings contribution",
                fine_type=FineType.AUTO_MISSED_SAVING.value,
                created_at=as_of,
            ))
            self.audit.record(
                ActionType.MISSED_SAVING, key,
                f"Member {member.member_code} missed savings for {week}; fine Ksh {fine_amount:,.0f}",
                member_id=member.id, amount=fine_amount, at=as_of,
            )
            contact = _contact(member)
            days_since = (as_of - last.timestamp).days if last is not None else window.days

        self._remind(contact, fine_amount, "savings", days_since)
        return f"missed saving fine Ksh {fine_amount:,.0f}"

    # ------------------------------------------------------------
    # MONTHLY REPORT (monthly)
    # ------------------------------------------------------------

    def generate_monthly_report(self, as_of=None, cancel=None):
        as_of = self._as_of(as_of)
        self.store.ping()
        start, _ = self._prior_month(as_of)
        label = month_label(start, self.settings.tz)
        return self._batch(MONTHLY_REPORT, as_of, "report", [label],
                           self._build_report, cancel)

    def _prior_month(self, as_of):
        """[start, end) of the calendar month before as_of, as naive UTC."""
        local = to_local(as_of, self.settings.tz)
        this_month = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        prev_month = (this_month - timedelta(days=1)).replace(day=1)
        # rebuild through the zone so a DST shift between months is respected
        tz = self.settings.tz
        start = datetime(prev_month.year, prev_month.month, 1, tzinfo=tz)
        end = datetime(this_month.year, this_month.month, 1, tzinfo=tz)
        return to_storage(start), to_storage(end)

    def _build_report(self, label, as_of):
        key = report_period_key(label)
        start, end = self._prior_month(as_of)
        with self.store.entity_transaction(report_key(label)):
            if self.audit.exists(ActionType.MONTHLY_REPORT, key) or self.store.find_report(label):
                raise AlreadyApplied(f"report {label} already generated")

            totals = self.store.summarize_period(start, end)
            self.store.save_report(MonthlyReport(
                report_month=label,
                period_start=start,
                period_end=end,
                generated_at=as_of,
                **totals
            ))
            self.audit.record(
                ActionType.MONTHLY_REPORT, key,
                f"Monthly report {label}: savings Ksh {totals['total_savings']:,.0f}, "
                f"loans Ksh {totals['loans_approved_amount']:,.0f}, "
                f"fines Ksh {totals['fines_issued_amount']:,.0f}",
                amount=totals['total_savings'], at=as_of,
            )
        return f"report {label} generated"

    # ------------------------------------------------------------
    # SAVINGS REMINDERS (daily, morning and evening slots)
    # ------------------------------------------------------------

    def send_morning_reminders(self, as_of=None, cancel=None):
        return self._savings_reminders(MORNING_SAVINGS_REMINDER, as_of, cancel)

    def send_evening_reminders(self, as_of=None, cancel=None):
        return self._savings_reminders(EVENING_SAVINGS_REMINDER, as_of, cancel)

    def _savings_reminders(self, rule, as_of, cancel):
        as_of = self._as_of(as_of)
        slot = REMINDER_SLOTS[rule]
        self.store.ping()
        candidates = [member.id for member in self.store.find_approved_members()]

        def handler(member_id, at):
            return self._prompt_saving(member_id, at, slot)

        return self._batch(rule, as_of, EntityType.MEMBER, candidates, handler, cancel)

    def _prompt_saving(self, member_id, as_of, slot):
        day = iso_day(as_of, self.settings.tz)
        key = member_period_key(member_id, f"{day}:{slot}")
        amount = self.settings.reminder_amount
        start, end = local_day_bounds(as_of, self.settings.tz)
        with self.store.entity_transaction(member_key(member_id)):
            if self.audit.exists(ActionType.SAVINGS_REMINDER, key):
                raise AlreadyApplied(f"{slot} reminder for {day} already sent")
            member = self._load_member(member_id)
            if member.status != MemberStatus.APPROVED.value:
                raise NotEligible(f"member {member_id} is {member.status}")
            if self.store.has_saving_between(member_id, start, end):
                raise NotEligible(f"member {member_id} already saved on {day}")

            self.audit.record(
                ActionType.SAVINGS_REMINDER, key,
                f"Sent {slot} Ksh {amount:,.0f} savings prompt to {member.member_code}",
                member_id=member.id, amount=amount, at=as_of,
            )
            contact = _contact(member)

        self._remind(contact, amount, "savings")
        return f"{slot} savings prompt Ksh {amount:,.0f}"

    # ------------------------------------------------------------
    # BATCH PLUMBING
    # ------------------------------------------------------------

    def _as_of(self, as_of):
        return to_storage(as_of) if as_of is not None else self._clock()

    def _batch(self, rule, as_of, entity_type, entity_ids, handler, cancel):
        run = RuleRun(rule=rule, as_of=as_of)
        logger.info("%s: %d candidate(s) as of %s", rule, len(entity_ids), as_of.isoformat())
        for entity_id in entity_ids:
            if cancel is not None and cancel.is_set():
                run.cancelled = True
                logger.warning("%s cancelled after %d of %d entities",
                               rule, len(run.outcomes), len(entity_ids))
                break
            run.outcomes.append(self._process_entity(rule, entity_type, entity_id, handler, as_of))
        logger.info("%s finished: %s", rule, run.summary())
        return run

    def _process_entity(self, rule, entity_type, entity_id, handler, as_of):
        attempts = 0
        conflicts = 0
        while True:
            attempts += 1
            try:
                detail = handler(entity_id, as_of)
                return EntityOutcome(entity_type, entity_id, OutcomeStatus.SUCCEEDED, detail, attempts)

            except (AlreadyApplied, DuplicateActionError) as e:
                logger.debug("%s %s %s skipped: %s", rule, entity_type, entity_id, e)
                return EntityOutcome(entity_type, entity_id, OutcomeStatus.SKIPPED,
                                     f"already applied: {e}", attempts)

            except NotEligible as e:
                return EntityOutcome(entity_type, entity_id, OutcomeStatus.SKIPPED,
                                     f"not eligible: {e}", attempts)

            except ValidationError as e:
                logger.warning("%s: invalid %s %s skipped: %s", rule, entity_type, entity_id, e)
                return EntityOutcome(entity_type, entity_id, OutcomeStatus.SKIPPED,
                                     f"invalid: {e}", attempts)

            except ConcurrencyConflict as e:
                conflicts += 1
                if conflicts == 1:
                    logger.info("%s: %s %s changed underneath us, re-fetching", rule, entity_type, entity_id)
                    continue
                logger.warning("%s: %s %s conflicted twice, flagged for manual review",
                               rule, entity_type, entity_id)
                self._flag_for_review(rule, entity_type, entity_id, as_of, str(e))
                return EntityOutcome(entity_type, entity_id, OutcomeStatus.SKIPPED,
                                     f"conflict: {e}", attempts, needs_review=True)

            except TransientStoreError as e:
                if attempts > self.settings.max_retries:
                    logger.error("%s: %s %s failed after %d attempts: %s",
                                 rule, entity_type, entity_id, attempts, e)
                    return EntityOutcome(entity_type, entity_id, OutcomeStatus.FAILED,
                                         f"transient error: {e}", attempts)
                logger.info("%s: transient error on %s %s (attempt %d): %s",
                            rule, entity_type, entity_id, attempts, e)
                self._sleep(self.settings.retry_backoff * attempts)

            except Exception as e:
                logger.exception("%s: %s %s failed", rule, entity_type, entity_id)
                return EntityOutcome(entity_type, entity_id, OutcomeStatus.FAILED,
                                     f"error: {e}", attempts)

    def _flag_for_review(self, rule, entity_type, entity_id, as_of, reason):
        key = f"{rule}:{entity_type}:{entity_id}:{iso_day(as_of, self.settings.tz)}"
        try:
            with self.store.entity_transaction((entity_type, entity_id)):
                if self.audit.exists(ActionType.MANUAL_REVIEW, key):
                    return
                self.audit.record(
                    ActionType.MANUAL_REVIEW, key,
                    f"{rule} could not update {entity_type} {entity_id}: {reason}"[:255],
                    member_id=entity_id if entity_type == EntityType.MEMBER else None,
                    loan_id=entity_id if entity_type == EntityType.LOAN else None,
                    at=as_of,
                )
        except LedgerError as e:
            logger.error("Could not record manual review for %s %s: %s", entity_type, entity_id, e)

    def _load_loan(self, loan_id):
        loan = self.store.get_loan(loan_id)
        if loan is None:
            raise NotEligible(f"loan {loan_id} no longer exists")
        if loan.principal_amount is None or loan.current_amount is None or loan.current_amount < 0:
            raise ValidationError(f"loan {loan_id} has invalid amounts")
        return loan

    def _load_member(self, member_id):
        member = self.store.get_member(member_id)
        if member is None:
            raise NotEligible(f"member {member_id} no longer exists")
        return member

    def _remind(self, contact, amount, payment_type, days_late=0):
        if self.dispatcher is None or contact is None:
            return
        self.dispatcher.reminder(contact, amount, payment_type, days_late)


def _contact(member) -> Optional[MemberContact]:
    if member is None:
        return None
    return MemberContact(member.id, member.member_code, member.name, member.phone, member.email)
