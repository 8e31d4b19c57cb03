"""
NOTIFIER
========

Payment confirmations and reminders for members.

Delivery is fire-and-forget: ledger changes are committed BEFORE any
notification goes out, and a failed notification is logged, never
raised back into the caller and never rolled back into the ledger.
Provider wire formats (SMS gateway, M-PESA push prompts) live behind
the Notifier interface and are out of scope here.
"""

import logging

logger = logging.getLogger(__name__)


class NotifierError(Exception):
    """Raised by a notifier when a message could not be delivered"""
    pass


# ============================================================
# MESSAGE TEXT
# ============================================================

def payment_confirmation_text(name, amount, payment_type, new_balance):
    return (
        f"Dear {name}, payment of Ksh {amount:,.0f} for {payment_type} received successfully! "
        f"Your new balance: Ksh {new_balance:,.0f}. Thank you!"
    )


def reminder_text(name, amount, payment_type, days_late=0):
    urgency = 'URGENT: ' if days_late > 7 else ''
    return (
        f"{urgency}Reminder {name}! Please settle Ksh {amount:,.0f} ({payment_type}). "
        f"Thank you!"
    )


# ============================================================
# NOTIFIERS
# ============================================================

class Notifier:
    """Interface every delivery channel implements."""

    def notify_payment_confirmation(self, member, amount, payment_type, new_balance):
        raise NotImplementedError

    def notify_reminder(self, member, amount, payment_type, days_late=0):
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Simulated SMS channel: writes the message that would be sent to the log."""

    def __init__(self):
        self.sent = []

    def _send(self, phone, message):
        if not phone:
            raise NotifierError("Member has no phone number")
        logger.info("SIMULATED SMS to %s: %s", phone, message)
        self.sent.append((phone, message))

    def notify_payment_confirmation(self, member, amount, payment_type, new_balance):
        self._send(member.phone, payment_confirmation_text(member.name, amount, payment_type, new_balance))

    def notify_reminder(self, member, amount, payment_type, days_late=0):
        self._send(member.phone, reminder_text(member.name, amount, payment_type, days_late))


# ============================================================
# DISPATCHER
# ============================================================

class NotificationDispatcher:
    """
    Calls a Notifier without letting it affect the caller.

    With an executor the call runs in the background; without one it runs
    inline. Either way exceptions are caught and logged.
    """

    def __init__(self, notifier, executor=None):
        self.notifier = notifier
        self.executor = executor

    def payment_confirmation(self, member, amount, payment_type, new_balance):
        self._dispatch('payment confirmation', member.member_code,
                       self.notifier.notify_payment_confirmation,
                       _snapshot(member), amount, payment_type, new_balance)

    def reminder(self, member, amount, payment_type, days_late=0):
        self._dispatch('reminder', member.member_code,
                       self.notifier.notify_reminder,
                       _snapshot(member), amount, payment_type, days_late)

    def _dispatch(self, what, member_code, fn, *args):
        if self.executor is None:
            _deliver(what, member_code, fn, *args)
            return
        try:
            self.executor.submit(_deliver, what, member_code, fn, *args)
        except RuntimeError as e:
            # executor already shut down
            logger.error("Could not queue %s for %s: %s", what, member_code, e)

    def shutdown(self):
        if self.executor is not None:
            self.executor.shutdown(wait=True)


class MemberContact:
    """Detached copy of the fields a notifier needs; safe to use off-session."""

    def __init__(self, member_id, member_code, name, phone, email):
        self.id = member_id
        self.member_code = member_code
        self.name = name
        self.phone = phone
        self.email = email

    def __repr__(self):
        return f'<MemberContact {self.member_code}>'


def _snapshot(member):
    return MemberContact(member.id, member.member_code, member.name, member.phone, member.email)


def _deliver(what, member_code, fn, *args):
    try:
        fn(*args)
    except NotifierError as e:
        logger.warning("Notifier could not deliver %s to %s: %s", what, member_code, e)
    except Exception:
        logger.exception("Unexpected notifier failure for %s to %s", what, member_code)
