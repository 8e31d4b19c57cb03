import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_float(name, default):
    return float(os.environ.get(name, default))


def _env_int(name, default):
    return int(os.environ.get(name, default))


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here-make-it-long'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'chama.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # ===== AUTOMATION: AMOUNTS & RATES =====
    AUTOMATION_INTEREST_RATE = _env_float('AUTOMATION_INTEREST_RATE', 0.10)
    AUTOMATION_WEEKLY_PENALTY = _env_float('AUTOMATION_WEEKLY_PENALTY', 50)
    AUTOMATION_OVERDUE_FINE = _env_float('AUTOMATION_OVERDUE_FINE', 50)
    AUTOMATION_INACTIVITY_FINE = _env_float('AUTOMATION_INACTIVITY_FINE', 100)
    AUTOMATION_MISSED_SAVING_FINE = _env_float('AUTOMATION_MISSED_SAVING_FINE', 50)
    AUTOMATION_REMINDER_AMOUNT = _env_float('AUTOMATION_REMINDER_AMOUNT', 30)

    # ===== AUTOMATION: WINDOWS =====
    AUTOMATION_INACTIVITY_DAYS = _env_int('AUTOMATION_INACTIVITY_DAYS', 90)
    AUTOMATION_LOAN_TERM_DAYS = _env_int('AUTOMATION_LOAN_TERM_DAYS', 30)
    AUTOMATION_SAVING_WINDOW_DAYS = _env_int('AUTOMATION_SAVING_WINDOW_DAYS', 7)
    AUTOMATION_MEETING_WEEKDAY = _env_int('AUTOMATION_MEETING_WEEKDAY', 1)  # Monday=0, Tuesday=1

    # ===== AUTOMATION: SCHEDULE =====
    AUTOMATION_TIMEZONE = os.environ.get('AUTOMATION_TIMEZONE', 'Africa/Nairobi')
    AUTOMATION_DAILY_AT = os.environ.get('AUTOMATION_DAILY_AT', '06:00')
    AUTOMATION_WEEKLY_AT = os.environ.get('AUTOMATION_WEEKLY_AT', '08:00')
    AUTOMATION_WEEKLY_WEEKDAY = _env_int('AUTOMATION_WEEKLY_WEEKDAY', 0)
    AUTOMATION_MONTHLY_AT = os.environ.get('AUTOMATION_MONTHLY_AT', '09:00')
    AUTOMATION_MONTHLY_DAY = _env_int('AUTOMATION_MONTHLY_DAY', 1)
    AUTOMATION_MORNING_REMINDER_AT = os.environ.get('AUTOMATION_MORNING_REMINDER_AT', '08:00')
    AUTOMATION_EVENING_REMINDER_AT = os.environ.get('AUTOMATION_EVENING_REMINDER_AT', '20:00')
    AUTOMATION_POLL_SECONDS = _env_float('AUTOMATION_POLL_SECONDS', 30)

    # ===== AUTOMATION: RESILIENCE =====
    AUTOMATION_MAX_RETRIES = _env_int('AUTOMATION_MAX_RETRIES', 3)
    AUTOMATION_RETRY_BACKOFF = _env_float('AUTOMATION_RETRY_BACKOFF', 0.5)
    AUTOMATION_ENTITY_TIMEOUT = _env_float('AUTOMATION_ENTITY_TIMEOUT', 10)
    AUTOMATION_EVENT_TRACE_LIMIT = _env_int('AUTOMATION_EVENT_TRACE_LIMIT', 1000)

    # ===== BACKGROUND WORKERS =====
    AUTOMATION_SCHEDULER_ENABLED = _env_bool('AUTOMATION_SCHEDULER_ENABLED', True)
    AUTOMATION_WATCHER_ENABLED = _env_bool('AUTOMATION_WATCHER_ENABLED', True)
    NOTIFIER_ASYNC = _env_bool('NOTIFIER_ASYNC', True)


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOGIN_DISABLED = True
    AUTOMATION_RETRY_BACKOFF = 0
    AUTOMATION_ENTITY_TIMEOUT = 1
    AUTOMATION_SCHEDULER_ENABLED = False
    AUTOMATION_WATCHER_ENABLED = False
    NOTIFIER_ASYNC = False
