"""Pytest configuration and fixtures for the chama automation tests."""

import pytest

from chama import create_app
from chama.extensions import db
from config import TestConfig
from tests.factories import FrozenClock, RecordingNotifier, TUESDAY_MORNING


# =============================================================================
# Pytest configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "rules: automated financial rule tests")
    config.addinivalue_line("markers", "scenario: end-to-end ledger scenarios")
    config.addinivalue_line("markers", "concurrency: locking and mutual exclusion tests")


# =============================================================================
# Clock & notifier fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Frozen clock starting on a Tuesday (meeting day) morning in Nairobi."""
    return FrozenClock(now=TUESDAY_MORNING)


@pytest.fixture
def notifier():
    return RecordingNotifier()


# =============================================================================
# Application fixtures
# =============================================================================

@pytest.fixture
def app(clock, notifier):
    """App on in-memory SQLite with background threads disabled."""
    app = create_app(TestConfig, clock=clock, notifier=notifier)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    db.drop_all()
    app.extensions['automation'].shutdown()
    ctx.pop()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runtime(app):
    return app.extensions['automation']


@pytest.fixture
def settings(runtime):
    return runtime.settings


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def bus(runtime):
    return runtime.bus


@pytest.fixture
def audit(runtime):
    return runtime.audit


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def watcher(runtime):
    return runtime.watcher


@pytest.fixture
def scheduler(runtime):
    return runtime.scheduler
