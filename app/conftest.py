"""
Root pytest configuration for the Django project.

This module configures pytest-django and provides project-wide fixtures.
App-specific fixtures are defined in each app's tests/conftest.py.
"""

import os
import time

import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django and Celery for the test run."""
    django.setup()

    from django.conf import settings

    from config.celery import app as celery_app

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Plain caching stays in-process; escrow locks use the fake_redis fixture
    settings.CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}

    # Use fast password hasher for tests
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Run .delay() inline; no broker in tests
    # Keys use the CELERY_ namespace the app was configured with
    celery_app.conf.update(CELERY_TASK_ALWAYS_EAGER=True, CELERY_TASK_EAGER_PROPAGATES=False)


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full booking journeys)
    - test_views.py, test_tasks.py, test_orchestrator.py, etc. → integration
    - test_models.py, test_pricing.py, test_cancellation.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_services.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_orchestrator.py",
        "test_escrow_ledger.py",
        "test_premium_scheduler.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_money.py",
        "test_pricing.py",
        "test_cancellation.py",
        "test_stripe_adapter.py",
        "test_locks.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split(os.sep)[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Redis
# =============================================================================


class FakeRedis:
    """
    In-memory stand-in for the redis-py client used by DistributedLock.

    Supports SET NX EX, GET, DELETE and the two Lua scripts the lock
    evaluates (compare-and-delete, compare-and-expire).
    """

    def __init__(self):
        self.store: dict[str, tuple[str, float | None]] = {}

    def _purge(self, key):
        entry = self.store.get(key)
        if entry and entry[1] is not None and entry[1] <= time.monotonic():
            del self.store[key]

    def set(self, key, value, nx=False, ex=None):
        self._purge(key)
        if nx and key in self.store:
            return None
        expires = time.monotonic() + ex if ex else None
        self.store[key] = (str(value), expires)
        return True

    def get(self, key):
        self._purge(key)
        entry = self.store.get(key)
        return entry[0].encode() if entry else None

    def delete(self, key):
        return 1 if self.store.pop(key, None) else 0

    def eval(self, script, numkeys, key, token, *args):
        self._purge(key)
        entry = self.store.get(key)
        if not entry or entry[0] != str(token):
            return 0
        if "del" in script:
            del self.store[key]
            return 1
        self.store[key] = (entry[0], time.monotonic() + int(args[0]))
        return 1


@pytest.fixture(autouse=True)
def fake_redis(mocker):
    """Route distributed locks to an in-memory Redis for every test."""
    client = FakeRedis()
    mocker.patch("payments.locks.get_redis_connection", return_value=client)
    return client


@pytest.fixture(scope="session")
def django_db_modify_db_settings():
    """Allow database modifications for testing."""
    pass
