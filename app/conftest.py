"""
Project-wide pytest configuration.

This module:
- Tunes Django settings for tests (no throttling, fast hasher, eager Celery)
- Resets shared state between tests (cache, channel layer, hub, typing)
- Auto-marks tests as unit/integration/e2e by filename
"""

import pytest


def pytest_configure():
    """Adjust settings once Django is configured."""
    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Use fast password hasher for tests (PBKDF2 is too slow with 870K iterations)
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    # Purge tasks run inline so their effects are observable in the test
    from config.celery import app as celery_app

    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True

    if settings.DATABASES["default"]["ENGINE"] == "django.db.backends.postgresql":
        _patch_postgresql_flush_for_cascade()


@pytest.fixture(autouse=True)
def reset_realtime_state():
    """
    Give every test an empty cache, channel layer, hub and typing coordinator.

    The participant cache is keyed by conversation id, and SQLite reuses
    ids after a rolled-back test, so stale entries would leak across tests.
    """
    from asgiref.sync import async_to_sync
    from channels.layers import get_channel_layer
    from django.apps import apps
    from django.core.cache import cache

    cache.clear()
    layer = get_channel_layer()
    chat_config = apps.get_app_config("chat")
    chat_config.hub.reset()
    chat_config.typing.reset()
    async_to_sync(layer.flush)()
    yield
    chat_config.hub.reset()
    chat_config.typing.reset()
    async_to_sync(layer.flush)()


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full user journey workflows)
    - test_views.py, test_services.py, test_tasks.py, test_consumers.py → integration
    - everything else (models, events, hub, client core) → unit

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_services.py",
        "test_tasks.py",
        "test_consumers.py",
        "test_middleware.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


def _patch_postgresql_flush_for_cascade():
    """
    Patch PostgreSQL flush to always use CASCADE.

    Push channel tests use transactional databases (the consumer runs its
    queries in another thread), and Django's TransactionTestCase flushes
    with TRUNCATE, which fails on FK constraints without CASCADE.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush_with_cascade(
        self, style, tables, *, reset_sequences=False, allow_cascade=False
    ):
        # Force CASCADE for PostgreSQL to handle FK constraints
        return original_sql_flush(
            self, style, tables, reset_sequences=reset_sequences, allow_cascade=True
        )

    operations.DatabaseOperations.sql_flush = sql_flush_with_cascade
