"""Shared pytest configuration and fixtures."""

import os
import tempfile

# Set environment variables before any imports
os.environ["PUSHBATCH_ADMIN_TOKEN"] = "test-admin-token"
os.environ["PUSHBATCH_DB"] = ":memory:"
os.environ.pop("PUSHBATCH_NO_AUTH", None)
os.environ.pop("PUSHBATCH_PUSH_URL", None)
# Never read the developer's own ~/.config/pushbatch/config.yaml
os.environ["XDG_CONFIG_HOME"] = tempfile.mkdtemp(prefix="pushbatch-test-config-")


import pytest
from pushbatch import db
from pushbatch.config import reset_config
from pushbatch.dispatch import reset_dispatcher
from pushbatch.metrics import metrics


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database before each test function.

    For in-memory shared cache databases, we need to drop every table,
    since close_db() doesn't destroy the shared cache.
    """
    conn = db.get_connection()
    conn.executescript("""
        DROP TABLE IF EXISTS usage_counters;
        DROP TABLE IF EXISTS pending_batches;
        DROP TABLE IF EXISTS user_presence;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()

    db.init_db_with_conn(conn)
    yield
    db.close_db()  # Cleanup after test


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset process-wide singletons between tests."""
    metrics.reset()
    reset_config()
    reset_dispatcher()
    yield
    reset_config()
    reset_dispatcher()
