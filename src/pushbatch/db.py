"""Database layer for pushbatch - SQLite storage for presence, batches and usage.

This module provides the persistence for the notification pipeline:
- user_presence: which conversation each user is viewing
- pending_batches: accumulating, not-yet-delivered notifications
- usage_counters: daily per-subject counters for rate limiting

Connection Management:
    # Global thread-local connection (configured by PUSHBATCH_DB)
    init_db()
    upsert_presence("user-1", "conv-1")

    # Scoped connection
    with scoped_connection("/path/to/pushbatch.db") as conn:
        init_db_with_conn(conn)
        get_presence("user-1", conn=conn)

Every mutation is a single statement keyed by a unique id or unique tuple.
Nothing here opens a multi-row transaction.
"""

from __future__ import annotations

import asyncio
import functools
import os
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .metrics import timed_db_operation

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 1

DEFAULT_COUNTER = "default"

# Thread-local storage for per-thread connections
_local = threading.local()

_db_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


# --- Time Helpers ---


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of value. Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Format a datetime for storage.

    Fixed microsecond precision keeps string comparison chronological.
    Naive datetimes are taken to be UTC.
    """
    return as_utc(value).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware datetime."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def usage_day(value: date | datetime | str | None = None) -> str:
    """Normalize a usage day to YYYY-MM-DD (UTC)."""
    if value is None:
        return utcnow().date().isoformat()
    if isinstance(value, str):
        return date.fromisoformat(value).isoformat()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    return value.isoformat()


# --- Connection Management ---


def get_db_path() -> str:
    """The configured database path (PUSHBATCH_DB, default in-memory)."""
    return os.environ.get("PUSHBATCH_DB", ":memory:")


def is_shared_memory_db() -> bool:
    """Check if the global connection points at the shared in-memory database."""
    return get_db_path() == ":memory:"


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create database connection.

    Uses thread-local storage to give each thread its own connection.

    Args:
        db_path: Optional explicit database path. If given, a new connection
                 is returned that the caller owns. ":memory:" creates a private
                 in-memory database.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        return conn

    if not hasattr(_local, "conn") or _local.conn is None:
        db_path_env = get_db_path()

        if db_path_env == ":memory:":
            # Shared cache so every thread sees the same data. The name
            # includes the pid so parallel test processes stay isolated.
            _local.conn = sqlite3.connect(
                f"file:pushbatch_memdb_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            _local.conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn.execute("PRAGMA journal_mode=WAL")
        _local.conn.execute("PRAGMA busy_timeout=5000")
        _local.conn.row_factory = sqlite3.Row

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit.

    Example:
        with scoped_connection(":memory:") as conn:
            init_db_with_conn(conn)
            upsert_presence("user-1", "conv-1", conn=conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db():
    """Close the connection for the current thread."""
    if hasattr(_local, "conn") and _local.conn is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to global."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    return [dict(row) for row in rows]


# --- Async bridge ---


def _get_db_executor() -> ThreadPoolExecutor | None:
    """Get the executor used for DB calls made from coroutines.

    The shared in-memory database uses table-level locks that do not honour
    busy_timeout, so calls against it are serialized on one worker thread.
    File databases use the default threadpool (thread-local connections).
    """
    global _db_executor
    if not is_shared_memory_db():
        return None
    with _executor_lock:
        if _db_executor is None:
            _db_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pushbatch-db")
        return _db_executor


async def run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous DB function off the event loop."""
    loop = asyncio.get_running_loop()
    if kwargs:
        fn = functools.partial(fn, **kwargs)
    return await loop.run_in_executor(_get_db_executor(), fn, *args)


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS user_presence (
        user_id TEXT PRIMARY KEY,
        active_conversation_id TEXT,
        last_seen TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_user_presence_conversation
        ON user_presence(active_conversation_id) WHERE active_conversation_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS pending_batches (
        id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        sender_id TEXT NOT NULL,
        sender_display_name TEXT,
        conversation_id TEXT NOT NULL,
        subject_label TEXT,
        message_count INTEGER NOT NULL DEFAULT 1,
        first_message_preview TEXT,
        first_message_at TIMESTAMP NOT NULL,
        last_message_at TIMESTAMP NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (recipient_id, sender_id, conversation_id)
    );

    CREATE INDEX IF NOT EXISTS idx_pending_batches_recipient ON pending_batches(recipient_id);
    CREATE INDEX IF NOT EXISTS idx_pending_batches_ready ON pending_batches(last_message_at);

    CREATE TABLE IF NOT EXISTS usage_counters (
        subject_id TEXT NOT NULL,
        counter TEXT NOT NULL DEFAULT 'default',
        usage_date TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP,
        UNIQUE (subject_id, counter, usage_date)
    );
"""


# --- Migration Functions ---


def _migrate_001_initial_schema(conn: sqlite3.Connection) -> None:
    """Migration 001: Create the initial tables and indexes.

    Later schema changes get their own numbered migration below this one.
    """
    conn.executescript(SCHEMA_SQL)
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Initial schema", _migrate_001_initial_schema),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    run_migrations(conn)


def init_db():
    """Initialize database schema using the global connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None):
    """Reset database (for testing)."""
    conn = _get_conn(conn)
    conn.executescript("""
        DROP TABLE IF EXISTS usage_counters;
        DROP TABLE IF EXISTS pending_batches;
        DROP TABLE IF EXISTS user_presence;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    init_db_with_conn(conn)


# --- Presence Operations ---


def upsert_presence(
    user_id: str,
    conversation_id: str | None,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create or replace the presence record for a user.

    Passing conversation_id=None marks the user as not viewing anything.
    """
    conn = _get_conn(conn)
    ts = to_db_time(now or utcnow())
    with timed_db_operation("upsert_presence"):
        conn.execute(
            """INSERT INTO user_presence (user_id, active_conversation_id, last_seen, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (user_id) DO UPDATE SET
                   active_conversation_id = excluded.active_conversation_id,
                   last_seen = excluded.last_seen,
                   updated_at = excluded.updated_at""",
            (user_id, conversation_id, ts, ts),
        )
        conn.commit()
    return {"user_id": user_id, "active_conversation_id": conversation_id, "last_seen": ts}


def clear_presence(
    user_id: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Null out the active conversation. Returns True if a record was changed.

    A user with no record, or an already-cleared record, is left alone.
    """
    conn = _get_conn(conn)
    ts = to_db_time(now or utcnow())
    with timed_db_operation("clear_presence"):
        cursor = conn.execute(
            """UPDATE user_presence SET active_conversation_id = NULL, updated_at = ?
               WHERE user_id = ? AND active_conversation_id IS NOT NULL""",
            (ts, user_id),
        )
        conn.commit()
    return cursor.rowcount > 0


def get_presence(user_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get the presence record for a user."""
    conn = _get_conn(conn)
    row = conn.execute(
        """SELECT user_id, active_conversation_id, last_seen, updated_at
           FROM user_presence WHERE user_id = ?""",
        (user_id,),
    ).fetchone()
    return _row_to_dict(row)


# --- Pending Batch Operations ---


def accumulate_pending_batch(
    recipient_id: str,
    sender_id: str,
    conversation_id: str,
    sender_display_name: str | None = None,
    subject_label: str | None = None,
    preview: str | None = None,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Fold one message into the batch for (recipient, sender, conversation).

    Creates the batch with message_count=1 if none exists, otherwise bumps
    message_count and last_message_at in the same statement. The preview,
    first_message_at and cached display fields are write-once.

    Returns the batch row plus a "created" flag.
    """
    conn = _get_conn(conn)
    ts = to_db_time(now or utcnow())
    batch_id = str(make_uuid7())
    with timed_db_operation("accumulate_pending_batch"):
        conn.execute(
            """INSERT INTO pending_batches (
                   id, recipient_id, sender_id, sender_display_name, conversation_id,
                   subject_label, message_count, first_message_preview,
                   first_message_at, last_message_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
               ON CONFLICT (recipient_id, sender_id, conversation_id) DO UPDATE SET
                   message_count = pending_batches.message_count + 1,
                   last_message_at = MAX(pending_batches.last_message_at, excluded.last_message_at)""",
            (
                batch_id,
                recipient_id,
                sender_id,
                sender_display_name,
                conversation_id,
                subject_label,
                preview,
                ts,
                ts,
                ts,
            ),
        )
        row = conn.execute(
            """SELECT * FROM pending_batches
               WHERE recipient_id = ? AND sender_id = ? AND conversation_id = ?""",
            (recipient_id, sender_id, conversation_id),
        ).fetchone()
        conn.commit()

    batch = _row_to_dict(row)
    assert batch is not None
    batch["created"] = batch["id"] == batch_id
    return batch


def list_pending_batches(
    recipient_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List pending batches, optionally for a single recipient."""
    conn = _get_conn(conn)
    if recipient_id:
        cursor = conn.execute(
            "SELECT * FROM pending_batches WHERE recipient_id = ? ORDER BY first_message_at",
            (recipient_id,),
        )
    else:
        cursor = conn.execute("SELECT * FROM pending_batches ORDER BY first_message_at")
    return _rows_to_dicts(cursor.fetchall())


def get_matured_batches(
    cutoff: datetime,
    limit: int = 500,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Get batches whose last message is older than cutoff, oldest first."""
    conn = _get_conn(conn)
    with timed_db_operation("get_matured_batches"):
        cursor = conn.execute(
            """SELECT * FROM pending_batches
               WHERE last_message_at < ?
               ORDER BY first_message_at
               LIMIT ?""",
            (to_db_time(cutoff), limit),
        )
        return _rows_to_dicts(cursor.fetchall())


def delete_pending_batch(batch_id: str, conn: sqlite3.Connection | None = None) -> bool:
    """Delete a batch by id. Returns False if it was already gone."""
    conn = _get_conn(conn)
    with timed_db_operation("delete_pending_batch"):
        cursor = conn.execute("DELETE FROM pending_batches WHERE id = ?", (batch_id,))
        conn.commit()
    return cursor.rowcount > 0


def delete_pending_batches_for_conversation(
    recipient_id: str,
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Delete every pending batch for a recipient on one conversation.

    All senders are covered. Returns the number of batches removed.
    """
    conn = _get_conn(conn)
    with timed_db_operation("delete_pending_batches_for_conversation"):
        cursor = conn.execute(
            "DELETE FROM pending_batches WHERE recipient_id = ? AND conversation_id = ?",
            (recipient_id, conversation_id),
        )
        conn.commit()
    return cursor.rowcount


# --- Usage Counter Operations ---


def get_usage_count(
    subject_id: str,
    day: str,
    counter: str = DEFAULT_COUNTER,
    conn: sqlite3.Connection | None = None,
) -> int | None:
    """Get today's count for a subject, or None if no row exists yet."""
    conn = _get_conn(conn)
    row = conn.execute(
        """SELECT count FROM usage_counters
           WHERE subject_id = ? AND counter = ? AND usage_date = ?""",
        (subject_id, counter, day),
    ).fetchone()
    return None if row is None else row[0]


def insert_usage_row(
    subject_id: str,
    day: str,
    counter: str = DEFAULT_COUNTER,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Insert a zero row for (subject, counter, day).

    Raises:
        sqlite3.IntegrityError: if the row already exists.
    """
    conn = _get_conn(conn)
    try:
        conn.execute(
            """INSERT INTO usage_counters (subject_id, counter, usage_date, count, updated_at)
               VALUES (?, ?, ?, 0, ?)""",
            (subject_id, counter, day, to_db_time(utcnow())),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise


def increment_usage(
    subject_id: str,
    day: str,
    counter: str = DEFAULT_COUNTER,
    conn: sqlite3.Connection | None = None,
) -> int | None:
    """Atomically add one to an existing row and return the new count.

    Returns None if the row does not exist.
    """
    conn = _get_conn(conn)
    with timed_db_operation("increment_usage"):
        cursor = conn.execute(
            """UPDATE usage_counters SET count = count + 1, updated_at = ?
               WHERE subject_id = ? AND counter = ? AND usage_date = ?""",
            (to_db_time(utcnow()), subject_id, counter, day),
        )
        if cursor.rowcount == 0:
            conn.commit()
            return None
        row = conn.execute(
            """SELECT count FROM usage_counters
               WHERE subject_id = ? AND counter = ? AND usage_date = ?""",
            (subject_id, counter, day),
        ).fetchone()
        conn.commit()
    return row[0]


def list_usage(subject_id: str, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List all counter rows for a subject, newest day first."""
    conn = _get_conn(conn)
    rows = conn.execute(
        """SELECT subject_id, counter, usage_date, count, updated_at FROM usage_counters
           WHERE subject_id = ? ORDER BY usage_date DESC, counter""",
        (subject_id,),
    ).fetchall()
    return _rows_to_dicts(rows)
