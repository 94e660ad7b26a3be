"""Presence tracking for push suppression.

A presence record says which conversation a user is viewing. While it is
set, messages to that user on that conversation produce no notification.

Clients keep presence alive with a heartbeat. HeartbeatSession is the timer
resource for that: it is owned by whoever opened the conversation, has an
explicit start()/stop() lifecycle and never runs more than one timer task.

Presence is best-effort. A store failure is logged and swallowed; the worst
outcome is one redundant notification.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from . import db
from .batching import clear_pending_batches
from .config import DEFAULT_HEARTBEAT_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class HeartbeatSession:
    """Periodically re-announces that a user is viewing a conversation.

    At most one timer task is live per session. stop() returns only once the
    task is gone: a sleeping timer is cancelled, an in-flight tick is allowed
    to finish. No tick can land after stop() returns.
    """

    def __init__(
        self,
        user_id: str,
        conversation_id: str,
        beat: Callable[[str, str], Awaitable[object]],
        interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.interval = interval
        self._beat = beat
        self._task: asyncio.Task | None = None
        self._stopped = True
        self._beating = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the timer. A no-op if it is already running."""
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"presence-heartbeat:{self.user_id}"
        )

    def retarget(self, conversation_id: str) -> None:
        """Point future ticks at a different conversation."""
        self.conversation_id = conversation_id

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                break
            self._beating = True
            try:
                await self._beat(self.user_id, self.conversation_id)
            except Exception:
                logger.warning(f"Heartbeat for {self.user_id} failed", exc_info=True)
            finally:
                self._beating = False

    async def stop(self) -> None:
        """Stop the timer and wait for it to exit. Idempotent."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if not self._beating:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class PresenceTracker:
    """Per-user "currently viewing" state backed by the user_presence table."""

    def __init__(
        self,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        presence_ttl: timedelta | None = None,
        conn: sqlite3.Connection | None = None,
        clock: Callable[[], datetime] = db.utcnow,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.presence_ttl = presence_ttl
        self._conn = conn
        self._clock = clock
        self._sessions: dict[str, HeartbeatSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def _write(self, user_id: str, conversation_id: str | None) -> bool:
        try:
            await db.run_sync(db.upsert_presence, user_id, conversation_id, self._clock(), self._conn)
        except Exception:
            logger.warning(f"Failed to update presence for {user_id}", exc_info=True)
            return False
        return True

    async def set_active(
        self,
        user_id: str,
        conversation_id: str,
        *,
        heartbeat: bool = True,
    ) -> int:
        """Mark user_id as viewing conversation_id.

        Any backlog of pending batches for that conversation is deleted.
        With heartbeat=True the user's session timer is started, or kept
        alive and retargeted if one is already running.

        Returns the number of pending batches cleared.
        """
        async with self._lock(user_id):
            await self._write(user_id, conversation_id)
            cleared = await clear_pending_batches(user_id, conversation_id, conn=self._conn)

            if heartbeat:
                session = self._sessions.get(user_id)
                if session is None:
                    session = HeartbeatSession(
                        user_id, conversation_id, self.heartbeat, self.heartbeat_interval
                    )
                    self._sessions[user_id] = session
                else:
                    session.retarget(conversation_id)
                session.start()

        return cleared

    async def heartbeat(self, user_id: str, conversation_id: str | None = None) -> bool:
        """One heartbeat tick: refresh last_seen.

        This is what a HeartbeatSession calls on every interval. Without a
        conversation_id the user's running session supplies it; with neither
        there is nothing to refresh.
        """
        if conversation_id is None:
            session = self._sessions.get(user_id)
            if session is None:
                return False
            conversation_id = session.conversation_id
        return await self._write(user_id, conversation_id)

    async def clear_active(self, user_id: str) -> None:
        """Mark user_id as not viewing anything.

        The heartbeat is stopped before the record is cleared, so a late
        tick cannot bring presence back. A set_active still in progress for
        the same user finishes first. Safe to call repeatedly.
        """
        async with self._lock(user_id):
            session = self._sessions.pop(user_id, None)
            if session is not None:
                await session.stop()

            try:
                await db.run_sync(db.clear_presence, user_id, self._clock(), self._conn)
            except Exception:
                logger.warning(f"Failed to clear presence for {user_id}", exc_info=True)

    async def is_active(
        self,
        user_id: str,
        conversation_id: str,
        now: datetime | None = None,
    ) -> bool:
        """True if user_id's record points at conversation_id.

        Without a presence_ttl there is no staleness check: a client that
        crashed mid-heartbeat counts as present until it clears.
        """
        try:
            record = await db.run_sync(db.get_presence, user_id, self._conn)
        except Exception:
            logger.warning(f"Presence lookup for {user_id} failed", exc_info=True)
            return False

        if record is None or record["active_conversation_id"] != conversation_id:
            return False

        if self.presence_ttl is not None:
            now = db.as_utc(now or self._clock())
            last_seen = db.from_db_time(record["last_seen"])
            if last_seen is None or now - last_seen >= self.presence_ttl:
                return False

        return True

    async def get(self, user_id: str) -> dict | None:
        """The stored presence record for user_id."""
        return await db.run_sync(db.get_presence, user_id, self._conn)

    def session(self, user_id: str) -> HeartbeatSession | None:
        """The live heartbeat session for user_id, if any."""
        return self._sessions.get(user_id)

    async def close(self) -> None:
        """Stop every heartbeat (shutdown). Presence records are left as-is."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.stop()
