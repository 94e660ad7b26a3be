"""Daily usage counters and the rate-limit gate built on them.

The counter contract is get-or-create-or-retry-once:

1. Read the (subject, counter, day) row.
2. If missing, insert a zero row. A uniqueness conflict means a concurrent
   caller created it first; that is expected and not an error.
3. Atomically increment the row and return the new count.

No cross-row transaction or advisory lock is needed, and N concurrent
first-use-of-the-day increments end at exactly N with a single row.

Callers gating an expensive operation should consume() *before* running it.
A crash between the increment and the operation undercounts in the user's
favour, never in the cost's.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime

from . import db
from .config import DEFAULT_DAILY_LIMITS, DEFAULT_WARNING_THRESHOLDS
from .errors import PushbatchConfigError, UsageLimitExceeded

logger = logging.getLogger(__name__)

DayLike = date | datetime | str | None

# (singular, plural) noun used in "N ... remaining today"
_USAGE_NOUNS = {
    "photo": ("analysis", "analyses"),
    "text": ("question", "questions"),
}

_LIMIT_REACHED_MESSAGES = {
    "photo": "You've reached today's limit. Try again tomorrow!",
    "text": "You've reached today's question limit. Try again tomorrow!",
}


def increment_and_get(
    subject_id: str,
    day: DayLike = None,
    counter: str = db.DEFAULT_COUNTER,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Increment today's counter for a subject and return the new value."""
    day_key = db.usage_day(day)

    if db.get_usage_count(subject_id, day_key, counter, conn=conn) is None:
        try:
            db.insert_usage_row(subject_id, day_key, counter, conn=conn)
        except sqlite3.IntegrityError:
            # Another caller created the row between our read and insert
            logger.debug(f"Usage row for {subject_id}/{counter}/{day_key} created concurrently")

    count = db.increment_usage(subject_id, day_key, counter, conn=conn)
    if count is None:
        raise RuntimeError(f"Usage row for {subject_id}/{counter}/{day_key} disappeared")
    return count


class UsageCounter:
    """Async front for the daily counter."""

    def __init__(self, conn: sqlite3.Connection | None = None) -> None:
        self._conn = conn

    async def increment_and_get(
        self,
        subject_id: str,
        day: DayLike = None,
        *,
        counter: str = db.DEFAULT_COUNTER,
    ) -> int:
        return await db.run_sync(increment_and_get, subject_id, day, counter, self._conn)

    async def get_count(
        self,
        subject_id: str,
        day: DayLike = None,
        *,
        counter: str = db.DEFAULT_COUNTER,
    ) -> int:
        """Today's count, 0 when nothing has been recorded yet."""
        count = await db.run_sync(
            db.get_usage_count, subject_id, db.usage_day(day), counter, self._conn
        )
        return count or 0


@dataclass(frozen=True)
class UsageStatus:
    """A subject's standing against one daily limit."""

    subject_id: str
    counter: str
    count: int
    limit: int
    warning_threshold: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def limit_reached(self) -> bool:
        return self.remaining == 0

    @property
    def show_warning(self) -> bool:
        return 0 < self.remaining <= self.warning_threshold

    @property
    def warning_message(self) -> str | None:
        if self.limit_reached:
            return _LIMIT_REACHED_MESSAGES.get(
                self.counter, "You've reached today's limit. Try again tomorrow!"
            )
        if self.show_warning:
            singular, plural = _USAGE_NOUNS.get(self.counter, ("use", "uses"))
            noun = singular if self.remaining == 1 else plural
            return f"{self.remaining} {noun} remaining today"
        return None

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "counter": self.counter,
            "count": self.count,
            "limit": self.limit,
            "remaining": self.remaining,
            "limit_reached": self.limit_reached,
            "show_warning": self.show_warning,
            "warning_message": self.warning_message,
        }


class UsageLimiter:
    """Read, gate against the daily limit, then increment."""

    def __init__(
        self,
        counter: UsageCounter | None = None,
        limits: dict[str, int] | None = None,
        warning_thresholds: dict[str, int] | None = None,
    ) -> None:
        self.counter = counter or UsageCounter()
        self.limits = dict(DEFAULT_DAILY_LIMITS if limits is None else limits)
        self.warning_thresholds = dict(
            DEFAULT_WARNING_THRESHOLDS if warning_thresholds is None else warning_thresholds
        )

    def _limit_for(self, counter: str) -> int:
        try:
            return self.limits[counter]
        except KeyError:
            raise PushbatchConfigError(f"No daily limit configured for {counter!r}") from None

    def _status(self, subject_id: str, counter: str, count: int) -> UsageStatus:
        return UsageStatus(
            subject_id=subject_id,
            counter=counter,
            count=count,
            limit=self._limit_for(counter),
            warning_threshold=self.warning_thresholds.get(counter, 0),
        )

    async def status(self, subject_id: str, counter: str, day: DayLike = None) -> UsageStatus:
        self._limit_for(counter)
        count = await self.counter.get_count(subject_id, day, counter=counter)
        return self._status(subject_id, counter, count)

    async def consume(self, subject_id: str, counter: str, day: DayLike = None) -> UsageStatus:
        """Record one use, or raise UsageLimitExceeded if the limit is used up.

        Raises:
            UsageLimitExceeded: today's count already reached the limit.
            PushbatchConfigError: no limit is configured for counter.
        """
        current = await self.status(subject_id, counter, day)
        if current.limit_reached:
            logger.info(f"Usage limit reached for {subject_id} ({counter}: {current.count})")
            raise UsageLimitExceeded(current)

        count = await self.counter.increment_and_get(subject_id, day, counter=counter)
        return self._status(subject_id, counter, count)
