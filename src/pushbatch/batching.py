"""Message ingress: coalesce chat messages into pending batches.

One pending batch exists per (recipient, sender, conversation) while
messages are unread and undelivered. Each new message either:

- is suppressed, because the recipient is viewing the conversation;
- creates the batch (message_count=1, preview = this message); or
- extends it (message_count += 1, last_message_at = now).

The preview and first_message_at are never overwritten: a batch remembers
how the burst started, not its latest content.

Accumulation is a single atomic upsert, so two messages racing for the same
triple cannot lose an increment. Failures are logged and reported as
FAILED; they never propagate into the message-send path.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from . import db
from .metrics import metrics

if TYPE_CHECKING:
    from .presence import PresenceTracker

logger = logging.getLogger(__name__)


class AccumulateOutcome(str, Enum):
    SUPPRESSED = "suppressed"
    CREATED = "created"
    ACCUMULATED = "accumulated"
    FAILED = "failed"


async def clear_pending_batches(
    recipient_id: str,
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Delete every pending batch for a recipient on a conversation.

    Runs when the recipient opens the conversation, so messages they are
    about to read live never produce a stale notification later.
    Returns the number of batches removed (0 on failure).
    """
    try:
        deleted = await db.run_sync(
            db.delete_pending_batches_for_conversation, recipient_id, conversation_id, conn
        )
    except Exception:
        logger.warning(
            f"Failed to clear pending batches for {recipient_id} on {conversation_id}",
            exc_info=True,
        )
        return 0

    if deleted:
        metrics.increment("presence.cleared_batches", deleted)
        logger.info(
            f"Cleared {deleted} pending batch(es) for {recipient_id} on {conversation_id}"
        )
    return deleted


class BatchAccumulator:
    """Folds incoming messages into pending batches."""

    def __init__(
        self,
        presence: "PresenceTracker",
        conn: sqlite3.Connection | None = None,
        clock: Callable[[], datetime] = db.utcnow,
    ) -> None:
        self.presence = presence
        self._conn = conn
        self._clock = clock

    async def on_message(
        self,
        recipient_id: str,
        sender_id: str,
        sender_name: str | None,
        conversation_id: str,
        subject_label: str | None,
        content: str | None,
        now: datetime | None = None,
    ) -> AccumulateOutcome:
        """Handle one persisted chat message."""
        now = now or self._clock()

        if await self.presence.is_active(recipient_id, conversation_id, now=now):
            metrics.increment("accumulate.suppressed")
            logger.debug(
                f"Suppressed notification for {recipient_id}: viewing {conversation_id}"
            )
            return AccumulateOutcome.SUPPRESSED

        try:
            batch = await db.run_sync(
                db.accumulate_pending_batch,
                recipient_id,
                sender_id,
                conversation_id,
                sender_display_name=sender_name,
                subject_label=subject_label,
                preview=content,
                now=now,
                conn=self._conn,
            )
        except Exception:
            metrics.increment("accumulate.failed")
            logger.error(
                f"Failed to batch message from {sender_id} to {recipient_id} "
                f"on {conversation_id}",
                exc_info=True,
            )
            return AccumulateOutcome.FAILED

        if batch["created"]:
            metrics.increment("accumulate.created")
            logger.debug(f"Created pending batch {batch['id']} for {recipient_id}")
            return AccumulateOutcome.CREATED

        metrics.increment("accumulate.accumulated")
        logger.debug(
            f"Batched message into {batch['id']} (count={batch['message_count']})"
        )
        return AccumulateOutcome.ACCUMULATED

    async def clear_conversation(self, recipient_id: str, conversation_id: str) -> int:
        """Drop the recipient's backlog for a conversation they are now viewing."""
        return await clear_pending_batches(recipient_id, conversation_id, conn=self._conn)

    async def pending_for(self, recipient_id: str) -> list[dict]:
        """Pending batches waiting for a recipient."""
        return await db.run_sync(db.list_pending_batches, recipient_id, self._conn)
