"""Notification content for delivered batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import DEFAULT_PREVIEW_LIMIT

NOTIFICATION_TYPE = "new_message"

UNKNOWN_SENDER = "Someone"
UNKNOWN_SUBJECT = "a listing"
BATCHED_FALLBACK_BODY = "Tap to view the conversation"
ELLIPSIS = "..."


class NotificationKind(str, Enum):
    SINGLE = "single"
    BATCHED = "batched"

    @classmethod
    def for_count(cls, message_count: int) -> "NotificationKind":
        return cls.SINGLE if message_count <= 1 else cls.BATCHED


@dataclass(frozen=True)
class Notification:
    """A formatted push ready for the dispatcher."""

    kind: NotificationKind
    title: str
    body: str
    payload: dict[str, Any] = field(default_factory=dict)


def truncate_preview(preview: str | None, limit: int = DEFAULT_PREVIEW_LIMIT) -> str:
    """Cap a message preview at limit characters, appending an ellipsis if cut."""
    if not preview:
        return ""
    if len(preview) > limit:
        return f"{preview[:limit]}{ELLIPSIS}"
    return preview


def build_payload(batch: dict) -> dict[str, Any]:
    """Routing data the client needs to deep-link into the conversation."""
    return {
        "type": NOTIFICATION_TYPE,
        "conversation_id": batch["conversation_id"],
        "sender_id": batch["sender_id"],
        "message_count": batch["message_count"],
        "batched": True,
    }


def format_notification(batch: dict, preview_limit: int = DEFAULT_PREVIEW_LIMIT) -> Notification:
    """Format a pending batch as a single or batched notification."""
    sender = batch.get("sender_display_name") or UNKNOWN_SENDER
    subject = batch.get("subject_label")
    count = batch["message_count"]
    kind = NotificationKind.for_count(count)

    if kind is NotificationKind.SINGLE:
        title = f"New message from {sender}"
        body = truncate_preview(batch.get("first_message_preview"), preview_limit)
        if not body:
            body = f"Message about {subject or UNKNOWN_SUBJECT}"
    else:
        title = f"{sender} sent {count} messages"
        body = f"About: {subject}" if subject else BATCHED_FALLBACK_BODY

    return Notification(kind=kind, title=title, body=body, payload=build_payload(batch))
