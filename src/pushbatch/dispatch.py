"""Push dispatch for formatted notifications.

The real transport (APNs/FCM/Web Push) sits behind a send endpoint owned by
another service. This module only needs to hand it one notification and
learn whether it was accepted.

Architecture:
    - PushDispatcher ABC defines the interface
    - HttpPushDispatcher POSTs to the send endpoint with httpx
    - LogPushDispatcher logs and accepts everything (no endpoint configured)
    - RecordingPushDispatcher keeps every attempt in memory (tests, dry runs)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from .formatting import NOTIFICATION_TYPE

logger = logging.getLogger(__name__)


class PushDispatcher(ABC):
    """Abstract push sender."""

    @abstractmethod
    async def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> bool:
        """Deliver one notification to every device of recipient_id.

        Returns:
            True if the transport accepted the notification, False otherwise.
            Implementations may also raise; callers treat that as False.
        """

    async def close(self) -> None:
        """Release any held resources."""
        return None


class HttpPushDispatcher(PushDispatcher):
    """Sends notifications to an HTTP push endpoint.

    The request body is {"user_id", "title", "body", "type", "data"} and
    any non-2xx response counts as a failure.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> bool:
        request_body = {
            "user_id": recipient_id,
            "title": title,
            "body": body,
            "type": payload.get("type", NOTIFICATION_TYPE),
            "data": payload,
        }
        try:
            response = await self._client.post(
                self._url, json=request_body, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.warning(f"Push request for {recipient_id} failed: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(
                f"Push endpoint rejected notification for {recipient_id}: "
                f"{response.status_code} - {response.text[:200]}"
            )
            return False

        return True

    async def close(self) -> None:
        await self._client.aclose()


class LogPushDispatcher(PushDispatcher):
    """Logs notifications instead of sending them."""

    async def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> bool:
        logger.info(f"Push (not sent, no endpoint configured) to {recipient_id}: {title} | {body}")
        return True


@dataclass
class SentNotification:
    recipient_id: str
    title: str
    body: str
    payload: dict[str, Any]
    success: bool


@dataclass
class RecordingPushDispatcher(PushDispatcher):
    """Keeps every send attempt in memory.

    Failures can be scripted per recipient (fail_recipients) or globally
    (fail_all). With raise_errors=True a failure raises instead of
    returning False.
    """

    fail_recipients: set[str] = field(default_factory=set)
    fail_all: bool = False
    raise_errors: bool = False
    attempts: list[SentNotification] = field(default_factory=list)

    async def send(
        self,
        recipient_id: str,
        title: str,
        body: str,
        payload: dict[str, Any],
    ) -> bool:
        success = not (self.fail_all or recipient_id in self.fail_recipients)
        self.attempts.append(
            SentNotification(recipient_id, title, body, dict(payload), success)
        )
        if not success and self.raise_errors:
            raise ConnectionError(f"push transport unavailable for {recipient_id}")
        return success

    @property
    def sent(self) -> list[SentNotification]:
        """Successful deliveries only."""
        return [a for a in self.attempts if a.success]

    def sent_to(self, recipient_id: str) -> list[SentNotification]:
        return [a for a in self.sent if a.recipient_id == recipient_id]

    def clear(self) -> None:
        self.attempts.clear()


# --- Global singleton ---

_dispatcher: PushDispatcher | None = None


def get_dispatcher() -> PushDispatcher:
    """Get the global dispatcher.

    Built from config on first call: an HttpPushDispatcher when push_url is
    set, a LogPushDispatcher otherwise. Use set_dispatcher() to swap it.
    """
    global _dispatcher
    if _dispatcher is None:
        from .config import get_config

        config = get_config()
        if config.push_url:
            _dispatcher = HttpPushDispatcher(
                config.push_url,
                token=config.push_token,
                timeout=config.push_timeout_seconds,
            )
        else:
            logger.info("No push endpoint configured; notifications will only be logged")
            _dispatcher = LogPushDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: PushDispatcher) -> None:
    """Replace the global dispatcher."""
    global _dispatcher
    _dispatcher = dispatcher


def reset_dispatcher() -> None:
    """Reset the global dispatcher (for testing)."""
    global _dispatcher
    _dispatcher = None
