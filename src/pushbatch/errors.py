"""Exceptions raised by pushbatch."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .usage import UsageStatus


class PushbatchError(Exception):
    """Base class for pushbatch errors."""

    pass


class PushbatchConfigError(PushbatchError):
    """Raised when configuration is invalid."""

    pass


class UsageLimitExceeded(PushbatchError):
    """Raised when a gated operation is refused because today's limit is used up."""

    def __init__(self, status: "UsageStatus") -> None:
        self.status = status
        super().__init__(
            f"Daily {status.counter} limit of {status.limit} reached for {status.subject_id}"
        )
