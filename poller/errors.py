"""Errors raised while polling queries and mapping results onto metrics."""

from __future__ import annotations

from core.contracts import RecordDecodeError

__all__ = [
    "FetchCancelledError",
    "FetchError",
    "RecordDecodeError",
    "ResultSetError",
    "ValueParseError",
]


class ResultSetError(ValueError):
    """Result set cannot be mapped onto metric series."""


class ValueParseError(ResultSetError):
    """Value column holds something that is not a number."""


class FetchError(RuntimeError):
    """Query service answered with a non-success status."""

    def __init__(self, status: int, reason: str, body: str) -> None:
        super().__init__(f"{status} {reason}: {body}")
        self.status = status
        self.body = body


class FetchCancelledError(RuntimeError):
    """Stop was requested while a fetch was backing off."""
