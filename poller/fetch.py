"""Fetch query results from the SQL agent service with retry and backoff."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
import structlog

from core.config import Query
from core.contracts import RecordSet, decode_records
from poller.backoff import Backoff, wait_for_stop
from poller.errors import FetchCancelledError, FetchError

FailureHook = Callable[[RecordSet], Awaitable[Any]]

_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    FetchError,
)


def encode_payload(query: Query) -> bytes:
    """Request body sent for every attempt of a query."""
    payload = {
        "driver": query.driver,
        "connection": query.connection,
        "sql": query.sql,
        "params": query.params,
    }
    return json.dumps(payload, default=str).encode("utf-8")


class FetchClient:
    """Runs one query against the SQL agent until it succeeds or is stopped.

    Failed attempts (transport errors, timeouts, non-2xx responses) are
    retried after an exponential backoff. The backoff wait ends early when
    ``stop_event`` is set, in which case :class:`FetchCancelledError` is
    raised. When the query has ``value_on_error`` the ``on_failure`` hook
    receives a single ``{"error": value}`` row after each failed attempt.
    """

    def __init__(
        self,
        query: Query,
        url: str,
        session: aiohttp.ClientSession,
        stop_event: asyncio.Event,
        *,
        backoff: Backoff | None = None,
        on_failure: FailureHook | None = None,
        logger: Any | None = None,
    ) -> None:
        self.query = query
        self.url = url
        self.backoff = backoff or Backoff()
        self._session = session
        self._stop = stop_event
        self._on_failure = on_failure
        self._payload = encode_payload(query)
        self._timeout = aiohttp.ClientTimeout(total=query.timeout)
        self._log = logger or structlog.get_logger(__name__).bind(query=query.name)

    async def fetch(self) -> RecordSet:
        """Fetch the current result set of the query.

        Raises:
            FetchCancelledError: If stop was requested while backing off
            RecordDecodeError: If the response body is not a list of rows
        """
        while True:
            started = time.monotonic()
            try:
                body = await self._attempt()
            except RETRYABLE_ERRORS as exc:
                # No metric updates once stop has been requested.
                if self._stop.is_set():
                    raise FetchCancelledError("Execution was canceled") from exc
                await self._report_failure(exc)
                delay = self.backoff.duration()
                self._log.warning(
                    "fetch_backoff", attempt=self.backoff.attempt, delay=round(delay, 3)
                )
                if await wait_for_stop(self._stop, delay):
                    raise FetchCancelledError("Execution was canceled") from exc
                continue
            break

        self.backoff.reset()
        self._log.info("fetch_complete", duration_s=round(time.monotonic() - started, 3))
        return decode_records(body)

    async def _attempt(self) -> bytes:
        async with self._session.post(
            self.url, data=self._payload, headers=_HEADERS, timeout=self._timeout
        ) as response:
            body = await response.read()
            if not 200 <= response.status < 300:
                text = body.decode("utf-8", errors="replace")
                raise FetchError(response.status, response.reason or "", text)
            return body

    async def _report_failure(self, exc: BaseException) -> None:
        self._log.warning("fetch_failed", error=str(exc) or type(exc).__name__)
        if self._on_failure is None or self.query.value_on_error is None:
            return
        await self._on_failure([{"error": self.query.value_on_error}])
