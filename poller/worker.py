"""Polling loop for a single query."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import aiohttp
import structlog

from core.config import Query
from core.contracts import Record
from poller.backoff import Backoff, wait_for_stop
from poller.errors import FetchCancelledError, RecordDecodeError
from poller.fetch import FetchClient
from poller.result_set import QueryResult
from telemetry.registry import GaugeRegistryProto


class Worker:
    """Polls one query and keeps its series in sync with the latest result.

    The first fetch happens immediately, then one every ``query.interval``
    seconds. Cycles never overlap: a fetch that is retrying holds the worker
    until it succeeds, and ticks missed meanwhile are dropped. Setting
    ``stop_event`` ends the loop, including while a fetch is backing off.
    """

    def __init__(
        self,
        query: Query,
        url: str,
        session: aiohttp.ClientSession,
        registry: GaugeRegistryProto,
        stop_event: asyncio.Event,
        *,
        backoff: Backoff | None = None,
        logger: Any | None = None,
    ) -> None:
        if query.interval <= 0:
            raise ValueError(f"Interval must be greater than zero for query [{query.name}]")

        self.query = query
        self._stop = stop_event
        self._log = logger or structlog.get_logger(__name__).bind(query=query.name)
        self.result = QueryResult(query, registry, logger=self._log)
        self.fetcher = FetchClient(
            query,
            url,
            session,
            stop_event,
            backoff=backoff,
            on_failure=self.apply,
            logger=self._log,
        )

    async def run(self) -> None:
        self._log.info(
            "worker_started", interval_s=self.query.interval, timeout_s=self.query.timeout
        )
        try:
            if self._stop.is_set():
                return
            await self.tick()

            loop = asyncio.get_running_loop()
            next_tick = loop.time() + self.query.interval
            while not await wait_for_stop(self._stop, next_tick - loop.time()):
                await self.tick()
                next_tick += self.query.interval
                now = loop.time()
                while next_tick <= now:
                    next_tick += self.query.interval
        finally:
            self._log.info("worker_stopped")

    async def tick(self) -> None:
        """Run one fetch-and-apply cycle."""
        try:
            records = await self.fetcher.fetch()
        except FetchCancelledError:
            self._log.info("fetch_cancelled")
            return
        except RecordDecodeError as exc:
            self._log.error("fetch_decode_failed", error=str(exc))
            return

        if self._stop.is_set():
            return
        await self.apply(records)

    async def apply(self, records: Sequence[Record]) -> bool:
        """Apply a result set to the query's series; errors are logged, not raised."""
        try:
            await self.result.apply(records)
        except ValueError as exc:
            self._log.error("set_metrics_failed", error=str(exc))
            return False
        return True
