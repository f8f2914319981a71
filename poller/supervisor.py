"""Start, stop and join the workers of every configured query."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import aiohttp
import structlog

from core.config import Query, ensure_unique_names
from poller.backoff import Backoff, BackoffConfig
from poller.worker import Worker
from telemetry.registry import GaugeRegistryProto

logger = structlog.get_logger(__name__)


class WorkerSupervisor:
    """Runs one :class:`Worker` task per query.

    All workers share one stop event and one HTTP session. ``stop`` sets the
    event and joins every task; tasks that do not finish within the grace
    period (e.g. blocked in an in-flight request) are cancelled.

    Attributes:
        workers: Workers created by :meth:`start`
        stop_event: Shared stop signal
    """

    def __init__(
        self,
        queries: Iterable[Query],
        service_url: str,
        registry: GaugeRegistryProto,
        *,
        session: aiohttp.ClientSession | None = None,
        backoff_config: BackoffConfig | None = None,
    ) -> None:
        self.queries = list(queries)
        ensure_unique_names(self.queries)
        self.service_url = service_url
        self.registry = registry
        self.backoff_config = backoff_config
        self.stop_event = asyncio.Event()
        self.workers: list[Worker] = []
        self._session = session
        self._owns_session = session is None
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        """Create the workers and start their polling loops."""
        if self._tasks:
            raise RuntimeError("Workers are already running")

        if self._session is None:
            self._session = aiohttp.ClientSession()

        for query in self.queries:
            worker = Worker(
                query,
                self.service_url,
                self._session,
                self.registry,
                self.stop_event,
                backoff=Backoff(self.backoff_config),
            )
            self.workers.append(worker)
            self._tasks.append(asyncio.create_task(worker.run(), name=f"worker:{query.name}"))
        logger.info("workers_started", count=len(self._tasks), service=self.service_url)

    async def wait(self) -> None:
        """Wait until every worker has returned."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def stop(self, grace_period: float = 5.0) -> None:
        """Signal every worker to stop and wait for all of them."""
        self.stop_event.set()
        logger.info("workers_stopping", count=len(self._tasks))

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=grace_period)
            for task in pending:
                logger.warning("worker_cancelled", task=task.get_name())
                task.cancel()
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for task, result in zip(self._tasks, results, strict=True):
                if isinstance(result, Exception):
                    logger.error("worker_failed", task=task.get_name(), error=repr(result))
            self._tasks = []

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("workers_stopped")
