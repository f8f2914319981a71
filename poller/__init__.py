"""Query polling workers and the metric reconciliation they drive."""

from poller.backoff import Backoff, BackoffConfig
from poller.errors import (
    FetchCancelledError,
    FetchError,
    RecordDecodeError,
    ResultSetError,
    ValueParseError,
)
from poller.fetch import FetchClient
from poller.result_set import MetricEntry, MetricStatus, QueryResult
from poller.supervisor import WorkerSupervisor
from poller.worker import Worker

__all__ = [
    "Backoff",
    "BackoffConfig",
    "FetchCancelledError",
    "FetchClient",
    "FetchError",
    "MetricEntry",
    "MetricStatus",
    "QueryResult",
    "RecordDecodeError",
    "ResultSetError",
    "ValueParseError",
    "Worker",
    "WorkerSupervisor",
]
