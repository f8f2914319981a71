"""Reconcile query result rows with the gauges published for a query."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from core.config import Query
from core.contracts import Record
from poller.errors import ResultSetError
from poller.facets import Facet, coerce_value, metric_name, render_label_value, series_key
from telemetry.registry import Gauge, GaugeRegistryProto, validate_label_name

HELP_TEXT = "Result of an SQL query"


class MetricStatus(Enum):
    REGISTERED = "registered"
    UNREGISTERED = "unregistered"


@dataclass
class MetricEntry:
    gauge: Gauge
    status: MetricStatus = MetricStatus.UNREGISTERED


@dataclass(frozen=True)
class Sample:
    """Value destined for one series in the current round."""

    key: str
    name: str
    labels: Facet
    value: float


class QueryResult:
    """Series currently exported for one query.

    Only the worker owning the query mutates an instance, so there is no
    locking here; the export registry serialises its own state.

    A call to :meth:`apply` is all-or-nothing: every row is validated and
    coerced before any entry is created, updated or retired, so a malformed
    result set leaves the previously published series untouched.
    """

    def __init__(
        self, query: Query, registry: GaugeRegistryProto, logger: Any | None = None
    ) -> None:
        self.query = query
        self.entries: dict[str, MetricEntry] = {}
        self._registry = registry
        self._log = logger or structlog.get_logger(__name__).bind(query=query.name)

    async def apply(self, records: Sequence[Record]) -> None:
        """Make the published series mirror ``records``.

        Raises:
            ResultSetError: If the rows cannot be mapped onto series
        """
        seen = self.set_metrics(records)
        await self.register_metrics(seen)

    def set_metrics(self, records: Sequence[Record]) -> dict[str, MetricStatus]:
        """Create or update the gauge of every series in ``records``.

        Returns:
            Status of each series seen in this round, keyed by series key
        """
        samples = self.build_samples(records)

        seen: dict[str, MetricStatus] = {}
        for sample in samples:
            entry = self.entries.get(sample.key)
            if entry is None:
                self._log.debug("metric_created", key=sample.key)
                entry = MetricEntry(
                    self._registry.create_gauge(sample.name, HELP_TEXT, sample.labels)
                )
                self.entries[sample.key] = entry
            elif sample.key in seen:
                self._log.warning("duplicate_series_in_result", key=sample.key)
            entry.gauge.set(sample.value)
            seen[sample.key] = entry.status
        return seen

    async def register_metrics(self, seen: Mapping[str, MetricStatus]) -> None:
        """Retire series missing from ``seen`` and publish new ones."""
        for key in list(self.entries):
            if key in seen:
                continue
            entry = self.entries.pop(key)
            if entry.status is MetricStatus.REGISTERED:
                self._log.info("metric_unregistering", key=key)
                await self._registry.unregister(entry.gauge)

        for key in seen:
            entry = self.entries[key]
            if entry.status is MetricStatus.UNREGISTERED:
                self._log.info("metric_registering", key=key)
                await self._registry.register(entry.gauge)
                entry.status = MetricStatus.REGISTERED

    def build_samples(self, records: Sequence[Record]) -> list[Sample]:
        """Map rows onto series without touching any state.

        Raises:
            ResultSetError: On a malformed result set or an unusable value
        """
        # A single-column result is a bare value, which only makes sense for one row.
        if len(records) > 1 and len(records[0]) == 1:
            raise ResultSetError(
                "There is more than one row in the query result - with a single column"
            )
        if self.query.data_field and self.query.sub_metrics:
            raise ResultSetError("sub-metrics are not compatible with data-field")

        sub_metrics = self.query.effective_sub_metrics()
        value_columns = set(sub_metrics.values())

        samples: list[Sample] = []
        for row in records:
            for suffix, data_field in sub_metrics.items():
                facet, raw_value = self._partition(row, data_field, value_columns)
                samples.append(
                    Sample(
                        key=series_key(self.query.name, suffix, facet),
                        name=metric_name(self.query.name, suffix),
                        labels=facet,
                        value=coerce_value(raw_value),
                    )
                )
        return samples

    @staticmethod
    def _partition(
        row: Record, data_field: str, value_columns: set[str]
    ) -> tuple[Facet, Any]:
        facet: Facet = {}
        value: Any = None
        found = False
        single_column = len(row) == 1

        for column, raw in row.items():
            lowered = str(column).lower()
            if single_column or lowered == data_field:
                if found:
                    raise ResultSetError(
                        f"Ambiguous value column {data_field!r} for multi-column query"
                    )
                value = raw
                found = True
            elif lowered not in value_columns:
                try:
                    validate_label_name(lowered)
                except ValueError as exc:
                    raise ResultSetError(f"Column {column!r} cannot be used as a label") from exc
                facet[lowered] = render_label_value(raw)

        if not found:
            raise ResultSetError(f"Value column {data_field!r} not found in result set")
        return facet, value
