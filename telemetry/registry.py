"""Metric registry for storing and managing Prometheus-compatible gauges."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from typing import Protocol

LabelsKey = tuple[tuple[str, str], ...]

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_metric_name(name: str) -> None:
    """Validate a metric name against the Prometheus data model.

    Raises:
        ValueError: If the name is not a valid metric name
    """
    if not _METRIC_NAME_RE.match(name):
        raise ValueError(f"Invalid metric name: {name!r}")


def validate_label_name(name: str) -> None:
    """Validate a label name against the Prometheus data model.

    Names starting with ``__`` are reserved for internal use.

    Raises:
        ValueError: If the name is not a valid label name
    """
    if not _LABEL_NAME_RE.match(name) or name.startswith("__"):
        raise ValueError(f"Invalid label name: {name!r}")


class Gauge:
    """Prometheus gauge bound to a fixed set of constant labels.

    One instance is one series; gauges sharing a name form a metric family.
    """

    def __init__(
        self, name: str, help_text: str, const_labels: Mapping[str, str] | None = None
    ) -> None:
        """Initialize gauge.

        Args:
            name: Metric name
            help_text: Help text for metric
            const_labels: Label values fixed for the lifetime of the series

        Raises:
            ValueError: If the metric name or a label name is invalid
        """
        validate_metric_name(name)
        labels = dict(const_labels or {})
        for label_name in labels:
            validate_label_name(label_name)

        self.name = name
        self.help_text = help_text
        self.const_labels = labels
        self._value = 0.0

    @property
    def labels_key(self) -> LabelsKey:
        """Sorted label pairs identifying this series within its family."""
        return tuple(sorted(self.const_labels.items()))

    def set(self, value: float) -> None:
        """Set gauge to specific value.

        Args:
            value: Value to set
        """
        self._value = float(value)

    def get(self) -> float:
        """Get current gauge value."""
        return self._value

    def collect(self) -> tuple[dict[str, str], float]:
        """Collect the series labels and value.

        Returns:
            (labels_dict, value) tuple
        """
        return dict(self.const_labels), self._value

    def __repr__(self) -> str:
        return f"Gauge(name={self.name!r}, labels={self.const_labels!r})"


class GaugeRegistryProto(Protocol):
    """Capabilities a metric owner needs from the export registry."""

    def create_gauge(
        self, name: str, help_text: str, const_labels: Mapping[str, str] | None = None
    ) -> Gauge: ...

    async def register(self, gauge: Gauge) -> None: ...

    async def unregister(self, gauge: Gauge) -> bool: ...


class MetricRegistry:
    """Registry of published gauges, shared by every producer in the process."""

    def __init__(self) -> None:
        """Initialize metric registry."""
        self._families: dict[str, dict[LabelsKey, Gauge]] = {}
        self._help: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def create_gauge(
        self, name: str, help_text: str, const_labels: Mapping[str, str] | None = None
    ) -> Gauge:
        """Create a gauge without publishing it.

        Args:
            name: Metric name
            help_text: Help text
            const_labels: Constant label values

        Returns:
            Unregistered Gauge instance
        """
        return Gauge(name, help_text, const_labels)

    async def register(self, gauge: Gauge) -> None:
        """Publish a gauge so it is exported on the next scrape.

        Args:
            gauge: Gauge to publish

        Raises:
            ValueError: If a series with the same name and labels is already
                registered, or the family was registered with other help text
        """
        async with self._lock:
            family = self._families.get(gauge.name)
            if family is None:
                self._families[gauge.name] = {gauge.labels_key: gauge}
                self._help[gauge.name] = gauge.help_text
                return

            if self._help[gauge.name] != gauge.help_text:
                raise ValueError(
                    f"Metric {gauge.name} already registered with different help text"
                )
            if gauge.labels_key in family:
                raise ValueError(
                    f"Gauge {gauge.name} with labels {gauge.const_labels} already registered"
                )
            family[gauge.labels_key] = gauge

    async def unregister(self, gauge: Gauge) -> bool:
        """Remove a previously published gauge.

        Args:
            gauge: Gauge to remove

        Returns:
            True if the gauge was registered and has been removed
        """
        async with self._lock:
            family = self._families.get(gauge.name)
            if family is None or family.get(gauge.labels_key) is not gauge:
                return False

            del family[gauge.labels_key]
            if not family:
                del self._families[gauge.name]
                del self._help[gauge.name]
            return True

    def is_registered(self, gauge: Gauge) -> bool:
        """Check whether this exact gauge instance is published."""
        family = self._families.get(gauge.name, {})
        return family.get(gauge.labels_key) is gauge

    def get_gauge(self, name: str, labels: Mapping[str, str] | None = None) -> Gauge | None:
        """Get a published gauge by name and labels."""
        key: LabelsKey = tuple(sorted((labels or {}).items()))
        return self._families.get(name, {}).get(key)

    def help_text(self, name: str) -> str:
        """Help text of a registered metric family."""
        return self._help[name]

    def collect_all(self) -> dict[str, list[Gauge]]:
        """Collect all published gauges.

        Returns:
            Mapping of metric name to its series, both sorted for stable output
        """
        return {
            name: [family[key] for key in sorted(family)]
            for name, family in sorted(self._families.items())
        }
