"""Telemetry module for publishing gauges and serving them to Prometheus."""

from telemetry.prometheus import PrometheusExporter
from telemetry.registry import Gauge, GaugeRegistryProto, MetricRegistry

__all__ = [
    "Gauge",
    "GaugeRegistryProto",
    "MetricRegistry",
    "PrometheusExporter",
]
