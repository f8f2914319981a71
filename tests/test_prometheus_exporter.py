"""Tests for the gauge registry and the Prometheus scrape endpoint."""

from __future__ import annotations

import asyncio

import pytest

from telemetry.prometheus import (
    TOKEN_ENV_VAR,
    PrometheusExporter,
    escape_label_value,
    format_value,
)
from telemetry.registry import Gauge, MetricRegistry


class TestGauge:
    """Tests for Gauge."""

    def test_sets_gauge_value(self) -> None:
        gauge = Gauge("query_result_orders", "Result of an SQL query", {"region": "eu"})

        gauge.set(3)
        assert gauge.get() == 3.0

        gauge.set(-1.5)
        assert gauge.collect() == ({"region": "eu"}, -1.5)

    def test_labels_key_is_order_independent(self) -> None:
        first = Gauge("m", "help", {"b": "2", "a": "1"})
        second = Gauge("m", "help", {"a": "1", "b": "2"})

        assert first.labels_key == second.labels_key == (("a", "1"), ("b", "2"))

    def test_rejects_invalid_metric_name(self) -> None:
        with pytest.raises(ValueError, match="Invalid metric name"):
            Gauge("query result", "help")

    def test_rejects_reserved_label_name(self) -> None:
        with pytest.raises(ValueError, match="Invalid label name"):
            Gauge("m", "help", {"__name__": "x"})


class TestMetricRegistry:
    """Tests for MetricRegistry."""

    @pytest.mark.asyncio
    async def test_created_gauge_is_not_published(self) -> None:
        registry = MetricRegistry()

        gauge = registry.create_gauge("m", "help")

        assert not registry.is_registered(gauge)
        assert registry.collect_all() == {}

    @pytest.mark.asyncio
    async def test_registers_and_unregisters(self) -> None:
        registry = MetricRegistry()
        gauge = registry.create_gauge("m", "help", {"region": "eu"})

        await registry.register(gauge)
        assert registry.get_gauge("m", {"region": "eu"}) is gauge

        assert await registry.unregister(gauge) is True
        assert registry.collect_all() == {}
        assert await registry.unregister(gauge) is False

    @pytest.mark.asyncio
    async def test_rejects_duplicate_series(self) -> None:
        registry = MetricRegistry()
        await registry.register(registry.create_gauge("m", "help", {"region": "eu"}))

        with pytest.raises(ValueError, match="already registered"):
            await registry.register(registry.create_gauge("m", "help", {"region": "eu"}))

    @pytest.mark.asyncio
    async def test_rejects_conflicting_help_text(self) -> None:
        registry = MetricRegistry()
        await registry.register(registry.create_gauge("m", "help", {"region": "eu"}))

        with pytest.raises(ValueError, match="different help text"):
            await registry.register(registry.create_gauge("m", "other", {"region": "us"}))

    @pytest.mark.asyncio
    async def test_unregister_ignores_other_instance_with_same_labels(self) -> None:
        registry = MetricRegistry()
        published = registry.create_gauge("m", "help")
        stranger = registry.create_gauge("m", "help")
        await registry.register(published)

        assert await registry.unregister(stranger) is False
        assert registry.is_registered(published)

    @pytest.mark.asyncio
    async def test_collects_families_sorted(self) -> None:
        registry = MetricRegistry()
        for name, region in [("b", "us"), ("a", "x"), ("b", "eu")]:
            await registry.register(registry.create_gauge(name, "help", {"region": region}))

        collected = registry.collect_all()

        assert list(collected) == ["a", "b"]
        assert [g.const_labels["region"] for g in collected["b"]] == ["eu", "us"]


class TestExpositionFormat:
    """Tests for text exposition formatting."""

    @pytest.mark.asyncio
    async def test_help_and_type_once_per_family(self) -> None:
        registry = MetricRegistry()
        for region, value in [("eu", 3), ("us", 5)]:
            gauge = registry.create_gauge("query_result_orders", "Result of an SQL query", {"region": region})
            gauge.set(value)
            await registry.register(gauge)

        text = PrometheusExporter(registry).collect_metrics()

        assert text == (
            "# HELP query_result_orders Result of an SQL query\n"
            "# TYPE query_result_orders gauge\n"
            'query_result_orders{region="eu"} 3.0\n'
            'query_result_orders{region="us"} 5.0\n'
        )

    def test_empty_registry_renders_nothing(self) -> None:
        assert PrometheusExporter(MetricRegistry()).collect_metrics() == ""

    def test_escapes_label_values(self) -> None:
        assert escape_label_value('a"b\\c\nd') == 'a\\"b\\\\c\\nd'

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1.0, "1.0"), (float("nan"), "NaN"), (float("inf"), "+Inf"), (float("-inf"), "-Inf")],
    )
    def test_formats_values(self, value: float, expected: str) -> None:
        assert format_value(value) == expected


class TestPrometheusExporter:
    """Tests for the HTTP endpoint."""

    @pytest.mark.asyncio
    async def test_starts_and_stops_http_server(self) -> None:
        exporter = PrometheusExporter(MetricRegistry(), port=0, bind_host="127.0.0.1")

        await exporter.start()
        assert exporter.sockets

        await exporter.stop()
        assert exporter.sockets == []

    @pytest.mark.asyncio
    async def test_serves_metrics_at_metrics_endpoint(self) -> None:
        registry = MetricRegistry()
        gauge = registry.create_gauge("query_result_signups", "Result of an SQL query")
        gauge.set(42)
        await registry.register(gauge)
        exporter = PrometheusExporter(registry, port=0, bind_host="127.0.0.1")
        await exporter.start()

        try:
            host, port = exporter.sockets[0]
            response = await self._http_get(host, port, "/metrics")

            assert "HTTP/1.1 200 OK" in response
            assert "# TYPE query_result_signups gauge" in response
            assert "query_result_signups 42.0" in response
        finally:
            await exporter.stop()

    @pytest.mark.asyncio
    async def test_retired_series_disappear_from_scrape(self) -> None:
        registry = MetricRegistry()
        gauge = registry.create_gauge("query_result_orders", "Result of an SQL query", {"region": "eu"})
        await registry.register(gauge)
        exporter = PrometheusExporter(registry, port=0, bind_host="127.0.0.1")
        await exporter.start()

        try:
            host, port = exporter.sockets[0]
            assert 'region="eu"' in await self._http_get(host, port, "/metrics")

            await registry.unregister(gauge)

            assert "query_result_orders" not in await self._http_get(host, port, "/metrics")
        finally:
            await exporter.stop()

    @pytest.mark.asyncio
    async def test_returns_404_for_unknown_path(self) -> None:
        exporter = PrometheusExporter(MetricRegistry(), port=0, bind_host="127.0.0.1")
        await exporter.start()

        try:
            host, port = exporter.sockets[0]
            response = await self._http_get(host, port, "/unknown")
            assert "HTTP/1.1 404 Not Found" in response
        finally:
            await exporter.stop()

    @pytest.mark.asyncio
    async def test_requires_bearer_token_when_configured(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(TOKEN_ENV_VAR, "secret123")
        exporter = PrometheusExporter(MetricRegistry(), port=0, bind_host="127.0.0.1")
        await exporter.start()

        try:
            host, port = exporter.sockets[0]
            response = await self._http_get(host, port, "/metrics")
            assert "HTTP/1.1 401 Unauthorized" in response

            response = await self._http_get(
                host, port, "/metrics", headers={"Authorization": "Bearer secret123"}
            )
            assert "HTTP/1.1 200 OK" in response

            response = await self._http_get(
                host, port, "/metrics", headers={"Authorization": "Bearer wrong"}
            )
            assert "HTTP/1.1 401 Unauthorized" in response
        finally:
            await exporter.stop()

    async def _http_get(
        self, host: str, port: int, path: str, headers: dict[str, str] | None = None
    ) -> str:
        reader, writer = await asyncio.open_connection(host, port)

        try:
            request = f"GET {path} HTTP/1.1\r\nHost: {host}\r\n"
            for key, value in (headers or {}).items():
                request += f"{key}: {value}\r\n"
            request += "\r\n"

            writer.write(request.encode("utf-8"))
            await writer.drain()

            # The server closes the connection after each response.
            response_bytes = await reader.read()
            return response_bytes.decode("utf-8")
        finally:
            writer.close()
            await writer.wait_closed()
