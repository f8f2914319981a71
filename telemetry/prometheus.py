"""Prometheus metrics exporter with HTTP endpoint."""

from __future__ import annotations

import asyncio
import contextlib
import os

import structlog

from telemetry.registry import MetricRegistry

TOKEN_ENV_VAR = "SQL_EXPORTER_METRICS_TOKEN"


def escape_label_value(value: str) -> str:
    """Escape a label value for the text exposition format."""
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def escape_help_text(text: str) -> str:
    """Escape HELP text for the text exposition format."""
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def format_value(value: float) -> str:
    """Render a sample value, using the exposition spelling of non-finite values."""
    if value != value:
        return "NaN"
    if value == float("inf"):
        return "+Inf"
    if value == float("-inf"):
        return "-Inf"
    return repr(float(value))


class PrometheusExporter:
    """Prometheus-compatible metrics HTTP exporter.

    Exposes registered gauges at /metrics endpoint in Prometheus text
    exposition format.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        port: int = 8080,
        bind_host: str = "0.0.0.0",
    ) -> None:
        """Initialize Prometheus exporter.

        Args:
            registry: Metric registry holding the published gauges
            port: HTTP port to bind to
            bind_host: Host to bind to
        """
        self.registry = registry
        self.port = port
        self.bind_host = bind_host
        self._server: asyncio.Server | None = None
        self._bearer_token = os.getenv(TOKEN_ENV_VAR)
        self._logger = structlog.get_logger(__name__)

    @property
    def sockets(self) -> list[tuple[str, int]]:
        """Addresses the server is listening on (useful with port 0)."""
        if self._server is None:
            return []
        return [sock.getsockname()[:2] for sock in self._server.sockets]

    async def start(self) -> None:
        """Start HTTP server for /metrics endpoint.

        Security:
            - Optional Bearer token auth via SQL_EXPORTER_METRICS_TOKEN env var
        """
        self._server = await asyncio.start_server(
            self._handle_client, self.bind_host or None, self.port
        )
        self._logger.info("metrics_server_listening", addresses=self.sockets)

    async def stop(self, grace_period: float = 5.0) -> None:
        """Stop HTTP server.

        Stops accepting connections, then waits up to ``grace_period``
        seconds for in-flight requests to finish.
        """
        if self._server is None:
            return

        server = self._server
        self._server = None
        server.close()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=grace_period)
        except asyncio.TimeoutError:
            self._logger.warning("metrics_server_stop_timeout", grace_period=grace_period)
        self._logger.info("metrics_server_stopped")

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle HTTP client connection.

        Args:
            reader: Stream reader
            writer: Stream writer
        """
        try:
            # Read HTTP request line
            request_line = await reader.readline()
            if not request_line:
                return

            request_str = request_line.decode("utf-8").strip()
            parts = request_str.split()
            if len(parts) < 2:
                await self._send_response(writer, 400, "Bad Request")
                return

            method, path = parts[0], parts[1].split("?", 1)[0]

            # Read headers
            headers = await self._read_headers(reader)

            # Check authentication if token is configured
            if self._bearer_token:
                auth_header = headers.get("authorization", "")
                expected_auth = f"Bearer {self._bearer_token}"
                if auth_header != expected_auth:
                    await self._send_response(writer, 401, "Unauthorized")
                    return

            # Route request
            if method == "GET" and path == "/metrics":
                metrics_text = self.collect_metrics()
                await self._send_response(
                    writer, 200, metrics_text, content_type="text/plain; version=0.0.4"
                )
            else:
                await self._send_response(writer, 404, "Not Found")

        except (ConnectionError, UnicodeDecodeError) as exc:
            self._logger.debug("metrics_request_failed", error=str(exc))
        except Exception:
            self._logger.exception("metrics_request_error")
            with contextlib.suppress(ConnectionError):
                await self._send_response(writer, 500, "Internal Server Error")
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def _read_headers(self, reader: asyncio.StreamReader) -> dict[str, str]:
        """Read HTTP headers.

        Args:
            reader: Stream reader

        Returns:
            Dictionary of headers (lowercase keys)
        """
        headers: dict[str, str] = {}
        while True:
            line = await reader.readline()
            if not line or line in (b"\r\n", b"\n"):
                break

            header_str = line.decode("utf-8").strip()
            if ":" in header_str:
                key, value = header_str.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        return headers

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status_code: int,
        body: str,
        content_type: str = "text/plain",
    ) -> None:
        """Send HTTP response.

        Args:
            writer: Stream writer
            status_code: HTTP status code
            body: Response body
            content_type: Content-Type header
        """
        status_messages = {
            200: "OK",
            400: "Bad Request",
            401: "Unauthorized",
            404: "Not Found",
            500: "Internal Server Error",
        }
        status_message = status_messages.get(status_code, "Unknown")
        payload = body.encode("utf-8")

        head = (
            f"HTTP/1.1 {status_code} {status_message}\r\n"
            f"Content-Type: {content_type}; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )

        writer.write(head.encode("utf-8") + payload)
        await writer.drain()

    def collect_metrics(self) -> str:
        """Collect all gauges and format for Prometheus.

        Returns:
            Metrics in Prometheus text exposition format
        """
        lines: list[str] = []
        for name, gauges in self.registry.collect_all().items():
            lines.append(f"# HELP {name} {escape_help_text(self.registry.help_text(name))}")
            lines.append(f"# TYPE {name} gauge")
            for gauge in gauges:
                labels_dict, value = gauge.collect()
                lines.append(f"{name}{self._format_labels(labels_dict)} {format_value(value)}")

        return "\n".join(lines) + "\n" if lines else ""

    def _format_labels(self, labels: dict[str, str]) -> str:
        """Format labels for Prometheus exposition format.

        Args:
            labels: Label dictionary

        Returns:
            Formatted label string (e.g., '{key1="val1",key2="val2"}')
        """
        if not labels:
            return ""

        # Sort labels for deterministic output
        sorted_labels = sorted(labels.items())
        label_parts = [f'{key}="{escape_label_value(value)}"' for key, value in sorted_labels]
        return "{" + ",".join(label_parts) + "}"
