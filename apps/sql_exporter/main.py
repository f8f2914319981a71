"""SQL exporter service main entry point.

Loads the query definitions, starts one polling worker per query and serves
the resulting gauges on /metrics until SIGINT or SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from dataclasses import dataclass, field

import structlog

from core.config import (
    DEFAULT_PORT,
    DEFAULT_QUERIES_FILE,
    Config,
    Query,
    load_config,
    load_queries,
    load_queries_dir,
)
from core.logging import setup_console_logging, setup_json_logging
from poller.supervisor import WorkerSupervisor
from telemetry.prometheus import PrometheusExporter
from telemetry.registry import MetricRegistry

logger = structlog.get_logger(__name__)


@dataclass
class ExporterSettings:
    service_url: str
    queries: list[Query] = field(default_factory=list)
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    shutdown_grace_s: float = 5.0


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        description="Export the results of SQL queries as Prometheus gauges"
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host of the service.")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port of the service.")
    parser.add_argument("--service", default="", help="URL of the SQL agent service.")
    parser.add_argument(
        "--queries",
        default=DEFAULT_QUERIES_FILE,
        help="Path to file containing queries.",
    )
    parser.add_argument(
        "--query-dir",
        default="",
        help="Path to directory containing queries.",
    )
    parser.add_argument(
        "--config",
        default="",
        help="Configuration file to define common data sources etc.",
    )
    parser.add_argument(
        "--lax",
        action="store_true",
        help="Tolerate invalid files in --query-dir",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    parser.add_argument(
        "--log-dir",
        default="",
        help="Write NDJSON logs to this directory instead of stderr",
    )
    parser.add_argument(
        "--shutdown-grace",
        type=float,
        default=5.0,
        help="Seconds to wait for in-flight requests on shutdown (default: 5)",
    )
    return parser


def load_settings(args: argparse.Namespace) -> ExporterSettings:
    """Resolve command line arguments into exporter settings.

    Raises:
        ValueError: On conflicting options or invalid configuration
        FileNotFoundError: If a config or queries file is missing
    """
    if not args.service:
        raise ValueError("URL to SQL Agent service required.")

    queries_file = args.queries
    if queries_file == DEFAULT_QUERIES_FILE and args.query_dir:
        queries_file = ""
    if queries_file and args.query_dir:
        raise ValueError("You can specify either --queries or --query-dir")

    config = load_config(args.config) if args.config else Config()

    if args.query_dir:
        queries = load_queries_dir(args.query_dir, config, tolerate_invalid=args.lax)
    else:
        queries = load_queries(queries_file, config)
    if not queries:
        raise ValueError("No queries loaded!")

    return ExporterSettings(
        service_url=args.service,
        queries=queries,
        host=args.host,
        port=args.port,
        shutdown_grace_s=args.shutdown_grace,
    )


async def run_exporter(
    settings: ExporterSettings, stop_event: asyncio.Event | None = None
) -> None:
    """Serve metrics and poll queries until ``stop_event`` is set.

    Without an explicit ``stop_event`` SIGINT and SIGTERM trigger shutdown.
    """
    stop = stop_event or asyncio.Event()
    if stop_event is None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

    registry = MetricRegistry()
    exporter = PrometheusExporter(registry, port=settings.port, bind_host=settings.host)
    supervisor = WorkerSupervisor(settings.queries, settings.service_url, registry)

    await exporter.start()
    try:
        await supervisor.start()
        await stop.wait()
    finally:
        await exporter.stop(settings.shutdown_grace_s)
        logger.info("workers_cancelling")
        await supervisor.stop(settings.shutdown_grace_s)
        logger.info("exporter_exiting")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_dir:
        setup_json_logging(args.log_dir, args.log_level)
    else:
        setup_console_logging(args.log_level)
    logger.info("exporter_starting")

    try:
        settings = load_settings(args)
    except (ValueError, FileNotFoundError) as exc:
        parser.error(str(exc))

    try:
        asyncio.run(run_exporter(settings))
    except KeyboardInterrupt:
        return 0

    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
