"""Monitor wiring and command-line entry point for pgstatsmon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .bootstrap import Bootstrapper, BootstrapHook
from .catalog import build_catalog, load_catalog
from .collector import Collector, TickReport
from .config import DEFAULT_CONFIG_FILE, MonitorConfig, load_config
from .connections import ConnectionManager
from .discovery import Discovery, PollingDiscovery, StaticDiscovery, file_source
from .errors import ConfigError
from .exporter import start_exporter
from .metrics import MetricAggregator, MetricSnapshot
from .models import QueryDefinition
from .pgclient import AsyncpgClientFactory, ClientFactory
from .queries import DEFAULT_QUERIES
from .query import QueryRunner
from .registry import BackendRegistry

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def build_discovery(config: MonitorConfig) -> Discovery:
    """Create the discovery source named by the configuration."""

    if config.static is not None:
        return StaticDiscovery(
            [backend.to_descriptor(config.database) for backend in config.static.backends],
            database=config.database,
        )
    if config.polling is not None:
        return PollingDiscovery(
            file_source(config.polling.path),
            interval=config.polling.interval / 1000,
            database=config.database,
        )
    raise ConfigError("No backend discovery configured")


class PgStatsMon:
    """Owns the registry, connections, collector and aggregator of one process."""

    def __init__(
        self,
        config: MonitorConfig,
        *,
        catalog: Iterable[QueryDefinition] | None = None,
        client_factory: ClientFactory | None = None,
        discovery: Discovery | None = None,
        bootstrap: BootstrapHook | None = None,
    ) -> None:
        self._config = config
        if catalog is None:
            catalog = load_catalog(config.queries) if config.queries else DEFAULT_QUERIES
        catalog = tuple(catalog)
        if bootstrap is None and config.bootstrap:
            bootstrap = Bootstrapper(
                user=config.user,
                superuser=config.superuser,
                password=config.password,
                connect_timeout=config.connect_timeout_seconds,
                query_timeout=config.query_timeout_seconds,
            )
        self.registry = BackendRegistry()
        self.aggregator = MetricAggregator(catalog)
        self.connections = ConnectionManager(
            client_factory
            or AsyncpgClientFactory(
                user=config.user,
                password=config.password,
                connect_timeout=config.connect_timeout_seconds,
            ),
            connect_timeout=config.connect_timeout_seconds,
            connect_retries=config.connect_retries,
            backoff_initial=config.backoff_initial_seconds,
            backoff_max=config.backoff_max_seconds,
        )
        self.discovery = discovery or build_discovery(config)
        self.collector = Collector(
            self.registry,
            self.connections,
            self.aggregator,
            catalog,
            runner=QueryRunner(query_timeout=config.query_timeout_seconds),
            interval=config.interval_seconds,
            bootstrap=bootstrap,
        )
        self._discovery_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> MonitorConfig:
        return self._config

    async def start(self, *, serve: bool = False, collect: bool = True) -> None:
        """Load the initial backend set, then begin polling and collecting."""

        await self.discovery.refresh(self.registry)
        if not len(self.registry):
            LOG.warning("No backends discovered yet")
        self._discovery_task = asyncio.get_running_loop().create_task(
            self.discovery.run(self.registry),
            name="pgstatsmon-discovery",
        )
        if serve:
            self.serve()
        if collect:
            self.collector.start()

    def serve(self) -> None:
        start_exporter(self.aggregator, self._config.target.address, self._config.target.port)

    async def stop(self) -> None:
        task, self._discovery_task = self._discovery_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.collector.stop()

    async def tick(self) -> TickReport:
        """Run one collection cycle now."""

        await self.discovery.refresh(self.registry)
        return await self.collector.tick()

    async def initialize_metrics(self, queries: Iterable[QueryDefinition | Mapping[str, Any]]) -> None:
        """Replace the catalog; drops every collected value."""

        await self.collector.initialize_metrics(build_catalog(queries))

    def get_target(self) -> MetricAggregator:
        return self.aggregator

    def snapshot(self) -> MetricSnapshot:
        return self.aggregator.snapshot()


async def run_monitor(config: MonitorConfig) -> None:
    """Run until SIGINT or SIGTERM."""

    monitor = PgStatsMon(config)
    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stopping.set)
        except NotImplementedError:  # pragma: no cover - non-POSIX loops
            pass
    try:
        await monitor.start(serve=True)
        await stopping.wait()
    finally:
        await monitor.stop()


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pgstatsmon", description="Export Postgres statistics to Prometheus.")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help=f"configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="logging level (default: $LOG_LEVEL or INFO)",
    )
    args = parser.parse_args(argv)
    # argparse does not check defaults against choices
    if args.log_level not in LOG_LEVELS:
        parser.error(f"invalid LOG_LEVEL {args.log_level!r} (choose from {', '.join(LOG_LEVELS)})")
    return args


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)
    try:
        config = load_config(args.config)
        asyncio.run(run_monitor(config))
    except ConfigError as exc:
        LOG.error("%s", exc)
        return 2
    except OSError as exc:
        LOG.error("Cannot start exporter: %s", exc)
        return 1
    return 0


__all__ = ["PgStatsMon", "build_discovery", "main", "run_monitor"]
