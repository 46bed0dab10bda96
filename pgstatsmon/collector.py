"""Tick scheduler: reconciles backends and fans collection out per backend."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Iterable

from .bootstrap import BootstrapHook
from .connections import ConnectionEvent, ConnectionManager, ConnectionStatus
from .errors import BackendConnectionError, QueryExecutionError, QueryTimeoutError
from .metrics import MetricAggregator
from .models import BackendDescriptor, QueryDefinition
from .query import QueryRunner
from .registry import BackendRegistry, diff_backends

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackendReport:
    """Outcome of one backend's collection unit."""

    backend: str
    connected: bool
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True, slots=True)
class TickReport:
    """Outcome of one tick across every dispatched backend."""

    backends: tuple[BackendReport, ...]
    elapsed_ms: float

    @property
    def dispatched(self) -> tuple[str, ...]:
        return tuple(report.backend for report in self.backends)

    def for_backend(self, name: str) -> BackendReport | None:
        for report in self.backends:
            if report.backend == name:
                return report
        return None


class Collector:
    """Drives one collection cycle per interval.

    A tick reconciles the active backends against the registry, then runs
    one task per backend. Each task executes the catalog in order on that
    backend's connection. Ticks never overlap; the next one waits for every
    task of the previous one.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        connections: ConnectionManager,
        aggregator: MetricAggregator,
        catalog: Iterable[QueryDefinition],
        *,
        runner: QueryRunner | None = None,
        interval: float = 10.0,
        bootstrap: BootstrapHook | None = None,
    ) -> None:
        self._registry = registry
        self._connections = connections
        self._aggregator = aggregator
        self._catalog = tuple(catalog)
        self._runner = runner or QueryRunner()
        self._interval = interval
        self._bootstrap = bootstrap
        self._active: dict[str, BackendDescriptor] = {}
        self._bootstrap_tasks: dict[str, asyncio.Task[None]] = {}
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._unsubscribe = connections.subscribe(self._on_connection_event)
        self.ticks = 0

    @property
    def catalog(self) -> tuple[QueryDefinition, ...]:
        return self._catalog

    @property
    def active_backends(self) -> tuple[str, ...]:
        return tuple(self._active)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def initialize_metrics(self, catalog: Iterable[QueryDefinition]) -> None:
        """Swap the catalog and rebuild the aggregator between ticks."""

        catalog = tuple(catalog)
        async with self._tick_lock:
            self._aggregator.initialize_metrics(catalog)
            self._catalog = catalog

    async def tick(self) -> TickReport:
        """Run one full collection cycle."""

        async with self._tick_lock:
            started = time.perf_counter()
            await self._reconcile()
            catalog = self._catalog
            names = tuple(self._active)
            results = await asyncio.gather(
                *(self._collect_backend(name, catalog) for name in names),
                return_exceptions=True,
            )
            reports: list[BackendReport] = []
            for name, result in zip(names, results):
                if isinstance(result, BaseException):
                    LOG.error(
                        "Collection failed for backend",
                        exc_info=result,
                        extra={"backend": name},
                    )
                    reports.append(BackendReport(backend=name, connected=False))
                else:
                    reports.append(result)
            self.ticks += 1
            report = TickReport(backends=tuple(reports), elapsed_ms=(time.perf_counter() - started) * 1000)
        LOG.debug("Tick completed", extra={"backends": len(names), "elapsed_ms": report.elapsed_ms})
        return report

    async def run(self) -> None:
        """Fire ticks on the configured interval until cancelled."""

        loop = asyncio.get_running_loop()
        LOG.info("Starting collector (interval=%.3fs)", self._interval)
        while True:
            started = loop.time()
            try:
                await self.tick()
            except Exception:
                LOG.exception("Tick failed")
            await asyncio.sleep(max(0.0, self._interval - (loop.time() - started)))

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError("Collector is already running")
        self._task = asyncio.get_running_loop().create_task(self.run(), name="pgstatsmon-collector")
        return self._task

    async def stop(self) -> None:
        """Stop ticking and close every backend connection."""

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for name in tuple(self._bootstrap_tasks):
            await self._cancel_bootstrap(name)
        async with self._tick_lock:
            await self._connections.close_all()
            self._active.clear()
        LOG.info("Collector stopped")

    async def _reconcile(self) -> None:
        diff = diff_backends(self._active, self._registry.current())
        for backend in diff.removed:
            await self._cancel_bootstrap(backend.name)
            await self._connections.remove(backend.name)
            self._aggregator.prune(backend.name)
            self._active.pop(backend.name, None)
        for backend in diff.added:
            self._connections.add(backend)
            self._active[backend.name] = backend
            self._schedule_bootstrap(backend)

    async def _collect_backend(self, name: str, catalog: tuple[QueryDefinition, ...]) -> BackendReport:
        await self._await_bootstrap(name)
        succeeded = failed = 0
        async with self._connections.checkout(name) as lease:
            if lease is None:
                return BackendReport(backend=name, connected=False)
            for position, definition in enumerate(catalog):
                self._aggregator.record_query_attempt(definition.name, name)
                try:
                    result = await self._runner.run(lease.connection, definition, name)
                    self._aggregator.commit(result.samples)
                except QueryExecutionError as exc:
                    failed += 1
                    self._record_failure(definition, name, exc)
                    continue
                except (QueryTimeoutError, BackendConnectionError) as exc:
                    # A timed out handle may sit on a dead socket; never reuse it.
                    failed += 1
                    self._record_failure(definition, name, exc)
                    await lease.discard(exc)
                    skipped = len(catalog) - position - 1
                    if skipped:
                        LOG.warning(
                            "Skipping %d queries until reconnect",
                            skipped,
                            extra={"backend": name},
                        )
                    return BackendReport(name, connected=True, succeeded=succeeded, failed=failed, skipped=skipped)
                except Exception:
                    failed += 1
                    self._aggregator.increment_query_error(definition.name, name)
                    LOG.exception("Query failed unexpectedly", extra={"query": definition.name, "backend": name})
                    continue
                self._aggregator.observe_query_time(definition.name, name, result.elapsed_ms)
                succeeded += 1
        return BackendReport(name, connected=True, succeeded=succeeded, failed=failed)

    async def _await_bootstrap(self, name: str) -> None:
        """Hold this backend's first connection until its monitoring role exists."""

        task = self._bootstrap_tasks.get(name)
        if task is not None and not task.done():
            await asyncio.wait([task])

    def _record_failure(self, definition: QueryDefinition, backend: str, error: Exception) -> None:
        count = self._aggregator.increment_query_error(definition.name, backend)
        LOG.warning(
            "Query failed: %s",
            error,
            extra={"query": definition.name, "backend": backend, "errors": count},
        )

    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event.backend not in self._active:
            return
        if event.status is ConnectionStatus.BACKOFF:
            self._aggregator.increment_connect_error(event.backend)
        elif event.status is ConnectionStatus.DOWN:
            self._aggregator.set_backend_down(event.backend, True)
        elif event.status is ConnectionStatus.CONNECTED:
            self._aggregator.set_backend_down(event.backend, False)

    def _schedule_bootstrap(self, backend: BackendDescriptor) -> None:
        if self._bootstrap is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._run_bootstrap(backend),
            name=f"pgstatsmon-bootstrap-{backend.name}",
        )
        self._bootstrap_tasks[backend.name] = task
        task.add_done_callback(lambda done, name=backend.name: self._forget_bootstrap(name, done))

    def _forget_bootstrap(self, name: str, task: asyncio.Task[None]) -> None:
        if self._bootstrap_tasks.get(name) is task:
            del self._bootstrap_tasks[name]

    async def _cancel_bootstrap(self, name: str) -> None:
        task = self._bootstrap_tasks.pop(name, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run_bootstrap(self, backend: BackendDescriptor) -> None:
        assert self._bootstrap is not None
        try:
            info = await self._bootstrap(backend)
        except Exception:
            LOG.exception("Bootstrap failed", extra={"backend": backend.name})
            return
        state = self._connections.get(backend.name)
        if state is not None and state.backend == backend:
            state.info = info
        LOG.info(
            "Backend bootstrapped",
            extra={"backend": backend.name, "pg_version": info.pg_version, "in_recovery": info.in_recovery},
        )


__all__ = ["BackendReport", "Collector", "TickReport"]
