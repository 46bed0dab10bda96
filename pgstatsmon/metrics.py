"""Label-indexed metric registry fed by the collector and read by the exporter."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping

from .models import LabelSet, MetricKind, MetricSample, QueryDefinition, make_labels

LOG = logging.getLogger(__name__)

QUERY_ERROR = "pg_query_error"
CONNECT_ERROR = "pg_connect_error"
BACKEND_DOWN = "pg_backend_down"
QUERY_TIME = "pg_query_time_ms"


@dataclass(frozen=True, slots=True)
class MetricDescriptor:
    """Name, type and help text of one metric."""

    name: str
    kind: MetricKind
    help: str = ""


@dataclass(frozen=True, slots=True)
class MetricFamily:
    """All label sets of one metric at snapshot time."""

    name: str
    kind: MetricKind
    help: str
    samples: tuple[tuple[LabelSet, float], ...]

    def get_value(self, labels: Mapping[str, object]) -> float | None:
        wanted = make_labels(labels)
        for label_set, value in self.samples:
            if label_set == wanted:
                return value
        return None


@dataclass(frozen=True, slots=True)
class MetricSnapshot:
    """Immutable view of the aggregator at one instant."""

    families: tuple[MetricFamily, ...]

    def __iter__(self) -> Iterator[MetricFamily]:
        return iter(self.families)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(family.name for family in self.families)

    def family(self, name: str) -> MetricFamily | None:
        for family in self.families:
            if family.name == name:
                return family
        return None

    def get_value(self, name: str, labels: Mapping[str, object]) -> float | None:
        family = self.family(name)
        if family is None:
            return None
        return family.get_value(labels)

    def label_sets(self, name: str) -> tuple[LabelSet, ...]:
        family = self.family(name)
        if family is None:
            return ()
        return tuple(label_set for label_set, _ in family.samples)


META_METRICS: tuple[MetricDescriptor, ...] = (
    MetricDescriptor(QUERY_ERROR, MetricKind.COUNTER, "Failed query executions per backend"),
    MetricDescriptor(CONNECT_ERROR, MetricKind.COUNTER, "Failed connection attempts per backend"),
    MetricDescriptor(BACKEND_DOWN, MetricKind.GAUGE, "1 if the backend exhausted its connect retries"),
    MetricDescriptor(QUERY_TIME, MetricKind.GAUGE, "Wall time of the latest query execution"),
)


class MetricAggregator:
    """Merges samples from every backend and query into one registry.

    Catalog counters are stored verbatim since Postgres statistics are
    already cumulative; gauges are overwritten on every commit. The error
    and connect counters are the only values accumulated locally.

    Every read and write happens under a single lock so the exporter thread
    never sees a label set or a query's batch half-applied.
    """

    def __init__(self, catalog: Iterable[QueryDefinition] = ()) -> None:
        self._lock = threading.Lock()
        self._descriptors: dict[str, MetricDescriptor] = {}
        self._values: dict[str, dict[LabelSet, float]] = {}
        self.initialize_metrics(catalog)

    def initialize_metrics(self, catalog: Iterable[QueryDefinition]) -> None:
        """Drop all descriptors and values and rebuild them from ``catalog``."""

        descriptors: dict[str, MetricDescriptor] = {meta.name: meta for meta in META_METRICS}
        for query in catalog:
            for kind, fields in ((MetricKind.COUNTER, query.counters), (MetricKind.GAUGE, query.gauges)):
                for field_def in fields:
                    name = query.metric_name(field_def)
                    if name in descriptors:
                        raise ValueError(f"Metric '{name}' is declared more than once")
                    descriptors[name] = MetricDescriptor(name, kind, field_def.help)
        with self._lock:
            self._descriptors = descriptors
            self._values = {name: {} for name in descriptors}
        LOG.debug("Metrics initialized", extra={"metrics": len(descriptors)})

    @property
    def descriptors(self) -> tuple[MetricDescriptor, ...]:
        with self._lock:
            return tuple(self._descriptors.values())

    def apply(self, sample: MetricSample) -> None:
        """Commit a single sample."""

        with self._lock:
            self._store(sample)

    def commit(self, samples: Iterable[MetricSample]) -> None:
        """Commit a batch of samples atomically with respect to readers."""

        batch = tuple(samples)
        with self._lock:
            for sample in batch:
                self._check(sample)
            for sample in batch:
                self._values[sample.name][sample.labels] = sample.value

    def record_query_attempt(self, query: str, backend: str) -> None:
        """Make sure the error counter for (query, backend) exists."""

        labels = make_labels({"query": query, "backend": backend})
        with self._lock:
            self._values[QUERY_ERROR].setdefault(labels, 0.0)

    def increment_query_error(self, query: str, backend: str) -> float:
        labels = make_labels({"query": query, "backend": backend})
        return self._increment(QUERY_ERROR, labels)

    def increment_connect_error(self, backend: str) -> float:
        return self._increment(CONNECT_ERROR, make_labels({"backend": backend}))

    def set_backend_down(self, backend: str, down: bool) -> None:
        labels = make_labels({"backend": backend})
        with self._lock:
            self._values[BACKEND_DOWN][labels] = 1.0 if down else 0.0

    def observe_query_time(self, query: str, backend: str, elapsed_ms: float) -> None:
        labels = make_labels({"query": query, "backend": backend})
        with self._lock:
            self._values[QUERY_TIME][labels] = float(elapsed_ms)

    def prune(self, backend: str) -> int:
        """Remove every label set tagged with ``backend``; return how many."""

        tag = ("backend", backend)
        removed = 0
        with self._lock:
            for series in self._values.values():
                stale = [labels for labels in series if tag in labels]
                for labels in stale:
                    del series[labels]
                removed += len(stale)
        LOG.debug("Pruned backend metrics", extra={"backend": backend, "series": removed})
        return removed

    def snapshot(self) -> MetricSnapshot:
        """Return an immutable, internally consistent copy of every metric."""

        with self._lock:
            families = tuple(
                MetricFamily(
                    name=descriptor.name,
                    kind=descriptor.kind,
                    help=descriptor.help,
                    samples=tuple(sorted(self._values[descriptor.name].items())),
                )
                for descriptor in self._descriptors.values()
            )
        return MetricSnapshot(families=families)

    def _increment(self, name: str, labels: LabelSet) -> float:
        with self._lock:
            series = self._values[name]
            value = series.get(labels, 0.0) + 1.0
            series[labels] = value
        return value

    def _check(self, sample: MetricSample) -> None:
        descriptor = self._descriptors.get(sample.name)
        if descriptor is None:
            raise KeyError(f"Unknown metric '{sample.name}'")
        if descriptor.kind is not sample.kind:
            raise ValueError(f"Metric '{sample.name}' is a {descriptor.kind.value}, not a {sample.kind.value}")

    def _store(self, sample: MetricSample) -> None:
        self._check(sample)
        self._values[sample.name][sample.labels] = sample.value


__all__ = [
    "BACKEND_DOWN",
    "CONNECT_ERROR",
    "META_METRICS",
    "MetricAggregator",
    "MetricDescriptor",
    "MetricFamily",
    "MetricSnapshot",
    "QUERY_ERROR",
    "QUERY_TIME",
]
