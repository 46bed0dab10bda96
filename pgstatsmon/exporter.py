"""Prometheus exposition of aggregator snapshots."""

from __future__ import annotations

import logging
from typing import Iterator

from prometheus_client import CollectorRegistry, generate_latest, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from .metrics import MetricAggregator, MetricFamily
from .models import MetricKind

LOG = logging.getLogger(__name__)


class SnapshotCollector:
    """Custom ``prometheus_client`` collector reading one snapshot per scrape."""

    def __init__(self, aggregator: MetricAggregator) -> None:
        self._aggregator = aggregator

    def collect(self) -> Iterator[Metric]:
        for family in self._aggregator.snapshot():
            yield _to_prometheus(family)


def _to_prometheus(family: MetricFamily) -> Metric:
    label_names = sorted({key for labels, _ in family.samples for key, _ in labels})
    documentation = family.help or family.name
    metric: CounterMetricFamily | GaugeMetricFamily
    if family.kind is MetricKind.COUNTER:
        metric = CounterMetricFamily(family.name, documentation, labels=label_names)
    else:
        metric = GaugeMetricFamily(family.name, documentation, labels=label_names)
    for labels, value in family.samples:
        values = dict(labels)
        metric.add_metric([values.get(name, "") for name in label_names], value)
    return metric


def build_registry(aggregator: MetricAggregator) -> CollectorRegistry:
    """Create a dedicated registry exposing ``aggregator``."""

    registry = CollectorRegistry()
    registry.register(SnapshotCollector(aggregator))
    return registry


def render(aggregator: MetricAggregator) -> bytes:
    """Render the current snapshot in the text exposition format."""

    return generate_latest(build_registry(aggregator))


def start_exporter(aggregator: MetricAggregator, address: str = "0.0.0.0", port: int = 9187) -> CollectorRegistry:
    """Serve ``aggregator`` over HTTP; raises ``OSError`` if the port cannot be bound."""

    registry = build_registry(aggregator)
    start_http_server(port, addr=address, registry=registry)
    LOG.info("Exporter listening on %s:%d", address, port)
    return registry


__all__ = ["SnapshotCollector", "build_registry", "render", "start_exporter"]
