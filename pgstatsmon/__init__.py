"""Postgres statistics collector exposing Prometheus metrics."""

from __future__ import annotations

__version__ = "1.0.0"

from .app import PgStatsMon
from .errors import (
    BackendConnectionError,
    ConfigError,
    ConnectTimeoutError,
    DiscoverySourceError,
    PgStatsmonError,
    QueryExecutionError,
    QueryTimeoutError,
)
from .metrics import MetricAggregator, MetricSnapshot
from .models import BackendDescriptor, MetricKind, MetricSample, QueryDefinition

__all__ = [
    "BackendConnectionError",
    "BackendDescriptor",
    "ConfigError",
    "ConnectTimeoutError",
    "DiscoverySourceError",
    "MetricAggregator",
    "MetricKind",
    "MetricSample",
    "MetricSnapshot",
    "PgStatsMon",
    "PgStatsmonError",
    "QueryDefinition",
    "QueryExecutionError",
    "QueryTimeoutError",
    "__version__",
]
