"""Error taxonomy shared by the collection engine and its collaborators."""

from __future__ import annotations


class PgStatsmonError(RuntimeError):
    """Base class for pgstatsmon errors."""


class ConfigError(PgStatsmonError):
    """Raised when configuration is missing, unreadable or invalid."""


class BackendConnectionError(PgStatsmonError):
    """Raised when a backend refuses, resets or unexpectedly closes a connection."""


class ConnectTimeoutError(BackendConnectionError):
    """Raised when a connection attempt exceeds the connect timeout."""


class QueryTimeoutError(PgStatsmonError):
    """Raised when a query exceeds the query timeout."""


class QueryExecutionError(PgStatsmonError):
    """Raised when a query fails remotely or its rows do not match the definition."""


class DiscoverySourceError(PgStatsmonError):
    """Raised when a discovery source cannot produce a backend set."""


__all__ = [
    "BackendConnectionError",
    "ConfigError",
    "ConnectTimeoutError",
    "DiscoverySourceError",
    "PgStatsmonError",
    "QueryExecutionError",
    "QueryTimeoutError",
]
