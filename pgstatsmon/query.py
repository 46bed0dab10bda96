"""Execution of catalog queries and extraction of their rows into samples."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from .errors import QueryExecutionError, QueryTimeoutError
from .models import FieldDefinition, MetricKind, MetricSample, QueryDefinition, make_labels
from .pgclient import Connection

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Samples extracted from one successful execution."""

    query: str
    backend: str
    samples: tuple[MetricSample, ...]
    row_count: int
    elapsed_ms: float


class QueryRunner:
    """Runs one query definition against one backend connection."""

    def __init__(self, *, query_timeout: float = 1.0) -> None:
        self._query_timeout = query_timeout

    async def run(self, connection: Connection, definition: QueryDefinition, backend: str) -> QueryResult:
        """Execute ``definition`` and convert every row, or raise.

        Nothing is returned unless every row converted cleanly, so a failed
        query never leaves a partial batch behind.
        """

        started = time.perf_counter()
        try:
            rows = await asyncio.wait_for(connection.fetch(definition.sql), self._query_timeout)
        except asyncio.TimeoutError as exc:
            raise QueryTimeoutError(
                f"Query '{definition.name}' on '{backend}' exceeded {self._query_timeout:.3f}s"
            ) from exc
        elapsed_ms = (time.perf_counter() - started) * 1000
        samples = extract_samples(definition, backend, rows)
        LOG.debug(
            "Query completed",
            extra={"query": definition.name, "backend": backend, "rows": len(rows), "elapsed_ms": elapsed_ms},
        )
        return QueryResult(
            query=definition.name,
            backend=backend,
            samples=samples,
            row_count=len(rows),
            elapsed_ms=elapsed_ms,
        )


def extract_samples(
    definition: QueryDefinition,
    backend: str,
    rows: Iterable[Mapping[str, object]],
) -> tuple[MetricSample, ...]:
    """Resolve declared labels and fields of every row into samples."""

    samples: list[MetricSample] = []
    for row in rows:
        _require(definition, row, definition.statkey)
        labels: dict[str, object] = {"backend": backend}
        for column in definition.metadata:
            labels[column] = _require(definition, row, column)
        label_set = make_labels(labels)
        for kind, fields in ((MetricKind.COUNTER, definition.counters), (MetricKind.GAUGE, definition.gauges)):
            for field_def in fields:
                value = _numeric(definition, field_def, _require(definition, row, field_def.attr))
                if value is None:
                    continue
                samples.append(
                    MetricSample(
                        name=definition.metric_name(field_def),
                        labels=label_set,
                        value=value,
                        kind=kind,
                    )
                )
    return tuple(samples)


def _require(definition: QueryDefinition, row: Mapping[str, object], column: str) -> object:
    if column not in row:
        raise QueryExecutionError(f"Query '{definition.name}' returned no column '{column}'")
    return row[column]


def _numeric(definition: QueryDefinition, field_def: FieldDefinition, value: object) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise QueryExecutionError(
        f"Query '{definition.name}' column '{field_def.attr}' is not numeric: {value!r}"
    )


__all__ = ["QueryResult", "QueryRunner", "extract_samples"]
