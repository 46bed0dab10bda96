"""Shared dataclasses used across the registry, collector and aggregator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

LabelSet = tuple[tuple[str, str], ...]


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """One monitored Postgres instance, keyed by name."""

    name: str
    address: str
    port: int = 5432
    database: str = "postgres"


@dataclass(frozen=True, slots=True)
class FieldDefinition:
    """A numeric column exported as a counter or gauge."""

    attr: str
    help: str = ""
    unit: str | None = None


@dataclass(frozen=True, slots=True)
class QueryDefinition:
    """A catalog entry: SQL text plus how to map its rows onto metrics."""

    name: str
    sql: str
    statkey: str
    metadata: tuple[str, ...] = ()
    counters: tuple[FieldDefinition, ...] = ()
    gauges: tuple[FieldDefinition, ...] = ()

    def metric_name(self, field_def: FieldDefinition) -> str:
        name = f"{self.name}_{field_def.attr}"
        if field_def.unit:
            name = f"{name}_{field_def.unit}"
        return name


class MetricKind(str, Enum):
    """Exposition type of a metric."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True, slots=True)
class MetricSample:
    """A resolved value for one label set of one metric."""

    name: str
    labels: LabelSet
    value: float
    kind: MetricKind = MetricKind.GAUGE


@dataclass(frozen=True, slots=True)
class BackendInfo:
    """Informational annotation reported by the bootstrap step."""

    pg_version: int | None = None
    in_recovery: bool = False
    extra: Mapping[str, object] = field(default_factory=dict)


def make_labels(labels: Mapping[str, object]) -> LabelSet:
    """Normalize a label mapping into a sorted, hashable label set."""

    return tuple(sorted((str(key), "" if value is None else str(value)) for key, value in labels.items()))


__all__ = [
    "BackendDescriptor",
    "BackendInfo",
    "FieldDefinition",
    "LabelSet",
    "MetricKind",
    "MetricSample",
    "QueryDefinition",
    "make_labels",
]
