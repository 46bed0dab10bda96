"""Loading and validation of the query catalog."""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .models import FieldDefinition, QueryDefinition


class FieldConfig(BaseModel):
    """A counter or gauge column as written in a catalog file."""

    attr: str
    help: str = ""
    unit: str | None = None


class QueryConfig(BaseModel):
    """One catalog entry as written in a catalog file."""

    name: str = Field(min_length=1)
    sql: str = Field(min_length=1)
    statkey: str
    metadata: list[str] = Field(default_factory=list)
    counters: list[FieldConfig] = Field(default_factory=list)
    gauges: list[FieldConfig] = Field(default_factory=list)

    @field_validator("counters", "gauges", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"attr": item} if isinstance(item, str) else item for item in value]
        return value

    def to_definition(self) -> QueryDefinition:
        return QueryDefinition(
            name=self.name,
            sql=self.sql,
            statkey=self.statkey,
            metadata=tuple(self.metadata),
            counters=tuple(FieldDefinition(attr=f.attr, help=f.help, unit=f.unit) for f in self.counters),
            gauges=tuple(FieldDefinition(attr=f.attr, help=f.help, unit=f.unit) for f in self.gauges),
        )


def build_catalog(entries: Iterable[Mapping[str, Any] | QueryDefinition]) -> tuple[QueryDefinition, ...]:
    """Validate raw entries and return the catalog in declaration order."""

    catalog: list[QueryDefinition] = []
    seen: set[str] = set()
    for entry in entries:
        if isinstance(entry, QueryDefinition):
            definition = entry
        elif not isinstance(entry, Mapping):
            raise ConfigError(f"Query definitions must be tables, got {type(entry).__name__}")
        else:
            try:
                definition = QueryConfig.model_validate(dict(entry)).to_definition()
            except ValidationError as exc:
                raise ConfigError(f"Invalid query definition: {exc}") from exc
        if definition.name in seen:
            raise ConfigError(f"Duplicate query name '{definition.name}'")
        seen.add(definition.name)
        catalog.append(definition)
    return tuple(catalog)


def load_catalog(path: Path | str) -> tuple[QueryDefinition, ...]:
    """Load a catalog from a TOML (``[[queries]]``) or JSON file."""

    source = Path(path)
    try:
        raw = source.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Cannot read query catalog '{source}': {exc}") from exc
    try:
        if source.suffix == ".json":
            data = json.loads(raw)
        else:
            data = tomllib.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot parse query catalog '{source}': {exc}") from exc
    if isinstance(data, dict):
        data = data.get("queries")
    if not isinstance(data, list):
        raise ConfigError(f"Query catalog '{source}' must contain a list of queries")
    return build_catalog(data)


__all__ = ["FieldConfig", "QueryConfig", "build_catalog", "load_catalog"]
