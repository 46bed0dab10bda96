"""Discovery sources that feed the backend registry."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import tomllib
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from .errors import DiscoverySourceError
from .models import BackendDescriptor
from .registry import BackendRegistry, RegistryDiff, index_backends

LOG = logging.getLogger(__name__)

BackendEntry = Union[BackendDescriptor, Mapping[str, Any]]
BackendSource = Callable[[], Union[Iterable[BackendEntry], Awaitable[Iterable[BackendEntry]]]]


class BackendConfig(BaseModel):
    """A backend entry as supplied by configuration or a discovery source."""

    name: str = Field(min_length=1)
    address: str = Field(validation_alias=AliasChoices("address", "ip", "host"))
    port: int = 5432
    database: str | None = None

    def to_descriptor(self, default_database: str) -> BackendDescriptor:
        return BackendDescriptor(
            name=self.name,
            address=self.address,
            port=self.port,
            database=self.database or default_database,
        )


def normalize_backends(
    entries: Iterable[BackendEntry],
    *,
    database: str = "postgres",
) -> tuple[BackendDescriptor, ...]:
    """Turn raw entries into descriptors with unique names."""

    backends: list[BackendDescriptor] = []
    for entry in entries:
        if isinstance(entry, BackendDescriptor):
            backends.append(entry)
            continue
        if not isinstance(entry, Mapping):
            raise DiscoverySourceError(f"Backend entries must be tables, got {type(entry).__name__}")
        try:
            backends.append(BackendConfig.model_validate(dict(entry)).to_descriptor(database))
        except ValidationError as exc:
            raise DiscoverySourceError(f"Invalid backend entry: {exc}") from exc
    try:
        index_backends(backends)
    except ValueError as exc:
        raise DiscoverySourceError(str(exc)) from exc
    return tuple(backends)


class Discovery(Protocol):
    """Supplies the backend set to a registry."""

    async def refresh(self, registry: BackendRegistry) -> RegistryDiff | None: ...

    async def run(self, registry: BackendRegistry) -> None: ...


class StaticDiscovery:
    """Fixed backend list taken from configuration."""

    def __init__(self, backends: Iterable[BackendEntry], *, database: str = "postgres") -> None:
        self._backends = normalize_backends(backends, database=database)

    @property
    def backends(self) -> tuple[BackendDescriptor, ...]:
        return self._backends

    async def refresh(self, registry: BackendRegistry) -> RegistryDiff:
        return registry.update(self._backends)

    async def run(self, registry: BackendRegistry) -> None:
        """Nothing to poll; the set never changes after the first refresh."""


class PollingDiscovery:
    """Re-reads a backend source on a fixed interval.

    A failing poll is logged and leaves the registry untouched, so a single
    bad response never drops backends.
    """

    def __init__(
        self,
        source: BackendSource,
        *,
        interval: float,
        database: str = "postgres",
    ) -> None:
        if interval <= 0:
            raise ValueError("Polling interval must be positive")
        self._source = source
        self._interval = interval
        self._database = database

    async def poll(self) -> tuple[BackendDescriptor, ...]:
        """Fetch and normalize the current set; raises ``DiscoverySourceError``."""

        try:
            result = self._source()
            if inspect.isawaitable(result):
                result = await result
            entries = list(result)
        except DiscoverySourceError:
            raise
        except Exception as exc:
            raise DiscoverySourceError(f"Discovery source failed: {exc}") from exc
        return normalize_backends(entries, database=self._database)

    async def refresh(self, registry: BackendRegistry) -> RegistryDiff | None:
        try:
            backends = await self.poll()
        except DiscoverySourceError as exc:
            LOG.error("Discovery poll failed; keeping %d known backends: %s", len(registry), exc)
            return None
        return registry.update(backends)

    async def run(self, registry: BackendRegistry) -> None:
        """Poll forever; the caller performs the initial refresh."""

        while True:
            await asyncio.sleep(self._interval)
            await self.refresh(registry)


def file_source(path: Path | str) -> BackendSource:
    """Build a source that re-reads a TOML or JSON backend list on every poll."""

    source = Path(path)

    def _read() -> list[BackendEntry]:
        try:
            raw = source.read_bytes()
            if source.suffix == ".json":
                data = json.loads(raw)
            else:
                data = tomllib.loads(raw.decode("utf-8"))
        except (OSError, ValueError, UnicodeDecodeError) as exc:
            raise DiscoverySourceError(f"Cannot read backend list '{source}': {exc}") from exc
        if isinstance(data, dict):
            data = data.get("backends")
        if not isinstance(data, list):
            raise DiscoverySourceError(f"Backend list '{source}' must contain a list of backends")
        return data

    return _read


__all__ = [
    "BackendConfig",
    "BackendEntry",
    "BackendSource",
    "Discovery",
    "PollingDiscovery",
    "StaticDiscovery",
    "file_source",
    "normalize_backends",
]
