"""Authoritative set of known backends and the diffs between backend sets."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from .models import BackendDescriptor

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RegistryDiff:
    """Result of comparing two backend sets by name."""

    added: tuple[BackendDescriptor, ...] = ()
    removed: tuple[BackendDescriptor, ...] = ()
    unchanged: tuple[BackendDescriptor, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def index_backends(backends: Iterable[BackendDescriptor]) -> dict[str, BackendDescriptor]:
    """Key descriptors by name, rejecting duplicates."""

    indexed: dict[str, BackendDescriptor] = {}
    for backend in backends:
        if backend.name in indexed:
            raise ValueError(f"Duplicate backend name '{backend.name}'")
        indexed[backend.name] = backend
    return indexed


def diff_backends(
    old: Mapping[str, BackendDescriptor],
    new: Mapping[str, BackendDescriptor],
) -> RegistryDiff:
    """Compute added/removed/unchanged between two name-keyed sets.

    A name whose descriptor changed (address, port or database) is reported
    as removed with its old descriptor and added with its new one.
    """

    added: list[BackendDescriptor] = []
    removed: list[BackendDescriptor] = []
    unchanged: list[BackendDescriptor] = []
    for name, backend in new.items():
        previous = old.get(name)
        if previous is None:
            added.append(backend)
        elif previous == backend:
            unchanged.append(backend)
        else:
            removed.append(previous)
            added.append(backend)
    for name, backend in old.items():
        if name not in new:
            removed.append(backend)
    return RegistryDiff(added=tuple(added), removed=tuple(removed), unchanged=tuple(unchanged))


class BackendRegistry:
    """Holds the current backend set; readers always see a complete set."""

    def __init__(self, backends: Iterable[BackendDescriptor] = ()) -> None:
        self._lock = threading.Lock()
        self._backends: Mapping[str, BackendDescriptor] = MappingProxyType(index_backends(backends))

    def current(self) -> Mapping[str, BackendDescriptor]:
        """Return the current set as a read-only mapping."""

        return self._backends

    def update(self, backends: Iterable[BackendDescriptor]) -> RegistryDiff:
        """Replace the backend set and report what changed."""

        incoming = index_backends(backends)
        with self._lock:
            diff = diff_backends(self._backends, incoming)
            self._backends = MappingProxyType(incoming)
        if diff.changed:
            LOG.info(
                "Backend set updated",
                extra={
                    "added": [backend.name for backend in diff.added],
                    "removed": [backend.name for backend in diff.removed],
                },
            )
        return diff

    def __len__(self) -> int:
        return len(self._backends)

    def __contains__(self, name: object) -> bool:
        return name in self._backends


__all__ = ["BackendRegistry", "RegistryDiff", "diff_backends", "index_backends"]
