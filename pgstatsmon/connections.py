"""Per-backend connection ownership and the connect/retry/backoff state machine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

from .errors import BackendConnectionError, ConnectTimeoutError
from .models import BackendDescriptor, BackendInfo
from .pgclient import ClientFactory, Connection

LOG = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    """Lifecycle states of a backend connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    DOWN = "down"


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Emitted on every status transition."""

    backend: str
    status: ConnectionStatus
    retry_count: int
    error: BaseException | None = None


ConnectionListener = Callable[[ConnectionEvent], None]


@dataclass(slots=True)
class ConnectionState:
    """Mutable connection bookkeeping for one backend."""

    backend: BackendDescriptor
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    retry_count: int = 0
    last_error: BaseException | None = None
    info: BackendInfo | None = None
    connection: Connection | None = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class ConnectionLease:
    """Exclusive, checked-out access to one backend's connection."""

    def __init__(self, manager: "ConnectionManager", state: ConnectionState) -> None:
        self._manager = manager
        self._state = state

    @property
    def backend(self) -> BackendDescriptor:
        return self._state.backend

    @property
    def connection(self) -> Connection:
        connection = self._state.connection
        if connection is None:
            raise BackendConnectionError(f"Connection to '{self._state.backend.name}' was discarded")
        return connection

    async def discard(self, error: BaseException | None = None) -> None:
        """Drop the connection after an I/O failure; reconnect happens next tick."""

        await self._manager._discard(self._state, error)


class ConnectionManager:
    """Owns exactly one connection per backend.

    ``checkout`` serializes every use of a backend's connection behind a
    per-backend lock, so at most one connection attempt or query is in flight
    per backend. Failed attempts back off exponentially until
    ``connect_retries`` is reached; the backend is then DOWN until the next
    ``checkout``.
    """

    def __init__(
        self,
        factory: ClientFactory,
        *,
        connect_timeout: float = 3.0,
        connect_retries: int = 3,
        backoff_initial: float = 0.1,
        backoff_max: float = 3.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if connect_retries < 1:
            raise ValueError("connect_retries must be at least 1")
        self._factory = factory
        self._connect_timeout = connect_timeout
        self._connect_retries = connect_retries
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._sleep = sleep
        self._states: dict[str, ConnectionState] = {}
        self._listeners: set[ConnectionListener] = set()

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Subscribe to status transitions; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def add(self, backend: BackendDescriptor) -> ConnectionState:
        if backend.name in self._states:
            raise ValueError(f"Backend '{backend.name}' is already managed")
        state = ConnectionState(backend=backend)
        self._states[backend.name] = state
        LOG.debug("Managing backend", extra={"backend": backend.name})
        return state

    async def remove(self, name: str) -> None:
        """Close and forget a backend's connection."""

        state = self._states.pop(name, None)
        if state is None:
            return
        async with state.lock:
            await self._close(state)
            state.status = ConnectionStatus.DISCONNECTED
        LOG.info("Backend removed", extra={"backend": name})

    async def close_all(self) -> None:
        for name in tuple(self._states):
            await self.remove(name)

    def get(self, name: str) -> ConnectionState | None:
        return self._states.get(name)

    def states(self) -> tuple[ConnectionState, ...]:
        return tuple(self._states.values())

    def __contains__(self, name: object) -> bool:
        return name in self._states

    @asynccontextmanager
    async def checkout(self, name: str) -> AsyncIterator[ConnectionLease | None]:
        """Hold a backend exclusively, connecting first if needed.

        Yields ``None`` when every connect attempt failed (backend is DOWN).
        """

        state = self._states[name]
        async with state.lock:
            connection = await self._ensure_connected(state)
            if connection is None:
                yield None
            else:
                yield ConnectionLease(self, state)

    async def _ensure_connected(self, state: ConnectionState) -> Connection | None:
        if state.status is ConnectionStatus.CONNECTED and state.connection is not None:
            return state.connection
        state.retry_count = 0
        backend = state.backend
        while True:
            self._transition(state, ConnectionStatus.CONNECTING)
            error: BackendConnectionError
            try:
                connection = await asyncio.wait_for(self._factory.connect(backend), self._connect_timeout)
            except asyncio.TimeoutError:
                error = ConnectTimeoutError(
                    f"Connecting to '{backend.name}' exceeded {self._connect_timeout:.3f}s"
                )
            except BackendConnectionError as exc:
                error = exc
            else:
                state.connection = connection
                state.retry_count = 0
                state.last_error = None
                self._transition(state, ConnectionStatus.CONNECTED)
                LOG.info("Connected to backend", extra={"backend": backend.name})
                return connection

            state.retry_count += 1
            state.last_error = error
            LOG.warning(
                "Connect attempt failed: %s",
                error,
                extra={"backend": backend.name, "attempt": state.retry_count},
            )
            self._transition(state, ConnectionStatus.BACKOFF, error)
            if state.retry_count >= self._connect_retries:
                self._transition(state, ConnectionStatus.DOWN, error)
                LOG.error(
                    "Backend is down after %d attempts",
                    state.retry_count,
                    extra={"backend": backend.name},
                )
                return None
            await self._sleep(self._backoff_delay(state.retry_count))

    def _backoff_delay(self, retry_count: int) -> float:
        return min(self._backoff_initial * (2 ** (retry_count - 1)), self._backoff_max)

    async def _discard(self, state: ConnectionState, error: BaseException | None) -> None:
        await self._close(state)
        state.last_error = error
        self._transition(state, ConnectionStatus.DISCONNECTED, error)
        LOG.warning("Discarded connection: %s", error, extra={"backend": state.backend.name})

    async def _close(self, state: ConnectionState) -> None:
        connection, state.connection = state.connection, None
        if connection is not None:
            await connection.close()

    def _transition(
        self,
        state: ConnectionState,
        status: ConnectionStatus,
        error: BaseException | None = None,
    ) -> None:
        state.status = status
        event = ConnectionEvent(
            backend=state.backend.name,
            status=status,
            retry_count=state.retry_count,
            error=error,
        )
        for listener in tuple(self._listeners):
            listener(event)


__all__ = [
    "ConnectionEvent",
    "ConnectionLease",
    "ConnectionListener",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
]
