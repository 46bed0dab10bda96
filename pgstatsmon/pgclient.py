"""Database client contract and its asyncpg implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Protocol, Sequence, runtime_checkable

import asyncpg

from .errors import BackendConnectionError, ConnectTimeoutError, QueryExecutionError
from .models import BackendDescriptor

LOG = logging.getLogger(__name__)

Row = Mapping[str, object]


@runtime_checkable
class Connection(Protocol):
    """A single backend connection used by one operation at a time."""

    async def fetch(self, sql: str) -> Sequence[Row]:
        """Run ``sql`` and return its rows keyed by column name.

        Remote failures raise ``QueryExecutionError``; transport failures
        raise ``BackendConnectionError``.
        """

    async def close(self) -> None:
        """Release the connection; never raises."""


@runtime_checkable
class ClientFactory(Protocol):
    """Opens connections to backends."""

    async def connect(self, backend: BackendDescriptor) -> Connection:
        """Open a connection or raise ``BackendConnectionError``."""


class AsyncpgConnection:
    """``Connection`` backed by an ``asyncpg.Connection``."""

    def __init__(self, conn: asyncpg.Connection, *, backend: str, close_timeout: float = 1.0) -> None:
        self._conn = conn
        self._backend = backend
        self._close_timeout = close_timeout

    async def fetch(self, sql: str) -> list[Row]:
        try:
            records = await self._conn.fetch(sql)
        except asyncpg.PostgresError as exc:
            raise QueryExecutionError(str(exc)) from exc
        except (asyncpg.InterfaceError, OSError) as exc:
            raise BackendConnectionError(f"Connection to '{self._backend}' failed: {exc}") from exc
        return [dict(record.items()) for record in records]

    async def close(self) -> None:
        if self._conn.is_closed():
            return
        try:
            await self._conn.close(timeout=self._close_timeout)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError):
            LOG.debug("Graceful close failed; terminating", extra={"backend": self._backend})
            self._conn.terminate()


class AsyncpgClientFactory:
    """Opens asyncpg connections as the restricted monitoring user."""

    def __init__(
        self,
        *,
        user: str,
        password: str | None = None,
        connect_timeout: float = 3.0,
        application_name: str = "pgstatsmon",
    ) -> None:
        self._user = user
        self._password = password
        self._connect_timeout = connect_timeout
        self._application_name = application_name

    async def connect(self, backend: BackendDescriptor) -> AsyncpgConnection:
        try:
            conn = await asyncpg.connect(**self._connect_kwargs(backend))
        except asyncio.TimeoutError as exc:
            raise ConnectTimeoutError(f"Timed out connecting to '{backend.name}'") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise BackendConnectionError(f"Failed to connect to '{backend.name}': {exc}") from exc
        return AsyncpgConnection(conn, backend=backend.name)

    def _connect_kwargs(self, backend: BackendDescriptor) -> dict[str, object]:
        kwargs: dict[str, object] = {
            "host": backend.address,
            "port": backend.port,
            "user": self._user,
            "database": backend.database,
            "timeout": self._connect_timeout,
            "server_settings": {"application_name": self._application_name},
        }
        if self._password:
            kwargs["password"] = self._password
        return kwargs


__all__ = [
    "AsyncpgClientFactory",
    "AsyncpgConnection",
    "ClientFactory",
    "Connection",
    "Row",
]
