"""One-time provisioning of the restricted monitoring role.

The collector reads statistics as an unprivileged role, but some views
(``pg_stat_activity``, ``pg_stat_replication``) hide rows from such roles.
This module connects once as a superuser and:

- creates the monitoring role with as few privileges as possible
- creates ``SECURITY DEFINER`` wrappers (``get_stat_activity()``,
  ``get_stat_replication()``, ``get_stat_progress_vacuum()``) that return
  the unfiltered rows

Replicas are read-only, so on a backend in recovery only the server version
is collected and provisioning is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import asyncpg

from .errors import BackendConnectionError, ConnectTimeoutError, QueryExecutionError
from .models import BackendDescriptor, BackendInfo

LOG = logging.getLogger(__name__)

BootstrapHook = Callable[[BackendDescriptor], Awaitable[BackendInfo]]

ROLE_OPTIONS = (
    "NOSUPERUSER",
    "NOCREATEDB",
    "NOCREATEROLE",
    "NOINHERIT",
    "NOREPLICATION",
    "CONNECTION LIMIT 2",
    "LOGIN",
)

ACTIVITY_FUNCTION = (
    "CREATE OR REPLACE FUNCTION public.get_stat_activity()"
    " RETURNS SETOF pg_stat_activity AS 'SELECT * FROM pg_catalog.pg_stat_activity;'"
    " LANGUAGE SQL VOLATILE SECURITY DEFINER;"
)

REPLICATION_FUNCTION = (
    "CREATE OR REPLACE FUNCTION public.get_stat_replication()"
    " RETURNS SETOF pg_stat_replication AS 'SELECT * FROM pg_catalog.pg_stat_replication;'"
    " LANGUAGE SQL VOLATILE SECURITY DEFINER;"
)

# The output columns changed once vacuum start times were tracked, and
# CREATE OR REPLACE cannot change a function's result type.
PROGRESS_VACUUM_FUNCTION = """
DROP FUNCTION IF EXISTS get_stat_progress_vacuum();
CREATE FUNCTION public.get_stat_progress_vacuum(
    out schemaname name,
    out relname name,
    out relid oid,
    out vacuum_mode text,
    out query_start double precision,
    out phase bigint,
    out heap_blks_total bigint,
    out heap_blks_scanned bigint,
    out heap_blks_vacuumed bigint,
    out index_vacuum_count bigint,
    out max_dead_tuples bigint,
    out num_dead_tuples bigint)
RETURNS SETOF record AS $$
    SELECT
        N.nspname AS schemaname,
        T.relname AS relname,
        T.relid AS relid,
        CASE
            WHEN A.query ~ '^autovacuum.*(to prevent wraparound)' THEN 'aggressive_autovacuum'
            WHEN A.query ~ '^autovacuum' THEN 'autovacuum'
            WHEN A.query ~* '^vacuum' THEN 'manual_vacuum'
            ELSE 'unknown'
        END AS vacuum_mode,
        EXTRACT (EPOCH FROM A.query_start) AS query_start,
        S.param1 + 1 AS phase,
        S.param2 AS heap_blks_total,
        S.param3 AS heap_blks_scanned,
        S.param4 AS heap_blks_vacuumed,
        S.param5 AS index_vacuum_count,
        S.param6 AS max_dead_tuples,
        S.param7 AS num_dead_tuples
    FROM pg_stat_get_progress_info('VACUUM') AS S
    JOIN pg_database D ON (S.datid = D.oid)
    JOIN pg_stat_all_tables AS T ON (T.relid = S.relid)
    JOIN pg_stat_activity A ON (S.pid = A.pid)
    JOIN pg_class C ON (C.oid = S.relid)
    JOIN pg_namespace N ON (N.oid = C.relnamespace)
$$ LANGUAGE SQL VOLATILE SECURITY DEFINER;
"""

DUPLICATE_OBJECT = "42710"
REPLICATION_MIN_VERSION = 90400
PROGRESS_VACUUM_MIN_VERSION = 90600


def quote_ident(name: str) -> str:
    """Quote an SQL identifier."""

    return '"' + name.replace('"', '""') + '"'


class Bootstrapper:
    """Provisions the monitoring role on newly discovered backends."""

    def __init__(
        self,
        *,
        user: str,
        superuser: str = "postgres",
        password: str | None = None,
        connect_timeout: float = 3.0,
        query_timeout: float = 5.0,
    ) -> None:
        self._user = user
        self._superuser = superuser
        self._password = password
        self._connect_timeout = connect_timeout
        self._query_timeout = query_timeout

    async def __call__(self, backend: BackendDescriptor) -> BackendInfo:
        return await self.setup_monitoring_user(backend)

    async def setup_monitoring_user(self, backend: BackendDescriptor) -> BackendInfo:
        conn = await self._connect(backend)
        try:
            version = int(await self._fetchval(conn, "SELECT current_setting('server_version_num')::integer"))
            in_recovery = bool(await self._fetchval(conn, "SELECT pg_is_in_recovery()"))
            if in_recovery:
                LOG.info("PG in recovery, skipping initial setup", extra={"backend": backend.name})
                return BackendInfo(pg_version=version, in_recovery=True)
            await self._create_role(conn, backend)
            await self._execute(conn, backend, ACTIVITY_FUNCTION)
            if version >= REPLICATION_MIN_VERSION:
                await self._execute(conn, backend, REPLICATION_FUNCTION)
            if version >= PROGRESS_VACUUM_MIN_VERSION:
                await self._execute(conn, backend, PROGRESS_VACUUM_FUNCTION)
        finally:
            conn.terminate()
        return BackendInfo(pg_version=version, in_recovery=False)

    async def _connect(self, backend: BackendDescriptor) -> asyncpg.Connection:
        kwargs: dict[str, object] = {
            "host": backend.address,
            "port": backend.port,
            "user": self._superuser,
            "database": backend.database,
            "command_timeout": self._query_timeout,
        }
        if self._password:
            kwargs["password"] = self._password
        try:
            return await asyncio.wait_for(asyncpg.connect(**kwargs), self._connect_timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeoutError(f"Timed out connecting to '{backend.name}' as {self._superuser}") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise BackendConnectionError(f"Failed to connect to '{backend.name}': {exc}") from exc

    async def _create_role(self, conn: asyncpg.Connection, backend: BackendDescriptor) -> None:
        statement = f"CREATE ROLE {quote_ident(self._user)} WITH {' '.join(ROLE_OPTIONS)};"
        try:
            await self._execute(conn, backend, statement)
        except QueryExecutionError as exc:
            if getattr(exc.__cause__, "sqlstate", None) != DUPLICATE_OBJECT:
                raise
            LOG.debug("Role already exists", extra={"backend": backend.name, "role": self._user})

    async def _fetchval(self, conn: asyncpg.Connection, sql: str) -> object:
        try:
            return await conn.fetchval(sql)
        except asyncpg.PostgresError as exc:
            raise QueryExecutionError(str(exc)) from exc

    async def _execute(self, conn: asyncpg.Connection, backend: BackendDescriptor, sql: str) -> None:
        LOG.info("executing query", extra={"backend": backend.name, "database": backend.database, "query": sql})
        try:
            await conn.execute(sql)
        except asyncpg.PostgresError as exc:
            raise QueryExecutionError(str(exc)) from exc


__all__ = ["BootstrapHook", "Bootstrapper", "quote_ident"]
