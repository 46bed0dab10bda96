"""Built-in query catalog used when the configuration names no catalog file.

Queries that read ``get_stat_*()`` rely on the helper functions created by
:mod:`pgstatsmon.bootstrap`; on backends where they are missing the query
fails and is counted in ``pg_query_error``.
"""

from __future__ import annotations

from .catalog import build_catalog

DEFAULT_QUERY_ENTRIES: list[dict[str, object]] = [
    {
        "name": "pg_stat_user_tables",
        "sql": "SELECT schemaname, relname, seq_scan, seq_tup_read, coalesce(idx_scan, 0) AS idx_scan,"
        " coalesce(idx_tup_fetch, 0) AS idx_tup_fetch, n_tup_ins, n_tup_upd, n_tup_del,"
        " n_tup_hot_upd, n_live_tup, n_dead_tup, vacuum_count, autovacuum_count,"
        " analyze_count, autoanalyze_count FROM pg_stat_user_tables",
        "statkey": "relname",
        "metadata": ["schemaname", "relname"],
        "counters": [
            {"attr": "seq_scan", "help": "Sequential scans initiated on this table"},
            {"attr": "seq_tup_read", "help": "Live rows fetched by sequential scans"},
            {"attr": "idx_scan", "help": "Index scans initiated on this table"},
            {"attr": "idx_tup_fetch", "help": "Live rows fetched by index scans"},
            {"attr": "n_tup_ins", "help": "Rows inserted"},
            {"attr": "n_tup_upd", "help": "Rows updated"},
            {"attr": "n_tup_del", "help": "Rows deleted"},
            {"attr": "n_tup_hot_upd", "help": "Rows HOT updated"},
            {"attr": "vacuum_count", "help": "Manual vacuums"},
            {"attr": "autovacuum_count", "help": "Autovacuums"},
            {"attr": "analyze_count", "help": "Manual analyzes"},
            {"attr": "autoanalyze_count", "help": "Autoanalyzes"},
        ],
        "gauges": [
            {"attr": "n_live_tup", "help": "Estimated live rows"},
            {"attr": "n_dead_tup", "help": "Estimated dead rows"},
        ],
    },
    {
        "name": "pg_statio_user_tables",
        "sql": "SELECT schemaname, relname, heap_blks_read, heap_blks_hit, coalesce(idx_blks_read, 0) AS idx_blks_read,"
        " coalesce(idx_blks_hit, 0) AS idx_blks_hit, coalesce(toast_blks_read, 0) AS toast_blks_read,"
        " coalesce(toast_blks_hit, 0) AS toast_blks_hit FROM pg_statio_user_tables",
        "statkey": "relname",
        "metadata": ["schemaname", "relname"],
        "counters": [
            {"attr": "heap_blks_read", "help": "Heap blocks read from disk"},
            {"attr": "heap_blks_hit", "help": "Heap buffer hits"},
            {"attr": "idx_blks_read", "help": "Index blocks read from disk"},
            {"attr": "idx_blks_hit", "help": "Index buffer hits"},
            {"attr": "toast_blks_read", "help": "TOAST blocks read from disk"},
            {"attr": "toast_blks_hit", "help": "TOAST buffer hits"},
        ],
    },
    {
        "name": "pg_relation_size",
        "sql": "SELECT schemaname, relname, pg_relation_size(relid) AS size FROM pg_stat_user_tables",
        "statkey": "relname",
        "metadata": ["schemaname", "relname"],
        "gauges": [{"attr": "size", "help": "On-disk size of the main fork", "unit": "bytes"}],
    },
    {
        "name": "pg_stat_database",
        "sql": "SELECT datname, numbackends, xact_commit, xact_rollback, blks_read, blks_hit,"
        " tup_returned, tup_fetched, tup_inserted, tup_updated, tup_deleted, conflicts,"
        " temp_files, temp_bytes, deadlocks FROM pg_stat_database WHERE datname IS NOT NULL",
        "statkey": "datname",
        "metadata": ["datname"],
        "counters": [
            {"attr": "xact_commit", "help": "Transactions committed"},
            {"attr": "xact_rollback", "help": "Transactions rolled back"},
            {"attr": "blks_read", "help": "Disk blocks read"},
            {"attr": "blks_hit", "help": "Buffer cache hits"},
            {"attr": "tup_returned", "help": "Rows returned by queries"},
            {"attr": "tup_fetched", "help": "Rows fetched by queries"},
            {"attr": "tup_inserted", "help": "Rows inserted"},
            {"attr": "tup_updated", "help": "Rows updated"},
            {"attr": "tup_deleted", "help": "Rows deleted"},
            {"attr": "conflicts", "help": "Queries cancelled by recovery conflicts"},
            {"attr": "temp_files", "help": "Temporary files created"},
            {"attr": "temp_bytes", "help": "Data written to temporary files"},
            {"attr": "deadlocks", "help": "Deadlocks detected"},
        ],
        "gauges": [{"attr": "numbackends", "help": "Backends connected to this database"}],
    },
    {
        "name": "pg_stat_bgwriter",
        "sql": "SELECT stats_reset::text AS stats_reset, checkpoints_timed, checkpoints_req,"
        " buffers_checkpoint, buffers_clean, maxwritten_clean, buffers_backend,"
        " buffers_backend_fsync, buffers_alloc FROM pg_stat_bgwriter",
        "statkey": "stats_reset",
        "counters": [
            {"attr": "checkpoints_timed", "help": "Scheduled checkpoints"},
            {"attr": "checkpoints_req", "help": "Requested checkpoints"},
            {"attr": "buffers_checkpoint", "help": "Buffers written during checkpoints"},
            {"attr": "buffers_clean", "help": "Buffers written by the background writer"},
            {"attr": "maxwritten_clean", "help": "Cleaning scans stopped for writing too many buffers"},
            {"attr": "buffers_backend", "help": "Buffers written directly by backends"},
            {"attr": "buffers_backend_fsync", "help": "Backend fsync calls"},
            {"attr": "buffers_alloc", "help": "Buffers allocated"},
        ],
    },
    {
        "name": "pg_stat_activity",
        "sql": "SELECT datname, coalesce(state, 'unknown') AS state, count(*) AS connections"
        " FROM get_stat_activity() WHERE datname IS NOT NULL GROUP BY datname, state",
        "statkey": "datname",
        "metadata": ["datname", "state"],
        "gauges": [{"attr": "connections", "help": "Client connections by state"}],
    },
    {
        "name": "pg_stat_replication",
        "sql": "SELECT coalesce(application_name, '') AS application_name,"
        " coalesce(client_addr::text, '') AS client_addr, state, sync_state,"
        " pg_wal_lsn_diff(pg_current_wal_lsn(), sent_lsn) AS sent_lag,"
        " pg_wal_lsn_diff(pg_current_wal_lsn(), flush_lsn) AS flush_lag,"
        " pg_wal_lsn_diff(pg_current_wal_lsn(), replay_lsn) AS replay_lag"
        " FROM get_stat_replication()",
        "statkey": "application_name",
        "metadata": ["application_name", "client_addr", "state", "sync_state"],
        "gauges": [
            {"attr": "sent_lag", "help": "WAL not yet sent to the replica", "unit": "bytes"},
            {"attr": "flush_lag", "help": "WAL not yet flushed by the replica", "unit": "bytes"},
            {"attr": "replay_lag", "help": "WAL not yet replayed by the replica", "unit": "bytes"},
        ],
    },
    {
        "name": "pg_recovery",
        "sql": "SELECT pg_is_in_recovery()::int AS in_recovery",
        "statkey": "in_recovery",
        "gauges": [{"attr": "in_recovery", "help": "1 if the backend is a replica"}],
    },
    {
        "name": "pg_stat_progress_vacuum",
        "sql": "SELECT schemaname, relname, vacuum_mode, phase, heap_blks_total, heap_blks_scanned,"
        " heap_blks_vacuumed, index_vacuum_count, max_dead_tuples, num_dead_tuples"
        " FROM get_stat_progress_vacuum()",
        "statkey": "relname",
        "metadata": ["schemaname", "relname", "vacuum_mode"],
        "gauges": [
            {"attr": "phase", "help": "Current vacuum phase"},
            {"attr": "heap_blks_total", "help": "Heap blocks in the table"},
            {"attr": "heap_blks_scanned", "help": "Heap blocks scanned"},
            {"attr": "heap_blks_vacuumed", "help": "Heap blocks vacuumed"},
            {"attr": "index_vacuum_count", "help": "Completed index vacuum cycles"},
            {"attr": "max_dead_tuples", "help": "Dead tuple capacity before an index cycle"},
            {"attr": "num_dead_tuples", "help": "Dead tuples collected since the last index cycle"},
        ],
    },
]

DEFAULT_QUERIES = build_catalog(DEFAULT_QUERY_ENTRIES)

__all__ = ["DEFAULT_QUERIES", "DEFAULT_QUERY_ENTRIES"]
