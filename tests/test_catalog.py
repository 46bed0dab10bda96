"""Tests for query catalog loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pgstatsmon.catalog import build_catalog, load_catalog
from pgstatsmon.errors import ConfigError
from pgstatsmon.metrics import MetricAggregator
from pgstatsmon.models import FieldDefinition, make_labels
from pgstatsmon.queries import DEFAULT_QUERIES
from pgstatsmon.query import extract_samples


def test_build_catalog_expands_field_shorthand() -> None:
    (query,) = build_catalog(
        [
            {
                "name": "pg_stat_database",
                "sql": "SELECT 1",
                "statkey": "datname",
                "metadata": ["datname"],
                "counters": ["xact_commit", {"attr": "temp_bytes", "help": "Temp data"}],
            }
        ]
    )

    assert query.counters == (
        FieldDefinition(attr="xact_commit"),
        FieldDefinition(attr="temp_bytes", help="Temp data"),
    )
    assert query.gauges == ()
    assert query.metadata == ("datname",)


def test_build_catalog_rejects_duplicates_and_invalid_entries() -> None:
    entry = {"name": "q", "sql": "SELECT 1", "statkey": "k"}

    with pytest.raises(ConfigError, match="Duplicate"):
        build_catalog([entry, entry])
    with pytest.raises(ConfigError):
        build_catalog([{"name": "q", "statkey": "k"}])
    with pytest.raises(ConfigError):
        build_catalog(["SELECT 1"])  # type: ignore[list-item]


def test_load_catalog_reads_toml(tmp_path: Path) -> None:
    path = tmp_path / "queries.toml"
    path.write_text(
        """
[[queries]]
name = "pg_recovery"
sql = "SELECT pg_is_in_recovery()::int AS in_recovery"
statkey = "in_recovery"
gauges = ["in_recovery"]

[[queries]]
name = "pg_stat_bgwriter"
sql = "SELECT * FROM pg_stat_bgwriter"
statkey = "stats_reset"
counters = [{ attr = "checkpoints_timed", help = "Scheduled checkpoints" }]
"""
    )

    catalog = load_catalog(path)

    assert [query.name for query in catalog] == ["pg_recovery", "pg_stat_bgwriter"]
    assert catalog[1].counters[0].help == "Scheduled checkpoints"


def test_load_catalog_reads_json_list(tmp_path: Path) -> None:
    path = tmp_path / "queries.json"
    path.write_text(json.dumps([{"name": "q", "sql": "SELECT 1", "statkey": "k", "gauges": ["v"]}]))

    (query,) = load_catalog(path)

    assert query.gauges[0].attr == "v"


def test_load_catalog_errors_are_config_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    broken.write_text("queries = [unterminated")

    with pytest.raises(ConfigError):
        load_catalog(tmp_path / "missing.toml")
    with pytest.raises(ConfigError):
        load_catalog(broken)


def test_default_catalog_builds_a_valid_aggregator() -> None:
    aggregator = MetricAggregator(DEFAULT_QUERIES)

    names = {descriptor.name for descriptor in aggregator.descriptors}
    assert "pg_stat_user_tables_seq_scan" in names
    assert "pg_relation_size_size_bytes" in names
    assert "pg_stat_replication_replay_lag_bytes" in names
    assert len({query.name for query in DEFAULT_QUERIES}) == len(DEFAULT_QUERIES)


def test_default_table_queries_keep_schemas_apart() -> None:
    catalog = {query.name: query for query in DEFAULT_QUERIES}
    rows = [
        {"schemaname": "public", "relname": "accounts", "size": 8192},
        {"schemaname": "archive", "relname": "accounts", "size": 65536},
    ]

    samples = extract_samples(catalog["pg_relation_size"], "primary", rows)

    assert {sample.labels: sample.value for sample in samples} == {
        make_labels({"backend": "primary", "schemaname": "public", "relname": "accounts"}): 8192.0,
        make_labels({"backend": "primary", "schemaname": "archive", "relname": "accounts"}): 65536.0,
    }
    for name in ("pg_stat_user_tables", "pg_statio_user_tables", "pg_relation_size", "pg_stat_progress_vacuum"):
        assert "schemaname" in catalog[name].metadata
        assert "schemaname" in catalog[name].sql
