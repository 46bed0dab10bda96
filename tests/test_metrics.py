"""Tests for the metric aggregator."""

from __future__ import annotations

import threading

import pytest

from pgstatsmon.catalog import build_catalog
from pgstatsmon.metrics import BACKEND_DOWN, QUERY_ERROR, QUERY_TIME, MetricAggregator
from pgstatsmon.models import MetricKind, MetricSample, make_labels

CATALOG = build_catalog(
    [
        {
            "name": "pg_stat_user_tables",
            "sql": "SELECT 1",
            "statkey": "relname",
            "metadata": ["relname"],
            "counters": [{"attr": "seq_scan", "help": "Sequential scans"}],
            "gauges": ["n_live_tup"],
        },
        {
            "name": "pg_relation_size",
            "sql": "SELECT 2",
            "statkey": "relname",
            "metadata": ["relname"],
            "gauges": [{"attr": "size", "unit": "bytes"}],
        },
    ]
)


def _sample(name: str, backend: str, value: float, kind: MetricKind = MetricKind.GAUGE) -> MetricSample:
    return MetricSample(name=name, labels=make_labels({"backend": backend, "relname": "accounts"}), value=value, kind=kind)


def test_initialize_metrics_builds_descriptors_from_catalog() -> None:
    aggregator = MetricAggregator(CATALOG)

    names = {descriptor.name: descriptor for descriptor in aggregator.descriptors}

    assert names["pg_stat_user_tables_seq_scan"].kind is MetricKind.COUNTER
    assert names["pg_stat_user_tables_seq_scan"].help == "Sequential scans"
    assert names["pg_stat_user_tables_n_live_tup"].kind is MetricKind.GAUGE
    assert "pg_relation_size_size_bytes" in names
    assert QUERY_ERROR in names and BACKEND_DOWN in names


def test_initialize_metrics_is_idempotent_and_drops_values() -> None:
    aggregator = MetricAggregator(CATALOG)
    aggregator.apply(_sample("pg_stat_user_tables_n_live_tup", "primary", 5))
    aggregator.increment_query_error("pg_stat_user_tables", "primary")

    aggregator.initialize_metrics(CATALOG)
    first = aggregator.snapshot()
    aggregator.initialize_metrics(CATALOG)
    second = aggregator.snapshot()

    assert first == second
    assert {descriptor.name for descriptor in aggregator.descriptors} == set(first.names)
    assert all(not family.samples for family in second)


def test_initialize_metrics_rejects_duplicate_metric_names() -> None:
    duplicate = build_catalog(
        [
            {"name": "a", "sql": "SELECT 1", "statkey": "k", "gauges": ["b_c"]},
            {"name": "a_b", "sql": "SELECT 1", "statkey": "k", "gauges": ["c"]},
        ]
    )

    with pytest.raises(ValueError):
        MetricAggregator(duplicate)


def test_apply_overwrites_latest_value() -> None:
    aggregator = MetricAggregator(CATALOG)

    aggregator.apply(_sample("pg_stat_user_tables_seq_scan", "primary", 10, MetricKind.COUNTER))
    aggregator.apply(_sample("pg_stat_user_tables_seq_scan", "primary", 14, MetricKind.COUNTER))

    labels = {"backend": "primary", "relname": "accounts"}
    assert aggregator.snapshot().get_value("pg_stat_user_tables_seq_scan", labels) == 14


def test_apply_rejects_unknown_metric_and_kind_mismatch() -> None:
    aggregator = MetricAggregator(CATALOG)

    with pytest.raises(KeyError):
        aggregator.apply(_sample("pg_nope", "primary", 1))
    with pytest.raises(ValueError):
        aggregator.apply(_sample("pg_stat_user_tables_seq_scan", "primary", 1, MetricKind.GAUGE))


def test_commit_is_all_or_nothing() -> None:
    aggregator = MetricAggregator(CATALOG)
    batch = [
        _sample("pg_stat_user_tables_n_live_tup", "primary", 5),
        _sample("pg_unknown", "primary", 1),
    ]

    with pytest.raises(KeyError):
        aggregator.commit(batch)

    labels = {"backend": "primary", "relname": "accounts"}
    assert aggregator.snapshot().get_value("pg_stat_user_tables_n_live_tup", labels) is None


def test_query_error_counter_increments_by_one() -> None:
    aggregator = MetricAggregator(CATALOG)
    labels = {"query": "pg_stat_user_tables", "backend": "primary"}

    aggregator.record_query_attempt("pg_stat_user_tables", "primary")
    assert aggregator.snapshot().get_value(QUERY_ERROR, labels) == 0
    assert aggregator.increment_query_error("pg_stat_user_tables", "primary") == 1
    aggregator.record_query_attempt("pg_stat_user_tables", "primary")
    assert aggregator.increment_query_error("pg_stat_user_tables", "primary") == 2
    assert aggregator.snapshot().get_value(QUERY_ERROR, labels) == 2


def test_prune_removes_only_the_given_backend() -> None:
    aggregator = MetricAggregator(CATALOG)
    aggregator.apply(_sample("pg_stat_user_tables_n_live_tup", "primary", 5))
    aggregator.apply(_sample("pg_stat_user_tables_n_live_tup", "replica", 7))
    aggregator.increment_query_error("pg_relation_size", "primary")
    aggregator.set_backend_down("primary", True)
    aggregator.observe_query_time("pg_relation_size", "primary", 3.5)

    removed = aggregator.prune("primary")

    snapshot = aggregator.snapshot()
    assert removed == 4
    assert snapshot.label_sets(QUERY_ERROR) == ()
    assert snapshot.label_sets(BACKEND_DOWN) == ()
    assert snapshot.label_sets(QUERY_TIME) == ()
    assert snapshot.get_value("pg_stat_user_tables_n_live_tup", {"backend": "replica", "relname": "accounts"}) == 7


def test_snapshot_is_immutable_copy() -> None:
    aggregator = MetricAggregator(CATALOG)
    aggregator.apply(_sample("pg_stat_user_tables_n_live_tup", "primary", 5))

    snapshot = aggregator.snapshot()
    aggregator.apply(_sample("pg_stat_user_tables_n_live_tup", "primary", 9))

    labels = {"backend": "primary", "relname": "accounts"}
    assert snapshot.get_value("pg_stat_user_tables_n_live_tup", labels) == 5
    assert aggregator.snapshot().get_value("pg_stat_user_tables_n_live_tup", labels) == 9
    with pytest.raises(AttributeError):
        snapshot.families = ()  # type: ignore[misc]


def test_concurrent_error_increments_are_not_lost() -> None:
    aggregator = MetricAggregator(CATALOG)

    def _hammer() -> None:
        for _ in range(500):
            aggregator.increment_query_error("pg_stat_user_tables", "primary")

    threads = [threading.Thread(target=_hammer) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    labels = {"query": "pg_stat_user_tables", "backend": "primary"}
    assert aggregator.snapshot().get_value(QUERY_ERROR, labels) == 2000
