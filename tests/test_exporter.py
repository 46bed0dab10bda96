"""Tests for the Prometheus exposition of snapshots."""

from __future__ import annotations

from prometheus_client.parser import text_string_to_metric_families

from pgstatsmon.catalog import build_catalog
from pgstatsmon.exporter import SnapshotCollector, build_registry, render
from pgstatsmon.metrics import MetricAggregator
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
        }
    ]
)


def _populated() -> MetricAggregator:
    aggregator = MetricAggregator(CATALOG)
    labels = make_labels({"backend": "primary", "relname": "accounts"})
    aggregator.commit(
        [
            MetricSample("pg_stat_user_tables_seq_scan", labels, 10, MetricKind.COUNTER),
            MetricSample("pg_stat_user_tables_n_live_tup", labels, 5, MetricKind.GAUGE),
        ]
    )
    aggregator.record_query_attempt("pg_stat_user_tables", "primary")
    aggregator.increment_query_error("test_bad_query", "primary")
    aggregator.set_backend_down("replica", True)
    return aggregator


def test_render_exposes_counters_and_gauges() -> None:
    text = render(_populated()).decode()

    assert "# HELP pg_stat_user_tables_seq_scan_total Sequential scans" in text
    assert "# TYPE pg_stat_user_tables_seq_scan_total counter" in text
    assert 'pg_stat_user_tables_seq_scan_total{backend="primary",relname="accounts"} 10.0' in text
    assert "# TYPE pg_stat_user_tables_n_live_tup gauge" in text
    assert 'pg_stat_user_tables_n_live_tup{backend="primary",relname="accounts"} 5.0' in text
    assert 'pg_query_error_total{backend="primary",query="test_bad_query"} 1.0' in text
    assert 'pg_query_error_total{backend="primary",query="pg_stat_user_tables"} 0.0' in text
    assert 'pg_backend_down{backend="replica"} 1.0' in text


def test_render_output_parses() -> None:
    families = list(text_string_to_metric_families(render(_populated()).decode()))
    samples = {sample.name: sample for family in families for sample in family.samples}

    assert {family.type for family in families} == {"counter", "gauge"}
    assert samples["pg_backend_down"].value == 1.0
    assert samples["pg_stat_user_tables_seq_scan_total"].labels == {"backend": "primary", "relname": "accounts"}


def test_each_scrape_reads_a_fresh_snapshot() -> None:
    aggregator = _populated()
    registry = build_registry(aggregator)
    labels = {"backend": "primary", "relname": "accounts"}

    assert registry.get_sample_value("pg_stat_user_tables_n_live_tup", labels) == 5.0
    aggregator.apply(MetricSample("pg_stat_user_tables_n_live_tup", make_labels(labels), 7))

    assert registry.get_sample_value("pg_stat_user_tables_n_live_tup", labels) == 7.0


def test_empty_families_are_still_described() -> None:
    names = [metric.name for metric in SnapshotCollector(MetricAggregator(CATALOG)).collect()]

    assert "pg_stat_user_tables_seq_scan" in names
    assert "pg_connect_error" in names
