"""Tests for monitor wiring and the command-line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pgstatsmon.app import PgStatsMon, build_discovery, main, run_monitor
from pgstatsmon.config import parse_config
from pgstatsmon.discovery import PollingDiscovery, StaticDiscovery
from pgstatsmon.errors import ConfigError
from pgstatsmon.metrics import QUERY_ERROR
from pgstatsmon.models import BackendDescriptor
from pgstatsmon.queries import DEFAULT_QUERIES


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


BAD_QUERY = {
    "name": "test_bad_query",
    "sql": "SELECT *",
    "statkey": "non_existent",
    "metadata": ["no_metadata"],
    "counters": [],
    "gauges": [],
}


class _FakeConnection:
    async def fetch(self, _sql: str):  # type: ignore[no-untyped-def]
        return [{"unexpected": 1}]

    async def close(self) -> None:
        return None


class _FakeFactory:
    def __init__(self) -> None:
        self.connected: list[str] = []

    async def connect(self, backend: BackendDescriptor) -> _FakeConnection:
        self.connected.append(backend.name)
        return _FakeConnection()


def _config(**overrides: object):  # type: ignore[no-untyped-def]
    data: dict[str, object] = {
        "bootstrap": False,
        "static": {"dbs": [{"name": "primary", "ip": "10.0.0.1"}]},
    }
    data.update(overrides)
    return parse_config(data)


def test_monitor_uses_default_catalog() -> None:
    monitor = PgStatsMon(_config(), client_factory=_FakeFactory())

    assert monitor.collector.catalog == DEFAULT_QUERIES
    assert isinstance(monitor.discovery, StaticDiscovery)


def test_monitor_loads_catalog_file(tmp_path: Path) -> None:
    queries = tmp_path / "queries.json"
    queries.write_text(json.dumps([BAD_QUERY]))

    monitor = PgStatsMon(_config(queries=str(queries)), client_factory=_FakeFactory())

    assert [query.name for query in monitor.collector.catalog] == ["test_bad_query"]


@pytest.mark.anyio
async def test_bad_query_error_counter_increments_each_tick() -> None:
    factory = _FakeFactory()
    monitor = PgStatsMon(_config(), client_factory=factory)
    await monitor.initialize_metrics([BAD_QUERY])
    labels = {"query": "test_bad_query", "backend": "primary"}

    try:
        first = await monitor.tick()
        assert monitor.get_target().snapshot().get_value(QUERY_ERROR, labels) == 1
        await monitor.tick()
        assert monitor.snapshot().get_value(QUERY_ERROR, labels) == 2
    finally:
        await monitor.stop()

    report = first.for_backend("primary")
    assert report is not None
    assert report.failed == 1
    assert factory.connected == ["primary"]


@pytest.mark.anyio
async def test_start_and_stop_without_serving() -> None:
    monitor = PgStatsMon(_config(interval=60_000), client_factory=_FakeFactory())

    await monitor.start(collect=True)
    assert "primary" in monitor.registry
    assert monitor.collector.running is True

    await monitor.stop()
    assert monitor.collector.running is False
    assert monitor.connections.states() == ()


def test_build_discovery_for_polling(tmp_path: Path) -> None:
    config = parse_config({"polling": {"path": str(tmp_path / "backends.json"), "interval": 5000}})

    assert isinstance(build_discovery(config), PollingDiscovery)


def test_invalid_catalog_file_is_config_error(tmp_path: Path) -> None:
    queries = tmp_path / "queries.json"
    queries.write_text(json.dumps([BAD_QUERY, BAD_QUERY]))

    with pytest.raises(ConfigError):
        PgStatsMon(_config(queries=str(queries)), client_factory=_FakeFactory())


def test_main_returns_2_for_missing_config(tmp_path: Path) -> None:
    assert main(["--config", str(tmp_path / "missing.toml"), "--log-level", "error"]) == 2


def test_main_returns_2_for_invalid_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("interval = 1000\n")

    assert main(["-c", str(config_path)]) == 2


def test_main_rejects_unknown_log_level(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["-c", str(tmp_path / "config.toml"), "--log-level", "loud"])

    assert exc_info.value.code == 2


def test_main_checks_log_level_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    with pytest.raises(SystemExit) as exc_info:
        main(["-c", str(tmp_path / "config.toml")])
    assert exc_info.value.code == 2

    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert main(["-c", str(tmp_path / "config.toml")]) == 2


@pytest.mark.anyio
async def test_run_monitor_cleans_up_when_exporter_cannot_bind(monkeypatch: pytest.MonkeyPatch) -> None:
    stopped: list[PgStatsMon] = []
    original_stop = PgStatsMon.stop

    def _refuse(self: PgStatsMon) -> None:
        raise OSError("address already in use")

    async def _stop(self: PgStatsMon) -> None:
        stopped.append(self)
        await original_stop(self)

    monkeypatch.setattr(PgStatsMon, "serve", _refuse)
    monkeypatch.setattr(PgStatsMon, "stop", _stop)

    with pytest.raises(OSError, match="address already in use"):
        await run_monitor(_config())

    assert len(stopped) == 1
    assert stopped[0].collector.running is False
