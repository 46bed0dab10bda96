"""Monitor configuration loading helpers."""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from .discovery import BackendConfig
from .errors import ConfigError

DEFAULT_CONFIG_FILE = Path("/etc/pgstatsmon/config.toml")


class TargetConfig(BaseModel):
    """Where the Prometheus exporter listens."""

    address: str = Field(default="0.0.0.0", alias="ip")
    port: int = Field(default=9187, ge=0, le=65535)

    model_config = {"populate_by_name": True}


class StaticConfig(BaseModel):
    """Fixed backend list."""

    backends: list[BackendConfig] = Field(default_factory=list, alias="dbs")

    model_config = {"populate_by_name": True}


class PollingConfig(BaseModel):
    """Backend list re-read from a file on an interval (ms)."""

    path: Path
    interval: int = Field(default=60_000, gt=0)


class MonitorConfig(BaseModel):
    """Shape of the pgstatsmon configuration file. Durations are milliseconds."""

    interval: int = Field(default=10_000, gt=0)
    query_timeout: int = Field(default=1_000, gt=0)
    connect_timeout: int = Field(default=3_000, gt=0)
    connect_retries: int = Field(default=3, ge=1)
    backoff_initial: int = Field(default=100, ge=0)
    backoff_max: int = Field(default=3_000, ge=0)
    user: str = "pgstatsmon"
    password: str | None = None
    database: str = "postgres"
    superuser: str = "postgres"
    bootstrap: bool = True
    queries: Path | None = None
    target: TargetConfig = Field(default_factory=TargetConfig)
    static: StaticConfig | None = None
    polling: PollingConfig | None = None

    @model_validator(mode="after")
    def _check_discovery(self) -> MonitorConfig:
        if self.static is None and self.polling is None:
            raise ValueError("configure backend discovery with either [static] or [polling]")
        if self.static is not None and self.polling is not None:
            raise ValueError("[static] and [polling] discovery are mutually exclusive")
        return self

    @property
    def interval_seconds(self) -> float:
        return self.interval / 1000

    @property
    def query_timeout_seconds(self) -> float:
        return self.query_timeout / 1000

    @property
    def connect_timeout_seconds(self) -> float:
        return self.connect_timeout / 1000

    @property
    def backoff_initial_seconds(self) -> float:
        return self.backoff_initial / 1000

    @property
    def backoff_max_seconds(self) -> float:
        return self.backoff_max / 1000


def parse_config(data: dict[str, object], *, base_dir: Path | None = None) -> MonitorConfig:
    """Validate a parsed mapping; relative paths resolve against ``base_dir``."""

    try:
        config = MonitorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    if base_dir is None:
        return config
    updates: dict[str, object] = {}
    if config.queries is not None and not config.queries.is_absolute():
        updates["queries"] = base_dir / config.queries
    if config.polling is not None and not config.polling.path.is_absolute():
        updates["polling"] = config.polling.model_copy(update={"path": base_dir / config.polling.path})
    return config.model_copy(update=updates) if updates else config


def load_config(path: Path | str = DEFAULT_CONFIG_FILE) -> MonitorConfig:
    """Load configuration from disk; any problem is fatal."""

    source = Path(path)
    try:
        with source.open("rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file '{source}' not found") from exc
    except (tomllib.TOMLDecodeError, OSError) as exc:
        raise ConfigError(f"Cannot read configuration file '{source}': {exc}") from exc
    return parse_config(data, base_dir=source.parent)


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "MonitorConfig",
    "PollingConfig",
    "StaticConfig",
    "TargetConfig",
    "load_config",
    "parse_config",
]
