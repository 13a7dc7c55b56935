"""Configuration management for the birthday greeting service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_APP_NAME = "birthday-app"


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(source: Mapping[str, Any], key: str, default: int) -> int:
    raw = source.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class PoolSettings:
    """Sizing and timeout parameters shared by every connection pool.

    Timeouts are expressed in milliseconds, matching the environment
    variables they are read from.
    """

    max_size: int = 20
    min_size: int = 5
    idle_timeout_ms: int = 30_000
    connection_timeout_ms: int = 2_000
    statement_timeout_ms: int = 30_000
    query_timeout_ms: int = 30_000
    application_name: str = DEFAULT_APP_NAME

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("Pool max size must be at least 1")
        if self.min_size < 0 or self.min_size > self.max_size:
            raise ValueError("Pool min size must be between 0 and the max size")


@dataclass(frozen=True)
class EndpointSettings:
    """Network location and credentials for a single PostgreSQL server."""

    host: str
    port: int = 5432
    database: str = "birthday_db"
    user: str = "postgres"
    password: str = "postgres"
    ssl: bool = False


@dataclass(frozen=True)
class DatabaseSettings:
    primary: EndpointSettings = field(default_factory=lambda: EndpointSettings(host="localhost"))
    read_replica: Optional[EndpointSettings] = None
    pool: PoolSettings = field(default_factory=PoolSettings)

    @property
    def has_read_replica(self) -> bool:
        return self.read_replica is not None


@dataclass(frozen=True)
class RateLimitSettings:
    requests: int = 100
    window_seconds: int = 900

    @property
    def enabled(self) -> bool:
        return self.requests > 0 and self.window_seconds > 0


@dataclass(frozen=True)
class ServiceSettings:
    """Top-level settings consumed by the composition root."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    log_level: str = "INFO"


def _load_yaml_overrides(config_path: Path) -> Dict[str, Any]:
    """Flatten the ``database`` and ``service`` sections of a YAML file into env-style keys."""

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")

    flattened: Dict[str, Any] = {}
    for section in ("database", "service"):
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Configuration section '{section}' must be a mapping")
        for key, value in values.items():
            if value is not None:
                flattened[str(key).upper()] = value
    return flattened


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the optional YAML configuration file."""

    if not env_value:
        return None
    return Path(env_value).expanduser().resolve(strict=False)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ServiceSettings:
    """Build :class:`ServiceSettings` from defaults, an optional YAML file and the environment."""

    env: Mapping[str, str] = os.environ if environ is None else environ

    source: Dict[str, Any] = {}
    config_path = resolve_config_path(env.get("BIRTHDAY_CONFIG"))
    if config_path is not None:
        source.update(_load_yaml_overrides(config_path))
    source.update({key: value for key, value in env.items() if value is not None})

    database_name = str(source.get("DB_NAME", "birthday_db"))
    user = str(source.get("DB_USER", "postgres"))
    password = str(source.get("DB_PASSWORD", "postgres"))
    ssl_raw = source.get("DB_SSL")
    ssl = ssl_raw if isinstance(ssl_raw, bool) else _env_flag(None if ssl_raw is None else str(ssl_raw))

    primary = EndpointSettings(
        host=str(source.get("DB_PRIMARY_HOST", "localhost")),
        port=_env_int(source, "DB_PRIMARY_PORT", 5432),
        database=database_name,
        user=user,
        password=password,
        ssl=ssl,
    )

    read_host = str(source.get("DB_READ_HOST") or "").strip()
    read_replica = None
    if read_host:
        read_replica = EndpointSettings(
            host=read_host,
            port=_env_int(source, "DB_READ_PORT", 5432),
            database=database_name,
            user=user,
            password=password,
            ssl=ssl,
        )

    pool = PoolSettings(
        max_size=_env_int(source, "DB_POOL_SIZE", 20),
        min_size=_env_int(source, "DB_MIN_POOL_SIZE", 5),
        idle_timeout_ms=_env_int(source, "DB_IDLE_TIMEOUT", 30_000),
        connection_timeout_ms=_env_int(source, "DB_CONNECTION_TIMEOUT", 2_000),
        statement_timeout_ms=_env_int(source, "DB_STATEMENT_TIMEOUT", 30_000),
        query_timeout_ms=_env_int(source, "DB_QUERY_TIMEOUT", 30_000),
        application_name=str(source.get("APP_NAME") or DEFAULT_APP_NAME),
    )

    return ServiceSettings(
        database=DatabaseSettings(primary=primary, read_replica=read_replica, pool=pool),
        rate_limit=RateLimitSettings(
            requests=_env_int(source, "RATE_LIMIT_REQUESTS", 100),
            window_seconds=_env_int(source, "RATE_LIMIT_WINDOW_SECONDS", 900),
        ),
        host=str(source.get("HOST", "0.0.0.0")),
        port=_env_int(source, "PORT", 3000),
        environment=str(source.get("ENVIRONMENT", "development")),
        log_level=str(source.get("LOG_LEVEL", "INFO")).upper(),
    )


__all__ = [
    "DatabaseSettings",
    "EndpointSettings",
    "PoolSettings",
    "RateLimitSettings",
    "ServiceSettings",
    "load_settings",
    "resolve_config_path",
]
