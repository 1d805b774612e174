"""calendar-bot configuration loading and validation.

Reads a TOML config file, resolves ``${VAR_NAME}`` environment references,
parses all sections, and returns a validated :class:`AppConfig` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Reminders are configured in whole minutes, so the dispatcher must look at
# least once a minute.
MAX_DISPATCH_TICK_SECONDS = 60


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    connection_string: str
    min_pool_size: int = 2
    max_pool_size: int = 15


@dataclass
class MatrixConfig:
    """Homeserver settings from the [matrix] section."""

    homeserver_url: str
    access_token: str

    def __repr__(self) -> str:
        return f"MatrixConfig(homeserver_url={self.homeserver_url!r}, access_token=<REDACTED>)"


@dataclass
class SyncConfig:
    """Calendar sync loop settings from the [sync] section."""

    interval_seconds: int = 300
    max_concurrency: int = 8
    timeout_seconds: int = 120
    horizon_days: int = 730
    lookback_days: int = 180
    request_timeout_seconds: float = 30.0


@dataclass
class DispatchConfig:
    """Reminder dispatch loop settings from the [dispatch] section.

    ``grace_minutes`` bounds how late a reminder may still be delivered.
    Reminders whose trigger time is further in the past (for example after
    the daemon was down for a while) are skipped rather than sent late.
    """

    tick_interval_seconds: int = 60
    grace_minutes: int = 15
    max_concurrency: int = 8


@dataclass
class OAuth2Config:
    """Token endpoint settings from the optional [oauth2] section."""

    token_url: str
    client_id: str
    client_secret: str
    refresh_interval_seconds: int = 300
    refresh_margin_seconds: int = 600

    def __repr__(self) -> str:
        return (
            f"OAuth2Config(token_url={self.token_url!r}, client_id={self.client_id!r}, "
            "client_secret=<REDACTED>)"
        )


@dataclass
class LoggingConfig:
    """Logging configuration from [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class AppConfig:
    """Parsed and validated calendar-bot configuration."""

    database: DatabaseConfig
    matrix: MatrixConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    oauth2: OAuth2Config | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    The original value is not echoed back since it may hold a secret template.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        raise ConfigError(f"Unresolved environment variable(s) in config: {', '.join(missing)}")

    return result


def _section(data: dict[str, Any], name: str, *, required: bool = False) -> dict[str, Any]:
    section = data.get(name)
    if section is None:
        if required:
            raise ConfigError(f"Missing [{name}] section in config")
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _require_str(section: dict[str, Any], section_name: str, key: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {section_name}.{key}")
    return value.strip()


def _positive_int(section: dict[str, Any], section_name: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{section_name}.{key} must be an integer, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"{section_name}.{key} must be a positive integer, got {raw!r}")
    return raw


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    connection_string = section.get("connection_string") or os.environ.get("DATABASE_URL")
    if not isinstance(connection_string, str) or not connection_string.strip():
        raise ConfigError(
            "Missing required field: database.connection_string (or DATABASE_URL env var)"
        )
    min_pool_size = _positive_int(section, "database", "min_pool_size", 2)
    max_pool_size = _positive_int(section, "database", "max_pool_size", 15)
    if min_pool_size > max_pool_size:
        raise ConfigError(
            f"database.min_pool_size ({min_pool_size}) exceeds max_pool_size ({max_pool_size})"
        )
    return DatabaseConfig(
        connection_string=connection_string.strip(),
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
    )


def _parse_matrix(data: dict[str, Any]) -> MatrixConfig:
    section = _section(data, "matrix", required=True)
    return MatrixConfig(
        homeserver_url=_require_str(section, "matrix", "homeserver_url").rstrip("/"),
        access_token=_require_str(section, "matrix", "access_token"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    defaults = SyncConfig()
    raw_request_timeout = section.get("request_timeout_seconds", defaults.request_timeout_seconds)
    if isinstance(raw_request_timeout, bool) or not isinstance(raw_request_timeout, int | float):
        raise ConfigError(
            f"sync.request_timeout_seconds must be a number, got {raw_request_timeout!r}"
        )
    if raw_request_timeout <= 0:
        raise ConfigError("sync.request_timeout_seconds must be positive")
    return SyncConfig(
        interval_seconds=_positive_int(
            section, "sync", "interval_seconds", defaults.interval_seconds
        ),
        max_concurrency=_positive_int(section, "sync", "max_concurrency", defaults.max_concurrency),
        timeout_seconds=_positive_int(section, "sync", "timeout_seconds", defaults.timeout_seconds),
        horizon_days=_positive_int(section, "sync", "horizon_days", defaults.horizon_days),
        lookback_days=_positive_int(section, "sync", "lookback_days", defaults.lookback_days),
        request_timeout_seconds=float(raw_request_timeout),
    )


def _parse_dispatch(data: dict[str, Any]) -> DispatchConfig:
    section = _section(data, "dispatch")
    defaults = DispatchConfig()
    tick_interval_seconds = _positive_int(
        section, "dispatch", "tick_interval_seconds", defaults.tick_interval_seconds
    )
    if tick_interval_seconds > MAX_DISPATCH_TICK_SECONDS:
        raise ConfigError(
            f"dispatch.tick_interval_seconds must be <= {MAX_DISPATCH_TICK_SECONDS} "
            f"(reminder offsets have one-minute resolution), got {tick_interval_seconds}"
        )
    return DispatchConfig(
        tick_interval_seconds=tick_interval_seconds,
        grace_minutes=_positive_int(section, "dispatch", "grace_minutes", defaults.grace_minutes),
        max_concurrency=_positive_int(
            section, "dispatch", "max_concurrency", defaults.max_concurrency
        ),
    )


def _parse_oauth2(data: dict[str, Any]) -> OAuth2Config | None:
    section = _section(data, "oauth2")
    if not section:
        return None
    return OAuth2Config(
        token_url=_require_str(section, "oauth2", "token_url"),
        client_id=_require_str(section, "oauth2", "client_id"),
        client_secret=_require_str(section, "oauth2", "client_secret"),
        refresh_interval_seconds=_positive_int(section, "oauth2", "refresh_interval_seconds", 300),
        refresh_margin_seconds=_positive_int(section, "oauth2", "refresh_margin_seconds", 600),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"Invalid logging.level: {level!r}")
    fmt = str(section.get("format", "text")).lower()
    if fmt not in {"text", "json"}:
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(level=level, format=fmt, log_root=str(log_root) if log_root else None)


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Validate an already-decoded TOML document and build an :class:`AppConfig`."""
    data = resolve_env_vars(data)
    return AppConfig(
        database=_parse_database(data),
        matrix=_parse_matrix(data),
        sync=_parse_sync(data),
        dispatch=_parse_dispatch(data),
        oauth2=_parse_oauth2(data),
        logging=_parse_logging(data),
    )


def load_config(path: Path) -> AppConfig:
    """Load and validate the TOML config file at *path*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
