"""Service configuration loading and validation.

Reads ``careiq.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated ``ServiceConfig``.  The ``[calendar]``
section is validated by the pydantic ``CalendarSyncConfig`` model.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from careiq.calendar.config import CalendarSyncConfig

DEFAULT_CONFIG_FILENAME = "careiq.toml"
CONFIG_PATH_ENV = "CAREIQ_CONFIG"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when service configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database selection from the [database] section.

    Connection parameters (host, credentials, TLS) come from the
    environment; see ``careiq.db.db_params_from_env``.
    """

    name: str = "careiq"
    schema: str | None = None


@dataclass
class ServiceConfig:
    """Parsed and validated service configuration."""

    name: str = "careiq-calendar-sync"
    host: str = "127.0.0.1"
    port: int = 8200
    dashboard_url: str | None = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    calendar: CalendarSyncConfig = field(default_factory=CalendarSyncConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If any referenced environment variable is not set.  The message
        lists every missing name, not just the first.
    """
    missing: list[str] = []
    resolved = _resolve(value, missing)
    if missing:
        names = ", ".join(dict.fromkeys(missing))
        raise ConfigError(f"Unresolved environment variable(s) in config: {names}")
    return resolved


def _resolve(value: Any, missing: list[str]) -> Any:
    if isinstance(value, dict):
        return {k: _resolve(v, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(item, missing) for item in value]
    if isinstance(value, str):
        return _resolve_string(value, missing)
    return value


def _resolve_string(s: str, missing: list[str]) -> str:
    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    return _ENV_VAR_PATTERN.sub(_replace, s)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("logging.log_root must be a string when set")
    return LoggingConfig(level=log_level, format=log_format, log_root=log_root)


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    db_name = str(section.get("name", "careiq")).strip()
    if not db_name:
        raise ConfigError("database.name must be a non-empty string")

    db_schema_raw = section.get("schema")
    db_schema: str | None = None
    if db_schema_raw is not None:
        if not isinstance(db_schema_raw, str):
            raise ConfigError("database.schema must be a string when set")
        normalized_schema = db_schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized_schema) is None:
            raise ConfigError(
                f"Invalid database.schema: {db_schema_raw!r}. "
                "Expected a valid SQL identifier-style value."
            )
        db_schema = normalized_schema
    return DatabaseConfig(name=db_name, schema=db_schema)


def _parse_calendar(section: dict[str, Any]) -> CalendarSyncConfig:
    try:
        return CalendarSyncConfig.model_validate(section)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigError(f"Invalid [calendar] configuration: {problems}") from exc


def parse_config(data: dict[str, Any]) -> ServiceConfig:
    """Validate an already-loaded TOML document."""
    data = resolve_env_vars(data)

    service_section = _section(data, "service")
    name = str(service_section.get("name", "careiq-calendar-sync")).strip()
    if not name:
        raise ConfigError("service.name must be a non-empty string")

    raw_port = service_section.get("port", 8200)
    try:
        port = int(raw_port)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid service.port: {raw_port!r}") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid service.port: {port!r}. Must be between 1 and 65535.")

    return ServiceConfig(
        name=name,
        host=str(service_section.get("host", "127.0.0.1")),
        port=port,
        dashboard_url=service_section.get("dashboard_url"),
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        calendar=_parse_calendar(_section(data, "calendar")),
    )


def resolve_config_path(path: Path | str | None = None) -> Path:
    """Pick the config file: explicit *path*, then ``$CAREIQ_CONFIG``, then ``./careiq.toml``."""
    if path is not None:
        return Path(path)
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_FILENAME


def load_config(path: Path | str | None = None) -> ServiceConfig:
    """Load and validate the service TOML file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = resolve_config_path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
