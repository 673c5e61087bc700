"""Orbits configuration loading and validation.

Reads ``orbits.toml``, resolves ``${VAR}`` references and returns a
validated :class:`OrbitsConfig`. Every section is optional.

Example::

    [orbits.paths]
    message_archive = "~/Library/Messages/chat.db"
    contacts_root = "~/Library/Application Support/AddressBook"
    session_file = "~/.orbits/session.json"

    [orbits.sync]
    batch_size = 50
    thread_query_mode = "conversation"   # or "handle"
    insert_mode = "recheck"              # or "upsert"
    cadence_minutes = 60

    [orbits.db]
    url = "${DATABASE_URL}"

    [orbits.logging]
    level = "INFO"
    format = "text"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from orbits.sync.directory import DEFAULT_CONTACTS_ROOT
from orbits.sync.engine import DEFAULT_BATCH_SIZE
from orbits.sync.messages import DEFAULT_MESSAGE_ARCHIVE_PATH
from orbits.sync.session import DEFAULT_SESSION_PATH

DEFAULT_CONFIG_PATH = Path("orbits.toml")

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_THREAD_QUERY_MODES = ("conversation", "handle")
_INSERT_MODES = ("recheck", "upsert")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [orbits.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class PathsConfig:
    message_archive: Path = DEFAULT_MESSAGE_ARCHIVE_PATH
    contacts_root: Path = DEFAULT_CONTACTS_ROOT
    session_file: Path = DEFAULT_SESSION_PATH


@dataclass
class SyncSettings:
    """Sync behaviour from [orbits.sync].

    insert_mode ``recheck`` re-queries for concurrently created rows before
    inserting; ``upsert`` relies on ON CONFLICT DO NOTHING instead.
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    thread_query_mode: str = "conversation"
    insert_mode: str = "recheck"
    cadence_minutes: int = 60


@dataclass
class DatabaseConfig:
    """Remote store connection from [orbits.db].

    When ``url`` is unset the DATABASE_URL / POSTGRES_* environment variables
    are used.
    """

    url: str | None = None
    name: str = "orbits"
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class OrbitsConfig:
    """Parsed and validated Orbits configuration."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

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
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict, name: str, path: str) -> dict:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return value


def _positive_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _parse_paths(section: dict) -> PathsConfig:
    defaults = PathsConfig()
    values: dict[str, Path] = {}
    for key in ("message_archive", "contacts_root", "session_file"):
        raw = section.get(key)
        if raw is None:
            values[key] = getattr(defaults, key)
            continue
        if not isinstance(raw, str) or not raw.strip():
            raise ConfigError(f"orbits.paths.{key} must be a non-empty string")
        values[key] = Path(raw.strip()).expanduser()
    return PathsConfig(**values)


def _parse_sync(section: dict) -> SyncSettings:
    thread_query_mode = str(section.get("thread_query_mode", "conversation")).lower()
    if thread_query_mode not in _THREAD_QUERY_MODES:
        raise ConfigError(
            f"Invalid orbits.sync.thread_query_mode: {thread_query_mode!r}. "
            f"Expected one of {', '.join(_THREAD_QUERY_MODES)}."
        )
    insert_mode = str(section.get("insert_mode", "recheck")).lower()
    if insert_mode not in _INSERT_MODES:
        raise ConfigError(
            f"Invalid orbits.sync.insert_mode: {insert_mode!r}. "
            f"Expected one of {', '.join(_INSERT_MODES)}."
        )
    return SyncSettings(
        batch_size=_positive_int(section, "batch_size", DEFAULT_BATCH_SIZE, "orbits.sync"),
        thread_query_mode=thread_query_mode,
        insert_mode=insert_mode,
        cadence_minutes=_positive_int(section, "cadence_minutes", 60, "orbits.sync"),
    )


def _parse_db(section: dict) -> DatabaseConfig:
    url = section.get("url")
    if url is not None and (not isinstance(url, str) or not url.strip()):
        raise ConfigError("orbits.db.url must be a non-empty string when set")
    name = str(section.get("name", "orbits")).strip()
    if not name:
        raise ConfigError("orbits.db.name must be a non-empty string")
    min_size = _positive_int(section, "min_pool_size", 1, "orbits.db")
    max_size = _positive_int(section, "max_pool_size", 5, "orbits.db")
    if min_size > max_size:
        raise ConfigError("orbits.db.min_pool_size must not exceed orbits.db.max_pool_size")
    return DatabaseConfig(
        url=url.strip() if url else None,
        name=name,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(section: dict) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid orbits.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    log_root = section.get("log_root")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )


def parse_config(data: dict[str, Any]) -> OrbitsConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    orbits_section = _section(data, "orbits", "orbits")
    return OrbitsConfig(
        paths=_parse_paths(_section(orbits_section, "paths", "orbits.paths")),
        sync=_parse_sync(_section(orbits_section, "sync", "orbits.sync")),
        db=_parse_db(_section(orbits_section, "db", "orbits.db")),
        logging=_parse_logging(_section(orbits_section, "logging", "orbits.logging")),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> OrbitsConfig:
    """Load and validate an ``orbits.toml`` file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
