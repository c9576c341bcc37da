"""Calendar sync configuration loading and validation.

Reads ``rehearsal-sync.toml``, resolves ``${VAR}`` references from the
environment and returns a validated ``SyncAppConfig`` dataclass.

This is static deployment configuration (backend URL, store, logging).
The user-editable sync settings live in the mapping store instead.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rehearsal_sync.models import EXTERNAL_CALENDAR_SOURCES, SlotSource

DEFAULT_CONFIG_FILENAME = "rehearsal-sync.toml"
DEFAULT_KEY_PREFIX = "calendar-sync"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_STORE_KINDS = ("memory", "postgres")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when sync configuration is missing, malformed, or invalid."""


@dataclass
class BackendConfig:
    base_url: str
    api_token: str | None = None
    timeout_seconds: float = 30.0


@dataclass
class StoreConfig:
    """Where mappings, tracking and settings are persisted.

    ``memory`` keeps everything in process (tests, dry runs); ``postgres``
    needs a ``dsn`` and the ``calendar_sync_state`` table from ``migrate``.
    """

    kind: str = "memory"
    dsn: str | None = None
    key_prefix: str = DEFAULT_KEY_PREFIX


@dataclass
class SyncOptions:
    import_source: SlotSource = SlotSource.apple_calendar
    import_window_days: int = 365
    throttle_seconds: float = 5.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class SyncAppConfig:
    backend: BackendConfig
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncOptions = field(default_factory=SyncOptions)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Dicts, lists and strings are walked; other leaf values pass through.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_number(section: dict[str, Any], path: str, key: str, default: float) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{path}.{key} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be positive.")
    return raw


def _optional_string(section: dict[str, Any], path: str, key: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return raw.strip() or None


def _parse_backend(data: dict[str, Any]) -> BackendConfig:
    section = data.get("backend")
    if not isinstance(section, dict):
        raise ConfigError("Missing [backend] section in config")

    base_url = section.get("base_url")
    if not isinstance(base_url, str) or not base_url.strip():
        raise ConfigError("Missing required field: backend.base_url")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"backend.base_url must be an http(s) URL, got {base_url!r}")

    return BackendConfig(
        base_url=base_url.strip(),
        api_token=_optional_string(section, "backend", "api_token"),
        timeout_seconds=float(_positive_number(section, "backend", "timeout_seconds", 30.0)),
    )


def _parse_store(data: dict[str, Any]) -> StoreConfig:
    section = _section(data, "store")
    kind = section.get("kind", "memory")
    if kind not in _STORE_KINDS:
        raise ConfigError(f"store.kind must be one of {', '.join(_STORE_KINDS)}, got {kind!r}")

    dsn = _optional_string(section, "store", "dsn")
    if kind == "postgres" and dsn is None:
        raise ConfigError("store.dsn is required when store.kind = 'postgres'")

    key_prefix = section.get("key_prefix", DEFAULT_KEY_PREFIX)
    if not isinstance(key_prefix, str) or not key_prefix.strip("/ "):
        raise ConfigError("store.key_prefix must be a non-empty string")

    return StoreConfig(kind=kind, dsn=dsn, key_prefix=key_prefix.strip("/ "))


def _parse_sync(data: dict[str, Any]) -> SyncOptions:
    section = _section(data, "sync")

    raw_source = section.get("import_source", SlotSource.apple_calendar.value)
    try:
        source = SlotSource(raw_source)
    except ValueError:
        source = None
    if source not in EXTERNAL_CALENDAR_SOURCES:
        allowed = ", ".join(sorted(s.value for s in EXTERNAL_CALENDAR_SOURCES))
        raise ConfigError(f"sync.import_source must be one of {allowed}, got {raw_source!r}")

    window_days = section.get("import_window_days", 365)
    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days <= 0:
        raise ConfigError(
            f"Invalid sync.import_window_days: {window_days!r}. Must be a positive integer."
        )

    return SyncOptions(
        import_source=source,
        import_window_days=window_days,
        throttle_seconds=float(_positive_number(section, "sync", "throttle_seconds", 5.0)),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    fmt = section.get("format", "text")
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"logging.format must be 'text' or 'json', got {fmt!r}")
    return LoggingConfig(
        level=level,
        format=fmt,
        log_file=_optional_string(section, "logging", "log_file"),
    )


def parse_config(data: dict[str, Any]) -> SyncAppConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    return SyncAppConfig(
        backend=_parse_backend(data),
        store=_parse_store(data),
        sync=_parse_sync(data),
        logging=_parse_logging(data),
    )


def load_config(path: Path) -> SyncAppConfig:
    """Load and validate a sync config file.

    *path* may be the TOML file itself or a directory containing
    ``rehearsal-sync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
