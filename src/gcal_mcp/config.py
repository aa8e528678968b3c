"""gcal-mcp configuration loading and validation.

Reads ``gcal-mcp.toml``, resolves ``${VAR}`` references from the
environment, parses every section, and returns a validated ``ServerConfig``
dataclass. The ``[calendar]`` table is kept as a raw dict and validated by
the calendar module's own pydantic schema.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "gcal-mcp.toml"
DEFAULT_SERVER_NAME = "gcal-mcp"
DEFAULT_PORT = 8765
DEFAULT_REDIRECT_URI = "http://localhost:8765/oauth/callback"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_TRANSPORTS = ("stdio", "sse", "streamable-http")
_STORAGE_BACKENDS = ("memory", "postgres")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleConfig:
    """OAuth client settings from the [google] section."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class StorageConfig:
    """State store selection from the [storage] section."""

    backend: str = "memory"
    dsn: str | None = None


@dataclass
class ServerConfig:
    """Parsed and validated server configuration."""

    name: str = DEFAULT_SERVER_NAME
    port: int = DEFAULT_PORT
    transport: str = "stdio"
    google: GoogleConfig = field(default_factory=GoogleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    calendar: dict[str, Any] = field(default_factory=dict)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_server(data: dict[str, Any]) -> tuple[str, int, str]:
    section = _section(data, "server")
    name = str(section.get("name", DEFAULT_SERVER_NAME)).strip()
    if not name:
        raise ConfigError("server.name must be a non-empty string")

    port = section.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"server.port must be an integer between 1 and 65535, got {port!r}")

    transport = str(section.get("transport", "stdio")).strip().lower()
    if transport not in _TRANSPORTS:
        raise ConfigError(
            f"Invalid server.transport: {transport!r}. Expected one of: {', '.join(_TRANSPORTS)}"
        )
    return name, port, transport


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    for key in ("client_id", "client_secret", "redirect_uri"):
        if key in section and not isinstance(section[key], str):
            raise ConfigError(f"google.{key} must be a string")
    return GoogleConfig(
        client_id=section.get("client_id", "").strip(),
        client_secret=section.get("client_secret", "").strip(),
        redirect_uri=section.get("redirect_uri", DEFAULT_REDIRECT_URI).strip()
        or DEFAULT_REDIRECT_URI,
    )


def _parse_storage(data: dict[str, Any]) -> StorageConfig:
    section = _section(data, "storage")
    backend = str(section.get("backend", "memory")).strip().lower()
    if backend not in _STORAGE_BACKENDS:
        raise ConfigError(
            f"Invalid storage.backend: {backend!r}. "
            f"Expected one of: {', '.join(_STORAGE_BACKENDS)}"
        )
    dsn = section.get("dsn")
    if dsn is not None and (not isinstance(dsn, str) or not dsn.strip()):
        raise ConfigError("storage.dsn must be a non-empty string when set")
    if backend == "postgres" and dsn is None:
        raise ConfigError("storage.dsn is required when storage.backend is 'postgres'")
    return StorageConfig(backend=backend, dsn=dsn.strip() if dsn else None)


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def parse_config(data: dict[str, Any]) -> ServerConfig:
    """Validate an already-parsed TOML mapping."""
    data = resolve_env_vars(data)
    name, port, transport = _parse_server(data)
    return ServerConfig(
        name=name,
        port=port,
        transport=transport,
        google=_parse_google(data),
        storage=_parse_storage(data),
        logging=_parse_logging(data),
        calendar=_section(data, "calendar"),
    )


def load_config(path: Path) -> ServerConfig:
    """Load and validate ``gcal-mcp.toml``.

    Parameters
    ----------
    path:
        The TOML file, or a directory containing ``gcal-mcp.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
