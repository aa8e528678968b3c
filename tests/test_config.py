"""Tests for gcal-mcp.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from gcal_mcp.config import (
    DEFAULT_PORT,
    DEFAULT_REDIRECT_URI,
    ConfigError,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

REPO_ROOT = Path(__file__).resolve().parents[1]


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "gcal-mcp.toml"
    path.write_text(content)
    return path


class TestLoadConfig:
    def test_empty_file_uses_defaults(self, tmp_path):
        config = load_config(_write(tmp_path, ""))

        assert config.name == "gcal-mcp"
        assert config.port == DEFAULT_PORT
        assert config.transport == "stdio"
        assert config.google.configured is False
        assert config.google.redirect_uri == DEFAULT_REDIRECT_URI
        assert config.storage.backend == "memory"
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"
        assert config.logging.log_root is None
        assert config.calendar == {}

    def test_directory_path(self, tmp_path):
        _write(tmp_path, '[server]\nname = "cal"\n')
        assert load_config(tmp_path).name == "cal"

    def test_full_config(self, tmp_path):
        path = _write(
            tmp_path,
            """
[server]
name = "team-cal"
port = 9000
transport = "SSE"

[google]
client_id = " id "
client_secret = "secret"

[storage]
backend = "postgres"
dsn = "postgresql://localhost/gcal"

[calendar]
calendar_id = "team@example.com"
timezone = "Europe/Berlin"

[calendar.reminders]
enabled = true

[logging]
level = "debug"
format = "JSON"
log_root = "logs"
""",
        )
        config = load_config(path)

        assert (config.name, config.port, config.transport) == ("team-cal", 9000, "sse")
        assert config.google.client_id == "id"
        assert config.google.configured is True
        assert config.storage.dsn == "postgresql://localhost/gcal"
        assert config.calendar == {
            "calendar_id": "team@example.com",
            "timezone": "Europe/Berlin",
            "reminders": {"enabled": True},
        }
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "logs"

    def test_shipped_config_loads(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-id")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "client-secret")

        config = load_config(REPO_ROOT / "gcal-mcp.toml")

        assert config.google.client_id == "client-id"
        assert config.calendar["reminders"] == {"enabled": False, "interval_minutes": 5}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[server\nname = 1"))


class TestEnvVars:
    def test_resolves_nested_values(self, monkeypatch):
        monkeypatch.setenv("CAL_SECRET", "s3cret")
        resolved = resolve_env_vars(
            {"google": {"client_secret": "${CAL_SECRET}", "scopes": ["x-${CAL_SECRET}"]}, "n": 1}
        )
        assert resolved == {"google": {"client_secret": "s3cret", "scopes": ["x-s3cret"]}, "n": 1}

    def test_missing_variables_reported_together(self, monkeypatch):
        monkeypatch.delenv("CAL_MISSING_A", raising=False)
        monkeypatch.delenv("CAL_MISSING_B", raising=False)
        with pytest.raises(ConfigError, match="CAL_MISSING_A, CAL_MISSING_B"):
            resolve_env_vars("${CAL_MISSING_A}:${CAL_MISSING_B}")

    def test_unresolved_variable_in_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CAL_UNSET_ID", raising=False)
        with pytest.raises(ConfigError, match="CAL_UNSET_ID"):
            load_config(_write(tmp_path, '[google]\nclient_id = "${CAL_UNSET_ID}"\n'))


class TestValidation:
    @pytest.mark.parametrize("port", [0, 70000, "8080", True])
    def test_bad_port(self, port):
        with pytest.raises(ConfigError, match="server.port"):
            parse_config({"server": {"port": port}})

    def test_blank_name(self):
        with pytest.raises(ConfigError, match="server.name"):
            parse_config({"server": {"name": "  "}})

    def test_bad_transport(self):
        with pytest.raises(ConfigError, match="Invalid server.transport"):
            parse_config({"server": {"transport": "websocket"}})

    def test_section_must_be_table(self):
        with pytest.raises(ConfigError, match=r"\[storage\] must be a table"):
            parse_config({"storage": "memory"})

    def test_google_values_must_be_strings(self):
        with pytest.raises(ConfigError, match="google.client_id must be a string"):
            parse_config({"google": {"client_id": 42}})

    def test_bad_storage_backend(self):
        with pytest.raises(ConfigError, match="Invalid storage.backend"):
            parse_config({"storage": {"backend": "sqlite"}})

    def test_postgres_requires_dsn(self):
        with pytest.raises(ConfigError, match="storage.dsn is required"):
            parse_config({"storage": {"backend": "postgres"}})

    def test_blank_dsn(self):
        with pytest.raises(ConfigError, match="storage.dsn must be a non-empty string"):
            parse_config({"storage": {"dsn": " "}})

    def test_bad_log_format(self):
        with pytest.raises(ConfigError, match="Invalid logging.format"):
            parse_config({"logging": {"format": "xml"}})
