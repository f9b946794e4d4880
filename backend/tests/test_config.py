"""Tests for settings loading (YAML file plus environment overrides)."""
import pytest
from pydantic import ValidationError

from chunk_relay.config import AppSettings, load_settings


def _write_settings(tmp_path, text: str):
    path = tmp_path / "relay.settings.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml", environ={})

        assert settings.server.port == 3000
        assert settings.server.allowed_origins == ["*"]
        assert settings.transfer.chunk_size == 10 * 1024 * 1024
        assert settings.transfer.max_file_size == 2 * 1024 ** 3
        assert settings.transfer.max_buffer_size == 100 * 1024 * 1024
        assert settings.transfer.cleanup_interval_seconds == 3600.0
        assert settings.server.ping_interval_seconds == 25.0
        assert settings.server.ping_timeout_seconds == 60.0
        assert settings.storage.temp_dir == "./temp"
        assert settings.logging.activity_enabled is True


class TestYamlFile:
    def test_values_read_from_file(self, tmp_path):
        path = _write_settings(tmp_path, """
server:
  port: 8080
transfer:
  cleanup_interval_seconds: 60
storage:
  temp_dir: /var/tmp/relay
""")
        settings = load_settings(path, environ={})

        assert settings.server.port == 8080
        assert settings.transfer.cleanup_interval_seconds == 60
        assert settings.storage.temp_dir == "/var/tmp/relay"
        assert settings.storage.log_dir == "./logs"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = _write_settings(tmp_path, "")
        assert load_settings(path, environ={}) == AppSettings()

    def test_settings_file_from_environment(self, tmp_path):
        path = _write_settings(tmp_path, "server:\n  host: 127.0.0.1\n")
        settings = load_settings(environ={"RELAY_SETTINGS_FILE": str(path)})
        assert settings.server.host == "127.0.0.1"

    def test_non_positive_limit_rejected(self, tmp_path):
        path = _write_settings(tmp_path, "transfer:\n  max_file_size: 0\n")
        with pytest.raises(ValidationError):
            load_settings(path, environ={})


class TestEnvironmentOverrides:
    def test_env_overrides_file(self, tmp_path):
        path = _write_settings(tmp_path, "server:\n  port: 8080\n")
        settings = load_settings(path, environ={
            "PORT": "9000",
            "CORS_ORIGIN": "https://a.example, https://b.example",
            "CLEANUP_INTERVAL": "5",
            "MAX_FILE_SIZE": "1024",
            "TEMP_DIR": "/tmp/chunks",
            "LOG_LEVEL": "debug",
        })

        assert settings.server.port == 9000
        assert settings.server.allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.transfer.cleanup_interval_seconds == 5.0
        assert settings.transfer.max_file_size == 1024
        assert settings.storage.temp_dir == "/tmp/chunks"
        assert settings.logging.level == "debug"

    @pytest.mark.parametrize("raw,expected", [
        ("true", True),
        ("1", True),
        ("false", False),
        ("no", False),
    ])
    def test_enable_logging_flag(self, tmp_path, raw, expected):
        settings = load_settings(tmp_path / "missing.yaml", environ={"ENABLE_LOGGING": raw})
        assert settings.logging.activity_enabled is expected

    def test_invalid_number_ignored(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml", environ={"PORT": "eighty"})
        assert settings.server.port == 3000

    def test_empty_value_ignored(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml", environ={"HOST": ""})
        assert settings.server.host == "0.0.0.0"
