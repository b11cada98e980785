"""
Unit tests for configuration loading.
"""

import pytest

from enigmo.config import DEFAULT_CONFIG, Config
from enigmo.errors import ConfigError, ErrorCode


def test_defaults_without_file(temp_dir):
    config = Config(temp_dir / "missing.toml")

    assert config.get("server", "port") == DEFAULT_CONFIG["server"]["port"]
    assert config.get("limits", "max_history_limit") == DEFAULT_CONFIG["limits"]["max_history_limit"]
    assert config.get("auth", "credential_hash") == ""
    assert config.get("server", "nope", "fallback") == "fallback"


def test_file_values_merge_over_defaults(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text('[server]\nport = 9100\n\n[limits]\nmessages_burst = 5\n', encoding="utf-8")

    config = Config(path)

    assert config.get("server", "port") == 9100
    assert config.get("server", "host") == DEFAULT_CONFIG["server"]["host"]
    assert config.get("limits", "messages_burst") == 5
    assert config.get("limits", "messages_per_minute") == DEFAULT_CONFIG["limits"]["messages_per_minute"]


def test_environment_overrides(temp_dir, monkeypatch):
    monkeypatch.setenv("ENIGMO_SERVER_PORT", "9200")
    monkeypatch.setenv("ENIGMO_LOGGING_FILE_LOGGING", "yes")
    monkeypatch.setenv("ENIGMO_LOGGING_LEVEL", "DEBUG")

    config = Config(temp_dir / "missing.toml")

    assert config.get("server", "port") == 9200
    assert config.get("logging", "file_logging") is True
    assert config.get("logging", "level") == "DEBUG"


def test_invalid_environment_value(temp_dir, monkeypatch):
    monkeypatch.setenv("ENIGMO_SERVER_PORT", "not-a-port")

    with pytest.raises(ConfigError) as exc_info:
        Config(temp_dir / "missing.toml")
    assert exc_info.value.code == ErrorCode.E702_INVALID_CONFIG


def test_unparseable_file(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text("[server\nport = ", encoding="utf-8")

    with pytest.raises(ConfigError) as exc_info:
        Config(path)
    assert exc_info.value.code == ErrorCode.E703_CONFIG_PARSE_ERROR


def test_from_dict_does_not_touch_defaults():
    config = Config.from_dict({"limits": {"max_line_bytes": 10}})
    config.set("server", "port", 1)

    assert config.get("limits", "max_line_bytes") == 10
    assert DEFAULT_CONFIG["limits"]["max_line_bytes"] != 10
    assert DEFAULT_CONFIG["server"]["port"] != 1
    assert config.to_dict()["server"]["port"] == 1
