"""
Tests for configuration system.

Covers Config defaults, YAML loading and event log path resolution.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from common.config import Config, load_config, resolve_event_log_path


def test_config_creation():
    """Test basic Config creation."""
    config = Config()

    # Test default values are loaded
    assert config.server is not None
    assert config.transport is not None
    assert config.dispatcher is not None
    assert config.event_log is not None


def test_config_defaults_are_reasonable():
    """Test default values match the reference behaviour."""
    config = Config()

    assert config.transport.framing == "newline"
    assert config.transport.max_message_bytes > 0
    assert config.dispatcher.ordered_responses is False
    assert config.dispatcher.request_timeout is None
    assert config.dispatcher.shutdown_grace_period >= 0
    assert 0 < config.dispatcher.page_size <= 100
    assert config.event_log.file_name == "mcp-reference.log"
    assert config.event_log.status_interval == 30.0
    assert config.log_level == "INFO"


def test_config_yaml_file_exists():
    """Test that config.yaml file exists."""
    config_path = Path("config.yaml")
    assert config_path.exists(), "config.yaml file should exist in the project root"


def test_project_config_loads():
    """Test the shipped config.yaml is valid."""
    config = load_config(Path("config.yaml"))

    assert config.server.name == "reference-server"
    assert config.transport.framing in ("newline", "content-length")


def test_load_config_missing_file(tmp_path):
    """Test a missing config file falls back to defaults."""
    config = load_config(tmp_path / "nope.yaml")
    assert config == Config()


def test_load_config_from_yaml(tmp_path):
    """Test YAML values override defaults, including the nested logging block."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "server:\n"
        "  name: custom\n"
        "transport:\n"
        "  framing: content-length\n"
        "dispatcher:\n"
        "  ordered_responses: true\n"
        "  request_timeout: 2.5\n"
        "logging:\n"
        "  level: DEBUG\n"
        "  format: json\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.server.name == "custom"
    assert config.transport.framing == "content-length"
    assert config.dispatcher.ordered_responses is True
    assert config.dispatcher.request_timeout == 2.5
    assert config.log_level == "DEBUG"
    assert config.log_format == "json"


def test_load_config_empty_file(tmp_path):
    """Test an empty YAML file is treated as no overrides."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text("", encoding="utf-8")

    assert load_config(config_path) == Config()


def test_load_config_rejects_invalid_values(tmp_path):
    """Test invalid values raise a validation error."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text("dispatcher:\n  page_size: 0\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(config_path)


@pytest.mark.parametrize("content", ["- server\n- transport\n", "just text\n", "42\n"])
def test_load_config_rejects_non_mapping(tmp_path, content):
    """Test a file whose top level is not a mapping raises a validation error."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(config_path)


def test_load_config_rejects_unknown_framing(tmp_path):
    """Test an unknown framing name is rejected."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text("transport:\n  framing: xml\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        load_config(config_path)


class TestEventLogPath:
    """Test event log location resolution."""

    def test_uses_home(self, tmp_path):
        """Test the log goes into HOME."""
        path = resolve_event_log_path(Config(), {"HOME": str(tmp_path)})
        assert path == tmp_path / "mcp-reference.log"

    def test_falls_back_to_userprofile(self, tmp_path):
        """Test USERPROFILE is used when HOME is unset."""
        path = resolve_event_log_path(Config(), {"USERPROFILE": str(tmp_path)})
        assert path == tmp_path / "mcp-reference.log"

    def test_home_wins_over_userprofile(self, tmp_path):
        """Test HOME takes precedence."""
        environ = {"HOME": str(tmp_path / "home"), "USERPROFILE": str(tmp_path / "profile")}
        path = resolve_event_log_path(Config(), environ)
        assert path == tmp_path / "home" / "mcp-reference.log"

    def test_platform_default(self):
        """Test the platform home directory is used without either variable."""
        path = resolve_event_log_path(Config(), {})
        assert path == Path.home() / "mcp-reference.log"

    def test_absolute_file_name(self, tmp_path):
        """Test an absolute file name is used as-is."""
        config = Config(event_log={"file_name": str(tmp_path / "custom.log")})
        path = resolve_event_log_path(config, {"HOME": "/elsewhere"})
        assert path == tmp_path / "custom.log"
