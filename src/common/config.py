"""
Configuration loader for the reference server.

Loads settings from config.yaml. The only environment variables consulted are
the ones that locate the user's home directory for the event log file.
"""

import os
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Identity advertised to the peer during initialization."""

    name: str = Field(default="reference-server", description="Server programmatic name")
    version: str = Field(default="0.1.0", description="Server version string")
    instructions: Optional[str] = Field(
        default=None, description="Optional usage instructions returned on initialize"
    )


class TransportConfig(BaseModel):
    """Configuration for the stdio transport."""

    framing: Literal["newline", "content-length"] = Field(
        default="newline", description="Message framing on stdin/stdout"
    )
    max_message_bytes: int = Field(
        default=4 * 1024 * 1024, gt=0, description="Largest accepted inbound frame (4MB)"
    )


class DispatcherConfig(BaseModel):
    """Configuration for request dispatching."""

    ordered_responses: bool = Field(
        default=False, description="Emit responses in request arrival order"
    )
    request_timeout: Optional[float] = Field(
        default=None, gt=0, description="Per-request deadline in seconds (None = no deadline)"
    )
    shutdown_grace_period: float = Field(
        default=5.0, ge=0, description="Seconds to let in-flight requests finish on shutdown"
    )
    page_size: int = Field(default=50, gt=0, le=100, description="tools/list page size")


class EventLogConfig(BaseModel):
    """Configuration for the lifecycle event log."""

    file_name: str = Field(
        default="mcp-reference.log", description="Log file (relative to the home directory)"
    )
    fsync: bool = Field(default=True, description="Flush every entry to storage")
    status_interval: float = Field(
        default=30.0, ge=0, description="Seconds between liveness entries (0 disables)"
    )


class Config(BaseModel):
    """Main configuration object."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    event_log: EventLogConfig = Field(default_factory=EventLogConfig)
    log_level: str = Field(default="INFO", description="Diagnostic logging level")
    log_format: Literal["console", "json"] = Field(
        default="console", description="Diagnostic log renderer"
    )


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config.yaml file. Defaults to ./config.yaml

    Returns:
        Loaded configuration object

    Raises:
        ValidationError: If the file is not a mapping or holds invalid values
    """
    if config_path is None:
        config_path = Path("config.yaml")

    config_data: Any = {}

    # Load from YAML file if it exists
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    # Handle nested logging configuration
    if isinstance(config_data, dict) and isinstance(config_data.get("logging"), dict):
        logging_config = config_data.pop("logging")
        if "level" in logging_config:
            config_data["log_level"] = logging_config["level"]
        if "format" in logging_config:
            config_data["log_format"] = logging_config["format"]

    # A top level that is not a mapping fails validation like any other bad value
    return Config.model_validate(config_data)


def resolve_event_log_path(
    config: Config, environ: Optional[Mapping[str, str]] = None
) -> Path:
    """
    Resolve the event log location.

    A relative file name is placed in the user's home directory, taken from
    HOME (or USERPROFILE on Windows) before falling back to the platform default.
    """
    if environ is None:
        environ = os.environ

    file_path = Path(config.event_log.file_name).expanduser()
    if file_path.is_absolute():
        return file_path

    home = environ.get("HOME") or environ.get("USERPROFILE")
    home_dir = Path(home) if home else Path.home()
    return home_dir / file_path
