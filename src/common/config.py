"""
Configuration loader for the MCP session core.

Loads settings from config.yaml. Environment variables are not used for
configuration; everything that shapes a session lives in the YAML file.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field


class ServerInfoConfig(BaseModel):
    """Identity advertised to peers in the initialize response."""

    name: str = Field(default="mcpsession", description="Server name sent as serverInfo.name")
    version: str = Field(default="0.1.0", description="Server version sent as serverInfo.version")
    instructions: Optional[str] = Field(
        default=None, description="Optional usage instructions returned on initialize"
    )


class SessionConfig(BaseModel):
    """Configuration for per-connection session behaviour."""

    supported_protocol_versions: List[str] = Field(
        default_factory=lambda: ["2024-11-05", "2025-03-26", "2025-06-18"],
        description="Protocol versions accepted during initialize",
    )
    request_timeout: float = Field(
        default=60.0, description="Timeout in seconds for server-initiated requests"
    )
    subscription_lock_shards: int = Field(
        default=16, ge=1, description="Number of lock shards guarding the subscription table"
    )
    default_log_level: str = Field(
        default="info", description="Minimum level of notifications/message before setLevel"
    )


class Config(BaseModel):
    """Main configuration object."""

    server: ServerInfoConfig = Field(default_factory=ServerInfoConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    capabilities: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Capabilities declared by the server at startup"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    enable_pretty_print: bool = Field(
        default=False, description="Enable custom pretty print for debugging"
    )
    enable_jq_json_formatting: bool = Field(
        default=False, description="Enable jq-style JSON formatting for logs"
    )
    log_wire_frames: bool = Field(
        default=False, description="Trace every inbound and outbound JSON-RPC frame"
    )
    save_to_file: bool = Field(default=False, description="Save logs to file")
    log_file_path: str = Field(default="server.log", description="Log file path (relative to root)")
    max_log_file_size: int = Field(
        default=10485760, description="Max log file size in bytes (10MB)"
    )
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


_LOGGING_KEYS = (
    "enable_pretty_print",
    "enable_jq_json_formatting",
    "log_wire_frames",
    "save_to_file",
    "log_file_path",
    "max_log_file_size",
    "backup_count",
)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config.yaml file. Defaults to ./config.yaml

    Returns:
        Loaded configuration object
    """
    if config_path is None:
        config_path = Path("config.yaml")

    config_data: Dict[str, Any] = {}

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    # Handle nested logging configuration
    if "logging" in config_data:
        logging_config = config_data.pop("logging") or {}
        if "level" in logging_config:
            config_data["log_level"] = logging_config["level"]
        for key in _LOGGING_KEYS:
            if key in logging_config:
                config_data[key] = logging_config[key]

    # A capability listed with no options (e.g. "logging:") loads as None
    capabilities = config_data.get("capabilities") or {}
    config_data["capabilities"] = {
        name: (options or {}) for name, options in capabilities.items()
    }

    return Config(**config_data)
