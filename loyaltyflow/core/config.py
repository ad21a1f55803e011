# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
LoyaltyFlow Configuration System

Centralized configuration management supporting:
- Environment variables (LOYALTYFLOW_*)
- Config files (~/.loyaltyflow/config.yaml, ./.loyaltyflow.yaml)
- Programmatic defaults
- Pydantic validation
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ConfigError

logger = logging.getLogger("loyaltyflow.config")

ENV_PREFIX = "LOYALTYFLOW_"


# ============================================================================
# Configuration Models
# ============================================================================


class PathsConfig(BaseModel):
    """Path configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    home: Path = Field(
        default_factory=lambda: Path.home() / ".loyaltyflow",
        description="LoyaltyFlow home directory",
    )
    database: Optional[Path] = Field(
        default=None, description="SQLite database file (defaults to home/loyaltyflow.db)"
    )
    definitions_dir: Optional[Path] = Field(
        default=None, description="Published workflow versions (defaults to home/workflows)"
    )
    log_dir: Optional[Path] = Field(
        default=None, description="Log files directory (defaults to home/logs)"
    )

    @field_validator("*", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert strings to Path objects"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @model_validator(mode="after")
    def derive_from_home(self):
        if self.database is None:
            self.database = self.home / "loyaltyflow.db"
        if self.definitions_dir is None:
            self.definitions_dir = self.home / "workflows"
        if self.log_dir is None:
            self.log_dir = self.home / "logs"
        return self


class RuntimeConfig(BaseModel):
    """Interpreter and dispatch configuration"""

    max_steps_per_run: int = Field(
        default=200, description="Maximum steps in one run/resume cycle", ge=1
    )
    max_node_visits: int = Field(
        default=100, description="Maximum visits of one node in one cycle", ge=1
    )
    checkpoint_each_step: bool = Field(
        default=True, description="Persist after every step, not only at boundaries"
    )
    max_delay_ms: int = Field(
        default=24 * 60 * 60 * 1000, description="Longest allowed delay node (ms)", ge=0
    )
    dispatch_workers: int = Field(
        default=1, description="Background workers for restarted executions", ge=1
    )
    dispatch_max_attempts: int = Field(
        default=3, description="Dispatch attempts before a job is marked failed", ge=1
    )
    dispatch_retry_delay_ms: int = Field(
        default=500, description="Delay between dispatch attempts (ms)", ge=0
    )
    default_page_size: int = Field(
        default=20, description="Default page size for execution listings", ge=1
    )
    max_page_size: int = Field(
        default=100, description="Largest page size for execution listings", ge=1
    )


class OutboundConfig(BaseModel):
    """Outbound HTTP and message delivery configuration"""

    http_timeout_ms: int = Field(
        default=15000, description="Default HTTP request timeout (ms)", ge=1
    )
    enable_ssl_verify: bool = Field(
        default=True, description="Verify SSL certificates"
    )
    user_agent: str = Field(
        default="loyaltyflow/1.0", description="User-Agent for outbound requests"
    )
    message_endpoint: Optional[str] = Field(
        default=None, description="URL that receives outgoing messages as JSON"
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration"""

    log_level: str = Field(default="INFO", description="Logging level")
    file_logs: bool = Field(default=True, description="Write rotating log files")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper


class FlowConfig(BaseModel):
    """Complete LoyaltyFlow configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    paths: PathsConfig = Field(
        default_factory=PathsConfig, description="Path configuration"
    )
    runtime: RuntimeConfig = Field(
        default_factory=RuntimeConfig, description="Runtime configuration"
    )
    outbound: OutboundConfig = Field(
        default_factory=OutboundConfig, description="Outbound configuration"
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )


# ============================================================================
# Configuration Loader
# ============================================================================


class ConfigLoader:
    """Load configuration from multiple sources"""

    # env var suffix -> (section, key)
    ENV_MAP = {
        "HOME": ("paths", "home"),
        "DB": ("paths", "database"),
        "DEFINITIONS_DIR": ("paths", "definitions_dir"),
        "LOG_DIR": ("paths", "log_dir"),
        "MAX_STEPS": ("runtime", "max_steps_per_run"),
        "MAX_NODE_VISITS": ("runtime", "max_node_visits"),
        "DISPATCH_WORKERS": ("runtime", "dispatch_workers"),
        "DISPATCH_ATTEMPTS": ("runtime", "dispatch_max_attempts"),
        "HTTP_TIMEOUT_MS": ("outbound", "http_timeout_ms"),
        "MESSAGE_ENDPOINT": ("outbound", "message_endpoint"),
        "LOG_LEVEL": ("observability", "log_level"),
    }

    @staticmethod
    def load_from_env() -> Dict[str, Any]:
        """Load configuration from LOYALTYFLOW_* environment variables"""
        config: Dict[str, Any] = {}

        for suffix, (section, key) in ConfigLoader.ENV_MAP.items():
            value = os.getenv(ENV_PREFIX + suffix)
            if value:
                config.setdefault(section, {})[key] = value

        ssl_verify = os.getenv(ENV_PREFIX + "SSL_VERIFY")
        if ssl_verify:
            config.setdefault("outbound", {})["enable_ssl_verify"] = (
                ssl_verify.lower() == "true"
            )

        no_file_logs = os.getenv(ENV_PREFIX + "NO_FILE_LOGS")
        if no_file_logs:
            config.setdefault("observability", {})["file_logs"] = (
                no_file_logs.lower() != "true"
            )

        return config

    @staticmethod
    def load_from_file(file_path: Path) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {file_path}", cause=e)

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {file_path} must contain a mapping")
        return data

    @staticmethod
    def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple configuration dictionaries"""
        result: Dict[str, Any] = {}
        for config in configs:
            for key, value in config.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = ConfigLoader.merge_configs(result[key], value)
                else:
                    result[key] = value
        return result


# ============================================================================
# Global Configuration Instance
# ============================================================================

_config: Optional[FlowConfig] = None


def get_config() -> FlowConfig:
    """
    Get global LoyaltyFlow configuration

    Configuration is loaded from (in order of precedence):
    1. Environment variables (LOYALTYFLOW_*)
    2. .loyaltyflow.yaml in current directory
    3. ~/.loyaltyflow/config.yaml
    4. Default values
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def load_config(
    config_file: Optional[Path] = None, env_override: bool = True
) -> FlowConfig:
    """
    Load configuration from all sources

    Args:
        config_file: Optional specific config file to load
        env_override: Whether environment variables override file config

    Raises:
        ConfigError: If a file cannot be parsed or validation fails
    """
    configs = []

    default_locations = [
        Path.home() / ".loyaltyflow" / "config.yaml",
        Path.cwd() / ".loyaltyflow.yaml",
    ]

    for location in default_locations:
        file_config = ConfigLoader.load_from_file(location)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {location}")

    if config_file:
        if not Path(config_file).exists():
            raise ConfigError(f"Config file not found: {config_file}")
        configs.append(ConfigLoader.load_from_file(Path(config_file)))
        logger.debug(f"Loaded config from {config_file}")

    if env_override:
        env_config = ConfigLoader.load_from_env()
        if env_config:
            configs.append(env_config)
            logger.debug("Loaded config from environment")

    merged = ConfigLoader.merge_configs(*configs) if configs else {}

    try:
        return FlowConfig(**merged)
    except ValueError as e:
        raise ConfigError("Config validation failed", cause=e)


def set_config(config: FlowConfig) -> None:
    """Install a configuration as the global instance"""
    global _config
    _config = config


def reload_config():
    """Reload global configuration"""
    global _config
    _config = load_config()
    logger.info("Configuration reloaded")


def ensure_directories(config: Optional[FlowConfig] = None):
    """Ensure all configured directories exist"""
    if config is None:
        config = get_config()

    directories = [
        config.paths.home,
        config.paths.database.parent,
        config.paths.definitions_dir,
        config.paths.log_dir,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory: {directory}")
