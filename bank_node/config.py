"""
Configuration Management Module

Provides centralized configuration using pydantic-settings. Values come from
(lowest to highest priority) defaults, BANK_NODE_* environment variables or a
.env file, an optional JSON configuration file, and explicit overrides.
"""

import json
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from .async_storage import check_storage_url


class ConfigError(Exception):
    """Raised when the configuration is missing or invalid; fatal at startup"""


class BankNodeConfig(BaseSettings):
    """Bank node configuration"""

    # Listener configuration
    host: str = "0.0.0.0"
    port: int = Field(65525, ge=0, le=65535)
    bank_code: Optional[str] = None  # None = local address of each connection
    remote_port: Optional[int] = Field(None, ge=1, le=65535)  # None = same as port

    # Timeouts (seconds)
    response_timeout: float = Field(5.0, gt=0)
    proxy_timeout: Optional[float] = Field(None, gt=0)
    client_idle_timeout: float = Field(60.0, gt=0)
    commit_timeout: Optional[float] = Field(None, gt=0)  # None = response_timeout

    # Account storage
    storage_url: str = "sqlite:///accounts.db"

    # Network availability monitor
    network_check_enabled: bool = True
    network_check_interval: float = Field(30.0, gt=0)

    # Stream limits
    max_line_length: int = Field(64 * 1024, ge=64)

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Optional[str] = None  # If None, logs to stdout only
    log_backup_count: int = Field(14, ge=0)

    class Config:
        env_prefix = "BANK_NODE_"
        env_file = ".env"
        case_sensitive = False

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("storage_url")
    @classmethod
    def supported_storage_url(cls, value: str) -> str:
        return check_storage_url(value)

    @property
    def effective_proxy_timeout(self) -> float:
        """Proxy round trips give up strictly before the command deadline"""
        ceiling = self.response_timeout * 0.8
        if self.proxy_timeout is not None:
            return min(self.proxy_timeout, ceiling)
        return ceiling

    @property
    def effective_commit_timeout(self) -> float:
        return self.commit_timeout if self.commit_timeout is not None else self.response_timeout

    @property
    def effective_remote_port(self) -> int:
        return self.remote_port if self.remote_port is not None else self.port


def _read_config_file(path: Path) -> dict:
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")
    return {str(key).lower(): value for key, value in raw.items()}


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> BankNodeConfig:
    """
    Build the configuration and install it as the global instance.

    Args:
        path: Optional JSON file whose keys are config field names
        **overrides: Explicit values (None values are ignored)

    Returns:
        The validated configuration

    Raises:
        ConfigError: If the file is missing/unreadable or validation fails
    """
    global config

    values = {}
    if path is not None:
        values.update(_read_config_file(Path(path)))
    values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        loaded = BankNodeConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    config = loaded
    return config


# Global configuration instance
config = BankNodeConfig()


def get_config() -> BankNodeConfig:
    """Get global configuration instance"""
    return config

