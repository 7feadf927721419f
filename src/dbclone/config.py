"""
Configuration management for clone provisioning.

This module handles loading and validating configuration from files and environment variables.
"""

import os
import yaml
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - DBCLONE_STORE_TYPE: Metadata store backend (sql, file)
    - DBCLONE_STORE_URL: SQLAlchemy URL of the relational store
    - DBCLONE_STORE_PATH: Directory holding the flat-document store
    - DBCLONE_DISK_BACKEND: Differencing disk backend (hyperv, qemu)
    - DBCLONE_SSH_KEY_PATH: Path to SSH private key
    - DBCLONE_SSH_PORT: Default SSH port
    - DBCLONE_SSH_USERNAME: Default SSH user
    - DBCLONE_SSH_HOST_KEY_POLICY: Unknown host keys (strict, warn, accept)
    - DBCLONE_TIMEOUT: Default remote command timeout in seconds
    - DBCLONE_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    model_config = ConfigDict(extra="forbid")

    store_type: str = Field(default="file", description="sql or file")
    store_url: Optional[str] = None
    store_path: str = Field(default="~/.local/share/dbclone")
    disk_backend: str = Field(default="hyperv", description="hyperv or qemu")
    clone_subdirectory: str = Field(default="clone", min_length=1)

    ssh_key_path: Optional[str] = None
    ssh_port: int = Field(default=22, gt=0, le=65535, description="Default SSH port")
    ssh_username: Optional[str] = None
    ssh_host_key_policy: str = Field(default="strict", pattern=r"^(strict|warn|accept)$")
    default_timeout: int = Field(
        default=300, gt=0, description="Default remote command timeout in seconds"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    sqlcmd_path: str = Field(default="sqlcmd")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @field_validator("store_type")
    @classmethod
    def validate_store_type(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sql", "file"):
            raise ValueError("store_type must be 'sql' or 'file'")
        return v

    @field_validator("disk_backend")
    @classmethod
    def validate_disk_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("hyperv", "qemu"):
            raise ValueError("disk_backend must be 'hyperv' or 'qemu'")
        return v

    @model_validator(mode="after")
    def check_store_url(self) -> "AppConfig":
        if self.store_type == "sql" and not self.store_url:
            raise ValueError("store_url is required when store_type is 'sql'")
        return self


class ConfigLoader:
    """Loads and validates configuration."""

    ENV_MAPPINGS = {
        "DBCLONE_STORE_TYPE": "store_type",
        "DBCLONE_STORE_URL": "store_url",
        "DBCLONE_STORE_PATH": "store_path",
        "DBCLONE_DISK_BACKEND": "disk_backend",
        "DBCLONE_SSH_KEY_PATH": "ssh_key_path",
        "DBCLONE_SSH_PORT": ("ssh_port", int),
        "DBCLONE_SSH_USERNAME": "ssh_username",
        "DBCLONE_SSH_HOST_KEY_POLICY": "ssh_host_key_policy",
        "DBCLONE_TIMEOUT": ("default_timeout", int),
        "DBCLONE_LOG_LEVEL": "log_level",
    }

    def __init__(self) -> None:
        self.logger = logger

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            default_paths = [
                os.path.expanduser("~/.config/dbclone/config.yaml"),
                "/etc/dbclone/config.yaml",
                "config.yaml",
            ]

            config_data = {}
            for path in default_paths:
                if os.path.exists(path):
                    self.logger.info(f"Loading configuration from {path}", path=path)
                    config_data = self._load_data_from_file(path)
                    break

            if not config_data:
                self.logger.debug(
                    "No configuration file found, using defaults and environment variables"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        for env_var, mapping in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue

            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                except (ValueError, TypeError) as e:
                    self.logger.warning(
                        f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                    )
                    continue
            else:
                config_data[mapping] = env_value
            self.logger.debug(f"Applied environment override: {env_var}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse configuration file {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(f"Failed to load configuration from {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


# Global config loader
config_loader = ConfigLoader()
