"""
Gantz Configuration - Configuration loading and validation.

This module provides the Config class for managing Gantz configuration
from both global (~/.gantz/config.yaml) and local (.gantz/config.yaml)
sources.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from gantz.errors import ConfigError


class RelayConfig(BaseModel):
    """Where the public relay lives and how to stay connected to it."""

    url: str = "https://relay.gantz.run"
    api_key: Optional[str] = None
    heartbeat_interval: float = Field(default=15.0, gt=0)
    heartbeat_timeout: float = Field(default=45.0, gt=0)
    grace_period: float = Field(default=120.0, ge=0)
    backoff_initial: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=30.0, gt=0)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_timeout: float = Field(default=30.0, gt=0)


class ExecutorConfig(BaseModel):
    """Limits applied to every tool invocation."""

    default_timeout: float = Field(default=30.0, gt=0)
    max_timeout: float = Field(default=600.0, gt=0)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1024)
    max_workers: int = Field(default=8, ge=1)
    kill_grace: float = Field(default=2.0, gt=0)
    sweep_interval: float = Field(default=1.0, gt=0)
    sweep_grace: float = Field(default=2.0, ge=0)


class AuthConfig(BaseModel):
    """Bearer-token protection for the public endpoint."""

    enabled: bool = False
    token: Optional[str] = None


class ToolsConfig(BaseModel):
    """The tool-definition file and hot reload."""

    file: str = "gantz.yaml"
    watch: bool = False
    watch_interval: float = Field(default=2.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return value


class GantzConfig(BaseModel):
    """Complete Gantz configuration schema."""

    relay: RelayConfig = Field(default_factory=RelayConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class Config:
    """
    Gantz configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.gantz/config.yaml
    - Local: .gantz/config.yaml (project-specific)
    - Environment: GANTZ_RELAY_URL, GANTZ_API_KEY, GANTZ_AUTH_TOKEN

    Local configuration overrides global configuration; the environment
    overrides both.

    Example:
        >>> config = Config.load()
        >>> config.merged.executor.default_timeout
        30.0
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".gantz"
    LOCAL_CONFIG_DIR = Path(".gantz")

    ENV_RELAY_URL = "GANTZ_RELAY_URL"
    ENV_API_KEY = "GANTZ_API_KEY"
    ENV_AUTH_TOKEN = "GANTZ_AUTH_TOKEN"

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            environ: Environment to read overrides from. Defaults to os.environ.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._environ = os.environ if environ is None else environ
        self._merged: Optional[GantzConfig] = None

    @classmethod
    def load(cls) -> "Config":
        """
        Load configuration from default locations.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        merged = self._deep_merge(self._global_config.copy(), self._local_config)
        return self._deep_merge(merged, self._env_overrides())

    @property
    def merged(self) -> GantzConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                merged_dict = self.get_merged_config()
                self._merged = GantzConfig(**merged_dict)
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def override(self, **sections: Dict[str, Any]) -> None:
        """
        Apply command-line overrides on top of everything else.

        Example:
            >>> config.override(relay={"url": "http://localhost:8080"})
        """
        for section, values in sections.items():
            clean = {k: v for k, v in values.items() if v is not None}
            if clean:
                self._local_config = self._deep_merge(self._local_config, {section: clean})
        self._merged = None  # Reset cache

    def _env_overrides(self) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        if self._environ.get(self.ENV_RELAY_URL):
            overrides.setdefault("relay", {})["url"] = self._environ[self.ENV_RELAY_URL]
        if self._environ.get(self.ENV_API_KEY):
            overrides.setdefault("relay", {})["api_key"] = self._environ[self.ENV_API_KEY]
        if self._environ.get(self.ENV_AUTH_TOKEN):
            overrides["auth"] = {"enabled": True, "token": self._environ[self.ENV_AUTH_TOKEN]}
        return overrides

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
