"""Configuration management with environment variable overrides.

Priority order for configuration values:
1. YAML config file passed to ``get_config()``
2. Environment variables (RETINA_OFFLINE_*, nested with ``__``) and ``.env``
3. StoragePathResolver for paths
4. Pydantic defaults (lowest priority)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from retina_offline.storage.path_resolver import StoragePathResolver

logger = logging.getLogger(__name__)


class StorageConfig(BaseModel):
    """Local store configuration.

    Attributes:
        path: DuckDB database file (":memory:" keeps everything in RAM)
        quota_bytes: Maximum total payload bytes; None disables the quota
        ephemeral_retention_days: Default age for evicting captured images
    """

    path: str | None = None  # Resolved by model_validator
    quota_bytes: int | None = Field(default=512 * 1024 * 1024, ge=1)
    ephemeral_retention_days: int = Field(default=7, ge=0)

    @model_validator(mode="after")
    def resolve_paths(self) -> "StorageConfig":
        """Resolve store path using StoragePathResolver."""
        if self.path is None:
            self.path = str(StoragePathResolver().get_store_path())
        return self


class SyncConfig(BaseModel):
    """Sync coordinator and remote configuration.

    Attributes:
        remote_url: Base URL of the remote service
        max_concurrency: Pushes in flight at once
        push_timeout_seconds: Hard timeout per push attempt
        backoff_base_seconds: First retry delay
        backoff_cap_seconds: Maximum retry delay
        backoff_multiplier: Growth factor between retries
        jitter_ratio: Multiplicative jitter, at most ``backoff_multiplier - 1``
        max_attempts_per_pass: Attempts per item before it waits for a later pass
        retry_window_seconds: Longest a pass waits on backoff before returning
        api_token: Optional bearer token sent with every request
    """

    remote_url: str = "http://localhost:3000"
    max_concurrency: int = Field(default=4, ge=1, le=64)
    push_timeout_seconds: float = Field(default=10.0, gt=0)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_cap_seconds: float = Field(default=60.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter_ratio: float = Field(default=0.5, ge=0)
    max_attempts_per_pass: int = Field(default=5, ge=1)
    retry_window_seconds: float = Field(default=30.0, ge=0)
    api_token: str | None = None

    @model_validator(mode="after")
    def check_backoff(self) -> "SyncConfig":
        """Keep the retry schedule non-decreasing."""
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        if self.jitter_ratio > self.backoff_multiplier - 1:
            raise ValueError("jitter_ratio must not exceed backoff_multiplier - 1")
        return self


class ConnectivityConfig(BaseModel):
    """Connectivity monitor configuration.

    Attributes:
        health_url: Probe endpoint (defaults to ``{remote_url}/api/health``)
        probe_timeout_seconds: Timeout of one probe
        hysteresis_seconds: How long a platform flip must hold
        reprobe_interval_seconds: Re-probe period behind a captive portal
    """

    health_url: str | None = None
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    hysteresis_seconds: float = Field(default=2.0, ge=0)
    reprobe_interval_seconds: float = Field(default=30.0, gt=0)


class OfflineConfig(BaseSettings):
    """Main configuration.

    Attributes:
        storage: Local store configuration
        sync: Sync configuration
        connectivity: Connectivity monitor configuration
        debug: Enable debug logging
        metrics_port: Serve Prometheus metrics on this port while running; None disables
    """

    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)

    debug: bool = False
    metrics_port: int | None = Field(default=None, ge=1, le=65535)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="retina_offline_",
        extra="ignore",
    )


def load_config_from_file(config_path: str) -> dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary (empty if the file is missing or unreadable)
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}


def get_config(config_path: str | None = None) -> OfflineConfig:
    """Get configuration instance.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        OfflineConfig instance
    """
    if config_path:
        file_config = load_config_from_file(config_path)
        return OfflineConfig(**file_config)

    return OfflineConfig()
