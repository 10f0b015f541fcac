"""
Configuration management for the settlement service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

REDACTION_MARKER = "***REDACTED***"


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str | None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int = Field(gt=0)


class SettlementConfig(BaseModel):
    """Task reward bounds and the auto-release window."""

    model_config = ConfigDict(extra="forbid")
    auto_release_hours: int = Field(gt=0)
    min_reward: int = Field(gt=0)
    max_reward: int = Field(gt=0)


class WalletConfig(BaseModel):
    """Sandbox wallet limits."""

    model_config = ConfigDict(extra="forbid")
    max_deposit: int = Field(gt=0)


class RateLimitsConfig(BaseModel):
    """Per-user ceilings within one rolling window."""

    model_config = ConfigDict(extra="forbid")
    window_seconds: int = Field(gt=0)
    task_create: int = Field(ge=1)
    task_accept: int = Field(ge=1)
    wallet_deposit: int = Field(ge=1)
    wallet_withdraw: int = Field(ge=1)


class NotificationsConfig(BaseModel):
    """Notification webhook configuration. A null URL keeps events in the outbox."""

    model_config = ConfigDict(extra="forbid")
    webhook_url: str | None
    timeout_seconds: int = Field(gt=0)


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    request: RequestConfig
    settlement: SettlementConfig
    wallet: WalletConfig
    rate_limits: RateLimitsConfig
    notifications: NotificationsConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH, falling back to ./config.yaml."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    """Read and validate one YAML configuration file."""
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return Settings.model_validate(raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


_SENSITIVE_KEYS = ("webhook_url",)


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    data = get_settings().model_dump()

    def redact(node: Any) -> Any:
        if isinstance(node, dict):
            return {
                key: REDACTION_MARKER if key in _SENSITIVE_KEYS and value else redact(value)
                for key, value in node.items()
            }
        return node

    return redact(data)
