"""OneClickTag configuration system using pydantic-settings with YAML support."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP/WebSocket server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1


class DatabaseConfig(BaseModel):
    """Relational store connection."""

    url: str = "sqlite+aiosqlite:///./oneclicktag.db"

    def model_post_init(self, __context: Any) -> None:
        if self.url.startswith("postgresql://"):
            self.url = self.url.replace("postgresql://", "postgresql+asyncpg://", 1)


class RedisConfig(BaseModel):
    """Pub/sub transport for batch progress. Empty url keeps broadcast in-process."""

    url: str = ""


class SecurityConfig(BaseModel):
    """Bearer token settings."""

    secret_key: str = "change-me-oneclicktag-development-secret"
    token_expiry_hours: int = 24
    # When false, tenant claims are read from unverified tokens
    verify_token_signature: bool = True


class TenancyConfig(BaseModel):
    """Tenant context resolution settings."""

    tenant_header: str = "x-tenant-id"
    reserved_subdomains: list[str] = Field(default_factory=lambda: ["www", "api"])
    cache_ttl_seconds: float = 300.0


class QueueConfig(BaseModel):
    """Tracking queue maintenance settings."""

    maintenance_enabled: bool = True
    maintenance_interval_seconds: float = 60
    stuck_job_seconds: int = 60


class Settings(BaseSettings):
    """Root configuration for the OneClickTag service."""

    model_config = SettingsConfigDict(
        env_prefix="ONECLICKTAG_",
        env_nested_delimiter="__",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    tenancy: TenancyConfig = Field(default_factory=TenancyConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)

    cors_origins: list[str] = Field(default_factory=list)
    debug: bool = False


def load_config(config_path: str | Path | None = None) -> Settings:
    """Load configuration from YAML file and environment variables.

    YAML values are passed as init arguments, so they take precedence over
    environment variables, which in turn override defaults.
    """
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        candidates = [
            Path("oneclicktag.yaml"),
            Path("oneclicktag.yml"),
            Path("/etc/oneclicktag/oneclicktag.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    return Settings(**yaml_data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings singleton."""
    global _settings
    if _settings is None:
        _settings = load_config()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (for testing)."""
    global _settings
    _settings = None
