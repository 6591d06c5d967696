"""
Shared configuration management for Learnpath Access Layer.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SOURCE_PRIORITY = [
    "subscription",
    "program_plan",
    "add_on",
    "track",
    "org_sponsored",
]


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/learnpath")
    enable_snapshot_cache: bool = Field(default=True)

    # Entitlement resolution
    source_priority: List[str] = Field(default_factory=lambda: list(DEFAULT_SOURCE_PRIORITY))
    snapshot_cache_ttl_seconds: int = Field(default=300)

    # System settings table
    settings_cache_ttl_seconds: float = Field(default=300.0)

    # Alumni / deadline banners
    urgent_threshold_days: int = Field(default=7)
    deadline_display_window_days: int = Field(default=30)
    staff_roles: List[str] = Field(default_factory=lambda: ["admin", "instructor", "coach"])


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
