"""
Shared configuration management for the Cost Guard service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Durable stores
    redis_url: str = Field(default="redis://localhost:6379/0")
    store_backend: str = Field(default="redis")  # "redis" or "memory"
    store_prefix: str = Field(default="costguard")
    store_transaction_attempts: int = Field(default=50)
    public_blob_base_url: str = Field(default="http://localhost:8020/api/v1/blobs")

    # Upstream providers
    places_api_url: str = Field(default="https://places.googleapis.com/v1")
    places_api_key: Optional[str] = Field(default=None)
    scoring_service_url: str = Field(default="http://localhost:8090/score")
    scoring_api_key: Optional[str] = Field(default=None)
    upstream_timeout_seconds: float = Field(default=10.0)
    fetch_timeout_seconds: float = Field(default=15.0)

    # Usage quotas
    free_monthly_allowance: int = Field(default=5)
    usage_reset_days: int = Field(default=30)

    # Rate limiting
    photo_rate_limit: int = Field(default=100)
    photo_rate_window_ms: int = Field(default=60_000)
    score_rate_limit: int = Field(default=20)
    score_rate_window_ms: int = Field(default=60_000)
    place_rate_limit: int = Field(default=60)
    place_rate_window_ms: int = Field(default=60_000)


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
