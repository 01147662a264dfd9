"""
Shared configuration management for the rate limiting gateway.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Counter store
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_pool_max_connections: int = Field(default=10, ge=1)
    redis_pool_timeout_seconds: float = Field(default=2.0, gt=0)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_default_requests: int = Field(default=30, ge=-1)  # -1: unlimited
    rate_limit_window_seconds: int = Field(default=60, ge=1)
    rate_limit_key_prefix: str = Field(default="rl_")
    rate_limit_trust_forwarded_for: bool = Field(default=False)

    # Security
    jwt_secret_key: str = Field(default="change-me-in-production")
    jwt_algorithm: str = Field(default="HS512")
    jwt_lifetime_hours: int = Field(default=24, ge=1)


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
