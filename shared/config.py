"""
Shared configuration management for the Task Manager state layer.
"""

from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden through a ``TM_``-prefixed environment
    variable (``TM_REDIS_URL``, ``TM_RATE_LIMIT_ENABLED`` ...) or a ``.env``
    file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TM_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Key-value store
    redis_url: str = Field(default="redis://localhost:6379/1")
    cache_backend: str = Field(default="redis", description="redis or null")
    redis_connect_timeout: float = Field(default=0.5, gt=0)
    redis_socket_timeout: float = Field(default=0.5, gt=0)
    redis_max_connections: int = Field(default=50, ge=1)
    redis_health_check_interval: int = Field(default=30, ge=0)

    # Cache layer
    cache_key_prefix: str = Field(default="tm")
    cache_activity_window_seconds: int = Field(default=300, ge=1)
    cache_activity_discount: float = Field(default=0.7, gt=0, lt=1)
    token_cache_ttl: int = Field(default=300, ge=2)
    token_safety_margin_seconds: int = Field(default=60, ge=0)
    user_cache_ttl: int = Field(default=600, ge=2)

    # Rate limiting
    rate_limit_enabled: Optional[bool] = Field(default=None, description="Defaults to off when env == 'test'")
    rate_limit_default_tier: str = Field(default="basic")

    # Resilience
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_timeout: float = Field(default=30.0, gt=0)
    retry_max_attempts: Dict[str, int] = Field(default_factory=dict)

    @property
    def rate_limiting_active(self) -> bool:
        """Whether quotas are enforced for this environment."""
        if self.rate_limit_enabled is None:
            return self.env != "test"
        return self.rate_limit_enabled


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str = "task_manager", port: int = 8000, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
