"""
Shared configuration management for the Order Management backend.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ORDERS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # External services
    cache_backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"
    postgres_dsn: str = "postgres://localhost:5432/orders"

    # Development data source
    use_mock_db: bool = False
    mock_data_path: str = ""

    # Persistence retry bounds
    db_max_retries: int = 3
    db_retry_initial_delay: float = 0.1
    db_retry_backoff_multiplier: float = 2.0
    db_retry_max_delay: float = 2.0

    # Read-path caching (seconds)
    items_fresh_ttl: int = 86400
    items_stale_while_revalidate: int = 43200
    orders_fresh_ttl: int = 300
    orders_stale_while_revalidate: int = 60
    analytics_fresh_ttl: int = 259200
    analytics_stale_while_revalidate: int = 172800
    feedbacks_fresh_ttl: int = 300
    feedbacks_stale_while_revalidate: int = 60
    refresh_lock_ttl: float = 30.0

    # HTTP
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


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
