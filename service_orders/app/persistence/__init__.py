"""
Persistence package: PostgreSQL store and the in-memory mock database.
"""

from shared.config import ServiceConfig
from shared.retry import RetryConfig

from .memory import MemoryStore
from .postgres import PostgresStore


def create_store(config: ServiceConfig):
    """Mock database when enabled, PostgreSQL otherwise."""
    if config.use_mock_db:
        return MemoryStore(config.mock_data_path)

    retry_config = RetryConfig(
        max_retries=config.db_max_retries,
        initial_delay=config.db_retry_initial_delay,
        backoff_multiplier=config.db_retry_backoff_multiplier,
        max_delay=config.db_retry_max_delay,
    )
    return PostgresStore(config.postgres_dsn, retry_config)
