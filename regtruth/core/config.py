"""Application configuration and resolution thresholds."""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # API
    app_name: str = "Regulatory Truth Layer"
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    data_dir: str = "data"
    transaction_timeout_ms: int = 30000

    # Conflict resolution
    precedent_min_count: int = 3
    precedent_agreement_threshold: float = 70.0  # percent, inclusive
    arbitration_min_confidence: float = 0.8
    rule_min_confidence: float = 0.85
    arbiter_batch_limit: int = 10

    # Model output cache
    agent_cache_schema_version: str = "arbiter-v2"
    agent_cache_max_size: int = 500

    # Reference graph
    graph_retry_max_attempts: int = 5
    graph_retry_base_delay_seconds: float = 30.0
    graph_retry_max_delay_seconds: float = 3600.0
    graph_stale_after_minutes: int = 30
    graph_max_traversal: int = 10000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
