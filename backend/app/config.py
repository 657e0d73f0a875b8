"""Application configuration."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "postgresql://localhost/coach"
    db_pool_size: int = 10
    db_max_overflow: int = 10

    # Redis (job queue)
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = "coach"
    queue_name: str = "coach:evaluator"
    queue_poll_interval: float = 1.0  # seconds between empty polls

    # Evaluation worker
    evaluator_concurrency: int = 2
    evaluate_max_attempts: int = 3
    evaluate_backoff_ms: int = 1000  # exponential: 1s, 2s, 4s ...

    # Heartbeat re-evaluation
    heartbeat_delay_ms: int = 5000

    # Default traffic thresholds when a rule set has none
    green_default: float = 0.85
    yellow_default: tuple[float, float] = (0.6, 0.85)

    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
