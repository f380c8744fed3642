"""
Application configuration using pydantic-settings.

Loads configuration from environment variables with sensible defaults.
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database (SQLite for local dev, PostgreSQL for production)
    database_url: str = "sqlite:///./loanspread.db"

    # Redis (Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"

    # Access mode override (builder_observer, banker_copilot, examiner_portal)
    access_mode_override: Optional[str] = None

    # Job leasing
    lease_ttl_seconds: int = 180
    backoff_base_seconds: int = 30
    backoff_cap_seconds: int = 3600
    job_max_attempts: int = 3
    worker_batch_size: int = 10

    # Extraction
    extraction_strategy: str = "deterministic"  # deterministic | legacy
    openai_api_key: Optional[str] = None
    legacy_model: str = "gpt-4o-mini"
    legacy_max_chars: int = 25_000
    zero_fact_warning_chars: int = 500

    # Error reporting
    sentry_dsn: Optional[str] = None

    # Examiner drops
    drop_output_dir: Path = Path("./drops")

    @property
    def is_development(self) -> bool:
        """True when running outside production/staging."""
        return self.environment.lower() in {"development", "dev", "local", "test"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
