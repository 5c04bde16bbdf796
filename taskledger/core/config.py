"""
Application configuration.

Settings are read from environment variables (or a local .env file) and
validated by pydantic.
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the task ledger service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = "Task Ledger"
    app_version: str = "0.1.0"

    # Use PostgreSQL in production (DATABASE_URL), SQLite locally
    database_url: str = "sqlite:///./taskledger.db"

    # Logging
    log_format: str = "dev"
    log_level: str = "INFO"

    # Reporting
    default_page_size: int = 20
    max_page_size: int = 200
    recent_activity_days: int = 7

    # Optimistic concurrency
    update_retry_limit: int = 3

    # CORS
    allowed_origins: str = "*"

    @property
    def sqlalchemy_database_url(self) -> str:
        """Database URL normalised for SQLAlchemy (Render/Heroku use postgres://)."""
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url

    @property
    def allowed_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
