"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class ConfigurationError(ValueError):
    """Raised when a provider is used without the credentials it needs."""


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # DataForSEO (required for ranking data collection)
    DATAFORSEO_LOGIN: Optional[str] = None
    DATAFORSEO_PASSWORD: Optional[str] = None

    # Claude API (required for qualification)
    ANTHROPIC_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"

    # Database
    DATABASE_URL: Optional[str] = None

    # Application Settings
    LOG_LEVEL: str = "INFO"

    # Default market
    DEFAULT_LOCATION_CODE: int = 2840  # United States
    DEFAULT_LANGUAGE_CODE: str = "en"

    # Concurrency limits
    DOMAIN_CONCURRENCY: int = 20
    RANKING_CONCURRENCY: int = 25  # DataForSEO allows 30 concurrent requests
    MODEL_CONCURRENCY: int = 8
    JUDGE_CHUNK_SIZE: int = 10

    # Keyword cache windows
    CACHE_REFRESH_ALL_DAYS: int = 30
    CACHE_MIN_REFETCH_HOURS: int = 24

    # Timeouts
    RANKING_API_TIMEOUT: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase

    def require_dataforseo_credentials(self) -> tuple:
        """Return (login, password) or raise ConfigurationError."""
        if not self.DATAFORSEO_LOGIN or not self.DATAFORSEO_PASSWORD:
            raise ConfigurationError("DATAFORSEO_LOGIN and DATAFORSEO_PASSWORD must be set")
        return self.DATAFORSEO_LOGIN, self.DATAFORSEO_PASSWORD


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
