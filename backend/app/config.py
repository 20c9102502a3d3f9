"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, List


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    APP_NAME: str = "Agent Schedule Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./schedules.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Claude AI Settings
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    CLAUDE_MAX_TOKENS: int = 4096
    CLAUDE_TEMPERATURE: float = 0.3
    CLAUDE_TIMEOUT: int = 120
    CLAUDE_MAX_RETRIES: int = 3
    CLAUDE_RETRY_DELAY: float = 1.0
    CLAUDE_WEB_SEARCH_MAX_USES: int = 5

    # Image generation gateway (OpenAI-compatible /images/generations)
    IMAGE_API_BASE: str = "https://ai-gateway.vercel.sh/v1"
    IMAGE_API_KEY: str = ""
    IMAGE_DEFAULT_MODEL: str = "openai/dall-e-3"
    IMAGE_TIMEOUT: int = 120

    # Engine limits
    SCHEDULE_BATCH_SIZE: int = 5
    DEFAULT_INTERVAL_HOURS: float = 24
    SCHEDULER_MAX_SCHEDULES_PER_RUN: int = 100
    STEP_TIMEOUT_SECONDS: float = 300  # Default 5 min
    DEPLOYMENT_TIMEOUT_SECONDS: float = 60
    CUSTOM_CODE_TIMEOUT_SECONDS: float = 60
    CUSTOM_CODE_MEMORY_MB: int = 512
    # Per step type overrides, e.g. {"web_search": "raise"}
    STEP_FAILURE_POLICIES: Dict[str, str] = {}
    # Custom code sandbox allowlists (JSON lists in the environment)
    CUSTOM_CODE_READ_PATHS: List[str] = []
    CUSTOM_CODE_ALLOWED_HOSTS: List[str] = []

    # OAuth token refresh
    TOKEN_REFRESH_BUFFER_MINUTES: int = 5
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    FACEBOOK_CLIENT_ID: str = ""
    FACEBOOK_CLIENT_SECRET: str = ""
    X_CLIENT_ID: str = ""
    X_CLIENT_SECRET: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
