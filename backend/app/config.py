"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Engine Settings
    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Database Settings (durable batch log)
    DATABASE_URL: str = "sqlite+aiosqlite:///./batches.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Batch Scheduler
    MAX_WORKERS: int = 4
    BATCH_RETENTION_DAYS: int = 30
    BATCH_MEMORY_RETENTION_SECONDS: int = 300

    # Executor
    LOOP_MAX_ITERATIONS: int = 1000
    NODE_DEFAULT_TIMEOUT_MS: int = 30000
    SLOW_MO_MS: int = 0
    TRACE_LOGS: bool = True

    # Retry defaults
    RETRY_DEFAULT_COUNT: int = 3
    RETRY_DEFAULT_DELAY_MS: int = 1000
    RETRY_UNTIL_TIMEOUT_MS: int = 30000

    # Plugins
    PLUGINS_DIR: str = "plugins"
    PLUGIN_ENTRY_POINT_GROUP: str = "flow_engine.handlers"

    # Browser
    BROWSER_HEADLESS: bool = True

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
