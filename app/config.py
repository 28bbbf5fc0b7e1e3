from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "postgresql://localhost:5432/marketplace"

    # Email delivery (Resend)
    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_FROM: str = "Marketplace <noreply@example.com>"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # Public URL used to build absolute links inside emails
    CLIENT_URL: str = "http://localhost:5173"

    # =================================================================
    # QUOTE EXPIRATION SWEEP
    # =================================================================
    QUOTE_SWEEP_ENABLED: bool = True
    QUOTE_SWEEP_INTERVAL_HOURS: float = 2.0
    QUOTE_WARNING_WINDOW_HOURS: float = 24.0
    QUOTE_SWEEP_MAX_CONCURRENCY: int = 10

    DEFAULT_CURRENCY: str = "TRY"

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour
    DB_STATEMENT_TIMEOUT_SECONDS: float = 60.0

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config

    def get_quote_sweep_config(self) -> dict:
        """Scheduler configuration for the quote expiration sweep."""
        return {
            "enabled": self.QUOTE_SWEEP_ENABLED,
            "interval_seconds": self.QUOTE_SWEEP_INTERVAL_HOURS * 3600,
            "warning_window_seconds": self.QUOTE_WARNING_WINDOW_HOURS * 3600,
            "max_concurrency": max(1, self.QUOTE_SWEEP_MAX_CONCURRENCY),
        }

    def action_url(self, path: str) -> str:
        """Absolute link into the web client for emails."""
        base = self.CLIENT_URL.rstrip("/")
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{base}{path}"


settings = Settings()
