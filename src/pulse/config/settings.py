"""Application settings and configuration management using Pydantic."""

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Main application settings combining all configuration sections."""

    # Environment and deployment
    environment: str = "development"
    debug: bool = False

    # Trigger settings
    cron_secret: Optional[str] = None
    alert_run_interval_hours: int = 2
    scheduler_enabled: bool = True
    manual_trigger_rate_limit: int = 5
    manual_trigger_rate_window_seconds: int = 3600

    # Run log settings
    error_sample_size: int = 10
    error_message_max_length: int = 500

    # Notification settings
    app_base_url: str = "https://pulse.app"
    resend_api_key: Optional[str] = None
    email_from: str = "noreply@pulse.app"
    email_timeout_seconds: float = 10.0
    telegram_timeout_seconds: float = 10.0
    webhook_timeout_seconds: float = 10.0
    chat_timeout_seconds: float = 10.0

    # Delivery retry settings
    notification_retry_interval_minutes: int = 5
    notification_retry_batch_size: int = 100
    delivery_stale_after_minutes: int = 30

    # API settings
    endpoint_host: str = "0.0.0.0"
    endpoint_port: int = 8000
    api_reload: bool = False
    api_log_level: str = "INFO"

    # Database settings
    database_url: Optional[str] = None
    data_directory: str = "data"
    database_echo_sql: bool = False
    database_pool_pre_ping: bool = True
    database_pool_recycle: int = 3600

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "structured"  # 'structured' or 'plain'
    log_file_enabled: bool = True
    log_file_path: str = "data/pulse.log"
    log_max_file_size: str = "10MB"
    log_backup_count: int = 5

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",  # Ignore extra environment variables
    }

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment setting."""
        valid_environments = ["development", "testing", "production"]
        if v.lower() not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v.lower()

    @field_validator("cron_secret", "resend_api_key")
    @classmethod
    def blank_secret_is_unset(cls, v):
        """Treat empty secrets as not configured."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("app_base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalize the dashboard base URL."""
        return v.rstrip("/")

    @field_validator(
        "alert_run_interval_hours",
        "manual_trigger_rate_limit",
        "manual_trigger_rate_window_seconds",
        "error_sample_size",
        "error_message_max_length",
        "notification_retry_interval_minutes",
        "notification_retry_batch_size",
        "delivery_stale_after_minutes",
    )
    @classmethod
    def validate_positive_int(cls, v):
        """Validate counters and intervals are positive."""
        if v < 1:
            raise ValueError("Value must be a positive integer")
        return v

    @field_validator(
        "email_timeout_seconds",
        "telegram_timeout_seconds",
        "webhook_timeout_seconds",
        "chat_timeout_seconds",
    )
    @classmethod
    def validate_timeout(cls, v):
        """Validate channel timeouts are reasonable."""
        if v <= 0 or v > 120:
            raise ValueError("Timeout must be between 0 and 120 seconds")
        return v

    @field_validator("endpoint_port")
    @classmethod
    def validate_port(cls, v):
        """Validate port number is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("log_level", "api_log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format."""
        valid_formats = ["structured", "plain"]
        if v.lower() not in valid_formats:
            raise ValueError(f"Log format must be one of: {valid_formats}")
        return v.lower()

    def get_database_url(self) -> str:
        """Get the complete database URL."""
        if self.database_url:
            return self.database_url

        # Default to SQLite in data directory
        from pathlib import Path

        db_dir = Path(self.data_directory)
        db_dir.mkdir(exist_ok=True)
        db_path = db_dir / "pulse.db"
        return f"sqlite:///{db_path}"

    def dashboard_url(self, path: str = "/dashboard") -> str:
        """Build an absolute link into the web dashboard."""
        return f"{self.app_base_url}{path}"

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == "testing"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application configuration instance
    """
    return Settings()


def get_missing_settings() -> list[str]:
    """
    Get the environment variables the alert engine needs but does not have.

    Returns:
        list: Names of unset environment variables
    """
    settings = get_settings()
    missing = []
    if not settings.cron_secret:
        missing.append("CRON_SECRET")
    if not settings.resend_api_key:
        missing.append("RESEND_API_KEY")
    return missing
