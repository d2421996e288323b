"""
Application settings and configuration.
All secrets are loaded from environment variables.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database - DATA_DIR holds both the main database and the retry job store
    data_dir: str = "."

    @property
    def database_url(self) -> str:
        """Async database URL for the forwarder tables."""
        return f"sqlite+aiosqlite:///{self.data_dir}/forwarder.db"

    @property
    def jobstore_url(self) -> str:
        """Sync database URL for the APScheduler job store."""
        return f"sqlite:///{self.data_dir}/jobs.db"

    # Application Settings
    debug: bool = False
    log_level: str = "INFO"

    # Management / query API authentication (Bearer token)
    api_token: str = ""
    require_api_token: bool = True

    # Dispatch and retry policy
    dispatch_timeout_seconds: float = 10.0
    retry_base_delay_seconds: float = 30.0
    retry_max_delay_seconds: float = 3600.0
    max_retries: int = 5
    delivery_lease_seconds: int = 120

    # Telegram Configuration
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"

    # Twilio Configuration (outbound SMS gateway)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_sms_number: str = ""  # Format: +14155238886

    # SMTP Configuration
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from_address: str = "forwarder@localhost"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
