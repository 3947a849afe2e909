"""Configuration settings for the mail-to-feed service."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./mailfeed.db"
    database_echo: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False

    # Background processing
    background_enabled: bool = True
    background_autostart: bool = True
    background_global_interval_minutes: int = 15  # how often the tick loop runs
    background_per_account_interval_minutes: int = 30  # min gap between runs of one account
    background_max_concurrent_accounts: int = 3
    background_drain_timeout_seconds: int = 30

    # Retry
    background_retry_max_attempts: int = 3
    background_retry_initial_delay_seconds: int = 30
    background_retry_max_delay_seconds: int = 300
    background_retry_backoff_multiplier: float = 2.0

    # Per-run limits
    background_max_emails_per_run: int = 100
    background_max_processing_time_seconds: int = 300
    background_max_email_age_days: int = 7

    # Feed content
    feed_description_length: int = 500

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_prefix = "MAILFEED_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
