"""Configuration for background email processing."""

from dataclasses import asdict, dataclass, field

from mailfeed.background.errors import ConfigError


@dataclass
class RetryConfig:
    """Retry policy for retryable account failures."""

    max_attempts: int = 3  # retries after the first attempt
    initial_delay_seconds: int = 30
    max_delay_seconds: int = 300
    backoff_multiplier: float = 2.0


@dataclass
class ProcessingLimits:
    """Per-run budgets that keep one account from hogging a worker slot."""

    max_emails_per_run: int = 100
    max_processing_time_seconds: int = 300
    max_email_age_days: int = 7


@dataclass
class BackgroundConfig:
    """Resolved background processing configuration."""

    global_interval_minutes: int = 15
    per_account_interval_minutes: int = 30
    max_concurrent_accounts: int = 3
    enabled: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)
    limits: ProcessingLimits = field(default_factory=ProcessingLimits)
    drain_timeout_seconds: int = 30

    @classmethod
    def from_settings(cls, settings=None) -> "BackgroundConfig":
        """Build the background config from the flat process settings."""
        if settings is None:
            from mailfeed.config import settings

        return cls(
            global_interval_minutes=settings.background_global_interval_minutes,
            per_account_interval_minutes=settings.background_per_account_interval_minutes,
            max_concurrent_accounts=settings.background_max_concurrent_accounts,
            enabled=settings.background_enabled,
            retry=RetryConfig(
                max_attempts=settings.background_retry_max_attempts,
                initial_delay_seconds=settings.background_retry_initial_delay_seconds,
                max_delay_seconds=settings.background_retry_max_delay_seconds,
                backoff_multiplier=settings.background_retry_backoff_multiplier,
            ),
            limits=ProcessingLimits(
                max_emails_per_run=settings.background_max_emails_per_run,
                max_processing_time_seconds=settings.background_max_processing_time_seconds,
                max_email_age_days=settings.background_max_email_age_days,
            ),
            drain_timeout_seconds=settings.background_drain_timeout_seconds,
        )

    @property
    def global_interval_seconds(self) -> float:
        return self.global_interval_minutes * 60

    @property
    def per_account_interval_seconds(self) -> float:
        return self.per_account_interval_minutes * 60

    def calculate_retry_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), capped at max_delay_seconds."""
        delay = self.retry.initial_delay_seconds * (self.retry.backoff_multiplier ** attempt)
        return min(delay, self.retry.max_delay_seconds)

    def validate(self) -> None:
        """Raise ConfigError when a value would stall or spin the scheduler."""
        problems = []
        if self.global_interval_minutes <= 0:
            problems.append("global_interval_minutes must be greater than 0")
        if self.per_account_interval_minutes <= 0:
            problems.append("per_account_interval_minutes must be greater than 0")
        if self.max_concurrent_accounts <= 0:
            problems.append("max_concurrent_accounts must be greater than 0")
        if self.retry.max_attempts <= 0:
            problems.append("retry max_attempts must be greater than 0")
        if self.retry.backoff_multiplier <= 1.0:
            problems.append("retry backoff_multiplier must be greater than 1.0")
        if self.retry.initial_delay_seconds > self.retry.max_delay_seconds:
            problems.append("retry initial_delay_seconds must not exceed max_delay_seconds")
        if self.limits.max_emails_per_run <= 0:
            problems.append("max_emails_per_run must be greater than 0")
        if self.limits.max_processing_time_seconds <= 0:
            problems.append("max_processing_time_seconds must be greater than 0")
        if self.drain_timeout_seconds < 0:
            problems.append("drain_timeout_seconds must not be negative")

        if problems:
            raise ConfigError("; ".join(problems))

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("drain_timeout_seconds")
        return data
