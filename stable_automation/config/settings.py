from typing import List, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "stable-automation"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "Europe/Stockholm"
    APP_BASE_URL: str = "https://app.equiduty.se"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./stable_automation.db"

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Recurring activity materialization
    MATERIALIZER_BATCH_SIZE: int = 400
    MATERIALIZER_CONCURRENCY: int = 4
    DEFAULT_GENERATE_DAYS_AHEAD: int = 60
    RECURRENCE_MAX_ITERATIONS: int = 1000
    HOLIDAY_WEIGHT_MULTIPLIER: float = 1.5
    """Fixed-date holidays as MM-DD, comma-separated when read from the environment."""
    HOLIDAY_DATES: Union[str, List[str]] = (
        "01-01,01-06,05-01,06-06,12-24,12-25,12-26,12-31"
    )

    # Notification delivery queue
    QUEUE_DEFAULT_MAX_ATTEMPTS: int = 3
    QUEUE_CONCURRENCY: int = 8
    CHANNEL_SEND_TIMEOUT_SECONDS: float = 30.0
    RATE_LIMIT_DEFER_PADDING_MS: int = 1000
    RATE_LIMIT_EMAIL_PER_MINUTE: int = 100
    RATE_LIMIT_PUSH_PER_MINUTE: int = 500
    RATE_LIMIT_TELEGRAM_PER_MINUTE: int = 30
    RATE_LIMIT_IN_APP_PER_MINUTE: int = 1000

    # Retry & cleanup sweeps
    FAILED_ITEM_RETENTION_HOURS: int = 24
    QUEUE_ITEM_RETENTION_DAYS: int = 7
    READ_NOTIFICATION_ARCHIVE_DAYS: int = 30
    SWEEP_BATCH_SIZE: int = 400
    # Claimed items untouched this long are treated as a killed worker;
    # must exceed the queue item task's hard time limit
    PROCESSING_STALE_AFTER_SECONDS: int = 600

    # SendGrid
    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = "noreply@equiduty.se"
    SENDGRID_FROM_NAME: str = "EquiDuty"

    # Firebase Cloud Messaging
    FIREBASE_CREDENTIALS_FILE: str = ""

    # Telegram Bot API
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"

    @field_validator("HOLIDAY_DATES", mode="before")
    def assemble_holiday_dates(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
