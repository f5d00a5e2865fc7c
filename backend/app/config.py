"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://outreach:outreach123@db:5432/outreach"

    # Redis (only used when SEND_LOCK_BACKEND=redis)
    REDIS_URL: str = "redis://redis:6379/0"

    # Security
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    CRON_SECRET: Optional[str] = None

    # Unipile
    UNIPILE_DSN: Optional[str] = None
    UNIPILE_API_KEY: Optional[str] = None
    UNIPILE_WEBHOOK_SECRET: Optional[str] = None
    UNIPILE_HTTP_TIMEOUT: float = 15.0

    # LinkedIn cron
    ENABLE_LINKEDIN_CRON: bool = False
    LINKEDIN_CRON_MINUTES: str = "*/15"
    DEFAULT_TIMEZONE: str = "Europe/Paris"
    DEFAULT_DAILY_INVITE_QUOTA: int = 10
    MAX_DAILY_INVITE_QUOTA: int = 200
    WORKING_HOURS_START: int = 8
    WORKING_HOURS_END: int = 18
    CRON_LEAD_SCAN_LIMIT: int = 200

    # Send flow
    SEND_LOCK_BACKEND: str = "memory"  # memory | redis
    SEND_LOCK_TTL_SECONDS: int = 120
    FOLLOWUP_DELAY_DAYS: int = 7

    # Inbox
    ATTENDEE_CACHE_DAYS: int = 7
    ATTENDEE_CACHE_SCAN_LIMIT: int = 500
    THREAD_SCAN_LIMIT: int = 400
    INBOX_SYNC_CHAT_LIMIT: int = 100
    INBOX_SYNC_MESSAGE_LIMIT: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
