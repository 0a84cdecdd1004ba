# src/core/config.py
from typing import Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings
import logging


class Settings(BaseSettings):
    """Basic application settings"""
    APP_NAME: str = "CaseVault"
    DEBUG: bool = False

    # Session security
    IDLE_TIMEOUT_MINUTES: float = 30
    SESSION_TIMEOUT_MINUTES: float = 8 * 60
    WARNING_TIME_MINUTES: float = 5
    HEARTBEAT_INTERVAL_SECONDS: float = 5 * 60
    ORGANIZATION_EMAIL_DOMAIN: Optional[str] = None
    # What happens when a session is used from a different user agent:
    # "terminate" ends the session, "reject" refuses only the request
    USER_AGENT_MISMATCH_ACTION: Literal["terminate", "reject"] = "terminate"

    # Rate limiting (fixed window)
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_CLEANUP_SECONDS: float = 5 * 60

    # Access gateway
    SEARCH_RESULT_LIMIT: int = 50
    SEARCH_CONCURRENCY: int = 8
    ACCESS_LOG_WINDOW_DAYS: int = 30

    # Durable session registry
    REDIS_URL: Optional[str] = Field(default=None)
    SESSION_KEY_TTL_SECONDS: int = 24 * 60 * 60

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


# Settings singleton
settings = Settings()


def validate_required_settings() -> bool:
    """Check optional infrastructure settings and warn about gaps"""
    logger = logging.getLogger(__name__)
    valid = True

    if settings.WARNING_TIME_MINUTES >= settings.IDLE_TIMEOUT_MINUTES:
        logger.warning("WARNING_TIME_MINUTES must be smaller than IDLE_TIMEOUT_MINUTES")
        valid = False

    if not settings.REDIS_URL:
        logger.warning("Missing environment variable: REDIS_URL")
        logger.warning("Session heartbeats will only be kept in memory.")
        valid = False

    return valid
