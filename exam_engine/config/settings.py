"""
exam_engine/config/settings.py
Environment-driven settings for the exam engine.

All values are read once at import time from the process environment
(a `.env` file at the project root is loaded first). Tests override
individual attributes on the `settings` singleton.
"""
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(dotenv_path=PROJECT_ROOT / ".env")


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')


def get_int_env(key: str, default: int) -> int:
    """Get integer environment variable, falling back to default on garbage."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_list_env(key: str) -> List[str]:
    """Get comma separated environment variable as a list."""
    value = os.getenv(key, "")
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """
    Exam engine settings.

    Integration URLs left unset select the in-memory adapters, which is
    what local development and the test suite run against.
    """

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Persistence
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./exam_engine.db")

    # Identity (tokens are issued by the external auth service)
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # External collaborators
    COURSE_SERVICE_URL: str = os.getenv("COURSE_SERVICE_URL", "")
    NOTIFICATION_SERVICE_URL: str = os.getenv("NOTIFICATION_SERVICE_URL", "")
    INTEGRATION_TIMEOUT_SECONDS: int = get_int_env("INTEGRATION_TIMEOUT_SECONDS", 5)

    # Exam rules
    VIOLATION_THRESHOLD: int = get_int_env("VIOLATION_THRESHOLD", 3)
    DEFAULT_PASSING_SCORE: int = get_int_env("DEFAULT_PASSING_SCORE", 60)
    STUDENT_MESSAGE_MAX_LENGTH: int = get_int_env("STUDENT_MESSAGE_MAX_LENGTH", 500)
    CAS_MAX_RETRIES: int = get_int_env("CAS_MAX_RETRIES", 5)

    # HTTP surface
    FEATURE_RATE_LIMIT: bool = get_bool_env("FEATURE_RATE_LIMIT", True)
    RATE_LIMIT_DEFAULT: str = os.getenv("RATE_LIMIT_DEFAULT", "60/minute")
    ALLOWED_ORIGINS: List[str] = get_list_env("ALLOWED_ORIGINS")

    @classmethod
    def is_development(cls) -> bool:
        return cls.ENVIRONMENT == "development"

    @classmethod
    def as_dict(cls) -> dict:
        """Non-secret settings, for the health endpoint and startup logs."""
        return {
            "environment": cls.ENVIRONMENT,
            "course_service": cls.COURSE_SERVICE_URL or "in-memory",
            "notification_service": cls.NOTIFICATION_SERVICE_URL or "in-memory",
            "violation_threshold": cls.VIOLATION_THRESHOLD,
            "default_passing_score": cls.DEFAULT_PASSING_SCORE,
            "rate_limit": cls.RATE_LIMIT_DEFAULT if cls.FEATURE_RATE_LIMIT else None,
        }


# Singleton instance for easy importing
settings = Settings()
