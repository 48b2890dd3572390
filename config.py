"""Configuration module for the Reminder Scheduling Service.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for the Reminder Scheduling Service.

    All settings can be overridden via environment variables.
    Example: export DATABASE_URL="postgresql://..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./reminders.db"
    """Database connection URL for reminders, scheduled jobs and notifications"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    # General Configuration
    TIMEZONE: str = "UTC"
    """Default timezone for reminders created without one"""

    # Scheduling Configuration
    SCHEDULE_HORIZON_DAYS: int = 30
    """Rolling window (days) of occurrences materialized as jobs"""

    MAX_HORIZON_DAYS: int = 90
    """Upper bound for any horizon, whatever the caller asks for"""

    DRIFT_TOLERANCE_SECONDS: int = 300
    """A job firing earlier than this before its occurrence is treated as stale"""

    # Background Worker Configuration
    WORKER_ENABLED: bool = True
    """Enable/disable the background job worker"""

    WORKER_CHECK_INTERVAL: int = 5
    """Interval in seconds between job store polls"""

    JOB_CONCURRENCY: int = 5
    """Maximum number of reminder jobs run at the same time by one worker"""

    JOB_LOCK_LIFETIME: int = 600
    """Seconds after which a running job's lock is considered abandoned"""

    JOB_MAX_ATTEMPTS: int = 5
    """Attempts before a failing job is left in the failed state"""

    JOB_RETRY_BACKOFF: int = 60
    """Base delay in seconds for exponential retry backoff"""

    # Push Notification Configuration
    PUSH_ENABLED: bool = False
    """Send push notifications over HTTP in addition to storing them"""

    PUSH_API_URL: str = "http://127.0.0.1:1801"
    """Base URL of the push notification gateway"""

    PUSH_TIMEOUT: float = 30.0
    """Timeout in seconds for push gateway requests"""

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    """Level for the service's own loggers (DEBUG, INFO, WARNING, ...)"""

    LOG_DIR: str = os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs")
    """Directory for rotating log files"""

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
