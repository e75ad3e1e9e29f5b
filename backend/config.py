"""
Centralized configuration for the EmailClean backend.
All environment variables are read and validated here.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime


class Config:
    """Application configuration with validation."""

    # Application version (single source of truth)
    VERSION: str = "1.0.0"

    # Testing mode detection (disables background threads and rate limiting)
    TESTING: bool = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

    # Time provider for testability (dependency injection)
    _now_provider: Callable[[], datetime] | None = None

    @classmethod
    def set_time_provider(cls, provider: Callable[[], datetime] | None) -> None:
        """Set custom time provider for testing."""
        cls._now_provider = provider

    @classmethod
    def now_utc(cls) -> datetime:
        """Get current UTC time (injectable for tests)."""
        if cls._now_provider:
            return cls._now_provider()
        return datetime.now(UTC)

    # Server
    PORT: int = int(os.getenv("PORT", "3001"))
    HOST: str = os.getenv("HOST", "0.0.0.0")
    DEBUG: bool = os.getenv("FLASK_ENV", "development") == "development"

    # Validator: 'syntax' (local checks only) or 'domain' (adds DNS/MX risk checks)
    VALIDATOR_MODE: str = os.getenv("VALIDATOR_MODE", "syntax")
    DNS_TIMEOUT_SECONDS: float = float(os.getenv("DNS_TIMEOUT_SECONDS", "3"))
    DNS_CACHE_TTL_MINUTES: int = int(os.getenv("DNS_CACHE_TTL_MINUTES", "30"))

    # Upload limits
    MAX_UPLOAD_MB: int = int(os.getenv("MAX_UPLOAD_MB", "50"))
    MAX_CONTENT_LENGTH: int = MAX_UPLOAD_MB * 1024 * 1024  # Convert to bytes

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "")  # Comma-separated, empty = localhost only

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Storage
    STORAGE_DIR: str = os.getenv("STORAGE_DIR", os.path.join(os.path.dirname(__file__), "storage"))
    DB_PATH: str = os.getenv("DB_PATH", os.path.join(STORAGE_DIR, "emailclean.db"))
    RESULT_RETENTION_DAYS: int = int(os.getenv("RESULT_RETENTION_DAYS", "14"))

    # Job metadata store
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "sqlite")  # 'sqlite', 'redis' or 'memory'
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Job processing
    PROGRESS_BATCH_SIZE: int = int(os.getenv("PROGRESS_BATCH_SIZE", "10"))
    LIST_JOBS_LIMIT: int = int(os.getenv("LIST_JOBS_LIMIT", "20"))
    MAX_CONCURRENT_JOBS: int = int(os.getenv("MAX_CONCURRENT_JOBS", "0"))  # 0 = unlimited
    TERMINAL_WRITE_RETRIES: int = int(os.getenv("TERMINAL_WRITE_RETRIES", "1"))
    TERMINAL_RETRY_BACKOFF_MS: int = int(os.getenv("TERMINAL_RETRY_BACKOFF_MS", "200"))

    # Job health monitoring (stall detection)
    JOB_STALL_TIMEOUT_MINUTES: int = int(os.getenv("JOB_STALL_TIMEOUT_MINUTES", "10"))

    # Rate limiting (uploads per minute, per client IP and per owner)
    RATE_LIMIT_UPLOADS_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_UPLOADS_PER_MINUTE", "10"))

    # Identity: "token:user_id" pairs, comma-separated
    AUTH_TOKENS: str = os.getenv("AUTH_TOKENS", "")

    @classmethod
    def get_cors_origins(cls) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        if not cls.CORS_ORIGINS:
            return []
        return [origin.strip() for origin in cls.CORS_ORIGINS.split(",") if origin.strip()]

    @classmethod
    def get_auth_tokens(cls) -> dict[str, str]:
        """Parse AUTH_TOKENS into a token -> user id mapping."""
        tokens: dict[str, str] = {}
        for pair in cls.AUTH_TOKENS.split(","):
            token, sep, user_id = pair.strip().partition(":")
            if sep and token.strip() and user_id.strip():
                tokens[token.strip()] = user_id.strip()
        return tokens

    @classmethod
    def validate(cls) -> None:
        """Validate configuration values."""
        if cls.VALIDATOR_MODE not in ("syntax", "domain"):
            raise ValueError(
                f"VALIDATOR_MODE must be 'syntax' or 'domain', got '{cls.VALIDATOR_MODE}'"
            )

        if cls.STORE_BACKEND not in ("sqlite", "redis", "memory"):
            raise ValueError(
                f"STORE_BACKEND must be 'sqlite', 'redis' or 'memory', got '{cls.STORE_BACKEND}'"
            )

        if cls.MAX_UPLOAD_MB < 1 or cls.MAX_UPLOAD_MB > 100:
            raise ValueError(f"MAX_UPLOAD_MB must be between 1 and 100, got {cls.MAX_UPLOAD_MB}")

        if cls.LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be valid logging level, got '{cls.LOG_LEVEL}'")

        if cls.PROGRESS_BATCH_SIZE < 1 or cls.PROGRESS_BATCH_SIZE > 10000:
            raise ValueError(
                f"PROGRESS_BATCH_SIZE must be between 1 and 10000, got {cls.PROGRESS_BATCH_SIZE}"
            )

        if cls.LIST_JOBS_LIMIT < 1 or cls.LIST_JOBS_LIMIT > 100:
            raise ValueError(f"LIST_JOBS_LIMIT must be between 1 and 100, got {cls.LIST_JOBS_LIMIT}")

        if cls.MAX_CONCURRENT_JOBS < 0 or cls.MAX_CONCURRENT_JOBS > 50:
            raise ValueError(
                f"MAX_CONCURRENT_JOBS must be between 0 and 50, got {cls.MAX_CONCURRENT_JOBS}"
            )

        if cls.TERMINAL_WRITE_RETRIES < 0 or cls.TERMINAL_WRITE_RETRIES > 5:
            raise ValueError(
                f"TERMINAL_WRITE_RETRIES must be between 0 and 5, got {cls.TERMINAL_WRITE_RETRIES}"
            )

        if cls.RESULT_RETENTION_DAYS < 1 or cls.RESULT_RETENTION_DAYS > 365:
            raise ValueError(
                f"RESULT_RETENTION_DAYS must be between 1 and 365, got {cls.RESULT_RETENTION_DAYS}"
            )

        if cls.JOB_STALL_TIMEOUT_MINUTES < 1 or cls.JOB_STALL_TIMEOUT_MINUTES > 60:
            raise ValueError(
                f"JOB_STALL_TIMEOUT_MINUTES must be between 1 and 60, "
                f"got {cls.JOB_STALL_TIMEOUT_MINUTES}"
            )


# Validate on import
Config.validate()
