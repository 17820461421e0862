"""Limiter configuration via environment variables with Pydantic validation.

All configuration is loaded from environment variables (with .env file support).
Every process that should share limits must use the same limiter_id, redis_url
and rule file; together they define one logical limiter.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """joblimiter settings. All values sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Limiter identity, part of every derived counter key
    limiter_id: str = "joblimiter"

    # Counter store and lock service
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "rl"
    lock_prefix: str = "lock:"

    # Rules
    rules_file_path: str = "./rules/example.yaml"

    # Cross-process lock
    lock_lease_ms: int = 5000
    lock_retry_count: int = 10
    lock_retry_delay_ms: int = 200

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("limiter_id", "redis_url", "key_prefix")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("limiter_id, redis_url and key_prefix must not be empty")
        return v.strip()

    @field_validator("lock_lease_ms")
    @classmethod
    def lease_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("LOCK_LEASE_MS must be greater than 0")
        return v

    @field_validator("lock_retry_count", "lock_retry_delay_ms")
    @classmethod
    def retry_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Lock retry settings must not be negative")
        return v

    @field_validator("log_format")
    @classmethod
    def known_log_format(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in ("json", "console"):
            raise ValueError("LOG_FORMAT must be 'json' or 'console'")
        return normalized


def get_settings() -> Settings:
    """Create and return a validated Settings instance.

    Raises ValidationError with clear messages if an env var is invalid.
    """
    return Settings()
