"""
Cache Engine Configuration

Configuration management with environment variable support.
Every option can be set through a ``CACHE_``-prefixed environment
variable or a ``.env`` file.
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import (
    DEFAULT_BACKING_STORE_TIMEOUT,
    DEFAULT_CAPACITY,
    DEFAULT_FLUSH_BATCH_SIZE,
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_MAX_FLUSH_RETRIES,
    DEFAULT_REFRESH_THRESHOLD_FRACTION,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_RETRY_MULTIPLIER,
    DEFAULT_TTL_SECONDS,
)
from ..domain.cache.exceptions import CapacityMisconfiguredException
from ..domain.cache.value_objects import TTL, WriteMode


def validate_capacity(capacity: object) -> int:
    """Return capacity as int or raise CapacityMisconfigured."""
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise CapacityMisconfiguredException(capacity)
    return capacity


def validate_default_ttl(ttl: Optional[float]) -> Optional[float]:
    """None means entries never expire by default. Same bounds as a per-call TTL."""
    resolved = TTL.coerce(ttl)
    if resolved is None:
        return None
    return float(resolved.seconds)


class CacheSettings(BaseSettings):
    """Cache engine settings with validation and safe defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Entry store
    capacity: int = Field(
        default=DEFAULT_CAPACITY, description="Maximum number of cached entries"
    )
    default_ttl: Optional[float] = Field(
        default=DEFAULT_TTL_SECONDS,
        description="TTL in seconds used when a caller omits one (None = never expire)",
    )
    sweep_interval: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds between active expiry sweeps (None disables sweeping)",
    )

    # Refresh-ahead
    refresh_ahead_enabled: bool = Field(
        default=True, description="Refresh hot entries shortly before they expire"
    )
    refresh_threshold_fraction: float = Field(
        default=DEFAULT_REFRESH_THRESHOLD_FRACTION,
        gt=0.0,
        lt=1.0,
        description="Remaining-TTL fraction below which a hit triggers a refresh",
    )

    # Backing store
    backing_store_timeout: float = Field(
        default=DEFAULT_BACKING_STORE_TIMEOUT,
        gt=0,
        description="Per-call backing store timeout in seconds",
    )
    load_retry_attempts: int = Field(
        default=1, ge=1, le=10, description="Read-through loader attempts (1 = no retry)"
    )

    # Writes
    write_mode: WriteMode = Field(
        default=WriteMode.WRITE_THROUGH, description="Default mode for set()"
    )
    flush_interval: float = Field(
        default=DEFAULT_FLUSH_INTERVAL,
        gt=0,
        description="Seconds between write-behind flushes",
    )
    flush_batch_size: int = Field(
        default=DEFAULT_FLUSH_BATCH_SIZE,
        ge=1,
        le=10_000,
        description="Maximum entries per backing store batch write",
    )
    max_flush_retries: int = Field(
        default=DEFAULT_MAX_FLUSH_RETRIES,
        ge=0,
        le=20,
        description="Retries for a failed write-behind entry before it is reported",
    )
    retry_base_delay: float = Field(
        default=DEFAULT_RETRY_BASE_DELAY,
        ge=0.0,
        le=60.0,
        description="Base delay for write-behind exponential backoff",
    )
    retry_max_delay: float = Field(
        default=DEFAULT_RETRY_MAX_DELAY,
        ge=0.0,
        le=3600.0,
        description="Upper bound for write-behind backoff delay",
    )
    retry_multiplier: float = Field(
        default=DEFAULT_RETRY_MULTIPLIER, ge=1.0, le=10.0, description="Backoff multiplier"
    )
    retry_jitter: bool = Field(default=True, description="Add jitter to retry delays")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    @field_validator("capacity", mode="before")
    @classmethod
    def check_capacity(cls, v):
        if isinstance(v, str) and v.strip().lstrip("-").isdigit():
            v = int(v)
        return validate_capacity(v)

    @field_validator("default_ttl", mode="before")
    @classmethod
    def check_default_ttl(cls, v):
        if isinstance(v, str):
            v = None if v.strip().lower() in ("", "none", "null") else float(v)
        return validate_default_ttl(v)

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


@lru_cache()
def get_settings() -> CacheSettings:
    """Get cached settings instance."""
    load_dotenv()
    return CacheSettings()
