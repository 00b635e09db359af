"""
Write-Behind Retry Policies

Decides whether a failed write-behind entry gets another flush cycle
and how long it waits before the next attempt.
"""

import random
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from ...core.config import CacheSettings


class RetryPolicy(BaseModel):
    """Retry budget and backoff shape."""

    max_retries: int = Field(
        default=3, ge=0, le=20, description="Retries after the first failed attempt"
    )
    base_delay_seconds: float = Field(
        default=0.5, ge=0.0, le=60.0, description="Base delay in seconds"
    )
    max_delay_seconds: float = Field(
        default=30.0, ge=0.0, le=3600.0, description="Maximum delay in seconds"
    )
    multiplier: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Delay multiplier"
    )
    jitter: bool = Field(default=True, description="Add jitter to delays")

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_flush_retries,
            base_delay_seconds=settings.retry_base_delay,
            max_delay_seconds=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
        )


class RetryStrategy(ABC):
    """Abstract base class for retry strategies."""

    @abstractmethod
    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """
        Determine if a write should be retried.

        Args:
            error: Exception from the failed attempt
            attempt: Number of attempts made so far (>= 1)
        """
        pass

    @abstractmethod
    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before attempt number ``attempt + 1``."""
        pass


class ExponentialBackoffRetry(RetryStrategy):
    """
    Exponential backoff retry strategy with jitter.

    Jitter spreads retries of writes that failed together so they do not
    hit a recovering backing store at the same instant.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        # One initial attempt plus max_retries retries.
        return attempt <= self.policy.max_retries

    def calculate_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = self.policy.base_delay_seconds * (
            self.policy.multiplier ** max(attempt - 1, 0)
        )
        delay = min(delay, self.policy.max_delay_seconds)

        if self.policy.jitter and delay > 0:
            # ±25% jitter
            jitter_amount = delay * 0.25
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(delay, 0.0)
