"""
Loader retries.

The stampede guard never retries on its own; callers that want retries
wrap their loader here. Only transient backing store failures are
retried, a NotFound is an answer and is returned immediately.
"""

from typing import Any, Awaitable, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...domain.cache.exceptions import BackingStoreException

logger = structlog.get_logger(__name__)

Loader = Callable[[str], Awaitable[Any]]


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "loader_retry",
        attempt=retry_state.attempt_number,
        error=str(error),
        error_type=type(error).__name__,
    )


def retrying_loader(
    loader: Loader,
    attempts: int = 3,
    multiplier: float = 0.1,
    max_wait: float = 2.0,
) -> Loader:
    """Wrap ``loader`` with exponential-backoff retries on backing store errors."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    if attempts == 1:
        return loader

    async def load(key: str) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=multiplier, max=max_wait),
            retry=retry_if_exception_type(BackingStoreException),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await loader(key)

    return load
