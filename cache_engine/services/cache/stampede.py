"""
Stampede Guard

Per-key single-flight coordination: concurrent misses for one key share
a single backing store fetch. The fetch runs in its own task so a
cancelled leader does not strand its followers.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ...core.clock import Clock, SystemClock
from ...domain.cache.entities import InFlightFetch

logger = structlog.get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]
OnSuccess = Callable[[Any], None]


class StampedeGuard:
    """
    Single-flight fetch coordinator for one event loop.

    The first caller for a key (the leader) starts the fetch; callers that
    arrive while it is in flight (followers) await the same task and get
    the same value or the same exception. Nothing is retried here.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._in_flight: Dict[str, InFlightFetch] = {}

    async def fetch_once(
        self,
        key: str,
        loader: Loader,
        on_success: Optional[OnSuccess] = None,
    ) -> Any:
        """
        Load ``key`` at most once across concurrent callers.

        ``on_success`` runs exactly once with the loaded value before any
        caller is released, which is where the result is stored in the
        entry store. On failure it is not called and nothing is cached.
        """
        flight = self._in_flight.get(key)
        if flight is None or flight.done:
            flight = self._start(key, loader, on_success)
        else:
            flight.waiters += 1
            logger.debug("stampede_follower_joined", key=key, waiters=flight.waiters)

        return await asyncio.shield(flight.task)

    def in_flight(self, key: str) -> bool:
        flight = self._in_flight.get(key)
        return flight is not None and not flight.done

    def pending_keys(self) -> List[str]:
        return [key for key, flight in self._in_flight.items() if not flight.done]

    def _start(
        self, key: str, loader: Loader, on_success: Optional[OnSuccess]
    ) -> InFlightFetch:
        task = asyncio.ensure_future(self._run(key, loader, on_success))
        flight = InFlightFetch(key=key, task=task, started_at=self.clock.monotonic())
        self._in_flight[key] = flight
        task.add_done_callback(lambda _: self._release(flight))
        return flight

    async def _run(
        self, key: str, loader: Loader, on_success: Optional[OnSuccess]
    ) -> Any:
        value = await loader()
        if on_success is not None:
            on_success(value)
        return value

    def _release(self, flight: InFlightFetch) -> None:
        if self._in_flight.get(flight.key) is flight:
            del self._in_flight[flight.key]

        # Mark the outcome as retrieved; every waiter already received it.
        if not flight.task.cancelled():
            error = flight.task.exception()
            if error is not None:
                logger.debug(
                    "stampede_fetch_failed",
                    key=flight.key,
                    waiters=flight.waiters,
                    error_type=type(error).__name__,
                )
