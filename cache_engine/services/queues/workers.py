"""
Periodic Workers

Background loops owned by a cache instance (write-behind flush, expiry
sweep). A worker stops at an iteration boundary, so an in-progress
flush always finishes before shutdown continues.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class PeriodicWorker:
    """Runs ``action`` every ``interval()`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        interval: Callable[[], float],
    ):
        self.name = name
        self._action = action
        self._interval = interval
        self._task: Optional["asyncio.Task[None]"] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stats = {"iterations": 0, "failures": 0}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop. No-op if already running."""
        if self.running:
            return

        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._worker_loop(), name=f"cache-{self.name}")
        logger.info("worker_started", worker=self.name)

    async def stop(self) -> None:
        """Ask the loop to stop and wait for the current iteration to finish."""
        if self._task is None:
            return

        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("worker_stopped", worker=self.name, **self._stats)

    def stats(self) -> Dict[str, Any]:
        return {"running": self.running, **self._stats}

    async def _worker_loop(self) -> None:
        """Main worker loop."""
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._interval()
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self._action()
                self._stats["iterations"] += 1
            except Exception as e:
                self._stats["failures"] += 1
                logger.error(
                    "worker_iteration_failed",
                    worker=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
