"""
Write-Behind Queue

Buffers writes accepted by write-behind ``set`` and persists them to the
backing store on a timer and on shutdown. Writes are coalesced per key;
failed writes are retried with backoff and, once the retry budget is
spent, reported as FlushExhausted and kept in the dead-letter list.
"""

import asyncio
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

import structlog
from opentelemetry import trace

from ...core.clock import Clock, SystemClock
from ...domain.cache.entities import FlushReport, PendingWrite
from ...domain.cache.exceptions import FlushExhaustedException
from ...infrastructure.backing_store.gateway import BackingStoreGateway
from ...monitoring.cache_metrics import MetricsCollector
from .retry import ExponentialBackoffRetry, RetryStrategy
from .workers import PeriodicWorker

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class WriteBehindQueue:
    """
    Single owner of pending writes.

    ``enqueue`` is synchronous and thread-safe. ``flush`` and ``drain``
    are serialized by an asyncio lock so the periodic flush and a shutdown
    drain never persist the same snapshot twice.
    """

    def __init__(
        self,
        gateway: BackingStoreGateway,
        metrics: Optional[MetricsCollector] = None,
        retry: Optional[RetryStrategy] = None,
        clock: Optional[Clock] = None,
        flush_interval: float = 1.0,
        batch_size: int = 100,
    ):
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self.gateway = gateway
        self.metrics = metrics or MetricsCollector()
        self.retry = retry or ExponentialBackoffRetry()
        self.clock = clock or SystemClock()
        self.flush_interval = flush_interval
        self.batch_size = batch_size

        self._pending: Dict[str, PendingWrite] = {}
        # Writes taken by the current flush and not yet settled.
        self._in_flight: Dict[str, PendingWrite] = {}
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._dead_letters: List[FlushExhaustedException] = []
        self._worker = PeriodicWorker(
            "write-behind-flush", self.flush, lambda: self.flush_interval
        )

    # Queue operations

    def enqueue(self, key: str, value: Any) -> PendingWrite:
        """Queue ``value`` for ``key``, superseding any unflushed earlier write."""
        now = self.clock.monotonic()
        write = PendingWrite(key=key, value=value, enqueued_at=now, next_attempt_at=now)
        with self._lock:
            superseded = key in self._pending
            self._pending[key] = write

        if superseded:
            logger.debug("write_behind_coalesced", key=key)
        return write

    def discard(self, key: str) -> bool:
        """Drop an unflushed write. Used when a write-through supersedes it."""
        with self._lock:
            in_flight = self._in_flight.pop(key, None) is not None
            return self._pending.pop(key, None) is not None or in_flight

    def peek(self, key: str) -> Tuple[Any, bool]:
        """Unflushed value for ``key`` as ``(value, queued)``."""
        with self._lock:
            write = self._pending.get(key) or self._in_flight.get(key)
        if write is None:
            return None, False
        return write.value, True

    def dead_letters(self) -> List[FlushExhaustedException]:
        with self._lock:
            return list(self._dead_letters)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending.keys() | self._in_flight.keys())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._pending or key in self._in_flight

    # Flushing

    async def flush(self, force: bool = False) -> FlushReport:
        """
        Persist queued writes whose retry delay has elapsed.

        With ``force`` every queued write is attempted regardless of backoff.
        """
        async with self._flush_lock:
            with tracer.start_as_current_span("write_behind.flush") as span:
                now = self.clock.monotonic()
                with self._lock:
                    due = [
                        write
                        for write in self._pending.values()
                        if force or write.is_due(now)
                    ]
                    for write in due:
                        del self._pending[write.key]
                        self._in_flight[write.key] = write

                span.set_attribute("write_behind.due", len(due))
                report = FlushReport()
                if not due:
                    return report

                for start in range(0, len(due), self.batch_size):
                    batch = due[start : start + self.batch_size]
                    try:
                        results = await self.gateway.save_batch(
                            {write.key: write.value for write in batch}
                        )
                    except BaseException:
                        # Cancelled mid-flush: put the unpersisted snapshot back.
                        self._requeue(due[start:])
                        raise

                    for write in batch:
                        error = results.get(write.key)
                        if error is None:
                            report.flushed.append(write.key)
                        else:
                            self._handle_failure(write, error, report)
                        self._settle(write)

                if report.flushed:
                    self.metrics.record_flushed(len(report.flushed))

                span.set_attribute("write_behind.flushed", len(report.flushed))
                span.set_attribute("write_behind.retried", len(report.retried))
                span.set_attribute("write_behind.exhausted", len(report.exhausted))
                logger.debug(
                    "write_behind_flushed",
                    flushed=len(report.flushed),
                    retried=len(report.retried),
                    exhausted=len(report.exhausted),
                )
                return report

    async def drain(self) -> FlushReport:
        """
        Flush until the queue is empty or every remaining write has
        exhausted its retries. Backoff is honoured between rounds.
        """
        report = FlushReport()
        while True:
            report.merge(await self.flush(force=True))

            with self._lock:
                if not self._pending:
                    break
                next_attempt = min(write.next_attempt_at for write in self._pending.values())

            await asyncio.sleep(max(0.0, next_attempt - self.clock.monotonic()))

        logger.info(
            "write_behind_drained",
            flushed=len(report.flushed),
            exhausted=len(report.exhausted),
        )
        return report

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._worker.running

    def start(self) -> None:
        """Start the periodic flush on the running event loop."""
        self._worker.start()

    async def stop(self, drain: bool = True) -> FlushReport:
        """Stop the periodic flush, then drain remaining writes."""
        await self._worker.stop()
        if drain:
            return await self.drain()
        return FlushReport()

    def _handle_failure(
        self, write: PendingWrite, error: BaseException, report: FlushReport
    ) -> None:
        attempt = write.attempts + 1
        with self._lock:
            if write.key in self._pending or self._in_flight.get(write.key) is not write:
                # A newer value arrived, or a write-through discarded this one.
                report.superseded.append(write.key)
                return

            if self.retry.should_retry(error, attempt):
                delay = self.retry.calculate_delay(attempt)
                self._pending[write.key] = replace(
                    write,
                    attempts=attempt,
                    next_attempt_at=self.clock.monotonic() + delay,
                    last_error=error,
                )
                report.retried.append(write.key)
                logger.warning(
                    "write_behind_retry_scheduled",
                    key=write.key,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(error),
                )
                return

            exhausted = FlushExhaustedException(write.key, attempt, error)
            self._dead_letters.append(exhausted)

        report.exhausted.append(write.key)
        self.metrics.record_flush_exhausted(exhausted, key=write.key)
        logger.error(
            "write_behind_flush_exhausted",
            key=write.key,
            attempts=attempt,
            error=str(error),
            error_type=type(error).__name__,
        )

    def _settle(self, write: PendingWrite) -> None:
        with self._lock:
            if self._in_flight.get(write.key) is write:
                del self._in_flight[write.key]

    def _requeue(self, writes: List[PendingWrite]) -> None:
        with self._lock:
            for write in writes:
                if self._in_flight.get(write.key) is write:
                    del self._in_flight[write.key]
                    self._pending.setdefault(write.key, write)
