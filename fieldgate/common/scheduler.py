"""
Interval Scheduler

ScheduledLoop runs an async callback on a fixed monotonic timeline:

- Deadlines advance by whole intervals from the start time, so a slow
  callback does not push later ticks back
- The callback is awaited in the loop, so ticks never overlap; deadlines
  that pass while it runs are skipped and counted, never queued
- stop() ends scheduling but lets an in-flight callback finish

Usage:
    loop = ScheduledLoop(2.0, poll_meter, name="poll:meter-1")
    await loop.start()
    ...
    loop.stop()
    await loop.wait_stopped()
"""

import asyncio
import math
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from .logging_setup import get_service_logger

logger = get_service_logger("scheduler")


@dataclass
class LoopStats:
    """Counters for one loop"""
    executions: int = 0
    errors: int = 0
    skipped: int = 0
    drift_total_s: float = 0.0
    last_drift_ms: float = 0.0
    last_duration_s: float = 0.0


class ScheduledLoop:
    """
    Fixed-interval async loop with skip-on-overrun semantics.

    Attributes:
        interval: Seconds between deadlines
        callback: Coroutine function awaited on each tick
        name: Used in logs and the task name
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "loop",
        run_immediately: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")

        self.interval = interval_seconds
        self.callback = callback
        self.name = name
        self.run_immediately = run_immediately
        self.stats = LoopStats()

        self._deadline = 0.0
        self._running = False
        self._in_callback = False
        self._last_run_at: float | None = None
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_callback(self) -> bool:
        return self._in_callback

    @property
    def skipped_count(self) -> int:
        return self.stats.skipped

    @property
    def execution_count(self) -> int:
        return self.stats.executions

    @property
    def drift_seconds(self) -> float:
        return self.stats.drift_total_s

    @property
    def last_run_at(self) -> float | None:
        """Wall-clock time the last callback finished"""
        return self._last_run_at

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")

    def stop(self) -> None:
        """Stop scheduling. Idempotent; never cancels a running callback."""
        if self._running:
            self._running = False
            self._wake.set()

    async def wait_stopped(self) -> None:
        """Wait until the loop task, including any in-flight callback, ends"""
        task = self._task
        if task is None:
            return
        try:
            await task
        finally:
            if self._task is task:
                self._task = None

    def set_interval(self, interval_seconds: float) -> None:
        """Change the interval; the next deadline becomes now + interval"""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval = interval_seconds
        self._deadline = time.monotonic() + interval_seconds
        self._wake.set()

    async def _wait_for_deadline(self) -> None:
        while self._running:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                return
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    async def _tick(self) -> None:
        lateness = time.monotonic() - self._deadline
        self.stats.drift_total_s += max(0.0, lateness)
        self.stats.last_drift_ms = lateness * 1000

        self._in_callback = True
        started = time.monotonic()
        try:
            await self.callback()
            self.stats.executions += 1
        except Exception as e:
            self.stats.errors += 1
            logger.error(f"Loop '{self.name}' callback failed: {e}")
        finally:
            self._in_callback = False
            self.stats.last_duration_s = time.monotonic() - started
            self._last_run_at = time.time()

    def _advance_deadline(self) -> None:
        now = time.monotonic()
        if self._deadline > now:
            return
        # Whole intervals that elapsed since the deadline just served
        passed = math.floor((now - self._deadline) / self.interval) + 1
        self._deadline += passed * self.interval
        missed = passed - 1
        if missed:
            self.stats.skipped += missed
            logger.warning(
                f"Loop '{self.name}' missed {missed} tick(s), "
                f"callback took {self.stats.last_duration_s:.3f}s"
            )

    async def _run(self) -> None:
        self._deadline = time.monotonic() + (0 if self.run_immediately else self.interval)
        while self._running:
            await self._wait_for_deadline()
            if not self._running:
                break
            await self._tick()
            self._advance_deadline()

    def get_stats(self) -> dict:
        stats = asdict(self.stats)
        return {
            "name": self.name,
            "interval_s": self.interval,
            "running": self._running,
            "execution_count": stats.pop("executions"),
            "error_count": stats.pop("errors"),
            "skipped_count": stats.pop("skipped"),
            "drift_total_s": round(stats.pop("drift_total_s"), 3),
            "drift_last_ms": round(stats.pop("last_drift_ms"), 1),
            "last_execution_s": round(stats.pop("last_duration_s"), 3),
        }
