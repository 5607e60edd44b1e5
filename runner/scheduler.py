"""
Runner: Periodic Loop

One named daemon thread per loop. Each loop runs its tick immediately and
then once per interval; a tick that raises is logged and the loop keeps
going.

stop() only signals the thread and returns. An in-flight tick (and any
external call it is waiting on) is not interrupted; ticks re-check
readiness under entity locks before acting, so a restart re-derives its
work from persisted state.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

from infra.metrics import MetricsRecorder, TickStats

logger = logging.getLogger(__name__)


class PeriodicLoop:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        tick: Callable[[], Optional[int]],
        metrics: Optional[MetricsRecorder] = None,
        jitter_pct: float = 0.0,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"{name}: interval_seconds must be positive")
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))  # Clamp 0-20%
        self._tick = tick
        self._metrics = metrics
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self.is_running:
            logger.warning(f"{self.name} loop already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"loop-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Started {self.name} loop (interval={self.interval_seconds:g}s, jitter={self.jitter_pct:.1f}%)")

    def stop(self) -> None:
        """Signal the loop to stop without waiting for an in-flight tick."""
        self._stop.set()
        logger.info(f"Stopping {self.name} loop")

    def run_once(self) -> TickStats:
        """Run a single tick synchronously, isolating any error it raises."""
        start = time.monotonic()
        processed = 0
        try:
            processed = self._tick() or 0
            status = "ok" if processed else "idle"
        except Exception as e:
            self.errors += 1
            status = "error"
            logger.exception(f"{self.name} tick failed: {e}")
        elapsed = time.monotonic() - start
        self.ticks += 1

        stats = TickStats(loop=self.name, status=status, processed=processed, duration_seconds=elapsed)
        if self._metrics is not None:
            self._metrics.record_tick(stats)
        if elapsed > self.interval_seconds:
            logger.warning(
                f"{self.name} tick took {elapsed:.2f}s, longer than its {self.interval_seconds:g}s interval"
            )
        return stats

    def _next_sleep(self, elapsed: float) -> float:
        jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds
        return max(0.0, self.interval_seconds - elapsed) + jitter

    def _run(self) -> None:
        while not self._stop.is_set():
            stats = self.run_once()
            if self._stop.wait(self._next_sleep(stats.duration_seconds)):
                break
        logger.info(f"{self.name} loop stopped")
