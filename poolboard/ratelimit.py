"""
ratelimit.py - Fixed-window request rate governor.

One counter per client identifier. Each counter carries its own lock so
admissions for different clients never contend, and the periodic sweep
only ever holds one counter's lock at a time.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger("ratelimit")

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_SEC = 60.0
DEFAULT_SWEEP_INTERVAL_SEC = 300.0


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at * 1000)),
        }


class _Window:
    __slots__ = ("count", "reset_at", "lock", "evicted")

    def __init__(self):
        self.count = 0
        self.reset_at = 0.0
        self.lock = threading.Lock()
        self.evicted = False


class RequestRateGovernor:
    """Admission control for public reads, keyed by client identifier."""

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_sec: float = DEFAULT_WINDOW_SEC,
        sweep_interval_sec: float = DEFAULT_SWEEP_INTERVAL_SEC,
        clock: Callable[[], float] = time.time,
    ):
        if limit < 1:
            raise ValueError("Rate limit must be at least 1")
        if window_sec <= 0:
            raise ValueError("Rate window must be positive")
        self.limit = limit
        self.window_sec = window_sec
        self.sweep_interval_sec = sweep_interval_sec
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def admit(self, client_id: str, limit: Optional[int] = None) -> RateLimitResult:
        cap = limit or self.limit
        while True:
            entry = self._windows.get(client_id)
            if entry is None:
                entry = self._windows.setdefault(client_id, _Window())
            with entry.lock:
                if entry.evicted:
                    # Swept between lookup and lock; pick up the replacement
                    continue
                now = self._clock()
                if entry.count == 0 or entry.reset_at < now:
                    entry.count = 1
                    entry.reset_at = now + self.window_sec
                    return RateLimitResult(True, cap, cap - 1, entry.reset_at)
                entry.count += 1
                if entry.count > cap:
                    return RateLimitResult(False, cap, 0, entry.reset_at)
                return RateLimitResult(True, cap, cap - entry.count, entry.reset_at)

    def sweep(self) -> int:
        """Drop counters whose window has elapsed. Returns the number removed."""
        now = self._clock()
        removed = 0
        for key, entry in list(self._windows.items()):
            with entry.lock:
                if entry.evicted or entry.reset_at >= now:
                    continue
                entry.evicted = True
                self._windows.pop(key, None)
                removed += 1
        return removed

    def tracked_clients(self) -> int:
        return len(self._windows)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval_sec)
            try:
                removed = self.sweep()
                if removed:
                    logger.debug("Swept %d expired rate-limit windows", removed)
            except Exception:
                logger.exception("Error in rate-limit sweep")

    def start(self):
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Rate governor started (limit=%d per %.0fs, sweep every %.0fs)",
                self.limit, self.window_sec, self.sweep_interval_sec,
            )

    async def stop(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Rate governor stopped")
