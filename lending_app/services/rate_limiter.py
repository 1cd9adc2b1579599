"""Per-client token bucket admission control.

Each client address gets a bucket that refills continuously at
``rate`` tokens per second up to ``capacity``; an admitted request spends
one token. Buckets start full and are created lazily.

The hot path only takes the bucket's own lock. The table lock is taken to
create a bucket and by the periodic sweep, which, once more than
``max_clients`` keys are tracked, drops every bucket at once. The bulk
reset means every client gets its full burst back; that is accepted
behavior, not per-entry expiry.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..config import Settings, settings

logger = logging.getLogger(__name__)

# absorbs float drift so a client at exactly the sustained rate is admitted
_EPSILON = 1e-9


@dataclass
class TokenBucket:
    """Token bucket state for one client."""
    tokens: float
    last_refill: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def try_consume(self, now: float, rate: float, capacity: int) -> bool:
        with self.lock:
            elapsed = max(0.0, now - self.last_refill)
            self.tokens = min(float(capacity), self.tokens + elapsed * rate)
            self.last_refill = now
            if self.tokens >= 1.0 - _EPSILON:
                self.tokens = max(0.0, self.tokens - 1.0)
                return True
            return False

    def seconds_until_token(self, rate: float) -> float:
        with self.lock:
            missing = 1.0 - self.tokens
        if missing <= _EPSILON:
            return 0.0
        return missing / rate if rate > 0 else math.inf


class RateLimiter:
    def __init__(
        self,
        rate_per_minute: float = 100,
        capacity: int = 200,
        max_clients: int = 1000,
        cleanup_interval: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_per_minute <= 0 or capacity < 1:
            raise ValueError("rate_per_minute must be positive and capacity at least 1")
        self.rate = rate_per_minute / 60.0
        self.capacity = capacity
        self.max_clients = max_clients
        self.cleanup_interval = cleanup_interval
        self.clock = clock

        self._buckets: Dict[str, TokenBucket] = {}
        self._table_lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self.stats = {"sweeps": 0, "resets": 0}

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RateLimiter":
        config = config or settings
        return cls(
            rate_per_minute=config.rate_limit_per_minute,
            capacity=config.rate_limit_burst,
            max_clients=config.rate_limit_max_clients,
            cleanup_interval=config.rate_limit_cleanup_interval,
        )

    def _get_bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._table_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(tokens=float(self.capacity), last_refill=self.clock())
                self._buckets[key] = bucket
            return bucket

    def allow(self, key: str) -> bool:
        """Admit a request from ``key`` if a token is available, spending it."""
        return self._get_bucket(key).try_consume(self.clock(), self.rate, self.capacity)

    def retry_after(self, key: str) -> int:
        """Whole seconds until ``key`` would be admitted again."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return 0
        return int(math.ceil(bucket.seconds_until_token(self.rate)))

    def tracked_clients(self) -> int:
        return len(self._buckets)

    def cleanup(self) -> int:
        """Drop all buckets if more than ``max_clients`` are tracked.

        Returns the number of buckets dropped.
        """
        with self._table_lock:
            self.stats["sweeps"] += 1
            count = len(self._buckets)
            if count <= self.max_clients:
                return 0
            # swap the table; requests still holding an old bucket finish on it
            self._buckets = {}
            self.stats["resets"] += 1
        logger.info(f"Rate limiter reset: dropped {count} tracked clients")
        return count

    # ------------------------- Background cleanup ------------------------- #
    async def run_cleanup(self) -> None:
        """Sweep every ``cleanup_interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    def start_cleanup(self) -> asyncio.Task:
        """Start the sweep on the running event loop (idempotent)."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self.run_cleanup())
            logger.debug(f"Rate limiter cleanup started: every {self.cleanup_interval}s")
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        """Cancel the sweep task; no further sweeps run afterwards."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Rate limiter cleanup stopped")
