"""Implementation of a dual-window admission controller.

Controls the frequency of outgoing requests to one upstream service so that
provider limits are never hit in the first place. Two sliding windows are
enforced at grant time:

* burst window: at most ``burst_max`` grants within ``burst_window_s``
* rate window: at most ``max_per_second`` grants within ``rate_window_s`` (1s)
"""

import time
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from quotaflow.domain.models.common import AdmissionStats

logger = logging.getLogger(__name__)

BURST_SAFETY_MARGIN_S = 0.1
RATE_SAFETY_MARGIN_S = 0.05
MIN_WAIT_S = 0.001

# Media provider: 50 per 5s burst, 10/s sustained
MEDIA_MAX_PER_SECOND = 10
MEDIA_BURST_MAX = 50
MEDIA_BURST_WINDOW_S = 5.0

# Text provider: single flight, one call per 6s
TEXT_MAX_PER_SECOND = 1
TEXT_BURST_MAX = 1
TEXT_BURST_WINDOW_S = 6.0


class AdmissionController:
    """Dual sliding-window rate limiter. ``acquire`` never rejects, it only waits."""

    def __init__(
        self,
        service: str,
        max_per_second: int = MEDIA_MAX_PER_SECOND,
        burst_max: int = MEDIA_BURST_MAX,
        burst_window_s: float = MEDIA_BURST_WINDOW_S,
        rate_window_s: float = 1.0,
        burst_margin_s: float = BURST_SAFETY_MARGIN_S,
        rate_margin_s: float = RATE_SAFETY_MARGIN_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initializes the admission controller.

        Args:
            service: Name of the gated upstream (logs and stats only).
            max_per_second: Grants allowed within the rate window.
            burst_max: Grants allowed within the burst window.
            burst_window_s: Length of the burst window in seconds.
            rate_window_s: Length of the sustained-rate window in seconds.
            burst_margin_s: Extra wait added when the burst window is full.
            rate_margin_s: Extra wait added when the rate window is full.
            clock: Monotonic time source, injectable for tests.
            sleep: Async sleep, injectable for tests.
        """
        if max_per_second < 1 or burst_max < 1:
            raise ValueError("max_per_second and burst_max must be >= 1")
        self.service = service
        self.max_per_second = max_per_second
        self.burst_max = burst_max
        self.burst_window_s = burst_window_s
        self.rate_window_s = rate_window_s
        self.burst_margin_s = burst_margin_s
        self.rate_margin_s = rate_margin_s
        self._clock = clock
        self._sleep = sleep
        self.timestamps: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self._waiting = 0
        logger.info(
            f"AdmissionController '{service}' initialized: {burst_max} per {burst_window_s}s burst, "
            f"{max_per_second} per {rate_window_s}s"
        )

    def _cleanup_timestamps(self, now: float) -> None:
        """Removes timestamps that left the widest window."""
        horizon = max(self.burst_window_s, self.rate_window_s)
        while self.timestamps and now - self.timestamps[0] >= horizon:
            self.timestamps.popleft()

    def _count_within(self, now: float, window_s: float) -> int:
        return sum(1 for t in self.timestamps if now - t < window_s)

    def _wait_needed(self, now: float) -> Optional[float]:
        """Seconds to wait before a slot can exist; None means grant now."""
        burst = [t for t in self.timestamps if now - t < self.burst_window_s]
        if len(burst) >= self.burst_max:
            wait_time = burst[len(burst) - self.burst_max] + self.burst_window_s - now
            logger.debug(f"[{self.service}] burst limit reached ({len(burst)}/{self.burst_max}), waiting {wait_time:.2f}s")
            return max(MIN_WAIT_S, wait_time + self.burst_margin_s)

        recent = [t for t in self.timestamps if now - t < self.rate_window_s]
        if len(recent) >= self.max_per_second:
            wait_time = recent[len(recent) - self.max_per_second] + self.rate_window_s - now
            logger.debug(f"[{self.service}] rate limit reached ({len(recent)}/{self.max_per_second}), waiting {wait_time:.2f}s")
            return max(MIN_WAIT_S, wait_time + self.rate_margin_s)
        return None

    async def acquire(self) -> float:
        """Waits until both windows have room, then records the grant.

        Returns:
            The clock value at which the slot was granted.
        """
        self._waiting += 1
        try:
            while True:
                async with self._lock:
                    now = self._clock()
                    self._cleanup_timestamps(now)
                    wait_time = self._wait_needed(now)
                    if wait_time is None:
                        self.timestamps.append(now)
                        logger.debug(
                            f"[{self.service}] slot granted "
                            f"({self._count_within(now, self.burst_window_s)}/{self.burst_max} burst, "
                            f"{self._count_within(now, self.rate_window_s)}/{self.max_per_second} rate)"
                        )
                        return now
                # Sleep outside the lock; loop again to re-check after waiting
                await self._sleep(wait_time)
        finally:
            self._waiting -= 1

    async def get_wait_time(self) -> float:
        """Estimates the time needed before the next request can be made."""
        async with self._lock:
            now = self._clock()
            self._cleanup_timestamps(now)
            return self._wait_needed(now) or 0.0

    def stats(self) -> AdmissionStats:
        now = self._clock()
        return AdmissionStats(
            service=self.service,
            window_count=self._count_within(now, self.burst_window_s),
            last_second=self._count_within(now, self.rate_window_s),
            burst_max=self.burst_max,
            max_per_second=self.max_per_second,
            waiting=self._waiting,
        )

    def reset(self) -> None:
        self.timestamps.clear()
        logger.info(f"[{self.service}] admission window reset")
