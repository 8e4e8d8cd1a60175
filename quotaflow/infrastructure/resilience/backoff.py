"""Exponential backoff with symmetric jitter."""

import random
from dataclasses import dataclass, field
from typing import Callable

DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 30.0
DEFAULT_JITTER_RATIO = 0.1


@dataclass(frozen=True)
class BackoffPolicy:
    """Value Object representing retry backoff configuration.

    ``delay(n)`` is ``min(base * factor**n, max)`` spread by ±``jitter_ratio``,
    never exceeding ``max_delay_s``.
    """
    base_delay_s: float = DEFAULT_BASE_DELAY_S
    max_delay_s: float = DEFAULT_MAX_DELAY_S
    factor: float = 2.0
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay_s * (self.factor ** max(0, attempt)), self.max_delay_s)
        jitter = delay * self.jitter_ratio * (2.0 * self.rng() - 1.0)
        return max(0.0, min(delay + jitter, self.max_delay_s))
