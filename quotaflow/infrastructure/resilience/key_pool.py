"""Credential pool with per-credential health tracking.

Holds every credential configured for one upstream service, picks the
"best" one for the next call and self-heals credentials that were blocked
after quota, rate-limit or sustained-failure signals.

Blocks expire lazily: whenever a blocked state is read (selection, usage
marking, stats) it is compared against ``block_timeout_s``. No background
timer is involved.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from quotaflow.core.exceptions import AllCredentialsExhaustedError
from quotaflow.domain.models.calls import ErrorKind
from quotaflow.domain.models.common import (
    Credential, CredentialIndex, CredentialStats, PoolStats, ServiceName, mask_credential,
)
from quotaflow.domain.models.credentials import CredentialHealth, CredentialLease, FailureThreshold

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_TIMEOUT_S = 60.0
RECENT_USE_WINDOW_S = 30.0  # Credentials used within this window are penalized
ERROR_RATE_WEIGHT = 100.0


class KeyPool:
    """Thread-safe pool of interchangeable credentials for one service."""

    def __init__(
        self,
        service: str,
        credentials: Sequence[str],
        block_timeout_s: float = DEFAULT_BLOCK_TIMEOUT_S,
        failure_threshold: Optional[FailureThreshold] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the pool.

        Args:
            service: Name of the upstream service (used in logs and stats).
            credentials: Ordered, already de-duplicated secrets.
            block_timeout_s: How long a block lasts, measured from when it started.
            failure_threshold: Sustained-failure heuristic; defaults to 3 errors / margin 2.
            clock: Wall-clock source in seconds, injectable for tests.
        """
        self.service = ServiceName(service)
        self._credentials: List[Credential] = [Credential(c) for c in credentials]
        self._health: Dict[int, CredentialHealth] = {
            i: CredentialHealth() for i in range(len(self._credentials))
        }
        self.block_timeout_s = block_timeout_s
        self.failure_threshold = failure_threshold or FailureThreshold()
        self._clock = clock
        self._lock = threading.Lock()
        self.total_requests = 0

        if self._credentials:
            logger.info(f"KeyPool '{service}' initialized with {len(self._credentials)} credential(s)")
        else:
            logger.warning(f"KeyPool '{service}' has no credentials configured")

    def __len__(self) -> int:
        return len(self._credentials)

    def credential(self, index: int) -> Credential:
        return self._credentials[index]

    # --- Block bookkeeping (caller holds the lock) ---

    def _is_blocked_locked(self, index: int, now: float) -> bool:
        health = self._health[index]
        if health.blocked and now - health.blocked_at >= self.block_timeout_s:
            health.clear_block()
            logger.info(f"[{self.service}] credential {index} auto-unblocked after {self.block_timeout_s:.0f}s")
        return health.blocked

    def _unblocked_locked(self, now: float) -> List[int]:
        return [i for i in range(len(self._credentials)) if not self._is_blocked_locked(i, now)]

    def _mark_used_locked(self, index: int, now: float) -> None:
        if not self._is_blocked_locked(index, now):
            self._health[index].last_used_at = now
        self.total_requests += 1

    def _lease(self, index: int) -> CredentialLease:
        return CredentialLease(index=CredentialIndex(index), credential=self._credentials[index])

    def _require_credentials(self) -> None:
        if not self._credentials:
            raise AllCredentialsExhaustedError(f"No credentials configured for service '{self.service}'")

    # --- Selection ---

    def select_best(self, exclude: Iterable[int] = ()) -> CredentialLease:
        """Picks the healthiest, least recently used credential.

        Args:
            exclude: Indexes to avoid if any other unblocked credential exists.

        Returns:
            The selected credential; its usage is recorded.

        Raises:
            AllCredentialsExhaustedError: The pool is empty, or it holds more
                than one credential and every one of them is blocked.
        """
        self._require_credentials()
        with self._lock:
            now = self._clock()
            if len(self._credentials) == 1:
                self._mark_used_locked(0, now)
                return self._lease(0)

            candidates = self._unblocked_locked(now)
            if not candidates:
                raise AllCredentialsExhaustedError(
                    f"All {len(self._credentials)} credentials for '{self.service}' are temporarily blocked"
                )
            excluded = set(exclude)
            preferred = [i for i in candidates if i not in excluded]
            if preferred:
                candidates = preferred

            best_index = candidates[0]
            best_score = float("inf")
            for i in candidates:
                score = self._score(self._health[i], now)
                if score < best_score:  # strict: ties keep the lowest index
                    best_score = score
                    best_index = i

            self._mark_used_locked(best_index, now)
            logger.debug(f"[{self.service}] selected credential {best_index} (score={best_score:.2f})")
            return self._lease(best_index)

    def select_for_shard(self, shard_id: int) -> CredentialLease:
        """Deterministically spreads shards (e.g. concepts) over unblocked credentials.

        Never raises on a non-empty pool: with everything blocked it degrades
        to credential 0 rather than stalling the caller.
        """
        self._require_credentials()
        with self._lock:
            now = self._clock()
            unblocked = self._unblocked_locked(now)
            if unblocked:
                index = unblocked[shard_id % len(unblocked)]
            else:
                logger.warning(f"[{self.service}] every credential blocked, shard {shard_id} degraded to credential 0")
                index = 0
            self._mark_used_locked(index, now)
            return self._lease(index)

    def _score(self, health: CredentialHealth, now: float) -> float:
        since_last_use = now - health.last_used_at
        recent_usage_penalty = max(0.0, RECENT_USE_WINDOW_S - since_last_use)
        return health.error_rate * ERROR_RATE_WEIGHT + recent_usage_penalty

    # --- Outcome recording ---

    def mark_used(self, index: int) -> None:
        with self._lock:
            self._mark_used_locked(index, self._clock())

    def mark_success(self, index: int) -> None:
        """Records a success; a success always rehabilitates the credential."""
        with self._lock:
            health = self._health[index]
            health.success_count += 1
            health.clear_block()

    def mark_error(self, index: int, kind: ErrorKind = ErrorKind.TRANSIENT) -> bool:
        """Records a failed attempt and blocks the credential when warranted.

        Args:
            index: The credential that failed.
            kind: Classified failure; quota and rate-limit kinds block at once.

        Returns:
            True if this call transitioned the credential into the blocked state.
        """
        with self._lock:
            now = self._clock()
            health = self._health[index]
            health.error_count += 1

            reason = None
            if kind.blocks_credential:
                reason = kind.value
            elif self.failure_threshold.exceeded(health):
                reason = "sustained failures"
            if reason is None:
                return False

            # Compare-and-set: an active block keeps its original start time
            if self._is_blocked_locked(index, now):
                return False
            health.blocked = True
            health.blocked_at = now

        logger.warning(
            f"[{self.service}] credential {index} ({mask_credential(self._credentials[index])}) "
            f"blocked for {self.block_timeout_s:.0f}s: {reason}"
        )
        return True

    # --- Queries ---

    def is_blocked(self, index: int) -> bool:
        with self._lock:
            return self._is_blocked_locked(index, self._clock())

    def available_count(self) -> int:
        with self._lock:
            return len(self._unblocked_locked(self._clock()))

    def all_blocked(self) -> bool:
        """True when nothing can be selected without waiting (or the pool is empty)."""
        return self.available_count() == 0

    def health(self, index: int) -> CredentialHealth:
        """Returns a copy of a credential's health record."""
        with self._lock:
            self._is_blocked_locked(index, self._clock())
            h = self._health[index]
            return CredentialHealth(h.last_used_at, h.success_count, h.error_count, h.blocked, h.blocked_at)

    def stats(self) -> PoolStats:
        """Snapshot for operational dashboards; not persisted."""
        with self._lock:
            now = self._clock()
            keys: List[CredentialStats] = []
            available = 0
            for i in range(len(self._credentials)):
                blocked = self._is_blocked_locked(i, now)
                health = self._health[i]
                if not blocked:
                    available += 1
                remaining = max(0.0, self.block_timeout_s - (now - health.blocked_at)) if blocked else 0.0
                keys.append(CredentialStats(
                    index=i,
                    success_count=health.success_count,
                    error_count=health.error_count,
                    error_rate=round(health.error_rate, 3),
                    blocked=blocked,
                    block_remaining_s=round(remaining, 1),
                    last_used_at=_iso(health.last_used_at),
                ))
            return PoolStats(
                service=self.service,
                total_keys=len(self._credentials),
                available_keys=available,
                total_requests=self.total_requests,
                keys=keys,
            )


def _iso(timestamp: float) -> Optional[str]:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
