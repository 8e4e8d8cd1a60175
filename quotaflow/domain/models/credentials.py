"""Domain models for pooled credentials and their health records."""

from dataclasses import dataclass

from .common import Credential, CredentialIndex, mask_credential


@dataclass
class CredentialHealth:
    """Mutable health record kept for exactly one credential.

    Timestamps are wall-clock seconds (0.0 means "never"). ``blocked_at`` is
    stamped on the transition into the blocked state only, so repeated errors
    while blocked never extend the block.
    """
    last_used_at: float = 0.0
    success_count: int = 0
    error_count: int = 0
    blocked: bool = False
    blocked_at: float = 0.0

    @property
    def error_rate(self) -> float:
        total = self.error_count + self.success_count
        return self.error_count / total if total > 0 else 0.0

    def clear_block(self) -> None:
        self.blocked = False
        self.blocked_at = 0.0


@dataclass(frozen=True)
class CredentialLease:
    """A credential handed out by a pool for one attempt."""
    index: CredentialIndex
    credential: Credential

    def __repr__(self) -> str:
        # Keep secrets out of reprs that end up in logs and tracebacks
        return f"CredentialLease(index={self.index}, credential={mask_credential(self.credential)!r})"


@dataclass(frozen=True)
class FailureThreshold:
    """Sustained-failure blocking heuristic.

    A credential is blocked once ``error_count > success_count + margin`` and
    ``error_count >= min_errors``.
    """
    min_errors: int = 3
    margin: int = 2

    def exceeded(self, health: CredentialHealth) -> bool:
        return (
            health.error_count > health.success_count + self.margin
            and health.error_count >= self.min_errors
        )
