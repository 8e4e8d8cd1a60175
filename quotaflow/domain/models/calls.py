"""Domain models for orchestrated calls and upstream asynchronous tasks.

Includes the per-try ``CallAttempt`` record, the provenance-carrying
``CallResult``, and the task lifecycle used by the poller.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .common import CallTarget, CredentialIndex, TaskId


class ErrorKind(str, enum.Enum):
    """Failure classes that drive retry policy."""
    QUOTA_EXCEEDED = "quota_exceeded"  # rotate credential, no delay
    RATE_LIMITED = "rate_limited"      # wait for hint/backoff, same credential
    TRANSIENT = "transient"            # backoff, retry, may rotate
    FATAL = "fatal"                    # surface immediately
    TIMEOUT = "timeout"                # overall deadline exceeded
    EXHAUSTED = "exhausted"            # every credential/attempt spent

    @property
    def blocks_credential(self) -> bool:
        return self in (ErrorKind.QUOTA_EXCEEDED, ErrorKind.RATE_LIMITED)


class AttemptOutcome(str, enum.Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class CallAttempt:
    """Ephemeral record of one try against an upstream."""
    attempt_number: int
    target: Optional[CallTarget]
    credential_index: CredentialIndex
    started_at: float
    duration_s: float = 0.0
    outcome: AttemptOutcome = AttemptOutcome.SUCCESS
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    delay_s: float = 0.0  # Wait scheduled after this attempt


@dataclass
class CallResult:
    """Successful response enriched with provenance metadata."""
    value: Any
    credential_index: CredentialIndex
    attempts: int
    elapsed_s: float
    target: Optional[CallTarget] = None
    history: List[CallAttempt] = field(default_factory=list)


# === Upstream Task Lifecycle ===

class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "TaskStatus":
        """Maps an upstream status string onto the lifecycle, UNKNOWN if unrecognised."""
        if isinstance(raw, TaskStatus):
            return raw
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def active(self) -> bool:
        return self in ACTIVE_TASK_STATUSES


ACTIVE_TASK_STATUSES = frozenset({
    TaskStatus.PENDING,
    TaskStatus.CREATED,
    TaskStatus.IN_PROGRESS,
    TaskStatus.PROCESSING,
})


@dataclass
class TaskSnapshot:
    """One poll response, as parsed by a task API adapter."""
    task_id: TaskId
    status: TaskStatus
    result: List[Any] = field(default_factory=list)
    raw_status: Optional[str] = None


@dataclass
class TaskOutcome:
    """Terminal result of a polled task."""
    task_id: TaskId
    status: TaskStatus
    deliverables: List[Any]
    polls: int
    elapsed_s: float
    credential_index: CredentialIndex
