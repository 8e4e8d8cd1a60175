"""Domain Events related to orchestrated upstream calls.

Examples include events for when calls are deferred by admission control,
retried, rotated to another credential, fall back to another model, fail
or succeed.
"""

from dataclasses import dataclass, field
import time
from typing import Optional

from quotaflow.domain.models.calls import CallAttempt


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


@dataclass
class CallAttempted(DomainEvent):
    """Event triggered after every single try, successful or not."""
    service: str
    attempt: CallAttempt
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallSucceeded(DomainEvent):
    """Event triggered when a logical call succeeds."""
    service: str
    target: Optional[str]
    credential_index: int
    attempts: int
    latency_ms: float
    label: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallFailed(DomainEvent):
    """Event triggered when a logical call fails definitively."""
    service: str
    target: Optional[str]
    error_type: str
    error_message: str
    attempts: int
    label: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ApiCallDeferred(DomainEvent):
    """Event triggered when a call waited for an admission slot."""
    service: str
    target: Optional[str]
    wait_time_seconds: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(DomainEvent):
    """Event triggered when a retry is scheduled for a failed attempt."""
    service: str
    target: Optional[str]
    credential_index: int
    attempt_number: int
    delay_seconds: float
    error_kind: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CredentialRotated(DomainEvent):
    """Event triggered when a call moves off a credential."""
    service: str
    target: Optional[str]
    from_index: int
    reason: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class ModelFallbackTriggered(DomainEvent):
    """Event triggered when a target is abandoned for the next fallback."""
    service: str
    from_target: Optional[str]
    to_target: Optional[str]
    reason: str
    timestamp: float = field(default_factory=time.time)
