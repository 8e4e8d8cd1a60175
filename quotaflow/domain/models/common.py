"""Defines common Value Objects used across the orchestration contexts.

These objects represent simple values or concepts like service names,
credential indexes, task handles and telemetry records, ensuring
consistency and type safety.
"""

from typing import NewType, List, Dict, Any, Optional, TypedDict

# === Core Value Objects ===

# Using NewType for semantic clarity, although they are plain values at runtime.
ServiceName = NewType("ServiceName", str)        # e.g. 'text', 'media'
Credential = NewType("Credential", str)          # Opaque upstream secret
CredentialIndex = NewType("CredentialIndex", int)  # Stable index within a pool
CallTarget = NewType("CallTarget", str)          # Model name or endpoint path
TaskId = NewType("TaskId", str)                  # Opaque upstream job handle
EntityId = NewType("EntityId", str)              # Key for write serialization

TEXT_SERVICE = ServiceName("text")
MEDIA_SERVICE = ServiceName("media")

# Shown in logs instead of the full secret
CREDENTIAL_PREVIEW_CHARS = 6


def mask_credential(credential: str) -> str:
    """Returns a log-safe preview of a credential."""
    if not credential:
        return "<empty>"
    return f"{credential[:CREDENTIAL_PREVIEW_CHARS]}..."


# === Telemetry Structures ===

class CredentialStats(TypedDict):
    """Per-credential health snapshot exposed to dashboards."""
    index: int
    success_count: int
    error_count: int
    error_rate: float
    blocked: bool
    block_remaining_s: float
    last_used_at: Optional[str]


class PoolStats(TypedDict):
    """Snapshot of one service's credential pool."""
    service: str
    total_keys: int
    available_keys: int
    total_requests: int
    keys: List[CredentialStats]


class AdmissionStats(TypedDict):
    """Snapshot of one service's admission window."""
    service: str
    window_count: int
    last_second: int
    burst_max: int
    max_per_second: int
    waiting: int


class ServiceStats(TypedDict):
    pool: PoolStats
    admission: Optional[AdmissionStats]


UsageStats = NewType("UsageStats", Dict[str, Any])  # {'services': {...}, 'timestamp': ...}
