"""Error taxonomy for orchestrated upstream calls.

Only ``FatalError``, ``CallTimeoutError`` and ``AllCredentialsExhaustedError``
(and their subclasses) leave the call orchestrator. Retryable failures are
absorbed internally up to their budgets.
"""

from typing import Optional

from quotaflow.domain.models.calls import ErrorKind

__all__ = [
    "ErrorKind",
    "QuotaflowError",
    "UpstreamHttpError",
    "FatalError",
    "CallTimeoutError",
    "AllCredentialsExhaustedError",
    "TaskFailedError",
    "EmptyResultError",
    "TaskTimeoutError",
    "TaskCancelledError",
]


class QuotaflowError(Exception):
    """Base class for every error raised by quotaflow."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, *, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class UpstreamHttpError(QuotaflowError):
    """Raw non-success response from a provider, before classification."""

    def __init__(self, status_code: int, message: str = "", retry_after_s: Optional[float] = None):
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class FatalError(QuotaflowError):
    """Non-retryable failure (bad request, auth, unparseable response)."""

    kind = ErrorKind.FATAL

    def __init__(self, message: str, *, attempts: int = 0, status_code: Optional[int] = None):
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(message)


class CallTimeoutError(QuotaflowError):
    """An overall deadline expired before a terminal result was obtained."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, *, attempts: int = 0, deadline_s: Optional[float] = None):
        self.attempts = attempts
        self.deadline_s = deadline_s
        super().__init__(message)


class AllCredentialsExhaustedError(QuotaflowError):
    """Every credential is blocked or the attempt budget is spent."""

    kind = ErrorKind.EXHAUSTED

    def __init__(self, message: str, *, last_error: Optional[BaseException] = None, attempts: int = 0):
        self.last_error = last_error
        self.attempts = attempts
        if last_error is not None:
            message = f"{message} (after {attempts} attempts). Last error: {type(last_error).__name__}: {last_error}"
        super().__init__(message)


# --- Task polling ---

class TaskFailedError(FatalError):
    """The upstream reported the job as FAILED."""

    def __init__(self, task_id: str, message: str = ""):
        self.task_id = task_id
        super().__init__(f"Task {task_id} failed upstream" + (f": {message}" if message else ""))


class EmptyResultError(FatalError):
    """The upstream reported COMPLETED without any deliverable."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} completed without deliverables")


class TaskTimeoutError(CallTimeoutError):
    """The poll deadline expired while the job was still running upstream.

    The upstream job is not cancelled and may keep consuming quota.
    """

    def __init__(self, task_id: Optional[str], timeout_s: float, polls: int):
        self.task_id = task_id
        self.polls = polls
        super().__init__(
            f"Task {task_id or '<unsubmitted>'} did not finish within {timeout_s:.1f}s ({polls} polls)",
            deadline_s=timeout_s,
        )


class TaskCancelledError(QuotaflowError):
    """The caller abandoned the wait. The upstream job keeps running."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, task_id: Optional[str]):
        self.task_id = task_id
        super().__init__(f"Wait for task {task_id or '<unsubmitted>'} cancelled by caller")
