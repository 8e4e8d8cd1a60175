"""Service for executing upstream calls with full resilience.

Combines credential selection (KeyPool), admission control, a hard per-call
timeout, failure classification and per-class retry policy:

* quota exceeded: rotate to another credential immediately, no delay
* rate limited: wait for the provider hint (or backoff), retry the same credential
* transient: backoff, retry the same credential until its budget is spent, then rotate
* fatal: surface immediately

Targets (models or endpoints) are tried in order, each with its own budget.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from quotaflow.core.exceptions import AllCredentialsExhaustedError, CallTimeoutError, FatalError
from quotaflow.domain.events.call_events import (
    ApiCallDeferred, ApiCallFailed, ApiCallSucceeded, CallAttempted,
    CredentialRotated, DomainEvent, ModelFallbackTriggered, RetryScheduled,
)
from quotaflow.domain.models.calls import AttemptOutcome, CallAttempt, CallResult, ErrorKind
from quotaflow.domain.models.common import CallTarget, CredentialIndex
from quotaflow.domain.models.credentials import CredentialLease
from quotaflow.infrastructure.resilience.backoff import BackoffPolicy
from quotaflow.infrastructure.resilience.error_classifier import classify_error
from quotaflow.infrastructure.resilience.key_pool import KeyPool
from quotaflow.infrastructure.resilience.rate_limiter import AdmissionController

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_TOTAL_ATTEMPTS = 10
DEFAULT_CALL_TIMEOUT_S = 60.0
DEFAULT_MODEL_SWITCH_DELAY_S = 1.0

Invoke = Callable[[Any, Optional[CallTarget], Any], Awaitable[Any]]
EventSink = Callable[[DomainEvent], None]


def _log_event(event: DomainEvent) -> None:
    logger.debug(f"EVENT: {event}")


@dataclass
class _CallState:
    """Bookkeeping for one logical call across all its targets."""
    label: str
    started: float
    deadline: Optional[float]
    deadline_s: Optional[float]
    attempts: int = 0
    last_error: Optional[BaseException] = None
    history: List[CallAttempt] = field(default_factory=list)


class CallOrchestrator:
    """Executes one logical request against an upstream with retries and rotation."""

    def __init__(
        self,
        key_pool: KeyPool,
        admission: Optional[AdmissionController] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_total_attempts: int = DEFAULT_MAX_TOTAL_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        call_timeout_s: float = DEFAULT_CALL_TIMEOUT_S,
        model_switch_delay_s: float = DEFAULT_MODEL_SWITCH_DELAY_S,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initializes the CallOrchestrator.

        Args:
            key_pool: Credentials of the service being called.
            admission: Optional rate limiter consulted before every attempt.
            max_retries: Attempts allowed per credential per target.
            max_total_attempts: Cap on attempts per target across all credentials.
            backoff: Delay policy for rate-limited and transient failures.
            call_timeout_s: Hard timeout around each single invocation.
            model_switch_delay_s: Pause before moving to the next fallback target.
            event_sink: Receives domain events; defaults to debug logging.
            clock: Monotonic time source.
            sleep: Async sleep, injectable for tests.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.key_pool = key_pool
        self.admission = admission
        self.max_retries = max_retries
        self.max_total_attempts = max_total_attempts
        self.backoff = backoff or BackoffPolicy()
        self.call_timeout_s = call_timeout_s
        self.model_switch_delay_s = model_switch_delay_s
        self._dispatch = event_sink or _log_event
        self._clock = clock
        self._sleep = sleep

        logger.info(
            f"CallOrchestrator for '{key_pool.service}' initialized: max_retries={max_retries}, "
            f"max_total_attempts={max_total_attempts}, call_timeout={call_timeout_s}s, "
            f"admission={'on' if admission else 'off'}"
        )

    @property
    def service(self) -> str:
        return self.key_pool.service

    def target_budget(self, pinned: bool = False) -> int:
        """Attempts allowed for one target."""
        if pinned or len(self.key_pool) <= 1:
            return self.max_retries
        return min(len(self.key_pool) * self.max_retries, self.max_total_attempts)

    async def execute(
        self,
        invoke: Invoke,
        request: Any,
        target: Optional[str] = None,
        *,
        fallback_targets: Iterable[str] = (),
        shard_id: Optional[int] = None,
        credential_index: Optional[int] = None,
        deadline_s: Optional[float] = None,
        label: Optional[str] = None,
    ) -> CallResult:
        """Executes ``invoke(credential, target, request)`` until it succeeds or budgets run out.

        Args:
            invoke: Async callable performing exactly one upstream attempt.
            request: Opaque payload passed through to ``invoke``.
            target: Primary model or endpoint.
            fallback_targets: Further models tried in order once ``target`` is exhausted.
            shard_id: Selects the first credential by shard instead of by score.
            credential_index: Pins every attempt to this credential (no rotation).
            deadline_s: Overall time limit for the logical call.
            label: Name used in logs and events.

        Returns:
            The response with provenance (credential index, attempts, elapsed time).

        Raises:
            FatalError: A non-retryable failure occurred.
            CallTimeoutError: ``deadline_s`` expired.
            AllCredentialsExhaustedError: Every credential is blocked or every budget is spent.
        """
        started = self._clock()
        state = _CallState(
            label=label or getattr(invoke, "__name__", "call"),
            started=started,
            deadline=started + deadline_s if deadline_s is not None else None,
            deadline_s=deadline_s,
        )
        targets = _ordered_targets(target, fallback_targets)

        for position, current_target in enumerate(targets):
            if position > 0:
                previous = targets[position - 1]
                logger.warning(f"[{state.label}] target {previous} exhausted, switching to {current_target}")
                self._dispatch(ModelFallbackTriggered(
                    service=self.service, from_target=previous, to_target=current_target,
                    reason=type(state.last_error).__name__ if state.last_error else "exhausted",
                ))
                await self._pause(self.model_switch_delay_s, state)

            result = await self._run_target(invoke, request, current_target, state, shard_id, credential_index)
            if result is not None:
                return result

        error = AllCredentialsExhaustedError(
            f"[{self.service}] {state.label} failed on every credential and target",
            last_error=state.last_error,
            attempts=state.attempts,
        )
        self._fail(state, targets[-1], error)
        raise error

    async def _run_target(
        self,
        invoke: Invoke,
        request: Any,
        target: Optional[CallTarget],
        state: _CallState,
        shard_id: Optional[int],
        credential_index: Optional[int],
    ) -> Optional[CallResult]:
        budget = self.target_budget(pinned=credential_index is not None)
        tried: Set[int] = set()
        lease: Optional[CredentialLease] = None
        credential_attempts = 0
        target_attempts = 0

        while target_attempts < budget:
            self._check_deadline(state, target)
            if lease is None:
                lease = self._select(tried, shard_id, credential_index, state, target)
                if lease is None:
                    logger.info(f"[{state.label}] no untried credential left for {target}")
                    return None
                credential_attempts = 0
            else:
                self.key_pool.mark_used(lease.index)

            await self._admit(target, state)
            target_attempts += 1
            state.attempts += 1
            attempt = CallAttempt(
                attempt_number=state.attempts,
                target=target,
                credential_index=lease.index,
                started_at=self._clock(),
            )
            logger.info(f"[{state.label}] attempt {state.attempts} (target={target}, credential={lease.index})")

            try:
                value = await self._invoke_once(invoke, lease, target, request, state)
            except Exception as exc:
                attempt.duration_s = self._clock() - attempt.started_at
                classification = classify_error(exc)
                attempt.error_kind = classification.kind
                attempt.error_message = str(exc)[:500]
                state.last_error = exc
                self.key_pool.mark_error(lease.index, classification.kind)
                credential_attempts += 1

                if classification.kind is ErrorKind.FATAL:
                    attempt.outcome = AttemptOutcome.FATAL
                    self._record(state, attempt)
                    logger.error(f"[{state.label}] non-retryable error on attempt {state.attempts}: {exc}")
                    error = FatalError(
                        f"[{self.service}] {state.label} failed: {classification.reason}: {exc}",
                        attempts=state.attempts,
                        status_code=classification.status_code,
                    )
                    self._fail(state, target, error)
                    raise error from exc

                if state.deadline is not None and self._clock() >= state.deadline:
                    attempt.outcome = AttemptOutcome.RETRYABLE
                    self._record(state, attempt)
                    self._check_deadline(state, target, cause=exc)

                attempt.outcome = AttemptOutcome.RETRYABLE
                logger.warning(
                    f"[{state.label}] {classification.kind.value} on attempt {state.attempts} "
                    f"(credential {lease.index}): {exc}"
                )

                if classification.kind is ErrorKind.QUOTA_EXCEEDED:
                    # Daily quota does not recover by waiting
                    self._record(state, attempt)
                    self._rotate(lease, target, tried, "quota exceeded")
                    lease = None
                    continue

                rotate = credential_attempts >= self.max_retries
                if rotate:
                    self._rotate(lease, target, tried, f"{credential_attempts} failed attempts")
                if target_attempts >= budget:
                    self._record(state, attempt)
                    break

                if classification.kind is ErrorKind.RATE_LIMITED and classification.retry_after_s is not None:
                    delay = classification.retry_after_s
                else:
                    delay = self.backoff.delay(credential_attempts - 1)
                attempt.delay_s = delay
                self._record(state, attempt)
                self._dispatch(RetryScheduled(
                    service=self.service, target=target, credential_index=lease.index,
                    attempt_number=state.attempts, delay_seconds=delay, error_kind=classification.kind.value,
                ))
                logger.info(f"[{state.label}] retrying in {delay:.2f}s")
                await self._pause(delay, state)
                if rotate:
                    lease = None
                continue

            attempt.duration_s = self._clock() - attempt.started_at
            self.key_pool.mark_success(lease.index)
            self._record(state, attempt)
            elapsed = self._clock() - state.started

            # Attempt to add latency to the result if it's a StructuredAIResponse
            if hasattr(value, "latency_ms") and value.latency_ms is None:
                value.latency_ms = attempt.duration_s * 1000

            self._dispatch(ApiCallSucceeded(
                service=self.service, target=target, credential_index=lease.index,
                attempts=state.attempts, latency_ms=attempt.duration_s * 1000, label=state.label,
            ))
            logger.info(
                f"[{state.label}] succeeded (target={target}, credential={lease.index}, "
                f"attempts={state.attempts}, elapsed={elapsed:.2f}s)"
            )
            return CallResult(
                value=value,
                credential_index=lease.index,
                attempts=state.attempts,
                elapsed_s=elapsed,
                target=target,
                history=list(state.history),
            )

        logger.warning(f"[{state.label}] attempt budget ({budget}) spent on {target}")
        return None

    # --- Helpers ---

    def _select(
        self,
        tried: Set[int],
        shard_id: Optional[int],
        credential_index: Optional[int],
        state: _CallState,
        target: Optional[CallTarget],
    ) -> Optional[CredentialLease]:
        if credential_index is not None:
            if credential_index in tried:
                return None
            self.key_pool.mark_used(credential_index)
            return CredentialLease(CredentialIndex(credential_index), self.key_pool.credential(credential_index))
        try:
            if shard_id is not None and not tried:
                lease = self.key_pool.select_for_shard(shard_id)
            else:
                lease = self.key_pool.select_best(exclude=tried)
        except AllCredentialsExhaustedError as exc:
            error = AllCredentialsExhaustedError(str(exc), last_error=state.last_error, attempts=state.attempts)
            self._fail(state, target, error)
            raise error from state.last_error
        return None if lease.index in tried else lease

    def _rotate(self, lease: CredentialLease, target: Optional[CallTarget], tried: Set[int], reason: str) -> None:
        tried.add(lease.index)
        self._dispatch(CredentialRotated(service=self.service, target=target, from_index=lease.index, reason=reason))
        logger.info(f"[{self.service}] rotating off credential {lease.index}: {reason}")

    async def _admit(self, target: Optional[CallTarget], state: _CallState) -> None:
        if self.admission is None:
            return
        wait_start = self._clock()
        remaining = self._remaining(state)
        try:
            if remaining is None:
                await self.admission.acquire()
            else:
                await asyncio.wait_for(self.admission.acquire(), timeout=remaining)
        except asyncio.TimeoutError as exc:
            self._check_deadline(state, target, cause=exc, force=True)
        waited = self._clock() - wait_start
        if waited > 0.001:
            self._dispatch(ApiCallDeferred(service=self.service, target=target, wait_time_seconds=waited))

    async def _invoke_once(
        self, invoke: Invoke, lease: CredentialLease, target: Optional[CallTarget], request: Any, state: _CallState,
    ) -> Any:
        timeout = self.call_timeout_s
        remaining = self._remaining(state)
        if remaining is not None:
            timeout = min(timeout, remaining)
        return await asyncio.wait_for(invoke(lease.credential, target, request), timeout=timeout)

    def _remaining(self, state: _CallState) -> Optional[float]:
        if state.deadline is None:
            return None
        return max(0.0, state.deadline - self._clock())

    async def _pause(self, delay: float, state: _CallState) -> None:
        remaining = self._remaining(state)
        if remaining is not None:
            delay = min(delay, remaining)
        if delay > 0:
            await self._sleep(delay)

    def _check_deadline(
        self,
        state: _CallState,
        target: Optional[CallTarget],
        cause: Optional[BaseException] = None,
        force: bool = False,
    ) -> None:
        if state.deadline is None:
            return
        if not force and self._clock() < state.deadline:
            return
        error = CallTimeoutError(
            f"[{self.service}] {state.label} exceeded its {state.deadline_s:.1f}s deadline "
            f"after {state.attempts} attempts",
            attempts=state.attempts,
            deadline_s=state.deadline_s,
        )
        self._fail(state, target, error)
        raise error from (cause or state.last_error)

    def _record(self, state: _CallState, attempt: CallAttempt) -> None:
        state.history.append(attempt)
        self._dispatch(CallAttempted(service=self.service, attempt=attempt))

    def _fail(self, state: _CallState, target: Optional[CallTarget], error: Exception) -> None:
        logger.error(f"[{state.label}] giving up: {error}")
        self._dispatch(ApiCallFailed(
            service=self.service, target=target, error_type=type(error).__name__,
            error_message=str(error), attempts=state.attempts, label=state.label,
        ))


def _ordered_targets(target: Optional[str], fallback_targets: Iterable[str]) -> Sequence[Optional[CallTarget]]:
    """Primary first, then fallbacks in order, without duplicates."""
    ordered: List[Optional[CallTarget]] = [CallTarget(target) if target is not None else None]
    for candidate in fallback_targets:
        if candidate not in ordered:
            ordered.append(CallTarget(candidate))
    return ordered
