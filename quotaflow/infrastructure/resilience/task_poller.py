"""Submit-then-poll driver for asynchronous upstream jobs.

Submission and every status check go through a ``CallOrchestrator`` so they
get admission control and classified retries. Polls are pinned to the
credential that created the job, since providers scope tasks per account.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from quotaflow.core.exceptions import (
    AllCredentialsExhaustedError, CallTimeoutError, EmptyResultError, FatalError,
    TaskCancelledError, TaskFailedError, TaskTimeoutError,
)
from quotaflow.domain.interfaces.task_api import AsyncTaskApi
from quotaflow.domain.models.calls import TaskOutcome, TaskSnapshot, TaskStatus
from quotaflow.domain.models.common import CallTarget, CredentialIndex, TaskId
from quotaflow.infrastructure.resilience.call_orchestrator import CallOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 3.0
DEFAULT_POLL_TIMEOUT_S = 180.0

T = TypeVar("T")


class TaskPoller:
    """Submits a job and waits for a terminal status at a fixed interval."""

    def __init__(
        self,
        orchestrator: CallOrchestrator,
        task_api: AsyncTaskApi,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        timeout_s: float = DEFAULT_POLL_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.task_api = task_api
        self.poll_interval_s = poll_interval_s
        self.timeout_s = timeout_s
        self._clock = clock
        self._sleep = sleep

    async def run(
        self,
        submit_target: str,
        payload: Any,
        *,
        shard_id: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> TaskOutcome:
        """Submits ``payload`` to ``submit_target`` and polls the job to completion.

        ``timeout_s`` bounds the whole call, submission included.

        Args:
            submit_target: Endpoint the job is created on (and polled under).
            payload: Provider request body.
            shard_id: Spreads submissions over credentials deterministically.
            cancel_event: When set, the call is abandoned, even mid-request.
            timeout_s: Overrides the poller's default deadline.

        Returns:
            The terminal outcome with at least one deliverable.

        Raises:
            TaskFailedError: The job ended as FAILED.
            EmptyResultError: The job completed without deliverables.
            TaskTimeoutError: The deadline expired before the job finished.
            TaskCancelledError: ``cancel_event`` was set.
            FatalError, AllCredentialsExhaustedError: Submission failed.
        """
        timeout = self.timeout_s if timeout_s is None else timeout_s
        started = self._clock()
        deadline = started + timeout

        _raise_if_cancelled(cancel_event, None)
        try:
            submitted = await self._race(
                self.orchestrator.execute(
                    self.task_api.submit,
                    payload,
                    submit_target,
                    shard_id=shard_id,
                    deadline_s=timeout,
                    label=f"submit {submit_target}",
                ),
                cancel_event,
                None,
            )
        except CallTimeoutError as e:
            logger.error(f"Submission to {submit_target} did not finish within {timeout:.0f}s")
            raise TaskTimeoutError(None, timeout, 0) from e

        task_id = TaskId(str(submitted.value))
        logger.info(f"Task {task_id} submitted on credential {submitted.credential_index}")
        return await self._poll_until(
            task_id, submitted.credential_index, submit_target, cancel_event, timeout, started, deadline,
        )

    async def wait_for_task(
        self,
        task_id: str,
        credential_index: int,
        target: Optional[str] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> TaskOutcome:
        """Polls an already submitted job until it reaches a terminal status."""
        timeout = self.timeout_s if timeout_s is None else timeout_s
        started = self._clock()
        return await self._poll_until(
            task_id, credential_index, target, cancel_event, timeout, started, started + timeout,
        )

    async def _poll_until(
        self,
        task_id: str,
        credential_index: int,
        target: Optional[str],
        cancel_event: Optional[asyncio.Event],
        timeout: float,
        started: float,
        deadline: float,
    ) -> TaskOutcome:
        polls = 0
        while True:
            _raise_if_cancelled(cancel_event, task_id)
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.error(f"Task {task_id} still running after {timeout:.0f}s, giving up (job not cancelled upstream)")
                raise TaskTimeoutError(task_id, timeout, polls)

            polls += 1
            snapshot: Optional[TaskSnapshot] = None
            try:
                result = await self._race(
                    self.orchestrator.execute(
                        self.task_api.poll,
                        TaskId(task_id),
                        CallTarget(target) if target is not None else None,
                        credential_index=credential_index,
                        deadline_s=remaining,
                        label=f"poll {task_id}",
                    ),
                    cancel_event,
                    task_id,
                )
                snapshot = result.value
            except (AllCredentialsExhaustedError, CallTimeoutError) as e:
                logger.warning(f"Poll {polls} for task {task_id} failed, will retry: {e}")

            if snapshot is not None:
                logger.debug(f"Task {task_id} poll {polls}: {snapshot.raw_status or snapshot.status.value}")
                outcome = self._evaluate(snapshot, task_id, credential_index, polls, started)
                if outcome is not None:
                    return outcome

            await self._wait(min(self.poll_interval_s, max(0.0, deadline - self._clock())), cancel_event)

    def _evaluate(
        self,
        snapshot: TaskSnapshot,
        task_id: str,
        credential_index: int,
        polls: int,
        started: float,
    ) -> Optional[TaskOutcome]:
        """Returns the outcome for terminal statuses, None to keep polling."""
        status = snapshot.status
        if status.active:
            return None
        if status is TaskStatus.COMPLETED:
            if not snapshot.result:
                raise EmptyResultError(task_id)
            elapsed = self._clock() - started
            logger.info(f"Task {task_id} completed after {polls} poll(s) in {elapsed:.1f}s")
            return TaskOutcome(
                task_id=TaskId(task_id),
                status=status,
                deliverables=list(snapshot.result),
                polls=polls,
                elapsed_s=elapsed,
                credential_index=CredentialIndex(credential_index),
            )
        if status is TaskStatus.FAILED:
            raise TaskFailedError(task_id)
        raise FatalError(f"Task {task_id} returned unexpected status {snapshot.raw_status!r}", attempts=polls)

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> None:
        """Sleeps between polls, waking early if the wait is cancelled."""
        if delay <= 0:
            return
        if cancel_event is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        watcher = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, watcher):
                if not pending.done():
                    pending.cancel()

    async def _race(
        self, call: Awaitable[T], cancel_event: Optional[asyncio.Event], task_id: Optional[str],
    ) -> T:
        """Awaits ``call`` unless ``cancel_event`` fires first, in which case the call is cancelled."""
        if cancel_event is None:
            return await call
        worker = asyncio.ensure_future(call)
        watcher = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({worker, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not worker.done():
                worker.cancel()
                await asyncio.wait({worker})
        if worker.cancelled():
            logger.info(f"Request for task {task_id or '<unsubmitted>'} abandoned by caller")
            raise TaskCancelledError(task_id)
        return worker.result()


def _raise_if_cancelled(cancel_event: Optional[asyncio.Event], task_id: Optional[str]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info(f"Wait for task {task_id or '<unsubmitted>'} cancelled by caller")
        raise TaskCancelledError(task_id)
