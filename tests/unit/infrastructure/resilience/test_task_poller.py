import asyncio
import time
from collections import deque

import pytest

from quotaflow.core.exceptions import (
    EmptyResultError, FatalError, TaskCancelledError, TaskFailedError, TaskTimeoutError, UpstreamHttpError,
)
from quotaflow.domain.interfaces.task_api import AsyncTaskApi
from quotaflow.domain.models.calls import TaskSnapshot, TaskStatus
from quotaflow.infrastructure.resilience.backoff import BackoffPolicy
from quotaflow.infrastructure.resilience.call_orchestrator import CallOrchestrator
from quotaflow.infrastructure.resilience.key_pool import KeyPool
from quotaflow.infrastructure.resilience.task_poller import TaskPoller

KEYS = ["key-aaaaaaaaaaaa", "key-bbbbbbbbbbbb", "key-cccccccccccc"]


def snapshot(status, result=None):
    return TaskSnapshot(task_id="task-1", status=TaskStatus.parse(status), result=result or [], raw_status=status)


class FakeTaskApi(AsyncTaskApi):
    """Returns scripted poll responses; the last one repeats forever."""

    def __init__(self, *responses):
        self.responses = deque(responses)
        self.submit_errors = deque()
        self.submitted_with = []
        self.polled_with = []
        self.on_submit = None
        self.on_poll = None
        self.stalled = set()

    async def submit(self, credential, target, payload):
        self.submitted_with.append(credential)
        if self.on_submit is not None:
            self.on_submit(len(self.submitted_with))
        if "submit" in self.stalled:
            await asyncio.Event().wait()
        if self.submit_errors:
            raise self.submit_errors.popleft()
        return "task-1"

    async def poll(self, credential, target, task_id):
        self.polled_with.append((credential, target, task_id))
        if self.on_poll is not None:
            self.on_poll(len(self.polled_with))
        if "poll" in self.stalled:
            await asyncio.Event().wait()
        response = self.responses.popleft() if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


def make_poller(fake_clock, task_api, interval=3.0, timeout=180.0):
    orchestrator = CallOrchestrator(
        KeyPool("media", KEYS, clock=fake_clock),
        backoff=BackoffPolicy(rng=lambda: 0.5),
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )
    return TaskPoller(orchestrator, task_api, poll_interval_s=interval, timeout_s=timeout,
                      clock=fake_clock, sleep=fake_clock.sleep)


def test_polls_until_completed_on_the_submitting_credential(fake_clock):
    api = FakeTaskApi(
        snapshot("IN_PROGRESS"), snapshot("IN_PROGRESS"), snapshot("IN_PROGRESS"),
        snapshot("COMPLETED", ["https://cdn.example/1.png"]),
    )
    poller = make_poller(fake_clock, api)

    outcome = asyncio.run(poller.run("ai/mystic", {"prompt": "a cat"}, shard_id=1))

    assert outcome.status is TaskStatus.COMPLETED
    assert outcome.deliverables == ["https://cdn.example/1.png"]
    assert outcome.polls == 4
    assert outcome.credential_index == 1
    assert outcome.elapsed_s == pytest.approx(9.0)
    assert api.submitted_with == [KEYS[1]]
    assert {credential for credential, _, _ in api.polled_with} == {KEYS[1]}
    assert {target for _, target, _ in api.polled_with} == {"ai/mystic"}
    assert fake_clock.sleeps == [3.0, 3.0, 3.0]


def test_still_running_at_deadline_times_out_within_one_interval(fake_clock):
    api = FakeTaskApi(snapshot("IN_PROGRESS"))
    poller = make_poller(fake_clock, api, interval=3.0, timeout=10.0)
    started = fake_clock.now

    with pytest.raises(TaskTimeoutError) as exc_info:
        asyncio.run(poller.run("ai/mystic", {}))

    assert fake_clock.now - started <= 10.0 + 3.0
    assert exc_info.value.polls == 4
    assert exc_info.value.task_id == "task-1"
    assert not isinstance(exc_info.value, TaskFailedError)


def test_completed_without_deliverables_is_an_error(fake_clock):
    poller = make_poller(fake_clock, FakeTaskApi(snapshot("COMPLETED", [])))

    with pytest.raises(EmptyResultError):
        asyncio.run(poller.run("ai/mystic", {}))


def test_failed_status_is_fatal(fake_clock):
    poller = make_poller(fake_clock, FakeTaskApi(snapshot("CREATED"), snapshot("FAILED")))

    with pytest.raises(TaskFailedError) as exc_info:
        asyncio.run(poller.run("ai/mystic", {}))

    assert isinstance(exc_info.value, FatalError)


def test_unknown_status_is_fatal(fake_clock):
    poller = make_poller(fake_clock, FakeTaskApi(snapshot("EXPLODED")))

    with pytest.raises(FatalError) as exc_info:
        asyncio.run(poller.run("ai/mystic", {}))

    assert not isinstance(exc_info.value, TaskFailedError)
    assert "EXPLODED" in str(exc_info.value)


def test_lowercase_statuses_are_understood(fake_clock):
    poller = make_poller(fake_clock, FakeTaskApi(snapshot("processing"), snapshot("completed", ["v.mp4"])))

    outcome = asyncio.run(poller.run("ai/video", {}))

    assert outcome.deliverables == ["v.mp4"]


def test_poll_errors_that_exhaust_the_credential_are_retried_until_deadline(fake_clock):
    api = FakeTaskApi(
        UpstreamHttpError(503, "upstream busy"),
        UpstreamHttpError(503, "upstream busy"),
        UpstreamHttpError(503, "upstream busy"),
        snapshot("COMPLETED", ["out.png"]),
    )
    poller = make_poller(fake_clock, api)

    outcome = asyncio.run(poller.run("ai/mystic", {}))

    assert outcome.polls == 2
    assert outcome.deliverables == ["out.png"]


def test_fatal_poll_error_propagates(fake_clock):
    poller = make_poller(fake_clock, FakeTaskApi(UpstreamHttpError(404, "no such task")))

    with pytest.raises(FatalError):
        asyncio.run(poller.run("ai/mystic", {}))


def test_cancel_before_submit(fake_clock):
    api = FakeTaskApi(snapshot("IN_PROGRESS"))
    poller = make_poller(fake_clock, api)

    async def scenario():
        event = asyncio.Event()
        event.set()
        await poller.run("ai/mystic", {}, cancel_event=event)

    with pytest.raises(TaskCancelledError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.task_id is None
    assert api.submitted_with == []


def test_cancel_while_waiting_between_polls(fake_clock):
    api = FakeTaskApi(snapshot("IN_PROGRESS"))
    poller = make_poller(fake_clock, api)

    async def scenario():
        event = asyncio.Event()
        api.on_poll = lambda count: event.set() if count == 2 else None
        await poller.run("ai/mystic", {}, cancel_event=event)

    with pytest.raises(TaskCancelledError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.task_id == "task-1"
    assert len(api.polled_with) == 2


def test_wait_for_task_polls_an_existing_job(fake_clock):
    api = FakeTaskApi(snapshot("COMPLETED", ["a.png", "b.png"]))
    poller = make_poller(fake_clock, api)

    outcome = asyncio.run(poller.wait_for_task("task-1", 2, "ai/mystic"))

    assert outcome.deliverables == ["a.png", "b.png"]
    assert api.polled_with == [(KEYS[2], "ai/mystic", "task-1")]


def test_rate_limited_submission_counts_against_the_deadline(fake_clock):
    api = FakeTaskApi(snapshot("IN_PROGRESS"))
    api.submit_errors.append(UpstreamHttpError(429, "slow down", retry_after_s=500))
    poller = make_poller(fake_clock, api, interval=3.0, timeout=10.0)
    started = fake_clock.now

    with pytest.raises(TaskTimeoutError) as exc_info:
        asyncio.run(poller.run("ai/mystic", {}))

    assert fake_clock.now - started <= 10.0 + 3.0
    assert fake_clock.sleeps == [10.0]
    assert exc_info.value.task_id is None
    assert api.polled_with == []


def test_polling_gets_only_the_time_left_after_submission(fake_clock):
    api = FakeTaskApi(snapshot("IN_PROGRESS"))
    api.submit_errors.append(UpstreamHttpError(429, "slow down", retry_after_s=4))
    poller = make_poller(fake_clock, api, interval=3.0, timeout=10.0)
    started = fake_clock.now

    with pytest.raises(TaskTimeoutError) as exc_info:
        asyncio.run(poller.run("ai/mystic", {}))

    assert fake_clock.sleeps == [4.0, 3.0, 3.0]
    assert fake_clock.now - started == pytest.approx(10.0)
    assert exc_info.value.task_id == "task-1"
    assert exc_info.value.polls == 2


def test_cancel_interrupts_a_poll_in_flight(fake_clock):
    api = FakeTaskApi(snapshot("IN_PROGRESS"))
    api.stalled.add("poll")
    poller = make_poller(fake_clock, api)

    async def scenario():
        event = asyncio.Event()
        api.on_poll = lambda count: asyncio.get_running_loop().call_later(0.05, event.set)
        await poller.run("ai/mystic", {}, cancel_event=event)

    began = time.monotonic()
    with pytest.raises(TaskCancelledError) as exc_info:
        asyncio.run(scenario())

    assert time.monotonic() - began < 0.5
    assert exc_info.value.task_id == "task-1"
    assert len(api.polled_with) == 1


def test_cancel_interrupts_a_submission_in_flight(fake_clock):
    api = FakeTaskApi(snapshot("COMPLETED", ["out.png"]))
    api.stalled.add("submit")
    poller = make_poller(fake_clock, api)

    async def scenario():
        event = asyncio.Event()
        api.on_submit = lambda count: asyncio.get_running_loop().call_later(0.05, event.set)
        await poller.run("ai/mystic", {}, cancel_event=event)

    began = time.monotonic()
    with pytest.raises(TaskCancelledError) as exc_info:
        asyncio.run(scenario())

    assert time.monotonic() - began < 0.5
    assert exc_info.value.task_id is None
    assert api.polled_with == []
