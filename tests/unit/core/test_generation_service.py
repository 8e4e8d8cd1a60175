import asyncio

import pytest

from quotaflow.core.exceptions import AllCredentialsExhaustedError, FatalError, QuotaflowError
from quotaflow.core.services.generation_service import GenerationService
from quotaflow.domain.interfaces.task_api import AsyncTaskApi
from quotaflow.domain.interfaces.transport import Transport
from quotaflow.domain.models.ai import StructuredAIResponse
from quotaflow.domain.models.calls import TaskSnapshot, TaskStatus
from quotaflow.infrastructure.persistence.record_store import JsonRecordStore
from quotaflow.infrastructure.resilience.backoff import BackoffPolicy
from quotaflow.infrastructure.resilience.call_orchestrator import CallOrchestrator
from quotaflow.infrastructure.resilience.key_pool import KeyPool
from quotaflow.infrastructure.resilience.rate_limiter import AdmissionController
from quotaflow.infrastructure.resilience.task_poller import TaskPoller

TEXT_KEYS = ["text-key-aaaaaaaa", "text-key-bbbbbbbb"]
MEDIA_KEYS = ["media-key-aaaaaaaa"]


class QuotaError(Exception):
    status_code = 402


class FakeTextTransport(Transport):
    """Answers with the model name; models listed in ``failing`` raise quota errors."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []
        self.closed = False

    async def invoke(self, credential, target, request):
        self.calls.append((credential, target, request))
        if target in self.failing:
            raise QuotaError("quota exceeded for this model")
        return StructuredAIResponse(content=f"answer from {target}", model_name=target)

    async def aclose(self):
        self.closed = True


class FakeTaskApi(AsyncTaskApi):
    def __init__(self):
        self.closed = False

    async def submit(self, credential, target, payload):
        return "task-9"

    async def poll(self, credential, target, task_id):
        return TaskSnapshot(task_id=task_id, status=TaskStatus.COMPLETED, result=["https://cdn/9.png"])

    async def aclose(self):
        self.closed = True


def orchestrator_for(service, keys, fake_clock, admission=None):
    return CallOrchestrator(
        KeyPool(service, keys, clock=fake_clock),
        admission=admission,
        backoff=BackoffPolicy(rng=lambda: 0.5),
        model_switch_delay_s=0,
        clock=fake_clock,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def text_transport():
    return FakeTextTransport()


@pytest.fixture
def task_api():
    return FakeTaskApi()


@pytest.fixture
def service(fake_clock, text_transport, task_api, tmp_path):
    admission = AdmissionController("media", clock=fake_clock, sleep=fake_clock.sleep)
    media = orchestrator_for("media", MEDIA_KEYS, fake_clock, admission=admission)
    return GenerationService(
        text_orchestrator=orchestrator_for("text", TEXT_KEYS, fake_clock),
        text_transport=text_transport,
        media_poller=TaskPoller(media, task_api, clock=fake_clock, sleep=fake_clock.sleep),
        record_store=JsonRecordStore(tmp_path / "records.json"),
        default_text_model="model-a",
        fallback_text_models=["model-b"],
    )


def test_generate_text_wraps_a_bare_prompt(service, text_transport):
    result = asyncio.run(service.generate_text("Write a haiku"))

    assert result.value.content == "answer from model-a"
    assert result.target == "model-a"
    _, target, request = text_transport.calls[0]
    assert request == {"messages": [{"role": "user", "content": "Write a haiku"}]}


def test_generate_text_falls_back_to_the_next_model(fake_clock):
    transport = FakeTextTransport(failing={"model-a"})
    service = GenerationService(
        text_orchestrator=orchestrator_for("text", TEXT_KEYS[:1], fake_clock),
        text_transport=transport,
        default_text_model="model-a",
        fallback_text_models=["model-b"],
    )

    result = asyncio.run(service.generate_text([{"role": "user", "content": "Hi"}]))

    assert result.target == "model-b"
    assert result.value.content == "answer from model-b"
    assert [target for _, target, _ in transport.calls] == ["model-a", "model-b"]


def test_quota_on_every_credential_exhausts_before_fallback(service, text_transport):
    text_transport.failing.add("model-a")

    with pytest.raises(AllCredentialsExhaustedError):
        asyncio.run(service.generate_text("Hi"))

    assert [target for _, target, _ in text_transport.calls] == ["model-a", "model-a"]


def test_generate_text_with_explicit_model_and_no_fallbacks(service, text_transport):
    text_transport.failing.add("model-x")

    with pytest.raises(QuotaflowError):
        asyncio.run(service.generate_text("Hi", model="model-x", fallback_models=[]))

    assert {target for _, target, _ in text_transport.calls} == {"model-x"}


def test_render_media_returns_the_deliverables(service):
    outcome = asyncio.run(service.render_media("ai/mystic", {"prompt": "fox"}))

    assert outcome.task_id == "task-9"
    assert outcome.deliverables == ["https://cdn/9.png"]


def test_update_record_persists_through_the_store(service):
    def add_tag(record):
        record.setdefault("tags", []).append("hero")
        return record

    assert asyncio.run(service.update_record("project-1", add_tag)) == {"tags": ["hero"]}


def test_unconfigured_services_raise():
    service = GenerationService()

    with pytest.raises(QuotaflowError, match="Text generation is not configured"):
        asyncio.run(service.generate_text("Hi"))
    with pytest.raises(QuotaflowError, match="Media rendering is not configured"):
        asyncio.run(service.render_media("ai/mystic", {}))
    with pytest.raises(QuotaflowError, match="No record store"):
        asyncio.run(service.update_record("p", lambda r: r))
    assert service.usage_stats()["services"] == {}


def test_usage_stats_covers_each_configured_service(service):
    asyncio.run(service.generate_text("Hi"))

    stats = service.usage_stats()

    assert set(stats["services"]) == {"text", "media"}
    text = stats["services"]["text"]
    assert text["admission"] is None
    assert text["pool"]["total_keys"] == 2
    assert sum(key["success_count"] for key in text["pool"]["keys"]) == 1
    media = stats["services"]["media"]
    assert media["admission"]["burst_max"] == 50
    assert "timestamp" in stats


def test_fatal_errors_are_not_retried(service, text_transport):
    async def broken(credential, target, request):
        text_transport.calls.append((credential, target, request))
        raise ValueError("malformed payload")

    text_transport.invoke = broken

    with pytest.raises(FatalError):
        asyncio.run(service.generate_text("Hi"))

    assert len(text_transport.calls) == 1


def test_aclose_releases_both_providers(service, text_transport, task_api):
    asyncio.run(service.aclose())

    assert text_transport.closed
    assert task_api.closed
