"""Application service tying the resilience stack to concrete providers.

Owns one orchestrator per upstream service (text completions, media tasks),
the task poller for media jobs and the record store. Everything is injected;
there is no module-level instance.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from quotaflow.core.exceptions import QuotaflowError
from quotaflow.domain.interfaces.transport import Transport
from quotaflow.domain.models.ai import ChatMessage
from quotaflow.domain.models.calls import CallResult, TaskOutcome
from quotaflow.domain.models.common import (
    MEDIA_SERVICE, TEXT_SERVICE, ServiceStats, UsageStats,
)
from quotaflow.infrastructure.persistence.record_store import JsonRecordStore, Mutator, Record
from quotaflow.infrastructure.resilience.call_orchestrator import CallOrchestrator
from quotaflow.infrastructure.resilience.task_poller import TaskPoller

logger = logging.getLogger(__name__)


class GenerationService:
    """Generates text and media through pooled, rate-limited credentials."""

    def __init__(
        self,
        text_orchestrator: Optional[CallOrchestrator] = None,
        text_transport: Optional[Transport] = None,
        media_poller: Optional[TaskPoller] = None,
        record_store: Optional[JsonRecordStore] = None,
        default_text_model: Optional[str] = None,
        fallback_text_models: Sequence[str] = (),
    ):
        """Initializes the GenerationService.

        Args:
            text_orchestrator: Orchestrator over the text credential pool.
            text_transport: Adapter performing one chat completion.
            media_poller: Submit-and-poll driver over the media credential pool.
            record_store: Optional persistence for job records.
            default_text_model: Model used when a call names none.
            fallback_text_models: Models tried in order after the primary one.
        """
        self.text_orchestrator = text_orchestrator
        self.text_transport = text_transport
        self.media_poller = media_poller
        self.record_store = record_store
        self.default_text_model = default_text_model
        self.fallback_text_models = list(fallback_text_models)
        logger.info(
            f"GenerationService initialized (text={'on' if text_orchestrator else 'off'}, "
            f"media={'on' if media_poller else 'off'}, records={'on' if record_store else 'off'})"
        )

    async def generate_text(
        self,
        messages: Union[str, List[ChatMessage]],
        model: Optional[str] = None,
        fallback_models: Optional[Iterable[str]] = None,
        deadline_s: Optional[float] = None,
    ) -> CallResult:
        """Runs a chat completion with credential rotation and model fallback.

        Args:
            messages: Chat messages, or a bare prompt sent as a user message.
            model: Primary model; defaults to the configured one.
            fallback_models: Overrides the configured fallback chain.
            deadline_s: Optional overall time limit.

        Returns:
            CallResult whose ``value`` is a StructuredAIResponse.
        """
        if self.text_orchestrator is None or self.text_transport is None:
            raise QuotaflowError("Text generation is not configured (no text credentials found)")
        if isinstance(messages, str):
            messages = [ChatMessage(role="user", content=messages)]

        fallbacks = self.fallback_text_models if fallback_models is None else list(fallback_models)
        return await self.text_orchestrator.execute(
            self.text_transport.invoke,
            {"messages": messages},
            model or self.default_text_model,
            fallback_targets=fallbacks,
            deadline_s=deadline_s,
            label="generate_text",
        )

    async def render_media(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        shard_id: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout_s: Optional[float] = None,
    ) -> TaskOutcome:
        """Submits a media job and waits for its deliverables."""
        if self.media_poller is None:
            raise QuotaflowError("Media rendering is not configured (no media credentials found)")
        return await self.media_poller.run(
            endpoint,
            payload,
            shard_id=shard_id,
            cancel_event=cancel_event,
            timeout_s=timeout_s,
        )

    async def update_record(self, record_id: str, mutator: Mutator) -> Record:
        if self.record_store is None:
            raise QuotaflowError("No record store configured")
        return await self.record_store.update(record_id, mutator)

    def usage_stats(self) -> UsageStats:
        """Per-service pool and admission snapshots plus a timestamp."""
        services: Dict[str, ServiceStats] = {}
        if self.text_orchestrator is not None:
            services[TEXT_SERVICE] = _service_stats(self.text_orchestrator)
        if self.media_poller is not None:
            services[MEDIA_SERVICE] = _service_stats(self.media_poller.orchestrator)
        return UsageStats({
            "services": services,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def aclose(self) -> None:
        """Releases provider connections."""
        if self.text_transport is not None:
            await self.text_transport.aclose()
        if self.media_poller is not None:
            await self.media_poller.task_api.aclose()


def _service_stats(orchestrator: CallOrchestrator) -> ServiceStats:
    admission = orchestrator.admission
    return ServiceStats(
        pool=orchestrator.key_pool.stats(),
        admission=admission.stats() if admission is not None else None,
    )
