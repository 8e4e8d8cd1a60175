"""Text-generation transports over the OpenAI and Groq async SDKs.

Each transport performs exactly one chat-completion attempt with whatever
credential the orchestrator picked. SDK exceptions are not caught here: their
``status_code``, response headers and message are what the error classifier
reads to choose a retry policy.
"""

import abc
import logging
import time
from typing import Any, Dict, List, Optional

from groq import AsyncGroq
from openai import AsyncOpenAI

from quotaflow.domain.interfaces.transport import Transport
from quotaflow.domain.models.ai import ChatMessage, StructuredAIResponse, TokenUsage
from quotaflow.domain.models.common import CallTarget, Credential, mask_credential

logger = logging.getLogger(__name__)


class _ChatCompletionTransport(Transport):
    """Shared logic for SDKs exposing ``client.chat.completions.create``."""

    DEFAULT_MODEL = ""
    provider = "chat"

    def __init__(self, base_url: Optional[str] = None, default_model: Optional[str] = None, **request_options: Any):
        """Initializes the transport.

        Args:
            base_url: Optional API endpoint override.
            default_model: Model used when the orchestrator passes no target.
            **request_options: Extra arguments sent with every completion
                (e.g. ``temperature``, ``max_tokens``).
        """
        self.base_url = base_url
        self.default_model = default_model or self.DEFAULT_MODEL
        self.request_options = request_options
        self._clients: Dict[str, Any] = {}
        logger.info(f"{type(self).__name__} initialized (default model: {self.default_model})")

    @abc.abstractmethod
    def _create_client(self, credential: Credential) -> Any:
        """Builds the SDK client bound to ``credential``."""

    def _client_for(self, credential: Credential) -> Any:
        """One SDK client per credential, created on first use."""
        client = self._clients.get(credential)
        if client is None:
            logger.debug(f"Creating {self.provider} client for credential {mask_credential(credential)}")
            client = self._create_client(credential)
            self._clients[credential] = client
        return client

    def _parse_response(self, response: Any) -> StructuredAIResponse:
        """Parses the chat-completion object returned by the SDK."""
        choice = response.choices[0]
        token_usage = None
        if getattr(response, "usage", None):
            token_usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            )
        return StructuredAIResponse(
            content=choice.message.content or "",
            token_usage=token_usage,
            model_name=getattr(response, "model", None),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    async def invoke(self, credential: Credential, target: Optional[CallTarget], request: Any) -> StructuredAIResponse:
        """Sends ``request["messages"]`` (or a bare message list) to ``target``."""
        messages: List[ChatMessage] = request["messages"] if isinstance(request, dict) else request
        model = target or self.default_model
        client = self._client_for(credential)

        logger.debug(f"Sending {len(messages)} messages to {self.provider} model: {model}")
        start_time = time.perf_counter()
        completion = await client.chat.completions.create(
            model=model,
            messages=messages,
            **self.request_options,
        )
        latency_ms = (time.perf_counter() - start_time) * 1000

        structured_response = self._parse_response(completion)
        structured_response.latency_ms = latency_ms
        logger.debug(f"Received response from {self.provider} in {latency_ms:.2f}ms. Usage: {structured_response.token_usage}")
        return structured_response

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


class OpenAITextTransport(_ChatCompletionTransport):
    """Transport for OpenAI-compatible chat APIs (including OpenAI-style gateways)."""

    DEFAULT_MODEL = "gpt-4o-mini"
    provider = "openai"

    def _create_client(self, credential: Credential) -> AsyncOpenAI:
        # Retries are owned by the orchestrator
        return AsyncOpenAI(api_key=credential, base_url=self.base_url, max_retries=0)


class GroqTextTransport(_ChatCompletionTransport):
    """Transport for the Groq chat API."""

    DEFAULT_MODEL = "llama-3.3-70b-versatile"
    provider = "groq"

    def _create_client(self, credential: Credential) -> AsyncGroq:
        return AsyncGroq(api_key=credential, base_url=self.base_url, max_retries=0)
