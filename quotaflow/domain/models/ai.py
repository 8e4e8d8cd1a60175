"""Domain models related to text-generation interactions."""

from typing import Optional, TypedDict
from dataclasses import dataclass


class ChatMessage(TypedDict):
    """Represents a message structure expected by chat-completion APIs."""
    role: str
    content: str


class TokenUsage(TypedDict):
    """Represents token usage information from an AI call."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class StructuredAIResponse:
    """Structured response from a text model, including metadata."""
    content: str
    token_usage: Optional[TokenUsage] = None
    model_name: Optional[str] = None  # Which model generated the response
    finish_reason: Optional[str] = None
    latency_ms: Optional[float] = None  # Filled in by the orchestrator caller
