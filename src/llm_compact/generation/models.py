"""Value types, default model tables and pricing for the generation façade."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from ..models.message import Message, build_messages

ModelRole = Literal["chat", "title", "compact", "summarization", "overview", "resources"]

PROVIDER_PRIORITY: tuple[str, ...] = ("google", "anthropic", "openai", "openrouter")

DEFAULT_MODELS: dict[str, dict[str, str]] = {
    "google": {
        "chat": "gemini-2.5-flash",
        "title": "gemini-2.0-flash-lite",
        "compact": "gemini-2.0-flash",
        "summarization": "gemini-2.5-flash",
        "overview": "gemini-2.0-flash",
        "resources": "gemini-2.0-flash",
    },
    "anthropic": {
        "chat": "claude-sonnet-4-20250514",
        "title": "claude-3-5-haiku-20241022",
        "compact": "claude-3-5-haiku-20241022",
        "summarization": "claude-3-5-haiku-20241022",
        "overview": "claude-3-5-sonnet-20241022",
        "resources": "claude-3-5-sonnet-20241022",
    },
    "openai": {
        "chat": "gpt-4o",
        "title": "gpt-4o-mini",
        "compact": "gpt-4o-mini",
        "summarization": "gpt-4o-mini",
        "overview": "gpt-4o",
        "resources": "gpt-4o",
    },
    "openrouter": {
        "chat": "openai/gpt-4o",
        "title": "openai/gpt-4o-mini",
        "compact": "openai/gpt-4o-mini",
        "summarization": "openai/gpt-4o-mini",
        "overview": "openai/gpt-4o",
        "resources": "openai/gpt-4o",
    },
}

# USD per million tokens
MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-4o": {"input": 2.5, "output": 10},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "gpt-4.1": {"input": 2, "output": 8},
    "gpt-4.1-mini": {"input": 0.4, "output": 1.6},
    "gemini-2.5-flash": {"input": 0.15, "output": 0.6},
    "gemini-2.5-pro": {"input": 1.25, "output": 5},
    "gemini-2.0-flash": {"input": 0.1, "output": 0.4},
    "gemini-2.0-flash-lite": {"input": 0.075, "output": 0.3},
    "claude-sonnet-4-20250514": {"input": 3, "output": 15},
    "claude-opus-4-20250514": {"input": 15, "output": 75},
    "claude-3-5-sonnet-20241022": {"input": 3, "output": 15},
    "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4},
}


def get_default_model(provider_id: str, role: str = "chat", overrides: dict[str, dict[str, str]] | None = None) -> str:
    if overrides:
        model = overrides.get(provider_id, {}).get(role)
        if model:
            return model
    return DEFAULT_MODELS.get(provider_id, {}).get(role) or DEFAULT_MODELS["google"]["chat"]


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    # OpenRouter ids carry a vendor prefix ("openai/gpt-4o").
    pricing = MODEL_PRICING.get(model) or MODEL_PRICING.get(model.split("/")[-1])
    if not pricing:
        return 0.0
    return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000


def parse_model_id(full_model_id: str) -> tuple[str | None, str]:
    """Split ``"provider:model"`` into its parts; a bare model id has no provider."""
    if ":" in full_model_id:
        provider, model = full_model_id.split(":", 1)
        return provider, model
    return None, full_model_id


def format_model_id(provider_id: str, model_id: str) -> str:
    return f"{provider_id}:{model_id}"


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class GenerationRequest:
    """One generation call. Stateless; the façade never mutates it."""

    prompt: str | None = None
    messages: tuple[Message, ...] | None = None
    system_prompt: str | None = None
    provider: str | None = None
    model: str | None = None
    role: str = "chat"
    temperature: float = 0.4
    max_output_tokens: int | None = None
    retry_budget: int = 3
    retry_delay_base_ms: int = 1000
    feature: str | None = None
    conversation_id: str | None = None
    timeout_seconds: float | None = None
    cancel_event: threading.Event | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.prompt is None and not self.messages:
            raise ValueError("GenerationRequest needs a prompt or messages")
        if self.messages is not None and not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if self.retry_budget < 1:
            raise ValueError("retry_budget must be at least 1")

    def to_messages(self) -> list[Message]:
        history = list(self.messages) if self.messages else [Message("user", self.prompt or "")]
        return build_messages(history, self.system_prompt)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def with_changes(self, **changes: Any) -> "GenerationRequest":
        return replace(self, **changes)


@dataclass(frozen=True)
class GenerationResult:
    content: Any
    usage: TokenUsage
    provider_id: str
    model_id: str

    @property
    def text(self) -> str:
        return self.content if isinstance(self.content, str) else str(self.content)
