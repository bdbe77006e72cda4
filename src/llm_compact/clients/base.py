"""Base classes for upstream LLM clients.

A ``Provider`` wraps one upstream family plus its credentials; its
``create_model`` returns an ``LLMClient`` bound to one model id. The
generation façade only ever talks to these two types.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, List

from ..generation.models import TokenUsage
from ..models.message import Message


@dataclass(frozen=True)
class Completion:
    text: str
    usage: TokenUsage


@dataclass(frozen=True)
class StreamChunk:
    """One streamed delta. ``usage`` is only set on the chunk that carries it."""

    text: str = ""
    usage: TokenUsage | None = None


class LLMClient(ABC):
    """Abstract base class for LLM clients."""
    SUPPORTS_STREAMING = False

    def __init__(self, model: str, provider_id: str):
        self.model = model
        self.provider_id = provider_id

    @abstractmethod
    def complete(
        self,
        messages: List[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Completion:
        """Run one non-streaming generation.

        Args:
            messages: Conversation messages, system prompt first if any.
            temperature: Sampling temperature; ignored by models that reject it.
            max_tokens: Output token cap.
            json_mode: Ask the upstream for a bare JSON object when supported.
            timeout: Per-request timeout in seconds.

        Returns:
            The generated text and token usage.
        """

    def stream(
        self,
        messages: List[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Iterator[StreamChunk]:
        """Stream text deltas.

        Default implementation falls back to a single non-streaming call.
        """
        completion = self.complete(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            **kwargs,
        )
        yield StreamChunk(text=completion.text, usage=completion.usage)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(provider={self.provider_id!r}, model={self.model!r})"


class Provider(ABC):
    """One configured upstream family (client + credentials)."""

    provider_id: str = ""

    def __init__(self, api_key: str, timeout: float | None = None):
        if not api_key:
            raise ValueError(f"{self.provider_id or 'provider'} API key is required but not provided")
        self.api_key = api_key
        self.timeout = timeout

    @abstractmethod
    def create_model(self, model_id: str) -> LLMClient:
        """Return a client bound to ``model_id``."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
