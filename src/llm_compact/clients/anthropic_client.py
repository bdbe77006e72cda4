"""Anthropic Messages API client."""

from __future__ import annotations

import logging
from typing import Any, Iterator, List

from anthropic import Anthropic, APIError

from ..generation.models import TokenUsage
from ..models.message import Message
from .base import Completion, LLMClient, Provider, StreamChunk

logger = logging.getLogger(__name__)

# The Messages API requires max_tokens on every request.
DEFAULT_MAX_TOKENS = 4096


def _split_system(messages: List[Message]) -> tuple[str | None, list[dict[str, Any]]]:
    """Anthropic takes the system prompt as a top-level field, not a message."""
    system_parts = [m.content for m in messages if m.role == "system" and m.content]
    chat = [m.to_api_format() for m in messages if m.role != "system"]
    return ("\n\n".join(system_parts) or None), chat


class AnthropicClient(LLMClient):
    SUPPORTS_STREAMING = True

    def __init__(self, model: str, client: Anthropic):
        super().__init__(model, "anthropic")
        self.client = client

    def _build_payload(
        self,
        messages: List[Message],
        temperature: float | None,
        max_tokens: int | None,
        timeout: float | None,
    ) -> dict[str, Any]:
        system, chat = _split_system(messages)
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": chat,
            "max_tokens": int(max_tokens or DEFAULT_MAX_TOKENS),
        }
        if system:
            payload["system"] = system
        if temperature is not None:
            payload["temperature"] = float(temperature)
        if timeout is not None:
            payload["timeout"] = timeout
        return payload

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
        # No native JSON mode; the prompt already asks for a bare object.
        payload = self._build_payload(messages, temperature, max_tokens, timeout)
        try:
            response = self.client.messages.create(**payload)
        except APIError as e:
            logger.warning("anthropic error on %s: %s", self.model, e)
            raise
        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            usage=TokenUsage(
                input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            ),
        )

    def stream(
        self,
        messages: List[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Iterator[StreamChunk]:
        payload = self._build_payload(messages, temperature, max_tokens, timeout)
        with self.client.messages.stream(**payload) as stream:
            for text in stream.text_stream:
                if text:
                    yield StreamChunk(text=text)
            final = stream.get_final_message()
        usage = getattr(final, "usage", None)
        if usage is not None:
            yield StreamChunk(
                usage=TokenUsage(
                    input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                    output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
                )
            )


class AnthropicProvider(Provider):
    provider_id = "anthropic"

    def __init__(self, api_key: str, timeout: float | None = None):
        super().__init__(api_key, timeout=timeout)
        kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if timeout is not None:
            kwargs["timeout"] = timeout
        self.client = Anthropic(**kwargs)

    def create_model(self, model_id: str) -> LLMClient:
        return AnthropicClient(model_id, self.client)
