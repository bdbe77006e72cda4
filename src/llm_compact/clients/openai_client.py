"""OpenAI-compatible API client.

Supports the OpenAI API and any OpenAI-compatible endpoint (Gemini's
compatibility layer, OpenRouter, local servers) via ``base_url``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, List

import httpx
from openai import OpenAI, OpenAIError

from ..generation.models import TokenUsage
from ..models.message import Message
from .base import Completion, LLMClient, Provider, StreamChunk

logger = logging.getLogger(__name__)


class OpenAIClient(LLMClient):
    """Client for one model on the OpenAI API or an OpenAI-compatible endpoint."""
    SUPPORTS_STREAMING = True

    _TOKEN_PARAM_CANDIDATES = ("max_tokens", "max_completion_tokens")

    def __init__(self, model: str, client: OpenAI, provider_id: str = "openai"):
        super().__init__(model, provider_id)
        self.client = client

    def _model_supports_temperature(self) -> bool:
        """Reasoning and preview models reject temperature."""
        unsupported_patterns = (
            "-chat-latest",
            "-search-preview",
            "-audio-preview",
        )
        unsupported_prefixes = ("o1", "o3", "o4")

        name = self.model.split("/")[-1]
        for pattern in unsupported_patterns:
            if pattern in name:
                return False
        if name.startswith(unsupported_prefixes):
            return False
        return True

    def _model_requires_max_completion_tokens(self) -> bool:
        """Check if the model requires max_completion_tokens instead of max_tokens."""
        if self.provider_id != "openai":
            return False
        legacy_models = (
            "gpt-3.5-turbo",
            "gpt-4-turbo",
            "gpt-4-0314",
            "gpt-4-0613",
            "gpt-4-32k",
        )
        if self.model in legacy_models or self.model == "gpt-4":
            return False
        if self.model.startswith(("gpt-3.5-", "gpt-4-turbo-", "gpt-4-32k-")):
            return False
        return True

    def _initial_token_param_key(self) -> str:
        if self._model_requires_max_completion_tokens():
            return "max_completion_tokens"
        return "max_tokens"

    def _set_token_param(self, payload: dict, key: str, value: int) -> dict:
        for k in self._TOKEN_PARAM_CANDIDATES:
            payload.pop(k, None)
        payload[key] = value
        return payload

    def _build_payload(
        self,
        messages: List[Message],
        *,
        stream: bool,
        temperature: float | None,
        max_tokens: int | None,
        json_mode: bool = False,
        timeout: float | None = None,
    ) -> dict:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_api_format() for m in messages],
            "stream": stream,
        }
        if max_tokens:
            self._set_token_param(payload, self._initial_token_param_key(), int(max_tokens))
        if temperature is not None and self._model_supports_temperature():
            payload["temperature"] = float(temperature)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if timeout is not None:
            payload["timeout"] = timeout
        return payload

    def _chat_create_with_fallback(self, payload: dict):
        """Call chat.completions.create, retrying once with the other token param name.

        Some models reject ``max_tokens`` and others ``max_completion_tokens``;
        the error body names the offending parameter.
        """
        current_key = next((k for k in self._TOKEN_PARAM_CANDIDATES if k in payload), None)
        try:
            return self.client.chat.completions.create(**payload)
        except OpenAIError as e:
            self._log_openai_error(e)
            msg = str(e).lower()
            if current_key and "unsupported parameter" in msg and current_key in msg:
                other_key = next(k for k in self._TOKEN_PARAM_CANDIDATES if k != current_key)
                retry_payload = self._set_token_param(dict(payload), other_key, payload[current_key])
                logger.debug("Retrying %s with %s instead of %s", self.model, other_key, current_key)
                return self.client.chat.completions.create(**retry_payload)
            if "temperature" in msg and ("unsupported" in msg or "does not support" in msg):
                retry_payload = dict(payload)
                retry_payload.pop("temperature", None)
                return self.client.chat.completions.create(**retry_payload)
            raise

    def _log_openai_error(self, err: Exception) -> None:
        response = getattr(err, "response", None)
        status = getattr(response, "status_code", "unknown") if response is not None else "unknown"
        body = ""
        if isinstance(response, httpx.Response):
            try:
                body = response.text
            except httpx.ResponseNotRead:
                body = "<unread response body>"
        if body and len(body) > 2000:
            body = body[:2000] + "...(truncated)"
        logger.warning(
            "%s error on %s (status=%s)%s",
            self.provider_id,
            self.model,
            status,
            f". Response body: {body}" if body else "",
        )

    @staticmethod
    def _usage_from(raw_usage: Any) -> TokenUsage:
        if raw_usage is None:
            return TokenUsage()
        return TokenUsage(
            input_tokens=int(getattr(raw_usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(raw_usage, "completion_tokens", 0) or 0),
        )

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
        payload = self._build_payload(
            messages,
            stream=False,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
            timeout=timeout,
        )
        completion = self._chat_create_with_fallback(payload)
        text = ""
        if completion.choices:
            text = completion.choices[0].message.content or ""
        return Completion(text=text, usage=self._usage_from(getattr(completion, "usage", None)))

    def stream(
        self,
        messages: List[Message],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Iterator[StreamChunk]:
        payload = self._build_payload(
            messages,
            stream=True,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        stream = self._chat_create_with_fallback(payload)
        try:
            for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    yield StreamChunk(usage=self._usage_from(usage))
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield StreamChunk(text=delta.content)
        except Exception as e:
            if self._is_stream_disconnect_error(e):
                logger.warning("%s stream for %s disconnected early: %s", self.provider_id, self.model, e)
                return
            raise

    def _is_stream_disconnect_error(self, err: Exception) -> bool:
        """Detect transport-level stream disconnects from OpenAI-compatible backends."""
        seen: set[int] = set()
        current: BaseException | None = err
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            msg = str(current).lower()
            if (
                "incomplete chunked read" in msg
                or "peer closed connection without sending complete message body" in msg
                or current.__class__.__name__ == "RemoteProtocolError"
            ):
                return True
            current = current.__cause__ or current.__context__
        return False


class OpenAIProvider(Provider):
    """OpenAI API (or any OpenAI-compatible endpoint via ``base_url``)."""

    provider_id = "openai"
    BASE_URL: str | None = None

    def __init__(self, api_key: str, timeout: float | None = None, base_url: str | None = None):
        super().__init__(api_key, timeout=timeout)
        self.base_url = base_url or self.BASE_URL
        kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if self.base_url:
            kwargs["base_url"] = self.base_url
            logger.debug("%s client using endpoint: %s", self.provider_id, self.base_url)
        # Retries are the façade's job, so the SDK's own retry loop is disabled.
        self.client = OpenAI(**kwargs)

    def create_model(self, model_id: str) -> LLMClient:
        return OpenAIClient(model_id, self.client, provider_id=self.provider_id)


class GoogleProvider(OpenAIProvider):
    """Gemini through Google's OpenAI-compatible endpoint."""

    provider_id = "google"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter, which is OpenAI-compatible and routes ``vendor/model`` ids."""

    provider_id = "openrouter"
    BASE_URL = "https://openrouter.ai/api/v1"
