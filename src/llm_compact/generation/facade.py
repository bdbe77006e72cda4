"""Multi-provider generation façade.

Every generation in the pipeline goes through ``GenerationFacade``. A call
resolves a (provider, model) pair, retries it with linear backoff, then
walks the remaining credentialed providers in priority order with a smaller
budget. Structured calls get one more chance as a plain-text call whose
output is repaired and validated locally.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Type, TypeVar

from pydantic import BaseModel

from ..clients.base import LLMClient
from ..clients.registry import ProviderRegistry
from ..errors import (
    ConfigurationError,
    GenerationCancelledError,
    GenerationError,
    StructuredOutputError,
)
from ..shared.logging import EventCategory, EventLevel, count_event, emit_event
from .models import (
    GenerationRequest,
    GenerationResult,
    TokenUsage,
    calculate_cost,
    format_model_id,
    get_default_model,
    parse_model_id,
)
from .structured import parse_structured, schema_instruction

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

ChunkCallback = Callable[[str, bool], None]
AttemptFn = Callable[[LLMClient], "tuple[Any, TokenUsage]"]


class UsageRecorder(Protocol):
    def record_usage(
        self,
        *,
        provider_id: str,
        model_id: str,
        feature: str,
        conversation_id: str | None,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> Any: ...


@dataclass(frozen=True)
class _Target:
    provider_id: str
    model_id: str
    attempts: int


class GenerationFacade:
    """Resolve, retry, fall back, and record usage for one generation call."""

    def __init__(
        self,
        registry: ProviderRegistry,
        usage_recorder: UsageRecorder | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        fallback_retry_budget: int = 2,
        default_timeout: float | None = None,
        model_overrides: dict[str, dict[str, str]] | None = None,
    ):
        self.registry = registry
        self.usage_recorder = usage_recorder
        self.sleep = sleep
        self.fallback_retry_budget = max(1, fallback_retry_budget)
        self.default_timeout = default_timeout
        self.model_overrides = model_overrides or {}

    @classmethod
    def from_config(cls, config, credentials, usage_recorder: UsageRecorder | None = None, **kwargs: Any) -> "GenerationFacade":
        registry = ProviderRegistry(
            credentials,
            ttl_seconds=config.PROVIDER_CACHE_TTL_SECONDS,
            timeout=config.REQUEST_TIMEOUT_SECONDS,
        )
        return cls(
            registry,
            usage_recorder,
            fallback_retry_budget=config.FALLBACK_RETRY_BUDGET,
            default_timeout=config.REQUEST_TIMEOUT_SECONDS,
            model_overrides=config.model_overrides,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def default_model(self, provider_id: str, role: str = "chat") -> str:
        return get_default_model(provider_id, role, self.model_overrides)

    def resolve(self, request: GenerationRequest, available: list[str] | None = None) -> tuple[str, str]:
        """Pick the primary (provider, model) for ``request``.

        Raises:
            ConfigurationError: no provider has credentials.
        """
        available = self.registry.available() if available is None else available
        if not available:
            raise ConfigurationError("No AI provider configured. Add an API key for at least one provider.")

        provider_hint, model_hint = request.provider, request.model
        if model_hint and not provider_hint:
            provider_hint, model_hint = parse_model_id(model_hint)

        if provider_hint and provider_hint in available:
            return provider_hint, model_hint or self.default_model(provider_hint, request.role)
        if provider_hint:
            logger.info("Requested provider %s has no credentials; using defaults", provider_hint)

        provider_id = available[0]
        return provider_id, self.default_model(provider_id, request.role or "chat")

    def _plan(self, request: GenerationRequest) -> list[_Target]:
        available = self.registry.available()
        primary_provider, primary_model = self.resolve(request, available)
        plan = [_Target(primary_provider, primary_model, request.retry_budget)]
        for provider_id in available:
            if provider_id == primary_provider:
                continue
            plan.append(
                _Target(provider_id, self.default_model(provider_id, request.role or "chat"), self.fallback_retry_budget)
            )
        return plan

    # ------------------------------------------------------------------
    # Retry / fallback loop
    # ------------------------------------------------------------------

    @staticmethod
    def _check_cancelled(request: GenerationRequest) -> None:
        if request.cancelled:
            raise GenerationCancelledError("Generation cancelled")

    def _execute(self, request: GenerationRequest, attempt_fn: AttemptFn) -> GenerationResult:
        self._check_cancelled(request)
        plan = self._plan(request)
        failures: list[str] = []
        primary_error: Exception | None = None

        for position, target in enumerate(plan):
            provider = self.registry.get(target.provider_id)
            if provider is None:
                continue
            if position > 0:
                logger.warning(
                    "Falling back to %s (%s) after %d failed attempt(s)",
                    target.provider_id,
                    target.model_id,
                    len(failures),
                )
                emit_event(EventCategory.LLM, "Provider fallback", provider=target.provider_id, model=target.model_id)
                count_event("llm.fallbacks")
            client = provider.create_model(target.model_id)

            for attempt in range(1, target.attempts + 1):
                self._check_cancelled(request)
                try:
                    content, usage = attempt_fn(client)
                except GenerationCancelledError:
                    raise
                except Exception as e:
                    if primary_error is None:
                        primary_error = e
                    failures.append(f"{format_model_id(target.provider_id, target.model_id)}#{attempt}: {e}")
                    count_event("llm.failed_attempts")
                    logger.warning(
                        "Generation attempt %d/%d on %s:%s failed: %s",
                        attempt,
                        target.attempts,
                        target.provider_id,
                        target.model_id,
                        e,
                    )
                    if attempt < target.attempts:
                        self.sleep(request.retry_delay_base_ms * attempt / 1000.0)
                    continue

                result = GenerationResult(
                    content=content,
                    usage=usage,
                    provider_id=target.provider_id,
                    model_id=target.model_id,
                )
                emit_event(
                    EventCategory.LLM,
                    "Generation succeeded",
                    level=EventLevel.DETAIL,
                    provider=target.provider_id,
                    model=target.model_id,
                    attempt=attempt,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                )
                count_event("llm.calls")
                self._record_usage(request, result)
                return result

        raise self._final_error(primary_error, plan[0].provider_id, tuple(failures))

    @staticmethod
    def _final_error(primary_error: Exception | None, provider_id: str, failures: tuple[str, ...]) -> GenerationError:
        if isinstance(primary_error, GenerationError):
            primary_error.attempts = failures
            if primary_error.provider_id is None:
                primary_error.provider_id = provider_id
            return primary_error
        message = str(primary_error) if primary_error is not None else "No provider could be reached"
        error = GenerationError(f"All providers failed: {message}", provider_id=provider_id, attempts=failures)
        error.__cause__ = primary_error
        return error

    def _record_usage(self, request: GenerationRequest, result: GenerationResult) -> None:
        if not request.feature or self.usage_recorder is None:
            return
        cost = calculate_cost(result.model_id, result.usage.input_tokens, result.usage.output_tokens)
        try:
            self.usage_recorder.record_usage(
                provider_id=result.provider_id,
                model_id=result.model_id,
                feature=request.feature,
                conversation_id=request.conversation_id,
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
                cost=cost,
            )
        except Exception as e:
            logger.warning("Failed to record usage for %s: %s", request.feature, e)

    def _timeout(self, request: GenerationRequest) -> float | None:
        return request.timeout_seconds if request.timeout_seconds is not None else self.default_timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate(self, request: GenerationRequest) -> GenerationResult:
        messages = request.to_messages()

        def attempt(client: LLMClient):
            completion = client.complete(
                messages,
                temperature=request.temperature,
                max_tokens=request.max_output_tokens,
                timeout=self._timeout(request),
            )
            return completion.text, completion.usage

        return self._execute(request, attempt)

    def generate_structured(self, request: GenerationRequest, schema: Type[T]) -> GenerationResult:
        """Generate and validate a ``schema`` instance.

        ``result.content`` is the validated model. When every provider fails,
        one plain-text call with a JSON-only instruction is tried and its
        output repaired; if that also fails the structured error is raised.
        """
        instruction = schema_instruction(schema)
        system_prompt = f"{request.system_prompt}\n\n{instruction}" if request.system_prompt else instruction
        messages = request.with_changes(system_prompt=system_prompt).to_messages()

        def attempt(client: LLMClient):
            completion = client.complete(
                messages,
                temperature=request.temperature,
                max_tokens=request.max_output_tokens,
                json_mode=True,
                timeout=self._timeout(request),
            )
            return parse_structured(completion.text, schema), completion.usage

        try:
            return self._execute(request, attempt)
        except (ConfigurationError, GenerationCancelledError):
            raise
        except GenerationError as structured_error:
            logger.warning("Structured generation failed everywhere; trying plain-text JSON fallback")
            fallback_request = request.with_changes(
                system_prompt=f"{system_prompt}\n\nRespond with JSON only.",
                retry_budget=1,
            )
            try:
                text_result = self.generate(fallback_request)
                content = parse_structured(text_result.text, schema)
            except (ConfigurationError, GenerationCancelledError):
                raise
            except GenerationError as fallback_error:
                logger.warning("Plain-text JSON fallback failed: %s", fallback_error)
                raise structured_error
            return GenerationResult(
                content=content,
                usage=text_result.usage,
                provider_id=text_result.provider_id,
                model_id=text_result.model_id,
            )

    def generate_streaming(self, request: GenerationRequest, on_chunk: ChunkCallback) -> GenerationResult:
        """Stream text deltas to ``on_chunk(delta, False)``.

        ``on_chunk("", True)`` is called exactly once when the call ends,
        whether it succeeded, the upstream stopped early, or every attempt
        failed. A failed attempt may already have emitted partial deltas.
        """
        messages = request.to_messages()

        def attempt(client: LLMClient):
            parts: list[str] = []
            usage = TokenUsage()
            for chunk in client.stream(
                messages,
                temperature=request.temperature,
                max_tokens=request.max_output_tokens,
                timeout=self._timeout(request),
            ):
                self._check_cancelled(request)
                if chunk.usage is not None:
                    usage = chunk.usage
                if chunk.text:
                    parts.append(chunk.text)
                    on_chunk(chunk.text, False)
            return "".join(parts), usage

        try:
            return self._execute(request, attempt)
        finally:
            on_chunk("", True)
