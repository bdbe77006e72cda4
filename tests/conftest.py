"""Shared fixtures: scripted providers, an in-memory store and a quiet config."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import pytest

from llm_compact.clients.base import Completion, LLMClient, Provider, StreamChunk
from llm_compact.clients.registry import ProviderRegistry
from llm_compact.generation.facade import GenerationFacade
from llm_compact.generation.models import TokenUsage
from llm_compact.models.conversation import ConversationInput, Turn
from llm_compact.storage.credentials import StaticCredentialStore
from llm_compact.storage.store import CompactStore
from llm_compact.utils.config import Config

# A responder gets the last user message and the call record and returns the
# text to emit (a list of deltas for streaming), or raises.
Responder = Callable[[str, "Call"], Any]


@dataclass
class Call:
    provider_id: str
    model: str
    prompt: str
    system: str | None
    kwargs: dict[str, Any] = field(default_factory=dict)


class CallLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: list[Call] = []

    def add(self, call: Call) -> None:
        with self._lock:
            self.calls.append(call)

    def for_provider(self, provider_id: str) -> list[Call]:
        return [c for c in self.calls if c.provider_id == provider_id]

    def __len__(self) -> int:
        return len(self.calls)


class ScriptedClient(LLMClient):
    SUPPORTS_STREAMING = True

    def __init__(self, model: str, provider_id: str, responder: Responder, log: CallLog):
        super().__init__(model, provider_id)
        self.responder = responder
        self.log = log

    def _call(self, messages, **kwargs) -> tuple[Call, Any]:
        system = next((m.content for m in messages if m.role == "system"), None)
        prompt = next((m.content for m in reversed(messages) if m.role == "user"), "")
        call = Call(self.provider_id, self.model, prompt, system, kwargs)
        self.log.add(call)
        return call, self.responder(prompt, call)

    def complete(self, messages, *, temperature=None, max_tokens=None, json_mode=False, timeout=None, **kwargs):
        _, output = self._call(
            messages, temperature=temperature, max_tokens=max_tokens, json_mode=json_mode, timeout=timeout
        )
        text = "".join(output) if isinstance(output, list) else str(output)
        return Completion(text=text, usage=TokenUsage(input_tokens=10, output_tokens=5))

    def stream(self, messages, *, temperature=None, max_tokens=None, timeout=None, **kwargs):
        _, output = self._call(messages, temperature=temperature, max_tokens=max_tokens, timeout=timeout)
        deltas = output if isinstance(output, list) else [str(output)]
        for delta in deltas:
            if isinstance(delta, BaseException):
                raise delta
            yield StreamChunk(text=delta)
        yield StreamChunk(usage=TokenUsage(input_tokens=10, output_tokens=len(deltas)))


class ScriptedProvider(Provider):
    def __init__(self, api_key: str, timeout: float | None = None, *, provider_id: str, responder: Responder, log: CallLog):
        self.provider_id = provider_id
        super().__init__(api_key, timeout)
        self.responder = responder
        self.log = log

    def create_model(self, model_id: str) -> LLMClient:
        return ScriptedClient(model_id, self.provider_id, self.responder, self.log)


def scripted_factory(provider_id: str, responder: Responder, log: CallLog):
    def factory(api_key: str, timeout: float | None = None) -> Provider:
        return ScriptedProvider(api_key, timeout, provider_id=provider_id, responder=responder, log=log)

    return factory


class FacadeKit:
    """A façade over scripted providers plus everything a test needs to inspect it."""

    def __init__(self, responders: dict[str, Responder], keys: dict[str, str] | None = None, usage_recorder=None):
        self.log = CallLog()
        self.sleeps: list[float] = []
        self.credentials = StaticCredentialStore(keys if keys is not None else {pid: f"key-{pid}" for pid in responders})
        self.registry = ProviderRegistry(
            self.credentials,
            factories={pid: scripted_factory(pid, r, self.log) for pid, r in responders.items()},
        )
        self.facade = GenerationFacade(self.registry, usage_recorder, sleep=self.sleeps.append)


@pytest.fixture
def make_kit() -> Callable[..., FacadeKit]:
    return FacadeKit


@pytest.fixture
def store() -> CompactStore:
    return CompactStore("sqlite://")


@pytest.fixture
def make_config() -> Callable[..., Config]:
    def build(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "MODELS_CONFIG_PATH": "/nonexistent/llm-compact/models.yaml",
            "DATABASE_URL": "sqlite://",
            "RETRY_DELAY_BASE_MS": 0,
            "REQUEST_TIMEOUT_SECONDS": 5.0,
        }
        values.update(overrides)
        return Config(_env_file=None, **values)

    return build


def make_conversation(
    turn_count: int,
    text: str = "x" * 100,
    workspace_id: str = "ws",
    conversation_id: str = "conv",
    title: str = "Refactor the parser",
) -> ConversationInput:
    turns = [Turn(role="user" if i % 2 == 0 else "assistant", text=f"{i}: {text}") for i in range(turn_count)]
    return ConversationInput(workspace_id=workspace_id, conversation_id=conversation_id, title=title, turns=turns)


@pytest.fixture
def conversation_factory() -> Callable[..., ConversationInput]:
    return make_conversation
