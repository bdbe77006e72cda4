"""Provider registration table and the TTL-cached provider registry.

Builtin provider families are registered on import. A ``ProviderRegistry``
belongs to one façade; it builds ``Provider`` instances from the table for
every credentialed provider and keeps them for a short TTL so credential
changes are picked up without a restart.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Mapping, Protocol

from ..generation.models import PROVIDER_PRIORITY
from .base import Provider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., Provider]

_PROVIDERS: dict[str, ProviderFactory] = {}


def register_provider(provider_id: str, factory: ProviderFactory) -> None:
    """Register a provider factory by id.

    The factory is called as ``factory(api_key, timeout=...)``.
    """
    _PROVIDERS[provider_id] = factory


def list_providers() -> dict[str, ProviderFactory]:
    """Return a copy of the registered provider factories."""
    return _PROVIDERS.copy()


class CredentialSource(Protocol):
    def get_credential(self, provider_id: str) -> str | None: ...


class ProviderRegistry:
    """Credentialed provider instances, cached as one immutable snapshot.

    Readers take a reference to the current snapshot dict; a refresh builds
    a new dict and swaps it in under the lock, so a concurrent reader never
    sees a half-built cache.
    """

    def __init__(
        self,
        credentials: CredentialSource,
        *,
        clock: Callable[[], float] = time.monotonic,
        ttl_seconds: float = 5.0,
        factories: Mapping[str, ProviderFactory] | None = None,
        priority: tuple[str, ...] = PROVIDER_PRIORITY,
        timeout: float | None = None,
    ):
        self.credentials = credentials
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self._factories = dict(factories) if factories is not None else None
        self.priority = priority
        self.timeout = timeout
        self._lock = threading.Lock()
        # (providers, loaded_at), replaced in a single assignment.
        self._cache: tuple[dict[str, Provider], float] | None = None

    @property
    def factories(self) -> dict[str, ProviderFactory]:
        return self._factories if self._factories is not None else list_providers()

    def _ordered_ids(self) -> list[str]:
        known = self.factories
        ordered = [pid for pid in self.priority if pid in known]
        ordered.extend(pid for pid in known if pid not in ordered)
        return ordered

    def _build_snapshot(self) -> dict[str, Provider]:
        snapshot: dict[str, Provider] = {}
        for provider_id in self._ordered_ids():
            api_key = self.credentials.get_credential(provider_id)
            if not api_key:
                continue
            factory = self.factories[provider_id]
            try:
                snapshot[provider_id] = factory(api_key, timeout=self.timeout)
            except Exception as e:
                logger.warning("Could not initialize provider %s: %s", provider_id, e)
        return snapshot

    def _fresh(self, cache: tuple[dict[str, Provider], float] | None, now: float) -> dict[str, Provider] | None:
        if cache is not None and now - cache[1] < self.ttl_seconds:
            return cache[0]
        return None

    def _current(self) -> dict[str, Provider]:
        now = self.clock()
        snapshot = self._fresh(self._cache, now)
        if snapshot is not None:
            return snapshot
        with self._lock:
            # Another thread may have refreshed while we waited.
            snapshot = self._fresh(self._cache, now)
            if snapshot is not None:
                return snapshot
            fresh = self._build_snapshot()
            self._cache = (fresh, self.clock())
            logger.debug("Provider cache refreshed: %s", list(fresh))
            return fresh

    def get(self, provider_id: str) -> Provider | None:
        return self._current().get(provider_id)

    def available(self) -> list[str]:
        """Credentialed provider ids in priority order."""
        return list(self._current())

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None


def _register_builtins() -> None:
    from .anthropic_client import AnthropicProvider
    from .openai_client import GoogleProvider, OpenAIProvider, OpenRouterProvider

    register_provider("google", GoogleProvider)
    register_provider("anthropic", AnthropicProvider)
    register_provider("openai", OpenAIProvider)
    register_provider("openrouter", OpenRouterProvider)


_register_builtins()
