"""Credential lookup for upstream providers."""

from __future__ import annotations

from typing import Mapping

from ..utils.config import Config


class EnvCredentialStore:
    """Reads provider keys from the settings object (environment and ``.env``)."""

    def __init__(self, config: Config):
        self.config = config

    def get_credential(self, provider_id: str) -> str | None:
        return self.config.get_api_key(provider_id)


class StaticCredentialStore:
    """In-memory credentials, mainly for tests and embedding."""

    def __init__(self, keys: Mapping[str, str | None] | None = None):
        self._keys = dict(keys or {})

    def set_credential(self, provider_id: str, secret: str | None) -> None:
        self._keys[provider_id] = secret

    def get_credential(self, provider_id: str) -> str | None:
        value = self._keys.get(provider_id)
        return value.strip() if value and value.strip() else None
