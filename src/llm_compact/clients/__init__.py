from .base import Completion, LLMClient, Provider, StreamChunk
from .registry import ProviderRegistry, list_providers, register_provider

__all__ = [
    "Completion",
    "LLMClient",
    "Provider",
    "ProviderRegistry",
    "StreamChunk",
    "list_providers",
    "register_provider",
]
