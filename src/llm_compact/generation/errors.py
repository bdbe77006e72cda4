from ..errors import (
    ConfigurationError,
    GenerationCancelledError,
    GenerationError,
    JsonParseError,
    StructuredOutputError,
)

__all__ = [
    "ConfigurationError",
    "GenerationCancelledError",
    "GenerationError",
    "JsonParseError",
    "StructuredOutputError",
]
