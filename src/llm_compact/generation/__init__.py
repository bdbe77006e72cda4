"""Generation value types.

The façade itself lives in ``llm_compact.generation.facade``; it is not
re-exported here because the clients package imports these value types.
"""

from .models import (
    DEFAULT_MODELS,
    MODEL_PRICING,
    PROVIDER_PRIORITY,
    GenerationRequest,
    GenerationResult,
    TokenUsage,
    calculate_cost,
    format_model_id,
    get_default_model,
    parse_model_id,
)

__all__ = [
    "DEFAULT_MODELS",
    "MODEL_PRICING",
    "PROVIDER_PRIORITY",
    "GenerationRequest",
    "GenerationResult",
    "TokenUsage",
    "calculate_cost",
    "format_model_id",
    "get_default_model",
    "parse_model_id",
]
