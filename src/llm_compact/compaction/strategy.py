from __future__ import annotations

from enum import Enum

FULL_CONTEXT_THRESHOLD = 100_000
HIERARCHICAL_THRESHOLD = 500_000


class Strategy(str, Enum):
    """Processing mode, ordered by the size of input it handles."""
    FULL_CONTEXT = "full_context"
    CHUNKED_PARALLEL = "chunked_parallel"
    HIERARCHICAL = "hierarchical"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {
    Strategy.FULL_CONTEXT: 0,
    Strategy.CHUNKED_PARALLEL: 1,
    Strategy.HIERARCHICAL: 2,
}


def select_strategy(
    total_tokens: int,
    full_context_threshold: int = FULL_CONTEXT_THRESHOLD,
    hierarchical_threshold: int = HIERARCHICAL_THRESHOLD,
) -> Strategy:
    if full_context_threshold > hierarchical_threshold:
        raise ValueError("full_context_threshold must not exceed hierarchical_threshold")
    if total_tokens < full_context_threshold:
        return Strategy.FULL_CONTEXT
    if total_tokens < hierarchical_threshold:
        return Strategy.CHUNKED_PARALLEL
    return Strategy.HIERARCHICAL
