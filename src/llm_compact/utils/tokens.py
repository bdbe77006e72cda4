"""Character-count token estimation.

Every budget check in the pipeline (chunk sizing, strategy thresholds,
truncation) goes through this heuristic so the numbers stay comparable.
"""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 3.5


def estimate_tokens(text: str | None, chars_per_token: float = CHARS_PER_TOKEN) -> int:
    """Approximate token count: ``ceil(len(text) / chars_per_token)``."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


class TokenEstimator:
    """Injectable estimator bound to one characters-per-token ratio."""

    def __init__(self, chars_per_token: float = CHARS_PER_TOKEN):
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str | None) -> int:
        return estimate_tokens(text, self.chars_per_token)

    def __call__(self, text: str | None) -> int:
        return self.estimate(text)

    @classmethod
    def from_config(cls, config) -> "TokenEstimator":
        return cls(getattr(config, "CHARS_PER_TOKEN", CHARS_PER_TOKEN))
