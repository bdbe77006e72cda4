"""Split a transcript into token-bounded chunks without breaking code blocks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Sequence

from ..models.conversation import Turn
from ..utils.tokens import estimate_tokens

TURN_SEPARATOR = "\n\n"
CODE_BLOCK_OVERFLOW = 1.5

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")


@dataclass(frozen=True)
class Chunk:
    index: int
    start_turn: int
    end_turn: int
    content: str
    token_estimate: int

    @property
    def turn_count(self) -> int:
        return self.end_turn - self.start_turn + 1


def format_turn(turn: Turn) -> str:
    return f"[{turn.role.upper()}]: {turn.text}"


def format_turns(turns: Sequence[Turn]) -> str:
    return TURN_SEPARATOR.join(format_turn(t) for t in turns)


def has_fenced_code_block(text: str) -> bool:
    return bool(_FENCED_CODE_RE.search(text or ""))


def chunk_turns(
    turns: Sequence[Turn],
    target_tokens: int,
    estimator: Callable[[str], int] | None = None,
) -> list[Chunk]:
    """Greedy, order-preserving partition of ``turns``.

    A turn that would push the current chunk past ``target_tokens`` starts a
    new chunk, unless it carries a fenced code block and the chunk is still
    under ``1.5 * target_tokens``, in which case it is absorbed. Turns are
    never split, so one oversized turn becomes its own chunk.
    """
    if target_tokens <= 0:
        raise ValueError("target_tokens must be positive")
    estimate = estimator or estimate_tokens

    chunks: list[Chunk] = []
    current: list[Turn] = []
    current_start = 0
    current_tokens = 0

    def flush() -> None:
        content = format_turns(current)
        chunks.append(
            Chunk(
                index=len(chunks),
                start_turn=current_start,
                end_turn=current_start + len(current) - 1,
                content=content,
                token_estimate=estimate(content),
            )
        )

    for position, turn in enumerate(turns):
        cost = estimate(format_turn(turn) + TURN_SEPARATOR)

        if current_tokens + cost <= target_tokens or not current:
            current.append(turn)
            current_tokens += cost
            continue

        if has_fenced_code_block(turn.text) and current_tokens < target_tokens * CODE_BLOCK_OVERFLOW:
            current.append(turn)
            current_tokens += cost
            continue

        flush()
        current = [turn]
        current_start = position
        current_tokens = cost

    if current:
        flush()
    return chunks
