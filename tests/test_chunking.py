"""Tests for token-bounded chunking."""

import pytest

from llm_compact.compaction.chunking import chunk_turns, format_turn, format_turns, has_fenced_code_block
from llm_compact.models.conversation import Turn


def _turn(text: str, role: str = "user") -> Turn:
    return Turn(role=role, text=text)


def _plain(n: int) -> Turn:
    # "[USER]: " + 90 chars + "\n\n" costs exactly 100 with a len() estimator
    return _turn(str(n) * 90)


def _assert_partition(chunks, turn_count: int) -> None:
    assert chunks[0].start_turn == 0
    assert chunks[-1].end_turn == turn_count - 1
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.start_turn == prev.end_turn + 1
    assert [c.index for c in chunks] == list(range(len(chunks)))


def test_format_turn_uses_upper_role_prefix() -> None:
    assert format_turn(_turn("hi", "assistant")) == "[ASSISTANT]: hi"
    assert format_turns([_turn("a"), _turn("b", "assistant")]) == "[USER]: a\n\n[ASSISTANT]: b"


def test_chunks_respect_target() -> None:
    turns = [_plain(i) for i in range(5)]
    chunks = chunk_turns(turns, 250, estimator=len)

    assert [(c.start_turn, c.end_turn) for c in chunks] == [(0, 1), (2, 3), (4, 4)]
    _assert_partition(chunks, 5)
    assert chunks[0].content == format_turns(turns[:2])
    assert chunks[0].token_estimate == len(chunks[0].content)


def test_code_block_turn_is_absorbed_up_to_overflow() -> None:
    code = "```" + "c" * 84 + "```"
    turns = [_plain(0), _plain(1), _turn(code), _plain(3), _plain(4)]
    chunks = chunk_turns(turns, 250, estimator=len)

    assert [(c.start_turn, c.end_turn) for c in chunks] == [(0, 2), (3, 4)]
    assert has_fenced_code_block(chunks[0].content)


def test_code_block_turn_splits_once_overflow_reached() -> None:
    code = "```" + "c" * 84 + "```"
    turns = [_plain(0), _plain(1), _turn(code), _turn(code), _plain(4)]
    chunks = chunk_turns(turns, 250, estimator=len)

    # 300 is still under 1.5 * 250, so the second code turn joins too; at 400
    # the overflow allowance is used up.
    assert [(c.start_turn, c.end_turn) for c in chunks] == [(0, 3), (4, 4)]


def test_oversized_turn_gets_its_own_chunk() -> None:
    turns = [_plain(0), _turn("z" * 1000), _plain(2)]
    chunks = chunk_turns(turns, 150, estimator=len)

    assert [(c.start_turn, c.end_turn) for c in chunks] == [(0, 0), (1, 1), (2, 2)]
    assert chunks[1].token_estimate > 150


def test_every_turn_lands_in_exactly_one_chunk() -> None:
    turns = [_turn("w" * (20 + (i * 37) % 200)) for i in range(40)]
    chunks = chunk_turns(turns, 300)

    _assert_partition(chunks, 40)
    assert sum(c.turn_count for c in chunks) == 40


def test_empty_transcript_has_no_chunks() -> None:
    assert chunk_turns([], 100) == []


def test_non_positive_target_is_rejected() -> None:
    with pytest.raises(ValueError):
        chunk_turns([_plain(0)], 0)


def test_unclosed_fence_is_not_a_code_block() -> None:
    assert not has_fenced_code_block("```python\nprint(1)")
    assert has_fenced_code_block("see\n```\nx = 1\n```\n")
