"""End-to-end compaction sessions against scripted providers and an in-memory store."""

import json
import re

import pytest

from llm_compact.compaction.orchestrator import CompactionOrchestrator, map_progress, split_into_pseudo_turns
from llm_compact.errors import CompactionCancelledError, GenerationError, SessionAlreadyActiveError
from llm_compact.models.conversation import ConversationInput, Turn
from llm_compact.storage.tables import CompactStep, SessionStatus
from llm_compact.storage.turn_source import JsonFileTurnSource

_SEGMENT_RE = re.compile(r"Segment (\d+) of (\d+)")


def _is_map(prompt: str) -> bool:
    return prompt.startswith("Summarize this segment")


def _is_reduce(prompt: str) -> bool:
    return prompt.startswith("The notes below")


def _is_full(prompt: str) -> bool:
    return prompt.startswith("Compress the conversation")


def compact_responder(reduce_outputs=("REDUCED SUMMARY",)):
    reduces = list(reduce_outputs)

    def responder(prompt, call):
        if _is_map(prompt):
            return f"summary {_SEGMENT_RE.search(prompt).group(1)}"
        if _is_reduce(prompt):
            return reduces.pop(0) if len(reduces) > 1 else reduces[0]
        if _is_full(prompt):
            return "FULL SUMMARY"
        raise AssertionError(f"unexpected prompt: {prompt[:60]}")

    return responder


class _ProgressLog:
    def __init__(self) -> None:
        self.values: list[int] = []
        self.steps: list[str | None] = []

    def __call__(self, session) -> None:
        self.values.append(session.progress)
        self.steps.append(session.current_step.value if session.current_step else None)


def _chunked_config(make_config, **overrides):
    values = dict(FULL_CONTEXT_THRESHOLD=100, HIERARCHICAL_THRESHOLD=1_000_000, CHUNK_TARGET_TOKENS=100, RETRY_BUDGET=2)
    values.update(overrides)
    return make_config(**values)


def test_small_conversation_uses_one_full_context_call(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()}, usage_recorder=store)
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())
    progress = _ProgressLog()

    result, session = orchestrator.start_session(conversation_factory(4), on_progress=progress)

    assert result.content == "FULL SUMMARY"
    assert result.strategy_used == "full_context"
    assert result.chunk_count == 1
    assert len(kit.log) == 1
    assert kit.log.calls[0].kwargs["max_tokens"] == 16384
    assert kit.log.calls[0].kwargs["temperature"] == 0.2

    assert session.status == SessionStatus.COMPLETED
    assert session.progress == 100
    assert session.result_id == result.id
    assert session.completed_at is not None
    assert progress.values == [0, 50, 95, 100]

    meta = result.run_metadata
    assert meta["passes"] == 1
    assert meta["generation_calls"] == 1
    assert meta["turn_count"] == 4
    assert meta["provider"] == "google"
    assert result.original_token_count > 0
    assert result.compression_ratio == pytest.approx(result.compacted_token_count / result.original_token_count)

    assert [u.feature for u in store.list_usage()] == ["compact"]


def test_chunked_conversation_maps_in_order_then_reduces(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, _chunked_config(make_config))
    progress = _ProgressLog()

    result, session = orchestrator.start_session(conversation_factory(12), on_progress=progress)

    map_calls = [c for c in kit.log.calls if _is_map(c.prompt)]
    reduce_calls = [c for c in kit.log.calls if _is_reduce(c.prompt)]
    total = len(map_calls)
    assert total >= 2
    assert [int(_SEGMENT_RE.search(c.prompt).group(1)) for c in map_calls] == list(range(1, total + 1))
    assert all(c.kwargs["max_tokens"] == 4096 for c in map_calls)
    assert len(reduce_calls) == 1
    assert reduce_calls[0].kwargs["max_tokens"] == 16384

    reduce_prompt = reduce_calls[0].prompt
    positions = [reduce_prompt.index(f"### Segment {i}\nsummary {i}") for i in range(1, total + 1)]
    assert positions == sorted(positions)
    assert "\n\n---\n\n### Segment 2" in reduce_prompt

    assert result.strategy_used == "chunked_parallel"
    assert result.chunk_count == total
    assert result.content == "REDUCED SUMMARY"
    assert session.chunks_total == total
    assert session.chunks_processed == total

    assert progress.values == sorted(progress.values)
    assert progress.values[-1] == 100
    assert 10 in progress.values and 80 in progress.values and 95 in progress.values
    assert "mapping" in progress.steps and "reducing" in progress.steps


def test_parallel_map_keeps_chunk_order(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, _chunked_config(make_config), map_concurrency=4)
    progress = _ProgressLog()

    result, session = orchestrator.start_session(conversation_factory(20), on_progress=progress)

    reduce_prompt = next(c.prompt for c in kit.log.calls if _is_reduce(c.prompt))
    total = result.chunk_count
    positions = [reduce_prompt.index(f"### Segment {i}\nsummary {i}") for i in range(1, total + 1)]
    assert positions == sorted(positions)
    assert session.chunks_processed == total
    assert progress.values == sorted(progress.values)


def test_hierarchical_runs_a_second_pass_on_a_large_summary(make_kit, conversation_factory, make_config, store) -> None:
    long_reduce = "\n\n".join(f"paragraph {i} " + "y" * 300 for i in range(4))
    kit = make_kit({"google": compact_responder([long_reduce, "FINAL SUMMARY"])})
    config = make_config(
        FULL_CONTEXT_THRESHOLD=50,
        HIERARCHICAL_THRESHOLD=200,
        CHUNK_TARGET_TOKENS=100,
        HIERARCHICAL_MAX_EXTRA_PASSES=1,
    )
    orchestrator = CompactionOrchestrator(kit.facade, store, config)
    progress = _ProgressLog()

    result, session = orchestrator.start_session(conversation_factory(12), on_progress=progress)

    reduce_calls = [c for c in kit.log.calls if _is_reduce(c.prompt)]
    assert len(reduce_calls) == 2
    assert result.strategy_used == "hierarchical"
    assert result.content == "FINAL SUMMARY"
    assert result.run_metadata["passes"] == 2
    # chunk_count reports the first pass
    assert session.chunks_total == result.chunk_count

    assert progress.values == sorted(progress.values)
    second_pass = [v for v in progress.values if 80 < v <= 92]
    assert second_pass and max(second_pass) == 92


def test_hierarchical_skips_second_pass_when_summary_fits_one_chunk(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder(["z" * 300])})
    config = make_config(FULL_CONTEXT_THRESHOLD=50, HIERARCHICAL_THRESHOLD=200, CHUNK_TARGET_TOKENS=100)
    orchestrator = CompactionOrchestrator(kit.facade, store, config)

    result, session = orchestrator.start_session(conversation_factory(12))

    assert len([c for c in kit.log.calls if _is_reduce(c.prompt)]) == 1
    assert result.run_metadata["passes"] == 1
    assert any("skipping further passes" in entry["message"] for entry in session.logs)


def test_active_session_blocks_a_new_one(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())
    store.create_session_if_idle("ws", "conv")

    with pytest.raises(SessionAlreadyActiveError):
        orchestrator.start_session(conversation_factory(4))
    assert len(kit.log) == 0
    assert len(store.list_sessions("ws", "conv")) == 1


def test_generation_failure_marks_session_failed(make_kit, conversation_factory, make_config, store) -> None:
    def always_down(prompt, call):
        raise RuntimeError("upstream 500")

    kit = make_kit({"google": always_down, "openai": always_down})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config(RETRY_BUDGET=1))
    progress = _ProgressLog()

    with pytest.raises(GenerationError):
        orchestrator.start_session(conversation_factory(4), on_progress=progress)

    session = store.list_sessions("ws", "conv")[0]
    assert session.status == SessionStatus.FAILED
    assert "upstream 500" in session.error
    assert session.completed_at is not None
    assert any(entry["level"] == "error" for entry in session.logs)
    assert store.get_result("ws", "conv") is None
    assert len(kit.log) == 1 + 2
    # A failed session does not block a retry.
    assert store.get_active_session("ws", "conv") is None


def test_cancel_during_mapping_stops_the_run(make_kit, conversation_factory, make_config, store) -> None:
    holder: dict = {}
    base = compact_responder()

    def responder(prompt, call):
        if _is_map(prompt) and _SEGMENT_RE.search(prompt).group(1) == "2":
            active = store.get_active_session("ws", "conv")
            holder["cancelled"] = holder["orchestrator"].cancel_session(active.id)
        return base(prompt, call)

    kit = make_kit({"google": responder})
    orchestrator = CompactionOrchestrator(kit.facade, store, _chunked_config(make_config))
    holder["orchestrator"] = orchestrator

    with pytest.raises(CompactionCancelledError):
        orchestrator.start_session(conversation_factory(12))

    assert holder["cancelled"].status == SessionStatus.CANCELLED
    session = store.list_sessions("ws", "conv")[0]
    assert session.status == SessionStatus.CANCELLED
    assert session.error is None
    assert store.get_result("ws", "conv") is None
    assert len([c for c in kit.log.calls if _is_map(c.prompt)]) == 2
    assert not any(_is_reduce(c.prompt) for c in kit.log.calls)


def test_cancel_session_edge_cases(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())

    assert orchestrator.cancel_session("missing") is None

    _, done = orchestrator.start_session(conversation_factory(4))
    assert orchestrator.cancel_session(done.id).status == SessionStatus.COMPLETED

    pending = store.create_session_if_idle("ws", "other")
    cancelled = orchestrator.cancel_session(pending.id)
    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.logs[-1]["message"] == "Session cancelled"


def test_recompaction_overwrites_the_stored_result(make_kit, conversation_factory, make_config, store) -> None:
    outputs = iter(["first", "second"])
    kit = make_kit({"google": lambda prompt, call: next(outputs)})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())

    first, _ = orchestrator.start_session(conversation_factory(4))
    second, _ = orchestrator.start_session(conversation_factory(4))

    assert second.id == first.id
    assert orchestrator.get_result("ws", "conv").content == "second"
    assert len(store.list_sessions("ws", "conv")) == 2


def test_progress_callback_errors_do_not_fail_the_run(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())

    def explode(session) -> None:
        raise RuntimeError("ui went away")

    result, session = orchestrator.start_session(conversation_factory(4), on_progress=explode)
    assert session.status == SessionStatus.COMPLETED
    assert result.content == "FULL SUMMARY"


def test_compact_from_turn_source(tmp_path, make_kit, make_config, store) -> None:
    transcript = {
        "title": "Bubbles",
        "bubbles": [{"type": "user", "text": "fix the build"}, {"type": "ai", "text": "done, see Makefile"}],
    }
    (tmp_path / "team").mkdir()
    (tmp_path / "team" / "c-42.json").write_text(json.dumps(transcript), encoding="utf-8")

    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())
    result, session = orchestrator.compact_from_source(JsonFileTurnSource(tmp_path), "team", "c-42")

    assert (result.workspace_id, result.conversation_id, result.title) == ("team", "c-42", "Bubbles")
    assert "[ASSISTANT]: done, see Makefile" in kit.log.calls[0].prompt

    with pytest.raises(FileNotFoundError):
        orchestrator.compact_from_source(JsonFileTurnSource(tmp_path), "team", "missing")


def test_split_into_pseudo_turns_drops_blank_paragraphs() -> None:
    turns = split_into_pseudo_turns("one\n\n\n\ntwo\n\n  \n\nthree")
    assert [t.text for t in turns] == ["one", "two", "three"]
    assert all(t.role == "assistant" for t in turns)


def test_session_steps_are_recorded(make_kit, conversation_factory, make_config, store) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, _chunked_config(make_config))

    _, session = orchestrator.start_session(conversation_factory(9))

    assert session.current_step == CompactStep.FINALIZING
    messages = [entry["message"] for entry in session.logs]
    assert messages[0] == "Compact session created"
    assert any(m.startswith("Strategy selected: chunked_parallel") for m in messages)
    assert messages[-1] == "Compaction completed"


def test_large_conversation_with_default_thresholds(make_kit, make_config, store) -> None:
    # 60 turns of ~2,500 estimated tokens each, ~150,000 in total
    turns = [Turn(role="user" if i % 2 == 0 else "assistant", text=f"{i} " + "w" * 8740) for i in range(60)]
    conversation = ConversationInput(workspace_id="ws", conversation_id="big", title="Big", turns=turns)
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())

    result, session = orchestrator.start_session(conversation)

    map_calls = [c for c in kit.log.calls if _is_map(c.prompt)]
    assert result.strategy_used == "chunked_parallel"
    assert 140_000 < result.original_token_count < 160_000
    assert result.chunk_count >= 15
    assert len(map_calls) == result.chunk_count
    assert [int(_SEGMENT_RE.search(c.prompt).group(1)) for c in map_calls] == list(range(1, result.chunk_count + 1))
    assert len([c for c in kit.log.calls if _is_reduce(c.prompt)]) == 1
    assert session.status == SessionStatus.COMPLETED


def test_interrupt_closes_session_so_conversation_can_be_compacted_again(
    make_kit, conversation_factory, make_config, store
) -> None:
    state = {"interrupt": True}
    healthy = compact_responder()

    def responder(prompt, call):
        if state["interrupt"]:
            raise KeyboardInterrupt
        return healthy(prompt, call)

    kit = make_kit({"google": responder})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())

    with pytest.raises(KeyboardInterrupt):
        orchestrator.start_session(conversation_factory(4))

    interrupted = store.list_sessions("ws", "conv")[0]
    assert interrupted.status == SessionStatus.CANCELLED
    assert "KeyboardInterrupt" in interrupted.error
    assert interrupted.completed_at is not None
    assert store.get_active_session("ws", "conv") is None

    state["interrupt"] = False
    result, session = orchestrator.start_session(conversation_factory(4))
    assert result.content == "FULL SUMMARY"
    assert session.status == SessionStatus.COMPLETED


def test_cancel_just_before_persisting_saves_nothing(make_kit, conversation_factory, make_config, store, monkeypatch) -> None:
    kit = make_kit({"google": compact_responder()})
    orchestrator = CompactionOrchestrator(kit.facade, store, make_config())
    complete = store.complete_session

    def cancel_then_complete(session_id, result):
        orchestrator.cancel_session(session_id)
        return complete(session_id, result)

    monkeypatch.setattr(store, "complete_session", cancel_then_complete)

    with pytest.raises(CompactionCancelledError):
        orchestrator.start_session(conversation_factory(4))

    session = store.list_sessions("ws", "conv")[0]
    assert session.status == SessionStatus.CANCELLED
    assert session.result_id is None
    assert store.get_result("ws", "conv") is None


def test_map_progress_rounds_halves_up() -> None:
    assert [map_progress(10, 80, p, 4) for p in range(5)] == [10, 28, 45, 63, 80]
    assert map_progress(80, 90, 1, 4) == 83
    assert map_progress(10, 80, 0, 0) == 10
