"""Tests for session state rules, results, overviews and usage in the store."""

import threading

import pytest

from llm_compact.errors import SessionAlreadyActiveError, SessionStateError
from llm_compact.models.overview import Importance, Overview, Section, SectionType
from llm_compact.storage.store import CompactStore, log_entry
from llm_compact.storage.tables import CompactionResult, CompactStep, SessionStatus


def _result(content: str, **kwargs) -> CompactionResult:
    values = dict(workspace_id="ws", conversation_id="conv", content=content, strategy_used="full_context")
    values.update(kwargs)
    return CompactionResult(**values)


def test_new_session_is_pending(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")

    assert session.status == SessionStatus.PENDING
    assert session.progress == 0
    assert session.logs == []
    assert session.completed_at is None
    assert store.get_active_session("ws", "conv").id == session.id


def test_second_active_session_is_rejected(store: CompactStore) -> None:
    first = store.create_session_if_idle("ws", "conv")
    with pytest.raises(SessionAlreadyActiveError) as excinfo:
        store.create_session_if_idle("ws", "conv")
    assert excinfo.value.conversation_id == "conv"

    # Other conversations are independent.
    store.create_session_if_idle("ws", "other")

    store.update_session(first.id, status=SessionStatus.CANCELLED)
    assert store.create_session_if_idle("ws", "conv").id != first.id
    assert len(store.list_sessions("ws", "conv")) == 2


def test_concurrent_creates_yield_exactly_one_session(store: CompactStore) -> None:
    barrier = threading.Barrier(10)
    created: list[str] = []
    rejected: list[Exception] = []

    def worker() -> None:
        barrier.wait()
        try:
            created.append(store.create_session_if_idle("ws", "race").id)
        except SessionAlreadyActiveError as e:
            rejected.append(e)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(created) == 1
    assert len(rejected) == 9
    assert [s.id for s in store.list_sessions("ws", "race")] == created


def test_illegal_transition_is_rejected(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    with pytest.raises(SessionStateError):
        store.update_session(session.id, status=SessionStatus.COMPLETED)


def test_terminal_state_is_final(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    store.update_session(session.id, status=SessionStatus.PROCESSING, progress=40)
    done = store.update_session(session.id, status=SessionStatus.COMPLETED, progress=100)
    assert done.completed_at is not None
    stamped = done.completed_at

    with pytest.raises(SessionStateError):
        store.update_session(session.id, status=SessionStatus.PROCESSING)

    unchanged = store.update_session(session.id, progress=3, error="late")
    assert unchanged.progress == 100
    assert unchanged.error is None
    assert unchanged.completed_at == stamped
    assert store.get_active_session("ws", "conv") is None


def test_progress_never_regresses_while_processing(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    store.update_session(session.id, status=SessionStatus.PROCESSING, current_step=CompactStep.MAPPING, progress=45)

    assert store.update_session(session.id, progress=30).progress == 45
    assert store.update_session(session.id, progress=250).progress == 100
    assert store.get_session(session.id).current_step == CompactStep.MAPPING


def test_unknown_fields_are_rejected(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    with pytest.raises(ValueError):
        store.update_session(session.id, workspace_id="elsewhere")


def test_missing_session_returns_none(store: CompactStore) -> None:
    assert store.get_session("nope") is None
    assert store.update_session("nope", progress=5) is None
    assert store.append_log("nope", log_entry("info", "x")) is None
    assert store.delete_session("nope") is False


def test_logs_append_in_order(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    store.append_log(session.id, log_entry("info", "first"))
    store.append_log(session.id, log_entry("warning", "second", {"n": 2}))

    logs = store.get_session(session.id).logs
    assert [entry["message"] for entry in logs] == ["first", "second"]
    assert logs[1]["level"] == "warning"
    assert logs[1]["data"] == {"n": 2}
    assert "timestamp" in logs[0]


def test_result_upsert_keeps_one_row_per_conversation(store: CompactStore) -> None:
    first = store.upsert_result(_result("v1", metadata_json='{"passes": 1}'))
    second = store.upsert_result(_result("v2", strategy_used="hierarchical", chunk_count=7))

    assert second.id == first.id
    stored = store.get_result("ws", "conv")
    assert stored.content == "v2"
    assert stored.strategy_used == "hierarchical"
    assert stored.chunk_count == 7
    assert store.get_result_by_id(first.id).content == "v2"

    assert store.delete_result("ws", "conv") is True
    assert store.get_result("ws", "conv") is None
    assert store.delete_result("ws", "conv") is False


def test_result_metadata_accessors() -> None:
    result = _result("x", metadata_json='{"passes": 2}', structured_data_json='{"goal": "ship"}')
    assert result.run_metadata == {"passes": 2}
    assert result.structured_data == {"goal": "ship"}
    assert _result("x").structured_data is None


def test_overview_upsert_replaces_payload(store: CompactStore) -> None:
    section = Section(
        id="s1",
        order=0,
        title="Goal",
        type=SectionType.GOAL,
        description="",
        importance=Importance.HIGH,
        relevant_turn_indices=(0, 1),
        content="Ship the parser.",
    )
    overview = Overview(workspace_id="ws", conversation_id="conv", title="First", summary="", sections=[section])
    store.upsert_overview(overview)
    store.upsert_overview(Overview(workspace_id="ws", conversation_id="conv", title="Second", summary="s", sections=[]))

    record = store.get_overview("ws", "conv")
    assert record.id == overview.id
    assert record.title == "Second"
    assert record.payload["sections"] == []


def test_overview_payload_serializes_enums(store: CompactStore) -> None:
    section = Section(
        id="s1",
        order=0,
        title="Goal",
        type=SectionType.GOAL,
        description="",
        importance=Importance.HIGH,
        relevant_turn_indices=(0, 1),
        content="Ship it.",
    )
    store.upsert_overview(Overview(workspace_id="ws", conversation_id="c2", title="T", summary="", sections=[section]))

    payload = store.get_overview("ws", "c2").payload
    assert payload["sections"][0]["type"] == "goal"
    assert payload["sections"][0]["importance"] == "high"
    assert payload["sections"][0]["relevant_turn_indices"] == [0, 1]


def test_usage_summary_groups_by_provider_and_model(store: CompactStore) -> None:
    for provider, model, cost in (("google", "gemini-2.0-flash", 0.01), ("google", "gemini-2.0-flash", 0.02), ("openai", "gpt-4o", 0.5)):
        store.record_usage(
            provider_id=provider,
            model_id=model,
            feature="compact",
            conversation_id="conv",
            input_tokens=100,
            output_tokens=10,
            cost=cost,
        )
    store.record_usage(
        provider_id="openai", model_id="gpt-4o", feature="overview", conversation_id=None,
        input_tokens=1, output_tokens=1, cost=0.0,
    )

    summary = {(row["provider"], row["model"]): row for row in store.usage_summary()}
    assert summary[("google", "gemini-2.0-flash")]["requests"] == 2
    assert summary[("google", "gemini-2.0-flash")]["cost"] == pytest.approx(0.03)
    assert summary[("openai", "gpt-4o")]["input_tokens"] == 101
    assert len(store.list_usage(feature="overview")) == 1
    assert len(store.list_usage()) == 4


def test_file_database_creates_parent_directory(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'nested' / 'compact.db'}"
    store = CompactStore(url)
    store.create_session_if_idle("ws", "conv")
    assert (tmp_path / "nested" / "compact.db").is_file()


def test_complete_session_persists_result_and_completes_together(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    store.update_session(session.id, status=SessionStatus.PROCESSING, progress=95)

    result, completed = store.complete_session(session.id, _result("summary"))

    assert completed.status == SessionStatus.COMPLETED
    assert completed.progress == 100
    assert completed.result_id == result.id
    assert completed.completed_at is not None
    assert store.get_result("ws", "conv").content == "summary"


def test_complete_session_refuses_cancelled_session(store: CompactStore) -> None:
    session = store.create_session_if_idle("ws", "conv")
    store.update_session(session.id, status=SessionStatus.PROCESSING)
    store.update_session(session.id, status=SessionStatus.CANCELLED)

    with pytest.raises(SessionStateError):
        store.complete_session(session.id, _result("late"))

    assert store.get_result("ws", "conv") is None
    assert store.get_session(session.id).status == SessionStatus.CANCELLED
