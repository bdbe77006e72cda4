"""Compaction session state machine.

One ``start_session`` call drives a session from ``pending`` to a terminal
state:

    analyzing -> (full_context) finalizing
    analyzing -> chunking -> mapping -> reducing [-> mapping -> reducing] -> finalizing

Every step is persisted through the store so progress can be polled, and
every generation goes through the façade with the run's cancel event
attached.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ..errors import (
    CompactionCancelledError,
    GenerationCancelledError,
    SessionStateError,
)
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest
from ..models.conversation import ConversationInput, Turn
from ..shared.logging import EventCategory, bind_collector, emit_event, log_operation
from ..storage.store import CompactStore, log_entry
from ..storage.tables import CompactionResult, CompactSession, CompactStep, SessionStatus
from ..storage.turn_source import TurnSource
from ..utils.config import Config
from ..utils.tokens import TokenEstimator
from .chunking import Chunk, chunk_turns, format_turns
from .prompts import (
    COMPACT_SYSTEM_PROMPT,
    build_full_context_prompt,
    build_map_prompt,
    build_reduce_prompt,
)
from .strategy import Strategy, select_strategy


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CompactSession], None]

COMPACT_TEMPERATURE = 0.2
MAP_MAX_TOKENS = 4096
REDUCE_MAX_TOKENS = 16384

SEGMENT_SEPARATOR = "\n\n---\n\n"

# Progress schedule
PROGRESS_CHUNKING = 10
PROGRESS_FULL_CONTEXT = 50
PROGRESS_MAP_END = 80
PROGRESS_SECOND_PASS_END = 90
PROGRESS_SECOND_REDUCE = 92
PROGRESS_FINALIZING = 95

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class _Run:
    """Mutable state of one in-flight session, owned by the orchestrator."""
    session_id: str
    conversation: ConversationInput
    cancel_event: threading.Event
    on_progress: ProgressCallback | None = None
    provider_id: str | None = None
    model_id: str | None = None
    passes: int = 0
    generation_calls: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


def map_progress(start: int, end: int, processed: int, total: int) -> int:
    """Linear progress between ``start`` and ``end``, halves rounded up."""
    return start + int((end - start) * processed / max(total, 1) + 0.5)


def split_into_pseudo_turns(text: str) -> list[Turn]:
    """Turn a reduced summary into paragraph-sized turns so it can be re-chunked."""
    paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]
    return [Turn(role="assistant", text=p) for p in paragraphs]


class CompactionOrchestrator:
    """Runs compaction sessions against one store and one generation façade."""

    def __init__(
        self,
        facade: GenerationFacade,
        store: CompactStore,
        config: Config | None = None,
        estimator: TokenEstimator | None = None,
        *,
        map_concurrency: int | None = None,
        chunk_target_tokens: int | None = None,
    ):
        self.facade = facade
        self.store = store
        self.config = config if config is not None else Config()
        self.estimator = estimator or TokenEstimator.from_config(self.config)
        self.map_concurrency = max(1, map_concurrency if map_concurrency is not None else self.config.MAP_CONCURRENCY)
        self.chunk_target_tokens = chunk_target_tokens or self.config.CHUNK_TARGET_TOKENS
        self._cancel_events: dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> CompactSession | None:
        return self.store.get_session(session_id)

    def get_active_session(self, workspace_id: str, conversation_id: str) -> CompactSession | None:
        return self.store.get_active_session(workspace_id, conversation_id)

    def get_result(self, workspace_id: str, conversation_id: str) -> CompactionResult | None:
        return self.store.get_result(workspace_id, conversation_id)

    def delete_session(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)

    def delete_result(self, workspace_id: str, conversation_id: str) -> bool:
        return self.store.delete_result(workspace_id, conversation_id)

    def cancel_session(self, session_id: str) -> CompactSession | None:
        """Mark a pending or processing session cancelled and signal its run.

        In-flight HTTP calls finish; the run stops at its next check.
        Terminal sessions are returned unchanged.
        """
        session = self.store.get_session(session_id)
        if session is None:
            return None
        if SessionStatus(session.status).is_terminal:
            return session
        try:
            session = self.store.update_session(session_id, status=SessionStatus.CANCELLED)
        except SessionStateError:
            # Reached a terminal state between the read and the update.
            return self.store.get_session(session_id)
        self.store.append_log(session_id, log_entry("warning", "Session cancelled"))
        logger.info("Compact session %s cancelled", session_id)
        with self._events_lock:
            event = self._cancel_events.get(session_id)
        if event is not None:
            event.set()
        return self.store.get_session(session_id)

    def compact_from_source(
        self,
        turn_source: TurnSource,
        workspace_id: str,
        conversation_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[CompactionResult, CompactSession]:
        conversation = turn_source.get_conversation_turns(workspace_id, conversation_id)
        return self.start_session(conversation, on_progress=on_progress)

    @log_operation(EventCategory.COMPACTION, "compaction")
    def start_session(
        self,
        conversation: ConversationInput,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[CompactionResult, CompactSession]:
        """Compact ``conversation`` and persist the result.

        Raises:
            SessionAlreadyActiveError: another session for the conversation is
                pending or processing; nothing is created.
            CompactionCancelledError: the session was cancelled; nothing is persisted.
        """
        session = self.store.create_session_if_idle(conversation.workspace_id, conversation.conversation_id)
        run = _Run(
            session_id=session.id,
            conversation=conversation,
            cancel_event=threading.Event(),
            on_progress=on_progress,
        )
        with self._events_lock:
            self._cancel_events[session.id] = run.cancel_event

        started = time.perf_counter()
        try:
            return self._process(run, started)
        except CompactionCancelledError:
            self._log(run, "warning", "Compaction stopped after cancellation")
            raise
        except GenerationCancelledError as e:
            self._log(run, "warning", "Compaction stopped after cancellation")
            raise CompactionCancelledError(run.session_id) from e
        except Exception as e:
            current = self.store.get_session(run.session_id)
            if current is not None and current.status == SessionStatus.CANCELLED:
                self._log(run, "warning", "Compaction stopped after cancellation")
                raise CompactionCancelledError(run.session_id) from e
            self._log(run, "error", f"Compaction failed: {e}", {"error_type": type(e).__name__})
            try:
                failed = self.store.update_session(run.session_id, status=SessionStatus.FAILED, error=str(e))
                if failed is not None:
                    self._notify(run, failed)
            except SessionStateError as state_error:
                logger.warning("Could not mark session %s failed: %s", run.session_id, state_error)
            raise
        except BaseException as e:
            # Interrupts end the session as cancelled.
            self._log(run, "warning", f"Compaction interrupted: {type(e).__name__}")
            try:
                interrupted = self.store.update_session(
                    run.session_id,
                    status=SessionStatus.CANCELLED,
                    error=f"Interrupted ({type(e).__name__})",
                )
                if interrupted is not None:
                    self._notify(run, interrupted)
            except SessionStateError as state_error:
                logger.warning("Could not close interrupted session %s: %s", run.session_id, state_error)
            raise
        finally:
            with self._events_lock:
                self._cancel_events.pop(run.session_id, None)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _process(self, run: _Run, started: float) -> tuple[CompactionResult, CompactSession]:
        conversation = run.conversation
        self._log(
            run,
            "info",
            "Compact session created",
            {"workspace_id": conversation.workspace_id, "conversation_id": conversation.conversation_id},
        )
        self._update(run, status=SessionStatus.PROCESSING, current_step=CompactStep.ANALYZING, progress=0)

        transcript = format_turns(conversation.turns)
        total_tokens = self.estimator.estimate(transcript)
        strategy = select_strategy(
            total_tokens,
            self.config.FULL_CONTEXT_THRESHOLD,
            self.config.HIERARCHICAL_THRESHOLD,
        )
        self._log(
            run,
            "info",
            f"Strategy selected: {strategy.value}",
            {"total_tokens": total_tokens, "turn_count": len(conversation.turns)},
        )
        emit_event(EventCategory.COMPACTION, "Strategy selected", strategy=strategy.value, total_tokens=total_tokens)

        if strategy is Strategy.FULL_CONTEXT:
            content = self._run_full_context(run, transcript)
            chunk_count = 1
        else:
            content, chunk_count = self._run_map_reduce(
                run,
                list(conversation.turns),
                hierarchical=strategy is Strategy.HIERARCHICAL,
            )

        self._update(run, current_step=CompactStep.FINALIZING, progress=PROGRESS_FINALIZING)
        compacted_tokens = self.estimator.estimate(content)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        result = CompactionResult(
            workspace_id=conversation.workspace_id,
            conversation_id=conversation.conversation_id,
            title=conversation.title,
            content=content,
            original_token_count=total_tokens,
            compacted_token_count=compacted_tokens,
            compression_ratio=compacted_tokens / max(total_tokens, 1),
            strategy_used=strategy.value,
            chunk_count=chunk_count,
            status="completed",
            metadata_json=json.dumps({
                "processing_time_ms": elapsed_ms,
                "turn_count": len(conversation.turns),
                "provider": run.provider_id,
                "model": run.model_id,
                "passes": run.passes,
                "generation_calls": run.generation_calls,
            }),
        )

        self._ensure_not_cancelled(run)
        result, session = self.store.complete_session(run.session_id, result)
        self._notify(run, session)
        self._log(
            run,
            "info",
            "Compaction completed",
            {
                "original_tokens": total_tokens,
                "compacted_tokens": compacted_tokens,
                "compression_ratio": round(result.compression_ratio, 4),
                "processing_time_ms": elapsed_ms,
            },
        )
        return result, self.store.get_session(run.session_id) or session

    def _run_full_context(self, run: _Run, transcript: str) -> str:
        self._update(run, current_step=CompactStep.FINALIZING, progress=PROGRESS_FULL_CONTEXT)
        run.passes = 1
        return self._generate(
            run,
            build_full_context_prompt(run.conversation.title, transcript),
            REDUCE_MAX_TOKENS,
        )

    def _run_map_reduce(self, run: _Run, turns: Sequence[Turn], hierarchical: bool) -> tuple[str, int]:
        self._update(run, current_step=CompactStep.CHUNKING, progress=PROGRESS_CHUNKING)
        chunks = chunk_turns(turns, self.chunk_target_tokens, self.estimator)
        self._update(run, chunks_total=len(chunks), chunks_processed=0)
        self._log(run, "info", f"Created {len(chunks)} chunks", {"target_tokens": self.chunk_target_tokens})

        self._update(run, current_step=CompactStep.MAPPING)
        summaries = self._map_chunks(run, chunks, PROGRESS_CHUNKING, PROGRESS_MAP_END, track_chunks=True)

        self._update(run, current_step=CompactStep.REDUCING, progress=PROGRESS_MAP_END)
        reduced = self._reduce(run, summaries)
        run.passes = 1

        if hierarchical:
            reduced = self._run_extra_passes(run, reduced)
        return reduced, len(chunks)

    def _run_extra_passes(self, run: _Run, reduced: str) -> str:
        for extra_pass in range(self.config.HIERARCHICAL_MAX_EXTRA_PASSES):
            reduced_tokens = self.estimator.estimate(reduced)
            if reduced_tokens <= self.config.FULL_CONTEXT_THRESHOLD:
                break
            sub_chunks = chunk_turns(split_into_pseudo_turns(reduced), self.chunk_target_tokens, self.estimator)
            if len(sub_chunks) <= 1:
                self._log(run, "info", "Reduced summary fits one chunk; skipping further passes")
                break
            self._log(
                run,
                "info",
                f"Hierarchical pass {extra_pass + 2}: {len(sub_chunks)} chunks",
                {"reduced_tokens": reduced_tokens},
            )
            self._update(run, current_step=CompactStep.MAPPING)
            summaries = self._map_chunks(
                run,
                sub_chunks,
                PROGRESS_MAP_END,
                PROGRESS_SECOND_PASS_END,
                track_chunks=False,
            )
            self._update(run, current_step=CompactStep.REDUCING, progress=PROGRESS_SECOND_REDUCE)
            reduced = self._reduce(run, summaries)
            run.passes += 1
        return reduced

    def _reduce(self, run: _Run, summaries: Sequence[str]) -> str:
        joined = SEGMENT_SEPARATOR.join(
            f"### Segment {i + 1}\n{summary}" for i, summary in enumerate(summaries)
        )
        return self._generate(run, build_reduce_prompt(run.conversation.title, joined), REDUCE_MAX_TOKENS)

    def _map_chunks(
        self,
        run: _Run,
        chunks: Sequence[Chunk],
        progress_start: int,
        progress_end: int,
        track_chunks: bool,
    ) -> list[str]:
        """Summarize every chunk; results come back in chunk order."""
        total = len(chunks)

        def map_one(chunk: Chunk) -> str:
            prompt = build_map_prompt(run.conversation.title, chunk.index + 1, total, chunk.content)
            return self._generate(run, prompt, MAP_MAX_TOKENS)

        def mark_processed(chunk: Chunk, processed: int) -> None:
            changes: dict = {"progress": map_progress(progress_start, progress_end, processed, total)}
            if track_chunks:
                changes["chunks_processed"] = processed
            self._update(run, **changes)
            self._log(
                run,
                "debug",
                f"Mapped chunk {chunk.index + 1}/{total}",
                {"start_turn": chunk.start_turn, "end_turn": chunk.end_turn, "tokens": chunk.token_estimate},
            )

        if self.map_concurrency <= 1 or total <= 1:
            summaries = []
            for processed, chunk in enumerate(chunks, start=1):
                summaries.append(map_one(chunk))
                mark_processed(chunk, processed)
            return summaries

        results: list[str | None] = [None] * total
        with ThreadPoolExecutor(max_workers=min(self.map_concurrency, total), thread_name_prefix="compact-map") as executor:
            futures = {executor.submit(bind_collector(map_one), chunk): chunk for chunk in chunks}
            processed = 0
            try:
                for future in as_completed(futures):
                    chunk = futures[future]
                    results[chunk.index] = future.result()
                    processed += 1
                    mark_processed(chunk, processed)
            except BaseException:
                for pending in futures:
                    pending.cancel()
                raise
        return [r or "" for r in results]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _generate(self, run: _Run, prompt: str, max_tokens: int) -> str:
        request = GenerationRequest(
            prompt=prompt,
            system_prompt=COMPACT_SYSTEM_PROMPT,
            role="compact",
            temperature=COMPACT_TEMPERATURE,
            max_output_tokens=max_tokens,
            retry_budget=self.config.RETRY_BUDGET,
            retry_delay_base_ms=self.config.RETRY_DELAY_BASE_MS,
            feature="compact",
            conversation_id=run.conversation.conversation_id,
            timeout_seconds=self.config.REQUEST_TIMEOUT_SECONDS,
            cancel_event=run.cancel_event,
        )
        result = self.facade.generate(request)
        with run.lock:
            run.provider_id = result.provider_id
            run.model_id = result.model_id
            run.generation_calls += 1
        self._ensure_not_cancelled(run)
        return result.text

    def _ensure_not_cancelled(self, run: _Run) -> None:
        if run.cancel_event.is_set():
            raise CompactionCancelledError(run.session_id)
        session = self.store.get_session(run.session_id)
        if session is not None and session.status == SessionStatus.CANCELLED:
            raise CompactionCancelledError(run.session_id)

    def _update(self, run: _Run, **changes) -> CompactSession:
        session = self.store.update_session(run.session_id, **changes)
        if session is None:
            raise SessionStateError(f"Compact session {run.session_id} no longer exists")
        if session.status == SessionStatus.CANCELLED:
            raise CompactionCancelledError(run.session_id)
        self._notify(run, session)
        return session

    def _notify(self, run: _Run, session: CompactSession) -> None:
        if run.on_progress is None:
            return
        try:
            run.on_progress(session)
        except Exception as e:
            logger.warning("Progress callback failed for %s: %s", run.session_id, e)

    def _log(self, run: _Run, level: str, message: str, data: dict | None = None) -> None:
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", run.session_id[:8], message)
        self.store.append_log(run.session_id, log_entry(level, message, data))
