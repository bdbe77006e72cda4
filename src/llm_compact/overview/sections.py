"""Bounded-concurrency section generation.

Section bodies are independent, so they run on a fixed-size thread pool:
all tasks are submitted up front, the pool's FIFO queue hands the next one
to whichever worker frees up, and results are re-sorted by ``order``.

Each task says whether it is required. A failed required task fails the
whole phase; a failed optional task (diagram enrichment) is logged and its
outcome recorded, nothing more.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Generic, Sequence, TypeVar

from ..errors import SectionGenerationError
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest
from ..models.overview import Citation, DiagramType, Outline, OutlineSection, Section, SectionType
from ..shared.logging import bind_collector
from .diagrams import extract_mermaid_blocks, generate_diagram
from .prompts import OVERVIEW_SYSTEM_PROMPT, build_section_prompt
from .turns import DialogTurn, ParsedConversation, format_dialog_turns

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SECTION_CONCURRENCY = 3
DEFAULT_SECTION_TOKEN_BUDGET = 6000
UNCITED_TURN_LIMIT = 8
PRESERVE_HEAD_TURNS = 3
PRESERVE_TAIL_TURNS = 5

SectionProgressCallback = Callable[[int, int], None]


def _rank_key(turn: DialogTurn) -> tuple[int, int]:
    return (-turn.importance.weight, -turn.importance_score)


def select_relevant_turns(turns: Sequence[DialogTurn], indices: Sequence[int], budget: int) -> list[DialogTurn]:
    """Turns for one section, within ``budget`` tokens.

    Cited turns come first, in citation order. With no valid citations the
    first few turns stand in. Over budget, the most important cited turns
    are kept while they fit and returned in conversation order.
    """
    seen: set[int] = set()
    selected: list[DialogTurn] = []
    for i in indices:
        if 0 <= i < len(turns) and i not in seen:
            seen.add(i)
            selected.append(turns[i])
    if not selected:
        return list(turns[:UNCITED_TURN_LIMIT])

    if sum(t.token_count for t in selected) <= budget:
        return selected

    kept: list[DialogTurn] = []
    used = 0
    for turn in sorted(selected, key=_rank_key):
        if used + turn.token_count <= budget:
            kept.append(turn)
            used += turn.token_count
    return sorted(kept, key=lambda t: t.index)


def truncate_for_budget(turns: Sequence[DialogTurn], budget: int) -> list[DialogTurn]:
    """Input selection for the outline call.

    The first three and last five turns are always kept; the rest are added
    most-important first while the budget holds.
    """
    if sum(t.token_count for t in turns) <= budget:
        return list(turns)

    count = len(turns)
    keep = set(range(min(PRESERVE_HEAD_TURNS, count)))
    keep.update(range(max(0, count - PRESERVE_TAIL_TURNS), count))
    used = sum(turns[i].token_count for i in keep)

    for position in sorted(range(count), key=lambda i: _rank_key(turns[i])):
        if position in keep:
            continue
        cost = turns[position].token_count
        if used + cost <= budget:
            keep.add(position)
            used += cost
    return [turns[i] for i in sorted(keep)]


@dataclass
class SectionTask(Generic[T]):
    key: str
    run: Callable[[], T]
    required: bool = True
    label: str = ""


@dataclass
class TaskOutcome(Generic[T]):
    task: SectionTask[T]
    value: T | None = None
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def run_tasks(tasks: Sequence[SectionTask[T]], max_workers: int) -> list[TaskOutcome[T]]:
    """Run tasks on a pool of ``max_workers`` threads.

    Returns one outcome per task in submission order. When a required task
    fails, tasks that have not started are cancelled and
    ``SectionGenerationError`` is raised once running ones finish.
    """
    outcomes = [TaskOutcome(task=task) for task in tasks]
    if not tasks:
        return outcomes

    first_required_failure: TaskOutcome[T] | None = None
    workers = max(1, min(max_workers, len(tasks)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="section") as executor:
        futures = {executor.submit(bind_collector(task.run)): i for i, task in enumerate(tasks)}
        for future in as_completed(futures):
            outcome = outcomes[futures[future]]
            if future.cancelled():
                outcome.cancelled = True
                continue
            try:
                outcome.value = future.result()
            except Exception as e:
                outcome.error = e
                label = outcome.task.label or outcome.task.key
                if outcome.task.required:
                    logger.error("Required task %s failed: %s", label, e)
                    if first_required_failure is None:
                        first_required_failure = outcome
                        for other in futures:
                            other.cancel()
                else:
                    logger.warning("Optional task %s failed: %s", label, e)

    if first_required_failure is not None:
        task = first_required_failure.task
        raise SectionGenerationError(
            f"Section '{task.label or task.key}' failed: {first_required_failure.error}",
            section_id=task.key,
        ) from first_required_failure.error
    return outcomes


class SectionGenerator:
    """Generates section bodies for an outline under a concurrency limit."""

    def __init__(
        self,
        facade: GenerationFacade,
        concurrency: int = DEFAULT_SECTION_CONCURRENCY,
        section_token_budget: int = DEFAULT_SECTION_TOKEN_BUDGET,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.facade = facade
        self.concurrency = concurrency
        self.section_token_budget = section_token_budget

    def _budget(self, token_budget: int | None) -> int:
        if token_budget is None:
            return self.section_token_budget
        return min(self.section_token_budget, token_budget)

    def generate_sections(
        self,
        outline: Outline,
        parsed: ParsedConversation,
        on_progress: SectionProgressCallback | None = None,
        max_sections: int | None = None,
        token_budget: int | None = None,
    ) -> list[Section]:
        """Generate every outline section; any failure fails the phase.

        Raises:
            SectionGenerationError: a section could not be generated.
        """
        planned = list(outline.sections[:max_sections] if max_sections else outline.sections)
        budget = self._budget(token_budget)
        total = len(planned)
        completed = 0
        lock = threading.Lock()

        def run_one(planned_section: OutlineSection, order: int) -> Section:
            nonlocal completed
            section = self._generate_section(planned_section, order, parsed, budget)
            with lock:
                completed += 1
                done = completed
            if on_progress is not None:
                on_progress(done, total)
            return section

        tasks = [
            SectionTask(key=planned_section.id, run=partial(run_one, planned_section, order), required=True, label=planned_section.title)
            for order, planned_section in enumerate(planned)
        ]
        outcomes = run_tasks(tasks, self.concurrency)
        sections = [o.value for o in outcomes if o.value is not None]
        return sorted(sections, key=lambda s: s.order)

    def _generate_section(self, planned_section: OutlineSection, order: int, parsed: ParsedConversation, budget: int) -> Section:
        turns = select_relevant_turns(parsed.turns, planned_section.relevant_turn_indices, budget)
        prompt = build_section_prompt(planned_section.title, planned_section.type.value, planned_section.description, format_dialog_turns(turns))
        result = self.facade.generate(
            GenerationRequest(
                prompt=prompt,
                system_prompt=OVERVIEW_SYSTEM_PROMPT,
                role="overview",
                temperature=0.3,
                max_output_tokens=4000,
                feature="overview",
                conversation_id=parsed.conversation_id,
            )
        )
        content = result.text.strip()
        return Section(
            id=planned_section.id,
            order=order,
            title=planned_section.title,
            type=planned_section.type,
            description=planned_section.description,
            importance=planned_section.importance,
            relevant_turn_indices=planned_section.relevant_turn_indices,
            content=content,
            diagrams=extract_mermaid_blocks(content, planned_section.id),
            citations=[Citation(turn_index=t.index, excerpt=t.content[:160]) for t in turns],
            token_count=result.usage.total_tokens,
        )

    def enrich_diagrams(
        self,
        sections: Sequence[Section],
        parsed: ParsedConversation,
        token_budget: int | None = None,
    ) -> list[TaskOutcome[Any]]:
        """Best-effort diagrams for ``diagram`` sections that have none."""
        budget = self._budget(token_budget)
        targets = [s for s in sections if s.type is SectionType.DIAGRAM and not s.diagrams]

        def diagram_for(section: Section):
            turns = select_relevant_turns(parsed.turns, [c.turn_index for c in section.citations], budget)
            return generate_diagram(
                self.facade,
                DiagramType.FLOWCHART,
                format_dialog_turns(turns),
                conversation_id=parsed.conversation_id,
            )

        tasks = [
            SectionTask(key=s.id, run=partial(diagram_for, s), required=False, label=f"diagram:{s.title}")
            for s in targets
        ]
        outcomes = run_tasks(tasks, self.concurrency)
        for section, outcome in zip(targets, outcomes):
            if outcome.ok and outcome.value is not None:
                outcome.value.section_id = section.id
                section.diagrams.append(outcome.value)
        return outcomes
