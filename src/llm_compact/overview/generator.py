"""Structured overview generation with a shrinking-budget fallback ladder."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from ..errors import (
    ConfigurationError,
    GenerationCancelledError,
    GenerationError,
    OutlineParseError,
    OverviewGenerationError,
    ResourceDiscoveryError,
)
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest
from ..models.conversation import ConversationInput
from ..models.overview import Overview
from ..shared.logging import EventCategory, emit_event, log_operation
from ..utils.config import Config
from ..utils.tokens import TokenEstimator
from .outline import parse_outline
from .prompts import OVERVIEW_SYSTEM_PROMPT, build_structure_prompt
from .resources import discover_resources
from .sections import SectionGenerator, truncate_for_budget
from .turns import format_dialog_turns, parse_conversation

logger = logging.getLogger(__name__)

STRUCTURE_VERSION = 1


@dataclass
class OverviewOptions:
    generate_diagrams: bool | None = None
    max_sections: int | None = None
    token_budget: int | None = None
    parallel_sections: int | None = None
    discover_resources: bool = False


@dataclass(frozen=True)
class OverviewProgress:
    phase: str  # ingestion | structure | sections | diagrams | postprocess
    progress: int
    current_step: str
    sections_completed: int | None = None
    sections_total: int | None = None


@dataclass(frozen=True)
class FallbackAttempt:
    token_budget: int
    generate_diagrams: bool


def build_fallback_ladder(base_budget: int, generate_diagrams: bool) -> list[FallbackAttempt]:
    """Four attempts with shrinking outline budgets; no diagrams on the last two."""
    return [
        FallbackAttempt(base_budget, generate_diagrams),
        FallbackAttempt(min(base_budget, 6000), generate_diagrams),
        FallbackAttempt(min(base_budget, 4000), False),
        FallbackAttempt(min(base_budget, 2000), False),
    ]


class OverviewGenerator:
    def __init__(
        self,
        facade: GenerationFacade,
        store=None,
        config: Config | None = None,
        estimator: TokenEstimator | None = None,
    ):
        self.facade = facade
        self.store = store
        self.config = config if config is not None else Config()
        self.estimator = estimator or TokenEstimator.from_config(self.config)

    @log_operation(EventCategory.OVERVIEW, "overview")
    def generate_overview(
        self,
        conversation: ConversationInput,
        options: OverviewOptions | None = None,
        on_progress: Callable[[OverviewProgress], None] | None = None,
    ) -> Overview:
        """Build an outline, then its sections, then optional diagrams.

        Raises:
            ConfigurationError: no provider has credentials.
            SectionGenerationError: a section failed after retries and fallback.
            OverviewGenerationError: no attempt produced a parseable outline.
        """
        options = options or OverviewOptions()
        if not self.facade.registry.available():
            raise ConfigurationError("No API key configured. Add an API key for at least one provider.")

        def report(phase: str, progress: int, step: str, **extra) -> None:
            if on_progress is not None:
                on_progress(OverviewProgress(phase, progress, step, **extra))

        started = time.perf_counter()
        report("ingestion", 5, "parse")
        parsed = parse_conversation(conversation, self.estimator.estimate)

        generate_diagrams = self.config.GENERATE_DIAGRAMS if options.generate_diagrams is None else options.generate_diagrams
        ladder = build_fallback_ladder(options.token_budget or self.config.STRUCTURE_INPUT_TOKENS, generate_diagrams)
        sections_gen = SectionGenerator(
            self.facade,
            concurrency=options.parallel_sections or self.config.SECTION_CONCURRENCY,
            section_token_budget=self.config.SECTION_INPUT_TOKENS,
        )

        overview: Overview | None = None
        for attempt_number, attempt in enumerate(ladder, start=1):
            selected = truncate_for_budget(parsed.turns, attempt.token_budget)
            report("structure", 15, f"structure:{attempt.token_budget}")
            structure = self.facade.generate(
                GenerationRequest(
                    prompt=build_structure_prompt(conversation.title, format_dialog_turns(selected)),
                    system_prompt=OVERVIEW_SYSTEM_PROMPT,
                    role="overview",
                    temperature=0.2,
                    max_output_tokens=2000,
                    feature="overview",
                    conversation_id=conversation.conversation_id,
                )
            )
            try:
                outline = parse_outline(structure.text)
            except OutlineParseError as e:
                logger.warning("Outline attempt %d (budget %d) unparseable: %s", attempt_number, attempt.token_budget, e)
                emit_event(EventCategory.OVERVIEW, "Outline fallback", attempt=attempt_number, budget=attempt.token_budget)
                continue

            report("sections", 35, "sections:start")

            def on_section(done: int, total: int) -> None:
                report(
                    "sections",
                    35 + int(40 * done / max(total, 1) + 0.5),
                    f"sections:{done}/{total}",
                    sections_completed=done,
                    sections_total=total,
                )

            sections = sections_gen.generate_sections(
                outline,
                parsed,
                on_progress=on_section,
                max_sections=options.max_sections,
                token_budget=attempt.token_budget,
            )
            report(
                "sections",
                75,
                "sections:complete",
                sections_completed=len(sections),
                sections_total=len(sections),
            )

            if attempt.generate_diagrams:
                report("diagrams", 80, "diagrams:start")
                sections_gen.enrich_diagrams(sections, parsed, attempt.token_budget)

            overview = Overview(
                workspace_id=conversation.workspace_id,
                conversation_id=conversation.conversation_id,
                title=outline.title or conversation.title,
                summary=outline.summary,
                sections=sections,
                metadata={
                    "total_turns": len(parsed.turns),
                    "processed_turns": len(selected),
                    "truncated_turns": len(parsed.turns) - len(selected),
                    "token_budget_used": self.estimator.estimate(structure.text),
                    "model_used": structure.model_id,
                    "provider_used": structure.provider_id,
                    "fallback_attempt": attempt_number,
                    "generation_time_ms": int((time.perf_counter() - started) * 1000),
                    "structure_version": STRUCTURE_VERSION,
                },
            )
            break

        if overview is None:
            raise OverviewGenerationError("Failed to generate overview after fallbacks")

        if options.discover_resources:
            report("postprocess", 90, "resources")
            try:
                discovery = discover_resources(self.facade, conversation, store=self.store)
                overview.resources = [r.model_dump() for r in discovery.resources]
                overview.metadata["resource_topics"] = discovery.topics
            except GenerationCancelledError:
                raise
            except (ResourceDiscoveryError, GenerationError) as e:
                # Optional enrichment.
                logger.warning("Resource discovery failed for %s: %s", conversation.conversation_id, e)
                emit_event(EventCategory.OVERVIEW, "Resources skipped", error=type(e).__name__)

        if self.store is not None:
            self.store.upsert_overview(overview)
        report("postprocess", 100, "done")
        return overview
