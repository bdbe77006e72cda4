from .generator import (
    FallbackAttempt,
    OverviewGenerator,
    OverviewOptions,
    OverviewProgress,
    build_fallback_ladder,
)
from .outline import parse_outline, repair_outline
from .resources import Resource, ResourceDiscovery, discover_resources, enrich_resource
from .sections import (
    SectionGenerator,
    SectionTask,
    TaskOutcome,
    run_tasks,
    select_relevant_turns,
    truncate_for_budget,
)
from .turns import DialogTurn, ParsedConversation, parse_conversation, score_importance

__all__ = [
    "DialogTurn",
    "FallbackAttempt",
    "OverviewGenerator",
    "OverviewOptions",
    "OverviewProgress",
    "ParsedConversation",
    "Resource",
    "ResourceDiscovery",
    "SectionGenerator",
    "SectionTask",
    "TaskOutcome",
    "build_fallback_ladder",
    "discover_resources",
    "enrich_resource",
    "parse_conversation",
    "parse_outline",
    "repair_outline",
    "run_tasks",
    "score_importance",
    "select_relevant_turns",
    "truncate_for_budget",
]
