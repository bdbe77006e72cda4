"""Extraction of reusable programming concepts from a conversation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from ..errors import JsonParseError, LearningsExtractionError
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest, format_model_id
from ..generation.structured import parse_json_object
from ..models.conversation import ConversationInput
from .prompts import build_learnings_prompt

logger = logging.getLogger(__name__)

ConceptCategory = Literal["pattern", "technique", "architecture", "debugging", "tool", "concept"]
Difficulty = Literal["beginner", "intermediate", "advanced"]


class ConceptExample(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    code: Optional[str] = None
    language: Optional[str] = None
    explanation: str = ""
    turn_index: Optional[int] = None


class LearningConcept(BaseModel):
    name: str
    category: ConceptCategory = "concept"
    description: str = ""
    difficulty: Difficulty = "intermediate"
    tags: list[str] = Field(default_factory=list)
    examples: list[ConceptExample] = Field(default_factory=list)
    related_turn_indices: list[int] = Field(default_factory=list)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str = ""
    conversation_id: str = ""
    searchable_text: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def format_indexed_turns(conversation: ConversationInput) -> str:
    return "\n\n".join(
        f"[Turn {idx}] [{'USER' if turn.role == 'user' else 'AI'}]: {turn.text}"
        for idx, turn in enumerate(conversation.turns)
    )


def parse_concepts(text: str) -> list[LearningConcept]:
    """Validate each entry of ``{"concepts": [...]}`` on its own; bad entries are dropped."""
    data = parse_json_object(text)
    items = data.get("concepts")
    if not isinstance(items, list):
        return []
    concepts: list[LearningConcept] = []
    for item in items:
        try:
            concepts.append(LearningConcept.model_validate(item))
        except ValidationError:
            logger.debug("Skipping malformed concept: %r", item)
    return concepts


def searchable_text(concept: LearningConcept) -> str:
    return " ".join([concept.name, concept.description, *concept.tags]).lower()


def extract_learnings(
    facade: GenerationFacade,
    conversation: ConversationInput,
    store=None,
) -> list[LearningConcept]:
    """Extract learning concepts and, when a store is given, save them.

    Raises:
        LearningsExtractionError: the conversation is empty or the model
            returned nothing usable.
    """
    if not conversation.turns:
        raise LearningsExtractionError("Conversation has no turns")

    request = GenerationRequest(
        prompt=build_learnings_prompt(conversation.title, format_indexed_turns(conversation)),
        role="overview",
        temperature=0.2,
        max_output_tokens=3000,
        feature="learnings",
        conversation_id=conversation.conversation_id,
    )
    result = facade.generate(request)
    try:
        concepts = parse_concepts(result.text)
    except JsonParseError as e:
        raise LearningsExtractionError(f"Failed to extract learnings: {e}") from e
    if not concepts:
        raise LearningsExtractionError("Failed to extract learnings")

    now = datetime.now(timezone.utc)
    for concept in concepts:
        concept.workspace_id = conversation.workspace_id
        concept.conversation_id = conversation.conversation_id
        concept.searchable_text = searchable_text(concept)
        concept.created_at = now
        concept.updated_at = now

    logger.info("Extracted %d learning concepts from %s", len(concepts), conversation.conversation_id)
    if store is not None:
        store.upsert_learnings(
            conversation.workspace_id,
            conversation.conversation_id,
            [c.model_dump(mode="json") for c in concepts],
            model_used=format_model_id(result.provider_id, result.model_id),
        )
    return concepts
