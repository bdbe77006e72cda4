"""Follow-up question suggestions for a finished compaction (best-effort)."""

from __future__ import annotations

import json
import logging
import re
from typing import Literal

from pydantic import BaseModel, ValidationError

from ..errors import CompactError
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest
from .prompts import build_suggestions_prompt

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class SuggestedQuestion(BaseModel):
    question: str
    icon: Literal["code", "lightbulb", "puzzle", "book", "rocket", "target"] = "lightbulb"


def parse_suggestions(text: str) -> list[SuggestedQuestion]:
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        return []
    items = json.loads(match.group(0))
    if not isinstance(items, list):
        return []
    questions: list[SuggestedQuestion] = []
    for item in items:
        try:
            questions.append(SuggestedQuestion.model_validate(item))
        except ValidationError:
            logger.debug("Skipping malformed suggestion: %r", item)
        if len(questions) >= MAX_SUGGESTIONS:
            break
    return questions


def generate_suggested_questions(
    facade: GenerationFacade,
    compacted_content: str,
    conversation_id: str | None = None,
) -> list[SuggestedQuestion]:
    """Ask for up to five follow-up questions. Any failure yields ``[]``."""
    request = GenerationRequest(
        prompt=build_suggestions_prompt(compacted_content),
        role="chat",
        temperature=0.7,
        max_output_tokens=1024,
        retry_budget=2,
        feature="suggestions",
        conversation_id=conversation_id,
    )
    try:
        result = facade.generate(request)
        return parse_suggestions(result.text)
    except (CompactError, ValueError) as e:
        logger.warning("Failed to generate suggested questions: %s", e)
        return []
