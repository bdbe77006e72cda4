"""Mermaid diagram extraction and generation."""

from __future__ import annotations

import logging
import re

from ..errors import ParseError
from ..generation.facade import GenerationFacade
from ..generation.models import GenerationRequest
from ..models.overview import Diagram, DiagramType
from .prompts import DIAGRAM_ARCHITECTURE_PROMPT, DIAGRAM_FLOW_PROMPT

logger = logging.getLogger(__name__)

_MERMAID_RE = re.compile(r"```mermaid\s+([\s\S]*?)```", re.IGNORECASE)

_PROMPTS = {
    DiagramType.ARCHITECTURE: DIAGRAM_ARCHITECTURE_PROMPT,
    DiagramType.COMPONENT: DIAGRAM_ARCHITECTURE_PROMPT,
    DiagramType.FLOWCHART: DIAGRAM_FLOW_PROMPT,
    DiagramType.SEQUENCE: DIAGRAM_FLOW_PROMPT,
    DiagramType.STATE: DIAGRAM_FLOW_PROMPT,
}


def extract_mermaid_blocks(content: str, section_id: str = "") -> list[Diagram]:
    return [
        Diagram(type=DiagramType.FLOWCHART, mermaid_code=m.group(1).strip(), section_id=section_id)
        for m in _MERMAID_RE.finditer(content or "")
    ]


def extract_mermaid(content: str) -> str | None:
    match = _MERMAID_RE.search(content or "")
    if match and match.group(1).strip():
        return match.group(1).strip()
    stripped = (content or "").strip()
    if stripped.startswith(("flowchart", "graph", "sequenceDiagram", "stateDiagram")):
        return stripped
    return None


def generate_diagram(
    facade: GenerationFacade,
    diagram_type: DiagramType,
    excerpt: str,
    conversation_id: str | None = None,
) -> Diagram:
    """Generate one diagram.

    Raises:
        ParseError: the response held no mermaid code.
    """
    prompt = _PROMPTS.get(diagram_type, DIAGRAM_FLOW_PROMPT).replace("{conversation_excerpt}", excerpt)
    result = facade.generate(
        GenerationRequest(
            prompt=prompt,
            role="overview",
            temperature=0.2,
            max_output_tokens=1000,
            feature="overview",
            conversation_id=conversation_id,
        )
    )
    mermaid = extract_mermaid(result.text)
    if not mermaid:
        raise ParseError("Failed to generate diagram: no mermaid code in response")
    return Diagram(type=diagram_type, mermaid_code=mermaid)
