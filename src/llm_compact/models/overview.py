"""Outline and overview types for structured overview generation."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class SectionType(str, Enum):
    GOAL = "goal"
    CONTEXT = "context"
    IMPLEMENTATION = "implementation"
    DECISIONS = "decisions"
    PROBLEMS = "problems"
    LEARNINGS = "learnings"
    NEXT_STEPS = "next_steps"
    DIAGRAM = "diagram"

    @classmethod
    def parse(cls, value: str | None) -> "SectionType":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.CONTEXT


class Importance(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]

    @classmethod
    def parse(cls, value: str | None) -> "Importance":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.MEDIUM


class DiagramType(str, Enum):
    ARCHITECTURE = "architecture"
    FLOWCHART = "flowchart"
    SEQUENCE = "sequence"
    COMPONENT = "component"
    STATE = "state"


@dataclass(frozen=True)
class OutlineSection:
    id: str
    title: str
    type: SectionType
    description: str
    importance: Importance
    relevant_turn_indices: tuple[int, ...] = ()


@dataclass(frozen=True)
class Outline:
    title: str
    summary: str
    sections: tuple[OutlineSection, ...]


@dataclass
class Citation:
    turn_index: int
    excerpt: str | None = None


@dataclass
class Diagram:
    type: DiagramType
    mermaid_code: str
    section_id: str = ""
    caption: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Section:
    id: str
    order: int
    title: str
    type: SectionType
    description: str
    importance: Importance
    relevant_turn_indices: tuple[int, ...]
    content: str
    diagrams: list[Diagram] = field(default_factory=list)
    citations: list[Citation] = field(default_factory=list)
    token_count: int = 0
    generated_at: float = field(default_factory=time.time)


@dataclass
class Overview:
    workspace_id: str
    conversation_id: str
    title: str
    summary: str
    sections: list[Section]
    metadata: dict[str, Any] = field(default_factory=dict)
    resources: list[dict[str, Any]] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # Enums serialize by value.
        for section in data["sections"]:
            section["type"] = SectionType(section["type"]).value
            section["importance"] = Importance(section["importance"]).value
            section["relevant_turn_indices"] = list(section["relevant_turn_indices"])
            for diagram in section["diagrams"]:
                diagram["type"] = DiagramType(diagram["type"]).value
        return data
