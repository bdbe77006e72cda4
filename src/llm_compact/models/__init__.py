from .conversation import ConversationInput, Turn, normalize_role
from .message import Message, build_messages
from .overview import (
    Citation,
    Diagram,
    DiagramType,
    Importance,
    Outline,
    OutlineSection,
    Overview,
    Section,
    SectionType,
)

__all__ = [
    "Citation",
    "ConversationInput",
    "Diagram",
    "DiagramType",
    "Importance",
    "Message",
    "Outline",
    "OutlineSection",
    "Overview",
    "Section",
    "SectionType",
    "Turn",
    "build_messages",
    "normalize_role",
]
