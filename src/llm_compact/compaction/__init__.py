from .chunking import Chunk, chunk_turns, format_turn, format_turns, has_fenced_code_block
from .learnings import LearningConcept, extract_learnings
from .orchestrator import CompactionOrchestrator, split_into_pseudo_turns
from .strategy import Strategy, select_strategy
from .suggestions import SuggestedQuestion, generate_suggested_questions

__all__ = [
    "Chunk",
    "CompactionOrchestrator",
    "LearningConcept",
    "Strategy",
    "SuggestedQuestion",
    "chunk_turns",
    "extract_learnings",
    "format_turn",
    "format_turns",
    "generate_suggested_questions",
    "has_fenced_code_block",
    "select_strategy",
    "split_into_pseudo_turns",
]
