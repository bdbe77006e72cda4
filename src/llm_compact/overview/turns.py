"""Parse raw turns into annotated dialog turns and score their importance."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Literal, Sequence

from ..models.conversation import ConversationInput
from ..models.overview import Importance
from ..utils.tokens import estimate_tokens

_CODE_BLOCK_RE = re.compile(r"```(\w+)?\n([\s\S]*?)```")
_FILE_PATH_RE = re.compile(r"(?:^|\s)([/\w.-]+\.[a-z]{2,6})(?=\s|$|:|\))", re.IGNORECASE)
_ERROR_PATTERNS = (
    re.compile(r"error:\s*(.+)", re.IGNORECASE),
    re.compile(r"exception:\s*(.+)", re.IGNORECASE),
    re.compile(r"failed:\s*(.+)", re.IGNORECASE),
    re.compile(r"typeerror:\s*(.+)", re.IGNORECASE),
    re.compile(r"referenceerror:\s*(.+)", re.IGNORECASE),
)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

DECISION_KEYWORDS = ("decided to", "chose to", "went with", "instead of", "because", "the reason")
HIGH_SIGNAL_KEYWORDS = ("important", "critical", "key", "finally", "solved", "fixed", "works now")
LOW_SIGNAL_KEYWORDS = ("thanks", "thank you", "got it", "ok", "okay", "sure")

SUBSTANTIAL_CODE_LINES = 5

_HIGH_SIGNAL_RE = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in HIGH_SIGNAL_KEYWORDS) + r")\b")
_LOW_SIGNAL_RE = re.compile(r"\b(?:" + "|".join(re.escape(k) for k in LOW_SIGNAL_KEYWORDS) + r")\b")


@dataclass(frozen=True)
class CodeBlock:
    language: str
    code: str
    line_count: int


@dataclass(frozen=True)
class FileReference:
    path: str
    action: Literal["created", "modified", "read", "deleted", "mentioned"]


@dataclass(frozen=True)
class ErrorMention:
    type: Literal["error", "fix"]
    message: str


@dataclass
class DialogTurn:
    index: int
    role: str
    content: str
    code_blocks: list[CodeBlock] = field(default_factory=list)
    file_refs: list[FileReference] = field(default_factory=list)
    error_mentions: list[ErrorMention] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    importance: Importance = Importance.MEDIUM
    importance_score: int = 5
    token_count: int = 0
    timestamp: float | None = None

    @property
    def has_substantial_code(self) -> bool:
        return any(cb.line_count >= SUBSTANTIAL_CODE_LINES for cb in self.code_blocks)

    @property
    def is_key_decision(self) -> bool:
        return bool(self.decisions)

    @property
    def is_problem_resolution(self) -> bool:
        return any(m.type == "fix" for m in self.error_mentions)


@dataclass
class ConversationStats:
    total_turns: int = 0
    user_turns: int = 0
    assistant_turns: int = 0
    total_tokens: int = 0
    code_block_count: int = 0
    file_count: int = 0
    error_count: int = 0
    decision_count: int = 0
    high_importance_turns: int = 0


@dataclass
class ParsedConversation:
    workspace_id: str
    conversation_id: str
    title: str
    turns: list[DialogTurn]
    stats: ConversationStats


def extract_code_blocks(text: str) -> list[CodeBlock]:
    return [
        CodeBlock(language=m.group(1) or "text", code=m.group(2).strip(), line_count=len(m.group(2).split("\n")))
        for m in _CODE_BLOCK_RE.finditer(text)
    ]


def _infer_file_action(text: str) -> str:
    lower = text.lower()
    if "delete" in lower or "removed" in lower:
        return "deleted"
    if "create" in lower or "add " in lower:
        return "created"
    if "update" in lower or "modify" in lower or "change" in lower:
        return "modified"
    if "read" in lower or "open" in lower:
        return "read"
    return "mentioned"


def extract_file_references(text: str) -> list[FileReference]:
    refs: list[FileReference] = []
    seen: set[str] = set()
    for match in _FILE_PATH_RE.finditer(text):
        path = match.group(1)
        if path in seen or len(path) < 3 or "://" in path or "/" not in path:
            continue
        seen.add(path)
        refs.append(FileReference(path=path, action=_infer_file_action(text)))  # type: ignore[arg-type]
    return refs


def extract_error_mentions(text: str) -> list[ErrorMention]:
    messages = [m.group(1)[:200] for pattern in _ERROR_PATTERNS for m in pattern.finditer(text)]
    lowered = text.lower()
    kind = "fix" if ("fixed" in lowered or "resolved" in lowered) else "error"
    return [ErrorMention(type=kind, message=msg) for msg in messages]  # type: ignore[arg-type]


def extract_decisions(text: str) -> list[str]:
    lowered = text.lower()
    decisions: list[str] = []
    for keyword in DECISION_KEYWORDS:
        if keyword not in lowered:
            continue
        for sentence in _SENTENCE_SPLIT_RE.split(text):
            if keyword in sentence.lower():
                decisions.append(sentence.strip()[:300])
                break
    return decisions


def score_importance(turn: DialogTurn) -> int:
    """Heuristic 1-10 score; also sets ``turn.importance``."""
    lowered = turn.content.lower()
    score = 5
    if turn.has_substantial_code:
        score += 2
    if turn.is_key_decision:
        score += 2
    if turn.is_problem_resolution:
        score += 2
    if turn.error_mentions:
        score += 1
    if len(turn.file_refs) >= 3:
        score += 1
    if _HIGH_SIGNAL_RE.search(lowered):
        score += 1
    if _LOW_SIGNAL_RE.search(lowered):
        score -= 2
    if len(turn.content) < 50:
        score -= 1

    score = max(1, min(10, score))
    turn.importance_score = score
    if score >= 8:
        turn.importance = Importance.HIGH
    elif score >= 5:
        turn.importance = Importance.MEDIUM
    else:
        turn.importance = Importance.LOW
    return score


def parse_turn(index: int, role: str, text: str, timestamp: float | None = None,
               estimator: Callable[[str], int] = estimate_tokens) -> DialogTurn:
    turn = DialogTurn(
        index=index,
        role=role,
        content=text,
        code_blocks=extract_code_blocks(text),
        file_refs=extract_file_references(text),
        error_mentions=extract_error_mentions(text),
        decisions=extract_decisions(text),
        token_count=estimator(text),
        timestamp=timestamp,
    )
    score_importance(turn)
    return turn


def compute_stats(turns: Sequence[DialogTurn]) -> ConversationStats:
    stats = ConversationStats(total_turns=len(turns))
    for turn in turns:
        if turn.role == "user":
            stats.user_turns += 1
        else:
            stats.assistant_turns += 1
        stats.code_block_count += len(turn.code_blocks)
        stats.file_count += len(turn.file_refs)
        stats.error_count += len(turn.error_mentions)
        stats.decision_count += len(turn.decisions)
        stats.total_tokens += turn.token_count
        if turn.importance is Importance.HIGH:
            stats.high_importance_turns += 1
    return stats


def parse_conversation(conversation: ConversationInput,
                       estimator: Callable[[str], int] = estimate_tokens) -> ParsedConversation:
    turns = [
        parse_turn(i, t.role, t.text, t.timestamp, estimator)
        for i, t in enumerate(conversation.turns)
    ]
    return ParsedConversation(
        workspace_id=conversation.workspace_id,
        conversation_id=conversation.conversation_id,
        title=conversation.title,
        turns=turns,
        stats=compute_stats(turns),
    )


def format_dialog_turns(turns: Sequence[DialogTurn]) -> str:
    return "\n\n".join(f"[Turn {t.index}] [{t.role.upper()}]: {t.content}" for t in turns)
