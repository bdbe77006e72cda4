"""Conversation input types.

A conversation arrives as an ordered list of turns owned by the caller; the
pipeline never mutates it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

Role = Literal["user", "assistant"]

_ROLE_ALIASES = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "ai": "assistant",
    "bot": "assistant",
    "model": "assistant",
}


def normalize_role(value: str | None) -> Role:
    role = _ROLE_ALIASES.get((value or "").strip().lower())
    if role is None:
        raise ValueError(f"Unsupported turn role: {value!r}")
    return role  # type: ignore[return-value]


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str
    timestamp: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Turn":
        role = data.get("role", data.get("type"))
        text = data.get("text", data.get("content", ""))
        timestamp = data.get("timestamp")
        return cls(
            role=normalize_role(role),
            text=str(text or ""),
            timestamp=float(timestamp) if timestamp is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"role": self.role, "text": self.text}
        if self.timestamp is not None:
            d["timestamp"] = self.timestamp
        return d


@dataclass(frozen=True)
class ConversationInput:
    workspace_id: str
    conversation_id: str
    title: str
    turns: tuple[Turn, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Accept any iterable of turns but store an immutable tuple.
        if not isinstance(self.turns, tuple):
            object.__setattr__(self, "turns", tuple(self.turns))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationInput":
        raw_turns: Iterable[dict[str, Any]] = data.get("turns") or data.get("bubbles") or []
        return cls(
            workspace_id=str(data.get("workspace_id") or data.get("workspaceId") or "default"),
            conversation_id=str(data.get("conversation_id") or data.get("conversationId") or ""),
            title=str(data.get("title") or "Untitled conversation"),
            turns=tuple(Turn.from_dict(t) for t in raw_turns),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "conversation_id": self.conversation_id,
            "title": self.title,
            "turns": [t.to_dict() for t in self.turns],
        }
