import time
from typing import Any


class Message:
    """Standard message format for all LLM clients"""

    def __init__(self, role: str, content: str, timestamp: float | None = None):
        self.role = role
        self.content = content if content is not None else ""
        self.timestamp = timestamp if timestamp else time.time()

    @classmethod
    def from_dict(cls, data: dict) -> 'Message':
        """Create a Message from a dictionary"""
        role = data.get("role", "user")
        content = cls._extract_content(data)
        timestamp = data.get("timestamp", time.time())
        return cls(role, content, timestamp)

    @staticmethod
    def _extract_content(data: dict) -> str:
        """Extract content from the data dictionary"""
        content = data.get("content", "")
        if isinstance(content, list):
            return " ".join(item.get("text", "") for item in content if item.get("type") == "text")
        return str(content)

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    def to_api_format(self) -> dict[str, Any]:
        """Convert to API-compatible format (without timestamp)"""
        return {"role": self.role, "content": self.content or ""}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.role == other.role and self.content == other.content

    def __repr__(self) -> str:
        preview = self.content[:40].replace("\n", " ")
        return f"Message(role={self.role!r}, content={preview!r})"


def build_messages(history: "list[dict | Message]", system_prompt: str | None = None) -> list[Message]:
    """Build an API message list, putting ``system_prompt`` first.

    A ``system`` entry in ``history`` is dropped when an explicit system prompt
    is given.
    """
    messages: list[Message] = []
    if system_prompt:
        messages.append(Message("system", system_prompt))
    for item in history:
        message = item if isinstance(item, Message) else Message.from_dict(item)
        if message.role == "system" and system_prompt:
            continue
        messages.append(message)
    return messages
