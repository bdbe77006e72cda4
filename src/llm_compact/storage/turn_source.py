"""Turn sources: where conversations are read from."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from ..models.conversation import ConversationInput

logger = logging.getLogger(__name__)


class TurnSource(Protocol):
    def get_conversation_turns(self, workspace_id: str, conversation_id: str) -> ConversationInput: ...


def load_transcript(path: str | Path) -> ConversationInput:
    """Load one JSON transcript file.

    Accepts ``turns`` of ``{role, text, timestamp}`` or ``bubbles`` of
    ``{type: user|ai, text}``. Missing ids fall back to ``default`` and the
    file stem.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object at the top level")
    data.setdefault("conversation_id", data.get("conversationId") or path.stem)
    return ConversationInput.from_dict(data)


class JsonFileTurnSource:
    """Reads ``<root>/<workspace_id>/<conversation_id>.json``."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()

    def path_for(self, workspace_id: str, conversation_id: str) -> Path:
        return self.root / workspace_id / f"{conversation_id}.json"

    def get_conversation_turns(self, workspace_id: str, conversation_id: str) -> ConversationInput:
        path = self.path_for(workspace_id, conversation_id)
        if not path.is_file():
            raise FileNotFoundError(f"No transcript for {workspace_id}/{conversation_id} at {path}")
        conversation = load_transcript(path)
        logger.debug("Loaded %d turns from %s", len(conversation.turns), path)
        # The directory layout is authoritative for ids.
        return ConversationInput(
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            title=conversation.title,
            turns=conversation.turns,
        )
