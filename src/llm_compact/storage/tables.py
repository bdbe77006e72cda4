"""SQLModel tables for compaction sessions, results, overviews, learnings, resources and usage."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Status of a compaction session."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.PROCESSING})

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.PROCESSING, SessionStatus.FAILED, SessionStatus.CANCELLED}),
    SessionStatus.PROCESSING: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class CompactStep(str, Enum):
    ANALYZING = "analyzing"
    CHUNKING = "chunking"
    MAPPING = "mapping"
    REDUCING = "reducing"
    FINALIZING = "finalizing"


class CompactSession(SQLModel, table=True):
    """One compaction run from start to a terminal state."""
    __tablename__ = "compact_sessions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    result_id: Optional[str] = Field(default=None, index=True)
    workspace_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    status: SessionStatus = Field(default=SessionStatus.PENDING, index=True)
    progress: int = Field(default=0)
    current_step: Optional[CompactStep] = Field(default=None)
    chunks_total: int = Field(default=0)
    chunks_processed: int = Field(default=0)
    logs_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    @property
    def logs(self) -> list[dict[str, Any]]:
        try:
            data = json.loads(self.logs_json or "[]")
        except json.JSONDecodeError:
            return []
        return data if isinstance(data, list) else []

    @property
    def is_active(self) -> bool:
        return SessionStatus(self.status).is_active


class CompactionResult(SQLModel, table=True):
    """Latest compaction of one conversation. Unique per (workspace, conversation)."""
    __tablename__ = "compaction_results"
    __table_args__ = (UniqueConstraint("workspace_id", "conversation_id", name="uq_compaction_results_conversation"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    workspace_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    title: Optional[str] = Field(default=None)
    content: str = Field(default="", sa_column=Column(Text, nullable=False))
    structured_data_json: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    original_token_count: int = Field(default=0)
    compacted_token_count: int = Field(default=0)
    compression_ratio: float = Field(default=0.0)
    strategy_used: str = Field(default="full_context")
    chunk_count: int = Field(default=1)
    status: str = Field(default="completed")
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))

    @property
    def run_metadata(self) -> dict[str, Any]:
        """Processing time, turn count, provider, model and pass count."""
        try:
            data = json.loads(self.metadata_json or "{}")
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def structured_data(self) -> Any:
        if not self.structured_data_json:
            return None
        return json.loads(self.structured_data_json)


class OverviewRecord(SQLModel, table=True):
    __tablename__ = "overviews"
    __table_args__ = (UniqueConstraint("workspace_id", "conversation_id", name="uq_overviews_conversation"),)

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    title: str = Field(default="")
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))

    @property
    def payload(self) -> dict[str, Any]:
        return json.loads(self.payload_json or "{}")


class LearningsRecord(SQLModel, table=True):
    """Learning concepts extracted from one conversation."""
    __tablename__ = "learnings"
    __table_args__ = (UniqueConstraint("workspace_id", "conversation_id", name="uq_learnings_conversation"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    workspace_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    model_used: Optional[str] = Field(default=None)
    concepts_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))

    @property
    def concepts(self) -> list[dict[str, Any]]:
        return json.loads(self.concepts_json or "[]")


class ResourcesRecord(SQLModel, table=True):
    """Learning resources recommended for one conversation."""
    __tablename__ = "resources"
    __table_args__ = (UniqueConstraint("workspace_id", "conversation_id", name="uq_resources_conversation"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    workspace_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    model_used: Optional[str] = Field(default=None)
    resources_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    topics_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    analysis_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))

    @property
    def resources(self) -> list[dict[str, Any]]:
        return json.loads(self.resources_json or "[]")

    @property
    def topics(self) -> list[str]:
        return json.loads(self.topics_json or "[]")

    @property
    def analysis(self) -> dict[str, Any]:
        return json.loads(self.analysis_json or "{}")


class UsageRecord(SQLModel, table=True):
    """Token usage and cost of one successful generation."""
    __tablename__ = "usage_records"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    provider_id: str = Field(index=True)
    model_id: str = Field(index=True)
    feature: str = Field(index=True)
    conversation_id: Optional[str] = Field(default=None, index=True)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    cost: float = Field(default=0.0)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True))


ALL_TABLES = [
    CompactSession.__table__,
    CompactionResult.__table__,
    OverviewRecord.__table__,
    LearningsRecord.__table__,
    ResourcesRecord.__table__,
    UsageRecord.__table__,
]
