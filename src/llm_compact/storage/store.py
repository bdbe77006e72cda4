"""Database access for compaction sessions, results, overviews and usage.

All access goes through one re-entrant lock so check-and-create of a
session and read-modify-write of its log list are atomic within a
process.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from ..errors import SessionAlreadyActiveError, SessionStateError
from ..models.overview import Overview
from .tables import (
    ACTIVE_STATUSES,
    ALL_TABLES,
    ALLOWED_TRANSITIONS,
    CompactionResult,
    CompactSession,
    LearningsRecord,
    OverviewRecord,
    ResourcesRecord,
    SessionStatus,
    UsageRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

_SESSION_FIELDS = frozenset({
    "result_id",
    "status",
    "progress",
    "current_step",
    "chunks_total",
    "chunks_processed",
    "error",
})


def make_engine(database_url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite:///"):
        Path(database_url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def log_entry(level: str, message: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"timestamp": utcnow().isoformat(), "level": level, "message": message}
    if data:
        entry["data"] = data
    return entry


class CompactStore:
    """DB access helper for compaction state."""

    def __init__(self, database_url: str = "sqlite://", engine=None):
        self.engine = engine if engine is not None else make_engine(database_url)
        self._lock = threading.RLock()
        SQLModel.metadata.create_all(self.engine, tables=ALL_TABLES)

    @classmethod
    def from_config(cls, config) -> "CompactStore":
        return cls(config.DATABASE_URL)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session_if_idle(self, workspace_id: str, conversation_id: str) -> CompactSession:
        """Create a pending session unless one is already active for the conversation.

        Raises:
            SessionAlreadyActiveError: a pending or processing session exists.
        """
        with self._lock, self._session() as db:
            existing = db.exec(
                select(CompactSession)
                .where(CompactSession.workspace_id == workspace_id)
                .where(CompactSession.conversation_id == conversation_id)
                .where(CompactSession.status.in_(list(ACTIVE_STATUSES)))
            ).first()
            if existing is not None:
                raise SessionAlreadyActiveError(workspace_id, conversation_id)
            row = CompactSession(workspace_id=workspace_id, conversation_id=conversation_id)
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def get_session(self, session_id: str) -> CompactSession | None:
        with self._lock, self._session() as db:
            return db.get(CompactSession, session_id)

    def get_active_session(self, workspace_id: str, conversation_id: str) -> CompactSession | None:
        with self._lock, self._session() as db:
            return db.exec(
                select(CompactSession)
                .where(CompactSession.workspace_id == workspace_id)
                .where(CompactSession.conversation_id == conversation_id)
                .where(CompactSession.status.in_(list(ACTIVE_STATUSES)))
                .order_by(CompactSession.started_at.desc())
            ).first()

    def list_sessions(self, workspace_id: str, conversation_id: str) -> list[CompactSession]:
        with self._lock, self._session() as db:
            return list(db.exec(
                select(CompactSession)
                .where(CompactSession.workspace_id == workspace_id)
                .where(CompactSession.conversation_id == conversation_id)
                .order_by(CompactSession.started_at)
            ).all())

    def update_session(self, session_id: str, **changes: Any) -> CompactSession | None:
        """Apply field changes under the session state rules.

        - a status change must follow ``ALLOWED_TRANSITIONS``; terminal
          sessions reject any status change with ``SessionStateError``
        - other changes to a terminal session are dropped
        - while processing, a lower ``progress`` is ignored
        - ``completed_at`` is stamped once, on entering a terminal state
        """
        unknown = set(changes) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        with self._lock, self._session() as db:
            row = db.get(CompactSession, session_id)
            if row is None:
                return None
            current = SessionStatus(row.status)

            new_status = changes.pop("status", None)
            if new_status is not None:
                new_status = SessionStatus(new_status)
                if new_status != current and new_status not in ALLOWED_TRANSITIONS[current]:
                    raise SessionStateError(
                        f"Cannot move session {session_id} from {current.value} to {new_status.value}"
                    )

            if current.is_terminal:
                if changes:
                    logger.debug("Ignoring update to %s session %s: %s", current.value, session_id, sorted(changes))
                return row

            if "progress" in changes:
                progress = max(0, min(100, int(changes["progress"])))
                if current == SessionStatus.PROCESSING and progress < row.progress:
                    logger.debug("Ignoring progress regression %d -> %d on %s", row.progress, progress, session_id)
                    changes.pop("progress")
                else:
                    changes["progress"] = progress

            for key, value in changes.items():
                setattr(row, key, value)
            if new_status is not None and new_status != current:
                row.status = new_status
                if new_status.is_terminal:
                    row.completed_at = utcnow()

            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def append_log(self, session_id: str, entry: dict[str, Any]) -> CompactSession | None:
        with self._lock, self._session() as db:
            row = db.get(CompactSession, session_id)
            if row is None:
                return None
            logs = row.logs
            logs.append(entry)
            row.logs_json = json.dumps(logs, default=str)
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def delete_session(self, session_id: str) -> bool:
        with self._lock, self._session() as db:
            row = db.get(CompactSession, session_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_result(self, workspace_id: str, conversation_id: str) -> CompactionResult | None:
        with self._lock, self._session() as db:
            return db.exec(
                select(CompactionResult)
                .where(CompactionResult.workspace_id == workspace_id)
                .where(CompactionResult.conversation_id == conversation_id)
            ).first()

    def get_result_by_id(self, result_id: str) -> CompactionResult | None:
        with self._lock, self._session() as db:
            return db.get(CompactionResult, result_id)

    def upsert_result(self, result: CompactionResult) -> CompactionResult:
        """Insert ``result`` or overwrite the existing row for its conversation in place."""
        with self._lock, self._session() as db:
            row = self._merge_result(db, result)
            db.commit()
            db.refresh(row)
            return row

    def complete_session(self, session_id: str, result: CompactionResult) -> tuple[CompactionResult, CompactSession]:
        """Persist ``result`` and mark the session completed in one transaction.

        Raises ``SessionStateError`` without writing anything if the session
        is gone or no longer processing, e.g. cancelled a moment earlier.
        """
        with self._lock, self._session() as db:
            session = db.get(CompactSession, session_id)
            if session is None:
                raise SessionStateError(f"Compact session {session_id} no longer exists")
            if SessionStatus(session.status) != SessionStatus.PROCESSING:
                raise SessionStateError(
                    f"Cannot complete session {session_id} from {SessionStatus(session.status).value}"
                )
            row = self._merge_result(db, result)
            db.flush()
            session.status = SessionStatus.COMPLETED
            session.progress = 100
            session.result_id = row.id
            session.completed_at = utcnow()
            db.add(session)
            db.commit()
            db.refresh(row)
            db.refresh(session)
            return row, session

    @staticmethod
    def _merge_result(db: Session, result: CompactionResult) -> CompactionResult:
        existing = db.exec(
            select(CompactionResult)
            .where(CompactionResult.workspace_id == result.workspace_id)
            .where(CompactionResult.conversation_id == result.conversation_id)
        ).first()
        if existing is None:
            db.add(result)
            return result

        for key in (
            "title",
            "content",
            "structured_data_json",
            "original_token_count",
            "compacted_token_count",
            "compression_ratio",
            "strategy_used",
            "chunk_count",
            "status",
            "metadata_json",
        ):
            setattr(existing, key, getattr(result, key))
        existing.updated_at = utcnow()
        db.add(existing)
        return existing

    def delete_result(self, workspace_id: str, conversation_id: str) -> bool:
        with self._lock, self._session() as db:
            row = db.exec(
                select(CompactionResult)
                .where(CompactionResult.workspace_id == workspace_id)
                .where(CompactionResult.conversation_id == conversation_id)
            ).first()
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    # ------------------------------------------------------------------
    # Overviews
    # ------------------------------------------------------------------

    def upsert_overview(self, overview: Overview) -> OverviewRecord:
        payload = json.dumps(overview.to_dict(), default=str)
        with self._lock, self._session() as db:
            row = db.exec(
                select(OverviewRecord)
                .where(OverviewRecord.workspace_id == overview.workspace_id)
                .where(OverviewRecord.conversation_id == overview.conversation_id)
            ).first()
            if row is None:
                row = OverviewRecord(
                    id=overview.id,
                    workspace_id=overview.workspace_id,
                    conversation_id=overview.conversation_id,
                )
            row.title = overview.title
            row.payload_json = payload
            row.created_at = utcnow()
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def get_overview(self, workspace_id: str, conversation_id: str) -> OverviewRecord | None:
        with self._lock, self._session() as db:
            return db.exec(
                select(OverviewRecord)
                .where(OverviewRecord.workspace_id == workspace_id)
                .where(OverviewRecord.conversation_id == conversation_id)
            ).first()

    # ------------------------------------------------------------------
    # Learnings and resources
    # ------------------------------------------------------------------

    def upsert_learnings(
        self,
        workspace_id: str,
        conversation_id: str,
        concepts: list[dict[str, Any]],
        model_used: str | None = None,
    ) -> LearningsRecord:
        with self._lock, self._session() as db:
            row = db.exec(
                select(LearningsRecord)
                .where(LearningsRecord.workspace_id == workspace_id)
                .where(LearningsRecord.conversation_id == conversation_id)
            ).first()
            if row is None:
                row = LearningsRecord(workspace_id=workspace_id, conversation_id=conversation_id)
            row.concepts_json = json.dumps(concepts, default=str)
            row.model_used = model_used
            row.created_at = utcnow()
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def get_learnings(self, workspace_id: str, conversation_id: str) -> LearningsRecord | None:
        with self._lock, self._session() as db:
            return db.exec(
                select(LearningsRecord)
                .where(LearningsRecord.workspace_id == workspace_id)
                .where(LearningsRecord.conversation_id == conversation_id)
            ).first()

    def upsert_resources(
        self,
        workspace_id: str,
        conversation_id: str,
        resources: list[dict[str, Any]],
        topics: list[str],
        analysis: dict[str, Any],
        model_used: str | None = None,
    ) -> ResourcesRecord:
        with self._lock, self._session() as db:
            row = db.exec(
                select(ResourcesRecord)
                .where(ResourcesRecord.workspace_id == workspace_id)
                .where(ResourcesRecord.conversation_id == conversation_id)
            ).first()
            if row is None:
                row = ResourcesRecord(workspace_id=workspace_id, conversation_id=conversation_id)
            row.resources_json = json.dumps(resources, default=str)
            row.topics_json = json.dumps(topics)
            row.analysis_json = json.dumps(analysis, default=str)
            row.model_used = model_used
            row.created_at = utcnow()
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def get_resources(self, workspace_id: str, conversation_id: str) -> ResourcesRecord | None:
        with self._lock, self._session() as db:
            return db.exec(
                select(ResourcesRecord)
                .where(ResourcesRecord.workspace_id == workspace_id)
                .where(ResourcesRecord.conversation_id == conversation_id)
            ).first()

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def record_usage(
        self,
        *,
        provider_id: str,
        model_id: str,
        feature: str,
        conversation_id: str | None,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> UsageRecord:
        row = UsageRecord(
            provider_id=provider_id,
            model_id=model_id,
            feature=feature,
            conversation_id=conversation_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
        )
        with self._lock, self._session() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def list_usage(self, since: datetime | None = None, feature: str | None = None) -> list[UsageRecord]:
        with self._lock, self._session() as db:
            query = select(UsageRecord)
            if since is not None:
                query = query.where(UsageRecord.created_at >= since)
            if feature:
                query = query.where(UsageRecord.feature == feature)
            return list(db.exec(query.order_by(UsageRecord.created_at)).all())

    def usage_summary(self) -> list[dict[str, Any]]:
        """Totals per provider and model."""
        with self._lock, self._session() as db:
            rows: Iterable = db.exec(
                select(
                    UsageRecord.provider_id,
                    UsageRecord.model_id,
                    func.count(UsageRecord.id),
                    func.sum(UsageRecord.input_tokens),
                    func.sum(UsageRecord.output_tokens),
                    func.sum(UsageRecord.cost),
                ).group_by(UsageRecord.provider_id, UsageRecord.model_id)
            ).all()
            return [
                {
                    "provider": provider,
                    "model": model,
                    "requests": int(count or 0),
                    "input_tokens": int(input_tokens or 0),
                    "output_tokens": int(output_tokens or 0),
                    "cost": float(cost or 0.0),
                }
                for provider, model, count, input_tokens, output_tokens, cost in rows
            ]
