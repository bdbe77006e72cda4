from .credentials import EnvCredentialStore, StaticCredentialStore
from .store import CompactStore, log_entry
from .tables import (
    CompactionResult,
    CompactSession,
    CompactStep,
    OverviewRecord,
    SessionStatus,
    UsageRecord,
)
from .turn_source import JsonFileTurnSource, TurnSource, load_transcript

__all__ = [
    "CompactSession",
    "CompactStep",
    "CompactStore",
    "CompactionResult",
    "EnvCredentialStore",
    "JsonFileTurnSource",
    "OverviewRecord",
    "SessionStatus",
    "StaticCredentialStore",
    "TurnSource",
    "UsageRecord",
    "load_transcript",
    "log_entry",
]
