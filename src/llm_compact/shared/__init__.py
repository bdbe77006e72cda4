"""Shared utilities used across llm-compact components."""

from .logging import (
    Event,
    EventCategory,
    EventCollector,
    EventLevel,
    EventRenderer,
    LogConfig,
    bind_collector,
    count_event,
    emit_event,
    log_operation,
    pipeline_context,
)

__all__ = [
    "Event",
    "EventCategory",
    "EventCollector",
    "EventLevel",
    "EventRenderer",
    "LogConfig",
    "bind_collector",
    "count_event",
    "emit_event",
    "log_operation",
    "pipeline_context",
]
