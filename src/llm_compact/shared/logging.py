"""Logging setup and pipeline event collection.

Two layers work together:

* Standard ``logging`` with a Rich console handler (and a rotating debug
  file under ``--debug``). Modules log through ``logging.getLogger(__name__)``.
* An :class:`EventCollector` that records what one CLI run did: which
  strategy was picked, which provider answered, how often it retried. The
  CLI renders the collected events as a tree under ``--verbose``.

The active collector lives in a ``ContextVar``. Worker threads do not inherit
it, so executor callables are wrapped with :func:`bind_collector`.
"""

from __future__ import annotations

import contextvars
import functools
import logging
import os
import threading
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Iterator, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

T = TypeVar("T")

DEBUG_LOG_NAME = "llm-compact.debug.log"


class EventCategory(str, Enum):
    COMPACTION = "compaction"
    OVERVIEW = "overview"
    LLM = "llm"
    STORAGE = "storage"
    CONFIG = "config"
    SYSTEM = "system"


class EventLevel(int, Enum):
    """Lower values are shown at lower verbosity."""

    INFO = 0
    DETAIL = 1
    TRACE = 2


_CATEGORY_STYLE = {
    EventCategory.COMPACTION: "cyan",
    EventCategory.OVERVIEW: "magenta",
    EventCategory.LLM: "green",
    EventCategory.STORAGE: "yellow",
    EventCategory.CONFIG: "blue",
    EventCategory.SYSTEM: "white",
}


@dataclass(frozen=True)
class Event:
    category: EventCategory
    level: EventLevel
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    duration_ms: float | None = None
    parent_id: str | None = None
    thread: str = field(default_factory=lambda: threading.current_thread().name)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class EventCollector:
    """Thread-safe event sink for one pipeline run.

    Operations nest per thread: an event emitted inside ``operation()`` gets
    that operation as its parent, and a worker thread bound to the collector
    starts at the operation that was open when it was bound.
    """

    def __init__(self) -> None:
        self.events: list[Event] = []
        self.counters: Counter[str] = Counter()
        self._lock = threading.Lock()
        self._stacks = threading.local()

    def _stack(self) -> list[str]:
        stack = getattr(self._stacks, "ids", None)
        if stack is None:
            stack = []
            self._stacks.ids = stack
        return stack

    def current_operation(self) -> str | None:
        stack = self._stack()
        return stack[-1] if stack else None

    def adopt(self, parent_id: str | None) -> None:
        """Seed the calling thread's stack with an operation from another thread."""
        self._stacks.ids = [parent_id] if parent_id else []

    def emit(
        self,
        category: EventCategory,
        message: str,
        level: EventLevel = EventLevel.INFO,
        duration_ms: float | None = None,
        **data: Any,
    ) -> str:
        event = Event(
            category=category,
            level=level,
            message=message,
            data=data,
            duration_ms=duration_ms,
            parent_id=self.current_operation(),
        )
        with self._lock:
            self.events.append(event)
        return event.event_id

    def count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[name] += amount

    @contextmanager
    def operation(self, category: EventCategory, name: str, **data: Any) -> Iterator[str]:
        event_id = self.emit(category, name, level=EventLevel.INFO, **data)
        stack = self._stack()
        stack.append(event_id)
        started = time.perf_counter()
        failed = False
        try:
            yield event_id
        except BaseException:
            failed = True
            raise
        finally:
            stack.pop()
            elapsed = (time.perf_counter() - started) * 1000
            self.emit(
                category,
                f"{name} {'failed' if failed else 'done'}",
                level=EventLevel.DETAIL,
                duration_ms=elapsed,
            )

    def children(self, parent_id: str | None) -> list[Event]:
        with self._lock:
            return [e for e in self.events if e.parent_id == parent_id]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
            self.counters.clear()


class EventRenderer:
    """Prints a collector's events according to the CLI verbosity flags."""

    def __init__(self, console: Console, verbose: bool = False, debug: bool = False) -> None:
        self.console = console
        self.verbose = verbose
        self.debug = debug
        self._logger = logging.getLogger("llm_compact.events")

    @property
    def max_level(self) -> EventLevel:
        if self.debug:
            return EventLevel.TRACE
        return EventLevel.DETAIL

    def render_flow(self, collector: EventCollector) -> None:
        if not (self.verbose or self.debug) or not collector.events:
            return

        tree = Tree("[bold]Pipeline[/bold]")
        self._add_children(tree, collector, None)
        if collector.counters:
            stats = ", ".join(f"{k}={v}" for k, v in sorted(collector.counters.items()))
            tree.add(f"[dim]{stats}[/dim]")
        self.console.print(Panel(tree, title="Flow", border_style="dim"))

        if self.debug:
            for event in collector.events:
                self._logger.debug(
                    "[%s] %s %s%s",
                    event.category.value,
                    event.message,
                    event.data or "",
                    f" {event.duration_ms:.1f}ms" if event.duration_ms is not None else "",
                )

    def _add_children(self, node: Tree, collector: EventCollector, parent_id: str | None) -> None:
        for event in collector.children(parent_id):
            if event.level > self.max_level:
                continue
            label = f"[{_CATEGORY_STYLE[event.category]}]{event.message}[/]"
            if event.duration_ms is not None:
                label += f" [dim]({event.duration_ms:.0f}ms)[/dim]"
            if event.data:
                label += " [dim]" + " ".join(f"{k}={v}" for k, v in event.data.items()) + "[/dim]"
            child = node.add(label)
            self._add_children(child, collector, event.event_id)

    def render_error(self, message: str, exception: BaseException | None = None) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {message}")
        if exception is not None and self.debug:
            self._logger.error("Unhandled pipeline error", exc_info=exception)


class LogConfig:
    """Logging setup for the CLI.

    - default: warnings only
    - ``--verbose``: INFO on the console plus the event tree
    - ``--debug``: DEBUG, rich tracebacks and a rotating file in ``LLM_COMPACT_LOG_DIR``
    """

    QUIET_LOGGERS: tuple[str, ...] = (
        "httpx",
        "httpcore",
        "openai",
        "anthropic",
        "markdown_it",
        "sqlalchemy.engine",
    )

    @classmethod
    def configure(cls, *, verbose: bool = False, debug: bool = False) -> None:
        from rich.logging import RichHandler

        root = logging.getLogger()
        for handler in list(root.handlers):
            if not isinstance(handler, RotatingFileHandler):
                root.removeHandler(handler)

        for name in cls.QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        console_level = logging.INFO if (verbose or debug) else logging.WARNING
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=debug,
            show_time=debug,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setLevel(console_level)
        root.addHandler(handler)
        root.setLevel(logging.DEBUG if debug else console_level)

        if debug:
            cls._add_debug_file_handler(root, os.getenv("LLM_COMPACT_LOG_DIR", ".logs"))

    @staticmethod
    def _add_debug_file_handler(root: logging.Logger, log_dir: str) -> None:
        log_path = os.path.abspath(os.path.join(log_dir, DEBUG_LOG_NAME))
        if any(isinstance(h, RotatingFileHandler) and h.baseFilename == log_path for h in root.handlers):
            return
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        except OSError as exc:
            logging.getLogger(__name__).warning("Debug log file unavailable at %s: %s", log_path, exc)
            return
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(handler)

    @classmethod
    def get_renderer(cls, console: Console, *, verbose: bool, debug: bool) -> EventRenderer:
        return EventRenderer(console=console, verbose=verbose, debug=debug)

    @classmethod
    def new_collector(cls) -> EventCollector:
        return EventCollector()


_current: contextvars.ContextVar[EventCollector | None] = contextvars.ContextVar("llm_compact_collector", default=None)


@contextmanager
def pipeline_context(collector: EventCollector) -> Iterator[EventCollector]:
    token = _current.set(collector)
    try:
        yield collector
    finally:
        _current.reset(token)


def bind_collector(func: Callable[..., T]) -> Callable[..., T]:
    """Make ``func`` report to the caller's collector when run on another thread."""
    collector = _current.get()
    if collector is None:
        return func
    parent_id = collector.current_operation()

    @functools.wraps(func)
    def bound(*args: Any, **kwargs: Any) -> T:
        token = _current.set(collector)
        collector.adopt(parent_id)
        try:
            return func(*args, **kwargs)
        finally:
            _current.reset(token)

    return bound


def emit_event(category: EventCategory, message: str, level: EventLevel = EventLevel.INFO, **data: Any) -> None:
    collector = _current.get()
    if collector is not None:
        collector.emit(category, message, level=level, **data)


def count_event(name: str, amount: int = 1) -> None:
    collector = _current.get()
    if collector is not None:
        collector.count(name, amount)


def log_operation(category: EventCategory, name: str | None = None):
    """Wrap a call in a collector operation so it shows up timed in the flow tree."""

    def decorator(func):
        op_name = name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            collector = _current.get()
            if collector is None:
                return func(*args, **kwargs)
            with collector.operation(category, op_name):
                return func(*args, **kwargs)

        return wrapper

    return decorator
