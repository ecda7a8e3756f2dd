"""
Query and log events emitted by the client.

Each level configured through ``ClientOptions.log`` is either written to the
``quizstore.client`` logger (``emit="stdout"``) or delivered to callbacks
registered with ``Client.on`` (``emit="event"``).
"""
import asyncio
import functools
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from quizstore.config import LogDefinition

logger = logging.getLogger("quizstore.client")

EVENT_LEVELS = ("query", "info", "warn", "error")

_STDOUT_LEVELS = {
    "query": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueryEvent:
    query: str
    params: Any
    duration_ms: float
    target: str = "quizstore.engine"
    timestamp: datetime = field(default_factory=_now)


@dataclass
class LogEvent:
    message: str
    target: str = "quizstore.client"
    timestamp: datetime = field(default_factory=_now)


class EventHub:
    def __init__(self, definitions: List[LogDefinition]):
        self._emit: Dict[str, str] = {d.level: d.emit for d in definitions}
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._pending: Set[asyncio.Future] = set()

    def on(self, level: str, callback: Callable) -> None:
        if level not in EVENT_LEVELS:
            raise ValueError(f"Unknown event {level!r}, expected one of {EVENT_LEVELS}")
        if self._emit.get(level) != "event":
            logger.warning("Listener registered for %r but that level is not configured with emit='event'", level)
        self._listeners[level].append(callback)

    def enabled(self, level: str) -> bool:
        return level in self._emit

    def query(self, statement: str, params: Any, duration_ms: float) -> None:
        if not self.enabled("query"):
            return
        self._dispatch("query", QueryEvent(query=statement, params=params, duration_ms=round(duration_ms, 3)))

    def info(self, message: str, target: str = "quizstore.client") -> None:
        self._log("info", message, target)

    def warn(self, message: str, target: str = "quizstore.client") -> None:
        self._log("warn", message, target)

    def error(self, message: str, target: str = "quizstore.client") -> None:
        self._log("error", message, target)

    def _log(self, level: str, message: str, target: str) -> None:
        if not self.enabled(level):
            return
        self._dispatch(level, LogEvent(message=message, target=target))

    def _dispatch(self, level: str, payload) -> None:
        if self._emit[level] == "stdout":
            if isinstance(payload, QueryEvent):
                logger.log(
                    _STDOUT_LEVELS[level],
                    "Query: %s Params: %s Duration: %sms",
                    payload.query, payload.params, payload.duration_ms,
                    extra={
                        "target": payload.target,
                        "query": payload.query,
                        "params": payload.params,
                        "duration_ms": payload.duration_ms,
                    },
                )
            else:
                logger.log(_STDOUT_LEVELS[level], payload.message, extra={"target": payload.target})
            return
        for callback in list(self._listeners.get(level, ())):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(functools.partial(self._listener_done, level))
            except Exception:
                logger.exception("Event listener for %r failed", level)

    def _listener_done(self, level: str, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Event listener for %r failed", level, exc_info=exc)

    async def drain(self) -> None:
        """Waits for async listeners that are still running."""
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


class QueryTimer:
    """SQLAlchemy cursor hooks that feed ``query`` events."""

    def __init__(self, hub: EventHub):
        self.hub = hub

    def before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("quizstore_query_start", []).append(time.perf_counter())

    def after_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        started: Optional[float] = None
        stack = conn.info.get("quizstore_query_start")
        if stack:
            started = stack.pop()
        duration = (time.perf_counter() - started) * 1000 if started is not None else 0.0
        self.hub.query(statement, parameters, duration)

    def handle_error(self, context):
        conn = context.connection
        if conn is not None and conn.info.get("quizstore_query_start"):
            conn.info["quizstore_query_start"].pop()
