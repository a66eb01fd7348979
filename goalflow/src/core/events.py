"""Typed publish/subscribe channel for planner and orchestrator lifecycle events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, MutableMapping, Protocol

logger = logging.getLogger(__name__)

CHAIN_CREATED = "chain:created"
CHAIN_STARTED = "chain:started"
CHAIN_COMPLETED = "chain:completed"
CHAIN_FAILED = "chain:failed"
CHAIN_CANCELLED = "chain:cancelled"
TASK_STARTED = "task:started"
TASK_COMPLETED = "task:completed"
TASK_FAILED = "task:failed"
TASK_RETRIED = "task:retried"
PLAN_CREATED = "plan:created"

EVENT_NAMES = frozenset(
    {
        CHAIN_CREATED,
        CHAIN_STARTED,
        CHAIN_COMPLETED,
        CHAIN_FAILED,
        CHAIN_CANCELLED,
        TASK_STARTED,
        TASK_COMPLETED,
        TASK_FAILED,
        TASK_RETRIED,
        PLAN_CREATED,
    }
)
WILDCARD = "*"

Handler = Callable[[Dict[str, Any]], Any]


class EventSink(Protocol):
    """A destination for lifecycle events."""

    def write(self, event: Dict[str, Any]) -> None:
        """Persist or forward an event."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EventBus:
    """Dispatcher that fans events out to handlers and sinks.

    Handlers are called synchronously in registration order.  A failing handler
    is logged and skipped so observers can never break a run.
    """

    context: MutableMapping[str, Any] = field(default_factory=dict)
    strict: bool = True
    _handlers: Dict[str, List[Handler]] = field(init=False, default_factory=dict, repr=False)
    _sinks: List[EventSink] = field(init=False, default_factory=list, repr=False)
    _lock: Lock = field(init=False, default_factory=Lock, repr=False)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``event`` and return an unsubscribe callable."""

        if self.strict and event != WILDCARD and event not in EVENT_NAMES:
            raise ValueError(f"Unknown event {event!r}")
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def attach_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, ()))

    def emit(self, event: str, **payload: Any) -> Dict[str, Any]:
        base: Dict[str, Any] = {"event": event, "time": _now_iso()}
        if self.context:
            base.update(self.context)
        base.update(payload)
        with self._lock:
            handlers = list(self._handlers.get(event, ())) + list(self._handlers.get(WILDCARD, ()))
            sinks = list(self._sinks)
        for handler in handlers:
            try:
                handler(dict(base))
            except Exception:
                logger.warning("Event handler for %s failed", event, exc_info=True)
        for sink in sinks:
            try:
                sink.write(dict(base))
            except Exception:
                logger.warning("Event sink %r failed for %s", sink, event, exc_info=True)
        return base


@dataclass
class InMemorySink:
    """Collects emitted planner and chain events in order.

    Used by the test-suite to assert on lifecycle sequences such as
    ``chain:started`` followed by ``task:started``.
    """

    events: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))

    def names(self) -> List[str]:
        return [event["event"] for event in self.events]

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event["event"] == name]


@dataclass
class JsonLinesSink:
    """Appends each event as one JSON object per line.

    ``goalflow chain run --events`` uses this to leave an audit trail that can be
    replayed or tailed while a chain runs.
    """

    path: Path
    _lock: Lock = field(default_factory=Lock, init=False)

    def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


__all__ = [
    "CHAIN_CANCELLED",
    "CHAIN_COMPLETED",
    "CHAIN_CREATED",
    "CHAIN_FAILED",
    "CHAIN_STARTED",
    "EVENT_NAMES",
    "EventBus",
    "EventSink",
    "InMemorySink",
    "JsonLinesSink",
    "PLAN_CREATED",
    "TASK_COMPLETED",
    "TASK_FAILED",
    "TASK_RETRIED",
    "TASK_STARTED",
    "WILDCARD",
]
