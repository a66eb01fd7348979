"""High level entrypoints that compose the goalflow subsystems."""
from __future__ import annotations

from goalflow.src.core.config import EngineSettings, PlannerSettings, Settings
from goalflow.src.core.engine import ChainExecutionEngine
from goalflow.src.core.events import EventBus, InMemorySink, JsonLinesSink
from goalflow.src.core.planner import Planner
from goalflow.src.core.types import Goal, GoalConstraints, RetryConfig, TaskContext, TaskDefinition

__all__ = (
    "ChainExecutionEngine",
    "EngineSettings",
    "EventBus",
    "Goal",
    "GoalConstraints",
    "InMemorySink",
    "JsonLinesSink",
    "Planner",
    "PlannerSettings",
    "RetryConfig",
    "Settings",
    "TaskContext",
    "TaskDefinition",
    "build_runtime",
)


def build_runtime(settings: Settings | None = None, *, events: EventBus | None = None) -> tuple[Planner, ChainExecutionEngine]:
    """Return a planner and an engine sharing one event bus."""

    settings = settings or Settings.from_env()
    bus = events or EventBus()
    planner = Planner(settings=settings.planner, events=bus)
    engine = ChainExecutionEngine(settings.engine, events=bus, analyzer=planner.analyzer)
    return planner, engine
