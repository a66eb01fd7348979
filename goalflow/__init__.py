"""Convenience exports for the goalflow package.

Attributes are proxied lazily from ``goalflow.src.goalflow`` so importing the
package does not pull in the planner and engine until they are needed.
"""

from __future__ import annotations

import importlib
from typing import Any

importlib.import_module("goalflow.src")

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


def __getattr__(name: str) -> Any:
    if name in __all__:
        from goalflow.src import goalflow as _api

        return getattr(_api, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
