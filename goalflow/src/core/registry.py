"""Caller-populated registries for executors and task definitions."""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass, replace
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import ExecutorNotFoundError
from .types import RetryConfig, TaskDefinition

logger = logging.getLogger(__name__)

Executor = Callable[..., Any]

_TOKEN = re.compile(r"[a-z0-9]+")
# Tokens too generic to select a registered definition on their own.
_STOPWORDS = frozenset({"task", "tasks", "the", "a", "an", "and", "for", "of", "to", "with"})


@dataclass(frozen=True)
class ExecutorSpec:
    """Structured description of a registered executor."""

    task_type: str
    executor: Executor
    description: str
    is_async: bool


def describe_executor(executor: Executor, *, task_type: str) -> ExecutorSpec:
    """Return an :class:`ExecutorSpec` for ``executor``.

    Coroutine functions and callables whose ``__call__`` is a coroutine function
    are awaited directly; everything else runs in a worker thread.
    """

    if not callable(executor):
        raise TypeError(f"Executor for {task_type!r} must be callable")
    is_async = inspect.iscoroutinefunction(executor) or inspect.iscoroutinefunction(
        getattr(executor, "__call__", None)
    )
    name = getattr(executor, "__name__", executor.__class__.__name__)
    description = (getattr(executor, "__doc__", "") or str(name)).strip() or str(name)
    return ExecutorSpec(
        task_type=str(task_type),
        executor=executor,
        description=description.splitlines()[0],
        is_async=is_async,
    )


class ExecutorRegistry:
    """Maps task types to executors. Re-registering a type overwrites it."""

    def __init__(self) -> None:
        self._specs: Dict[str, ExecutorSpec] = {}
        self._lock = RLock()

    def register(self, task_type: str, executor: Executor) -> ExecutorSpec:
        spec = describe_executor(executor, task_type=task_type)
        with self._lock:
            replaced = task_type in self._specs
            self._specs[spec.task_type] = spec
        if replaced:
            logger.debug("Replaced executor for task type %s", task_type)
        return spec

    def unregister(self, task_type: str) -> bool:
        with self._lock:
            return self._specs.pop(task_type, None) is not None

    def get(self, task_type: str) -> Optional[ExecutorSpec]:
        with self._lock:
            return self._specs.get(task_type)

    def require(self, task_type: str, **context: Any) -> ExecutorSpec:
        spec = self.get(task_type)
        if spec is None:
            raise ExecutorNotFoundError(task_type, **context)
        return spec

    def types(self) -> List[str]:
        with self._lock:
            return sorted(self._specs)

    def __contains__(self, task_type: object) -> bool:
        with self._lock:
            return task_type in self._specs

    def __len__(self) -> int:
        with self._lock:
            return len(self._specs)


def _tokens(text: str) -> List[str]:
    return [token for token in _TOKEN.findall(text.lower()) if len(token) > 1 and token not in _STOPWORDS]


def definition_keywords(definition: TaskDefinition) -> List[str]:
    """Keywords used to match ``definition`` against goal text.

    Explicit keywords win; otherwise the tokens of the definition's type are used.
    """

    if definition.keywords:
        return [keyword.lower() for keyword in definition.keywords if keyword]
    return _tokens(definition.type)


def _normalise_definition(definition: TaskDefinition) -> TaskDefinition:
    if not definition.id:
        raise ValueError("Task definitions require an id")
    if not definition.type:
        raise ValueError(f"Task definition {definition.id} requires a type")
    retry_config = definition.retry_config
    if retry_config is not None and not isinstance(retry_config, RetryConfig):
        retry_config = RetryConfig(**dict(retry_config))
    timeout = definition.timeout_ms
    if timeout is not None and int(timeout) <= 0:
        raise ValueError(f"Task definition {definition.id} has a non-positive timeout")
    return replace(
        definition,
        id=str(definition.id),
        name=str(definition.name or definition.id),
        dependencies=[str(dep) for dep in definition.dependencies],
        retry_config=retry_config,
        keywords=list(definition.keywords),
    )


class TaskRegistry:
    """Holds :class:`TaskDefinition` templates keyed by id."""

    def __init__(self, definitions: Iterable[TaskDefinition] = ()) -> None:
        self._definitions: Dict[str, TaskDefinition] = {}
        self._lock = RLock()
        for definition in definitions:
            self.register(definition)

    def register(self, definition: TaskDefinition) -> TaskDefinition:
        normalised = _normalise_definition(definition)
        with self._lock:
            self._definitions[normalised.id] = normalised
        return normalised

    def get(self, task_id: str) -> Optional[TaskDefinition]:
        with self._lock:
            return self._definitions.get(task_id)

    def all(self) -> List[TaskDefinition]:
        with self._lock:
            return list(self._definitions.values())

    def builtin_for_type(self, task_type: str) -> Optional[TaskDefinition]:
        with self._lock:
            for definition in self._definitions.values():
                if definition.builtin and definition.type == task_type:
                    return definition
        return None

    def matching(self, goal_text: str, *, include_builtin: bool = False) -> List[TaskDefinition]:
        """Definitions whose keywords prefix a word of ``goal_text``.

        ``"fail"`` matches ``"failure"``; matching is case-insensitive.
        """

        words = _tokens(goal_text)
        matches: List[TaskDefinition] = []
        for definition in self.all():
            if definition.builtin and not include_builtin:
                continue
            keywords = definition_keywords(definition)
            if any(word.startswith(keyword) for keyword in keywords for word in words):
                matches.append(definition)
        return matches

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._definitions

    def __len__(self) -> int:
        with self._lock:
            return len(self._definitions)


__all__ = [
    "Executor",
    "ExecutorRegistry",
    "ExecutorSpec",
    "TaskRegistry",
    "definition_keywords",
    "describe_executor",
]
