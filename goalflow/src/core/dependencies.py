"""Topological layering of tasks into execution waves.

The resolver is shared by the planner (to estimate parallel duration) and the
chain execution engine (to drive dispatch).  Declared dependencies that point
to unknown ids or to the task itself are treated as already satisfied.  When a
cycle prevents any task from being released, the highest priority task still
waiting is released on its own so that resolution always terminates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from .errors import DependencyError

logger = logging.getLogger(__name__)


@dataclass
class DependencyReport:
    waves: List[List[str]] = field(default_factory=list)
    unknown: Dict[str, List[str]] = field(default_factory=dict)
    self_references: List[str] = field(default_factory=list)
    cycles: List[str] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.waves)

    @property
    def permissive(self) -> bool:
        """Whether any dependency had to be treated as satisfied."""

        return bool(self.unknown or self.self_references or self.cycles)

    def wave_of(self, task_id: str) -> int | None:
        for index, wave in enumerate(self.waves):
            if task_id in wave:
                return index
        return None


def _priority(task: Any) -> int:
    try:
        return int(getattr(task, "priority", 0) or 0)
    except (TypeError, ValueError):
        return 0


class DependencyResolver:
    """Computes execution waves from ``task.id`` / ``task.dependencies``.

    With ``strict=True`` any dependency that would have to be treated as
    satisfied raises :class:`DependencyError` instead.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict

    def analyse(self, tasks: Iterable[Any]) -> DependencyReport:
        report = DependencyReport()
        order: Dict[str, int] = {}
        priorities: Dict[str, int] = {}
        declared: Dict[str, Sequence[str]] = {}
        for task in tasks:
            task_id = str(task.id)
            if task_id in order:
                continue
            order[task_id] = len(order)
            priorities[task_id] = _priority(task)
            declared[task_id] = [str(dep) for dep in (getattr(task, "dependencies", None) or [])]

        edges: Dict[str, List[str]] = {}
        for task_id, deps in declared.items():
            effective: List[str] = []
            for dep in deps:
                if dep == task_id:
                    if task_id not in report.self_references:
                        report.self_references.append(task_id)
                    continue
                if dep not in order:
                    report.unknown.setdefault(task_id, []).append(dep)
                    continue
                if dep not in effective:
                    effective.append(dep)
            edges[task_id] = effective

        if report.unknown:
            logger.warning("Treating unknown dependencies as satisfied: %s", report.unknown)
        if report.self_references:
            logger.warning("Ignoring self-referencing dependencies for %s", report.self_references)

        def rank(task_id: str) -> tuple[int, int]:
            return (-priorities[task_id], order[task_id])

        done: set[str] = set()
        remaining = list(order)
        while remaining:
            ready = [task_id for task_id in remaining if all(dep in done for dep in edges[task_id])]
            if not ready:
                released = min(remaining, key=rank)
                report.cycles.append(released)
                logger.warning("Dependency cycle detected; releasing %s early", released)
                ready = [released]
            ready.sort(key=rank)
            report.waves.append(ready)
            done.update(ready)
            remaining = [task_id for task_id in remaining if task_id not in done]
        if self.strict and report.permissive:
            raise DependencyError(
                f"Unresolvable dependencies: unknown={report.unknown} "
                f"self={report.self_references} cycles={report.cycles}"
            )
        return report

    def resolve(self, tasks: Iterable[Any]) -> List[List[str]]:
        return self.analyse(tasks).waves


def resolve_waves(tasks: Iterable[Any]) -> List[List[str]]:
    """Return the execution waves for ``tasks``."""

    return DependencyResolver().resolve(tasks)


def is_topological(waves: Sequence[Sequence[str]], tasks: Iterable[Any]) -> bool:
    """Check that no task is scheduled before or alongside a known dependency."""

    position: Dict[str, int] = {}
    for index, wave in enumerate(waves):
        for task_id in wave:
            position[task_id] = index
    for task in tasks:
        task_id = str(task.id)
        if task_id not in position:
            return False
        for dep in getattr(task, "dependencies", None) or []:
            dep = str(dep)
            if dep == task_id or dep not in position:
                continue
            if position[dep] >= position[task_id]:
                return False
    return True


__all__ = ["DependencyReport", "DependencyResolver", "is_topological", "resolve_waves"]
