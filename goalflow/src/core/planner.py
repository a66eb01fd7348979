"""Decomposes goals into dependency-ordered, estimated and risk-assessed plans.

The planner never raises to its caller: malformed goals are normalised where
possible and otherwise degrade to a minimal plan with a single generic task.
Every plan is stored in an in-memory history keyed by goal type.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .analysis import COMPLEXITY_MULTIPLIERS, GoalAnalyzer
from .config import PlannerSettings
from .dependencies import DependencyReport, DependencyResolver
from .errors import GoalValidationError
from .events import PLAN_CREATED, EventBus
from .manifest import salvage_goal, validate_goal
from .types import (
    ComplexityAnalysis,
    ExecutionStrategy,
    Goal,
    MitigationStrategy,
    PlannedTask,
    Risk,
    RiskAssessment,
    TaskPlan,
)

logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000
DEPENDENCY_TASK_DURATION_MS = 5 * 60_000
GENERIC_TASK_DURATION_MS = 30 * 60_000
MAX_STRATEGY_PARALLELISM = 5
HYBRID_PARALLELISM = 3

_RISK_LEVELS = ("low", "medium", "high", "critical")

# Aggregate complexity thresholds used by ``analyze_goals``.
_AGGREGATE_LEVELS = ((20.0, "simple"), (40.0, "moderate"), (60.0, "complex"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_task_id(prefix: str = "task") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _clamp_priority(value: int) -> int:
    return max(0, min(int(value), 100))


def _risk_level(score: float) -> str:
    if score < 0.25:
        return "low"
    if score < 0.5:
        return "medium"
    if score < 0.75:
        return "high"
    return "critical"


def _escalate(level: str) -> str:
    index = _RISK_LEVELS.index(level)
    return _RISK_LEVELS[min(index + 1, len(_RISK_LEVELS) - 1)]


def _drop_dangling(tasks: Sequence[PlannedTask]) -> List[PlannedTask]:
    """Remove dependencies that point at tasks no longer in ``tasks``."""

    kept = {task.id for task in tasks}
    return [
        replace(task, dependencies=[dep for dep in task.dependencies if dep in kept])
        for task in tasks
    ]


@dataclass
class _Optimisation:
    """Book-keeping produced by the constraint optimisation passes."""

    filtered_tasks: List[str] = field(default_factory=list)
    dependency_tasks: List[str] = field(default_factory=list)
    deadline_applied: bool = False
    available_ms: Optional[int] = None
    compression: Optional[float] = None
    deadline_missed: bool = False


@dataclass
class Planner:
    """Builds :class:`TaskPlan` objects from :class:`Goal` descriptions."""

    analyzer: GoalAnalyzer = field(default_factory=GoalAnalyzer)
    resolver: DependencyResolver = field(default_factory=DependencyResolver)
    settings: PlannerSettings = field(default_factory=PlannerSettings)
    events: EventBus | None = None
    clock: Callable[[], datetime] = _utcnow

    _history: Dict[str, List[TaskPlan]] = field(init=False, default_factory=dict, repr=False)
    _plans: Dict[str, TaskPlan] = field(init=False, default_factory=dict, repr=False)
    _lock: RLock = field(init=False, default_factory=RLock, repr=False)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_plan(self, goal: Any) -> TaskPlan:
        """Create a plan for ``goal``. Never raises."""

        try:
            normalised = validate_goal(goal)
        except GoalValidationError as exc:
            fallback = salvage_goal(goal)
            logger.warning("Goal %s failed validation, using minimal plan: %s", fallback.id, exc)
            plan = self._minimal_plan(fallback, reason=str(exc))
        else:
            try:
                plan = self._build_plan(normalised)
            except Exception as exc:
                logger.exception("Planning failed for goal %s; degrading to minimal plan", normalised.id)
                plan = self._minimal_plan(normalised, reason=f"{type(exc).__name__}: {exc}")

        self._store(plan)
        logger.info(
            "Created plan %s for goal %s: %d tasks, ~%dms, risk=%s",
            plan.id,
            plan.goal_id,
            len(plan.tasks),
            plan.estimated_duration_ms,
            plan.risk_assessment.overall_risk,
        )
        self._emit(
            PLAN_CREATED,
            plan_id=plan.id,
            goal_id=plan.goal_id,
            goal_type=plan.goal_type,
            task_count=len(plan.tasks),
            estimated_duration_ms=plan.estimated_duration_ms,
            degraded=bool(plan.metadata.get("degraded")),
        )
        return plan

    def analyze_goals(
        self,
        goals: Iterable[Any],
        options: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Plan every goal and aggregate recommendations and complexity."""

        options = dict(options or {})
        include_tasks = bool(options.get("include_tasks", True))
        goal_list = list(goals)
        plans = [self.create_plan(goal) for goal in goal_list]

        summaries: List[Dict[str, Any]] = []
        recommendations: List[str] = []
        for plan in plans:
            summary: Dict[str, Any] = {
                "id": plan.id,
                "goal_id": plan.goal_id,
                "goal_type": plan.goal_type,
                "execution_strategy": plan.execution_strategy.to_dict(),
                "estimated_duration_ms": plan.estimated_duration_ms,
                "required_resources": list(plan.required_resources),
                "risk_assessment": plan.risk_assessment.to_dict(),
                "task_count": len(plan.tasks),
                "alternatives": [
                    {
                        "id": alt.id,
                        "name": alt.name,
                        "estimated_duration_ms": alt.estimated_duration_ms,
                        "tradeoffs": _alternative_tradeoffs(alt.name),
                    }
                    for alt in plan.alternatives
                ],
            }
            if include_tasks:
                summary["tasks"] = [task.to_dict() for task in plan.tasks]
            summaries.append(summary)
            recommendations.extend(self._recommendations_for(plan))

        complexity = self._aggregate_complexity(plans)
        if complexity["level"] in {"complex", "highly-complex"}:
            recommendations.append("Phase-based implementation recommended")
        return {
            "plans": summaries,
            "recommendations": recommendations,
            "complexity_analysis": complexity,
        }

    def get_historical_plans(self, goal_type: str) -> List[TaskPlan]:
        with self._lock:
            return list(self._history.get(goal_type, ()))

    def get_plan(self, plan_id: str) -> Optional[TaskPlan]:
        with self._lock:
            return self._plans.get(plan_id)

    def get_available_templates(self) -> Dict[str, Dict[str, Any]]:
        return self.analyzer.available_templates()

    def learned_patterns(self, goal_type: str, *, limit: int = 5) -> List[Dict[str, Any]]:
        """Task-type sequences seen for ``goal_type`` once enough plans exist."""

        history = self.get_historical_plans(goal_type)
        if len(history) < self.settings.learning_threshold:
            return []
        occurrences: Counter[str] = Counter()
        durations: Dict[str, int] = {}
        for plan in history:
            sequence = "-".join(task.type for task in plan.tasks)
            occurrences[sequence] += 1
            durations[sequence] = durations.get(sequence, 0) + plan.estimated_duration_ms
        return [
            {
                "sequence": sequence,
                "occurrences": count,
                "avg_duration_ms": durations[sequence] // count,
            }
            for sequence, count in occurrences.most_common(limit)
        ]

    # ------------------------------------------------------------------
    # Plan construction
    # ------------------------------------------------------------------

    def _build_plan(self, goal: Goal) -> TaskPlan:
        complexity = self.analyzer.complexity(goal)
        tasks = self._generate_tasks(goal, complexity)
        optimisation = _Optimisation()

        constraints = goal.constraints
        if constraints is not None and constraints.resources is not None:
            tasks = self._optimise_for_resources(tasks, constraints.resources, optimisation)
        if constraints is not None and constraints.dependencies:
            tasks = self._inject_dependency_tasks(tasks, constraints.dependencies, optimisation)
        strategy = self._determine_strategy(tasks, complexity)

        estimated = self._estimate_duration(tasks, strategy.parallelism_level)
        if constraints is not None and constraints.deadline is not None:
            tasks, strategy, estimated = self._optimise_for_deadline(
                tasks, strategy, estimated, constraints.deadline, optimisation
            )

        report = self.resolver.analyse(tasks)
        plan_id = f"plan-{uuid.uuid4().hex[:12]}"
        metadata: Dict[str, Any] = {
            "goal_description": goal.description,
            "degraded": False,
            "dependency_depth": report.depth,
        }
        if optimisation.filtered_tasks:
            metadata["filtered_tasks"] = list(optimisation.filtered_tasks)
        if optimisation.dependency_tasks:
            metadata["dependency_tasks"] = list(optimisation.dependency_tasks)
        if optimisation.deadline_applied:
            metadata["deadline_optimised"] = True
            metadata["available_ms"] = optimisation.available_ms
        if optimisation.compression is not None:
            metadata["deadline_compression"] = round(optimisation.compression, 4)
        if optimisation.deadline_missed:
            metadata["deadline_missed"] = True

        plan = TaskPlan(
            id=plan_id,
            goal_id=goal.id,
            goal_type=goal.type,
            tasks=tasks,
            execution_strategy=strategy,
            estimated_duration_ms=estimated,
            required_resources=_union_capabilities(tasks),
            risk_assessment=self._assess_risks(tasks, report, goal, optimisation),
            complexity=complexity,
            metadata=metadata,
            created_at=self.clock(),
        )
        plan.alternatives = self._generate_alternatives(plan)
        return plan

    def _generate_tasks(self, goal: Goal, complexity: ComplexityAnalysis) -> List[PlannedTask]:
        tasks: List[PlannedTask] = []
        for index, action in enumerate(self.analyzer.detect_actions(goal.description)):
            tasks.append(
                PlannedTask(
                    id=_new_task_id(),
                    name=action.name,
                    description=action.sentence,
                    type=action.task_type,
                    priority=_clamp_priority(goal.priority - index * 5),
                    estimated_duration_ms=self.analyzer.estimate_duration(action, complexity.level),
                    required_capabilities=action.capabilities,
                    dependencies=[tasks[-1].id] if tasks else [],
                    parallelizable=action.parallelizable,
                    optional=False,
                )
            )

        template = self.analyzer.template_for(goal.type)
        if template is not None and complexity.level != "highly-complex":
            multiplier = COMPLEXITY_MULTIPLIERS.get(complexity.level, 1.0)
            detected_types = {task.type for task in tasks}
            for standard in template.standard_tasks:
                if standard.task_type in detected_types:
                    continue
                detected_types.add(standard.task_type)
                tasks.append(
                    PlannedTask(
                        id=_new_task_id(),
                        name=standard.name.replace("-", " ").title(),
                        description=f"Standard {standard.name} task",
                        type=standard.task_type,
                        priority=_clamp_priority(goal.priority - 10),
                        estimated_duration_ms=int(round(standard.duration_ms * multiplier)),
                        required_capabilities=list(standard.capabilities),
                        parallelizable=True,
                        optional=True,
                    )
                )
        return tasks

    def _determine_strategy(self, tasks: Sequence[PlannedTask], complexity: ComplexityAnalysis) -> ExecutionStrategy:
        parallel_count = sum(1 for task in tasks if task.parallelizable)
        has_dependencies = any(task.dependencies for task in tasks)
        strategy_type = "sequential"
        parallelism = 1
        if parallel_count > 1 and not has_dependencies:
            strategy_type = "parallel"
            parallelism = min(parallel_count, MAX_STRATEGY_PARALLELISM)
        elif parallel_count > 1:
            strategy_type = "hybrid"
            parallelism = HYBRID_PARALLELISM
        interval = max(1, self.settings.checkpoint_interval)
        ordered = sorted(tasks, key=lambda task: -task.priority)
        return ExecutionStrategy(
            type=strategy_type,
            parallelism_level=parallelism,
            checkpoints=[task.id for index, task in enumerate(tasks) if index % interval == 0],
            adaptive_replanning=complexity.level in {"complex", "highly-complex"},
            priority_order=[task.id for task in ordered],
        )

    def _estimate_duration(self, tasks: Sequence[PlannedTask], parallelism: int) -> int:
        """Sum of wave durations with a concurrency discount for parallel tasks."""

        if not tasks:
            return 0
        by_id = {task.id: task for task in tasks}
        parallelism = max(1, parallelism)
        total = 0
        for wave in self.resolver.resolve(tasks):
            members = [by_id[task_id] for task_id in wave]
            concurrent = sorted(
                (task.estimated_duration_ms for task in members if task.parallelizable),
                reverse=True,
            )
            for start in range(0, len(concurrent), parallelism):
                total += concurrent[start]
            total += sum(task.estimated_duration_ms for task in members if not task.parallelizable)
        return int(total)

    # ------------------------------------------------------------------
    # Constraint optimisation
    # ------------------------------------------------------------------

    def _optimise_for_resources(
        self,
        tasks: Sequence[PlannedTask],
        resources: Sequence[str],
        optimisation: _Optimisation,
    ) -> List[PlannedTask]:
        allowed = set(resources)
        kept: List[PlannedTask] = []
        for task in tasks:
            if set(task.required_capabilities) <= allowed:
                kept.append(task)
            else:
                optimisation.filtered_tasks.append(task.id)
        if optimisation.filtered_tasks:
            logger.info("Filtered %d task(s) lacking allowed capabilities", len(optimisation.filtered_tasks))
        return _drop_dangling(kept)

    def _inject_dependency_tasks(
        self,
        tasks: Sequence[PlannedTask],
        dependencies: Sequence[str],
        optimisation: _Optimisation,
    ) -> List[PlannedTask]:
        dependency_tasks = [
            PlannedTask(
                id=_new_task_id("dep"),
                name=f"Resolve dependency: {dependency}",
                description=f"Ensure {dependency} is available",
                type="dependency",
                priority=100,
                estimated_duration_ms=DEPENDENCY_TASK_DURATION_MS,
                required_capabilities=["dependency-management"],
                parallelizable=True,
                optional=False,
                input_requirements={"dependency": dependency},
            )
            for dependency in dependencies
        ]
        dependency_ids = [task.id for task in dependency_tasks]
        optimisation.dependency_tasks.extend(dependency_ids)
        updated = [
            replace(task, dependencies=dependency_ids + list(task.dependencies))
            for task in tasks
        ]
        return dependency_tasks + updated

    def _optimise_for_deadline(
        self,
        tasks: List[PlannedTask],
        strategy: ExecutionStrategy,
        estimated: int,
        deadline: datetime,
        optimisation: _Optimisation,
    ) -> tuple[List[PlannedTask], ExecutionStrategy, int]:
        available = int((deadline - self.clock()).total_seconds() * 1000)
        optimisation.available_ms = available
        if estimated <= available and available > self.settings.tight_deadline_ms:
            return tasks, strategy, estimated

        optimisation.deadline_applied = True
        critical = _drop_dangling([task for task in tasks if not task.optional])
        has_dependencies = any(task.dependencies for task in critical)
        parallelism = max(2, min(self.settings.max_parallelism, strategy.parallelism_level * 2))
        optimised_strategy = replace(
            strategy,
            type="hybrid" if has_dependencies else "parallel",
            parallelism_level=parallelism,
            checkpoints=[task.id for task in critical],
            adaptive_replanning=True,
            priority_order=[task.id for task in sorted(critical, key=lambda task: -task.priority)],
        )
        estimated = self._estimate_duration(critical, parallelism)

        if available <= 0:
            optimisation.deadline_missed = True
            logger.warning("Deadline already passed; plan cannot meet it")
        elif estimated > available:
            factor = available / float(estimated)
            optimisation.compression = factor
            critical = [
                replace(task, estimated_duration_ms=int(math.floor(task.estimated_duration_ms * factor)))
                for task in critical
            ]
            estimated = self._estimate_duration(critical, parallelism)
            logger.info("Compressed task estimates by %.2f to fit deadline", factor)
        return critical, optimised_strategy, estimated

    # ------------------------------------------------------------------
    # Risk assessment and alternatives
    # ------------------------------------------------------------------

    def _assess_risks(
        self,
        tasks: Sequence[PlannedTask],
        report: DependencyReport,
        goal: Goal,
        optimisation: _Optimisation,
    ) -> RiskAssessment:
        assessment = RiskAssessment()

        def add(risk_type: str, description: str, probability: float, impact: float,
                affected: Iterable[str], strategies: Sequence[tuple[str, float, float]]) -> None:
            risk = Risk(
                id=f"risk-{uuid.uuid4().hex[:8]}",
                type=risk_type,
                description=description,
                probability=round(probability, 3),
                impact=round(impact, 3),
                affected_tasks=list(affected),
            )
            assessment.risks.append(risk)
            assessment.mitigation_strategies[risk.id] = [
                MitigationStrategy(risk_id=risk.id, strategy=text, cost=cost, effectiveness=effectiveness)
                for text, cost, effectiveness in strategies
            ]

        long_tasks = [task.id for task in tasks if task.estimated_duration_ms > HOUR_MS]
        if long_tasks:
            add(
                "duration",
                "Some tasks have long estimated durations",
                0.4,
                0.6,
                long_tasks,
                [("Break down long tasks into smaller subtasks", 0.2, 0.8)],
            )

        tangled = [task.id for task in tasks if len(task.dependencies) > 2]
        if tangled or report.depth > 4:
            add(
                "dependency",
                "Complex task dependencies may cause delays",
                0.5,
                0.7,
                tangled or [task_id for wave in report.waves[4:] for task_id in wave],
                [("Implement dependency tracking and early warning system", 0.3, 0.7)],
            )

        external = goal.constraints.dependencies if goal.constraints else []
        if external:
            add(
                "external-dependency",
                f"{len(external)} external dependency(ies) must be available before work starts",
                min(0.3 + 0.1 * len(external), 0.9),
                0.6,
                optimisation.dependency_tasks,
                [
                    ("Verify availability of external dependencies before execution", 0.1, 0.6),
                    ("Prepare fallbacks for unavailable dependencies", 0.3, 0.5),
                ],
            )

        if optimisation.filtered_tasks:
            add(
                "resource",
                "Tasks were removed because required capabilities are not available",
                0.4,
                0.5,
                optimisation.filtered_tasks,
                [("Acquire missing capabilities or delegate filtered tasks", 0.4, 0.7)],
            )

        if optimisation.deadline_missed or optimisation.compression is not None:
            add(
                "deadline",
                "Estimated effort exceeds the time available before the deadline",
                0.9 if optimisation.deadline_missed else 0.7,
                0.8,
                [task.id for task in tasks],
                [("Negotiate scope or extend the deadline", 0.5, 0.6)],
            )

        if assessment.risks:
            avg_probability = sum(risk.probability for risk in assessment.risks) / len(assessment.risks)
            avg_impact = sum(risk.impact for risk in assessment.risks) / len(assessment.risks)
            level = _risk_level(avg_probability * avg_impact)
            if len(assessment.risks) >= 3:
                level = _escalate(level)
            assessment.overall_risk = level
        return assessment

    def _generate_alternatives(self, plan: TaskPlan) -> List[TaskPlan]:
        factor = self.settings.fast_track_factor
        fast_tasks = _drop_dangling(
            [
                replace(task, estimated_duration_ms=int(task.estimated_duration_ms * factor))
                for task in plan.tasks
                if not task.optional
            ]
        )
        fast_strategy = replace(
            plan.execution_strategy,
            checkpoints=[task_id for task_id in plan.execution_strategy.checkpoints if any(t.id == task_id for t in fast_tasks)],
            priority_order=[task_id for task_id in plan.execution_strategy.priority_order if any(t.id == task_id for t in fast_tasks)],
        )
        fast_track = TaskPlan(
            id=f"{plan.id}-fast",
            goal_id=plan.goal_id,
            goal_type=plan.goal_type,
            name="fast-track",
            tasks=fast_tasks,
            execution_strategy=fast_strategy,
            estimated_duration_ms=self._estimate_duration(fast_tasks, fast_strategy.parallelism_level),
            required_resources=_union_capabilities(fast_tasks),
            risk_assessment=plan.risk_assessment,
            complexity=plan.complexity,
            metadata={"variant_of": plan.id},
            created_at=plan.created_at,
        )

        conservative_tasks = [replace(task) for task in plan.tasks]
        sequential_total = sum(task.estimated_duration_ms for task in conservative_tasks)
        conservative = TaskPlan(
            id=f"{plan.id}-conservative",
            goal_id=plan.goal_id,
            goal_type=plan.goal_type,
            name="conservative",
            tasks=conservative_tasks,
            execution_strategy=replace(
                plan.execution_strategy,
                type="sequential",
                parallelism_level=1,
                checkpoints=[task.id for task in conservative_tasks],
                adaptive_replanning=True,
            ),
            estimated_duration_ms=int(max(sequential_total, plan.estimated_duration_ms) * self.settings.conservative_buffer),
            required_resources=list(plan.required_resources),
            risk_assessment=plan.risk_assessment,
            complexity=plan.complexity,
            metadata={"variant_of": plan.id, "buffer": self.settings.conservative_buffer},
            created_at=plan.created_at,
        )
        return [fast_track, conservative]

    def _minimal_plan(self, goal: Goal, *, reason: str) -> TaskPlan:
        task = PlannedTask(
            id=_new_task_id(),
            name="Execute goal",
            description=goal.description or "Unspecified goal",
            type="general",
            priority=_clamp_priority(goal.priority),
            estimated_duration_ms=GENERIC_TASK_DURATION_MS,
            required_capabilities=["general"],
        )
        assessment = RiskAssessment(overall_risk="low")
        risk = Risk(
            id=f"risk-{uuid.uuid4().hex[:8]}",
            type="validation",
            description="Goal input was incomplete; plan is a minimal placeholder",
            probability=0.3,
            impact=0.3,
            affected_tasks=[task.id],
        )
        assessment.risks.append(risk)
        assessment.mitigation_strategies[risk.id] = [
            MitigationStrategy(risk.id, "Clarify the goal description and resubmit", 0.1, 0.9)
        ]
        plan = TaskPlan(
            id=f"plan-{uuid.uuid4().hex[:12]}",
            goal_id=goal.id,
            goal_type=goal.type,
            tasks=[task],
            execution_strategy=ExecutionStrategy(
                type="sequential",
                parallelism_level=1,
                checkpoints=[task.id],
                priority_order=[task.id],
            ),
            estimated_duration_ms=task.estimated_duration_ms,
            required_resources=["general"],
            risk_assessment=assessment,
            complexity=ComplexityAnalysis(score=0.0, level="simple", recommended_approach="template-based"),
            metadata={"goal_description": goal.description, "degraded": True, "reason": reason},
            created_at=self.clock(),
        )
        plan.alternatives = self._generate_alternatives(plan)
        return plan

    # ------------------------------------------------------------------
    # History and aggregation
    # ------------------------------------------------------------------

    def _store(self, plan: TaskPlan) -> None:
        with self._lock:
            self._history.setdefault(plan.goal_type, []).append(plan)
            self._plans[plan.id] = plan

    def _emit(self, event: str, **payload: Any) -> None:
        if self.events is not None:
            self.events.emit(event, **payload)

    def _recommendations_for(self, plan: TaskPlan) -> List[str]:
        description = plan.metadata.get("goal_description") or plan.goal_id
        recommendations = [f'Consider {plan.goal_type} best practices for "{description}"']
        if plan.metadata.get("degraded"):
            recommendations.append(f"Clarify goal {plan.goal_id}; only a minimal plan could be produced")
        if plan.risk_assessment.overall_risk in {"high", "critical"}:
            recommendations.append(
                f"Review the {len(plan.risk_assessment.risks)} identified risk(s) for goal {plan.goal_id} before execution"
            )
        if plan.metadata.get("deadline_compression") is not None or plan.metadata.get("deadline_missed"):
            recommendations.append(f"Deadline for goal {plan.goal_id} is at risk; consider the fast-track alternative")
        return recommendations

    def _aggregate_complexity(self, plans: Sequence[TaskPlan]) -> Dict[str, Any]:
        total_tasks = sum(len(plan.tasks) for plan in plans)
        total_duration = sum(plan.estimated_duration_ms for plan in plans)
        max_depth = max((int(plan.metadata.get("dependency_depth", 1)) for plan in plans), default=0)
        mean_priority = (
            sum(_plan_priority(plan) for plan in plans) / len(plans) if plans else 0.0
        )
        hours = total_duration / HOUR_MS
        score = (
            min(total_tasks, 40) * 1.0
            + min(hours, 40.0) * 1.5
            + max_depth * 4.0
            + mean_priority / 5.0
            + max(len(plans) - 1, 0) * 5.0
        )
        level = "highly-complex"
        for threshold, name in _AGGREGATE_LEVELS:
            if score < threshold:
                level = name
                break
        return {
            "level": level,
            "score": round(score, 2),
            "factors": {
                "total_goals": len(plans),
                "total_tasks": total_tasks,
                "average_tasks_per_goal": (total_tasks / len(plans)) if plans else 0,
                "estimated_total_duration_ms": total_duration,
                "max_dependency_depth": max_depth,
                "mean_priority": round(mean_priority, 2),
            },
            "approach": (
                "Phase-based implementation recommended"
                if level in {"complex", "highly-complex"}
                else "Direct implementation possible"
            ),
        }


def _union_capabilities(tasks: Iterable[PlannedTask]) -> List[str]:
    resources: List[str] = []
    for task in tasks:
        for capability in task.required_capabilities:
            if capability not in resources:
                resources.append(capability)
    return resources


def _plan_priority(plan: TaskPlan) -> float:
    if not plan.tasks:
        return 0.0
    return float(max(task.priority for task in plan.tasks))


def _alternative_tradeoffs(name: str) -> List[str]:
    if name == "fast-track":
        return ["Skips optional tasks", "Shorter schedule with less verification"]
    if name == "conservative":
        return ["Sequential execution", "Added schedule buffer for safety"]
    return []


__all__ = ["Planner"]
