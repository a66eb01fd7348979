"""Shared type definitions for the goalflow planner and orchestrator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, MutableMapping, Optional


UID = str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ChainStatus(str, Enum):
    """Lifecycle of a :class:`TaskChain`."""

    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {ChainStatus.COMPLETED, ChainStatus.FAILED, ChainStatus.CANCELLED}


class TaskStatus(str, Enum):
    """Lifecycle of a single task inside a chain."""

    PENDING = "pending"
    RUNNING = "running"
    RETRY_PENDING = "retry_pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(int, Enum):
    CRITICAL = 100
    HIGH = 75
    MEDIUM = 50
    LOW = 25


@dataclass
class GoalConstraints:
    """Optional limits attached to a :class:`Goal`."""

    deadline: Optional[datetime] = None
    budget: Optional[float] = None
    resources: Optional[List[str]] = None
    dependencies: List[str] = field(default_factory=list)

    def count(self) -> int:
        """Return the number of constraints that are actually set."""

        total = 0
        if self.deadline is not None:
            total += 1
        if self.budget is not None:
            total += 1
        if self.resources is not None:
            total += 1
        if self.dependencies:
            total += 1
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deadline": _iso(self.deadline),
            "budget": self.budget,
            "resources": list(self.resources) if self.resources is not None else None,
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True)
class Goal:
    """Caller supplied intent. Goals are never mutated by the planner."""

    id: UID
    description: str
    type: str = "development"
    priority: int = 50
    constraints: Optional[GoalConstraints] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "constraints": self.constraints.to_dict() if self.constraints else None,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for a task definition."""

    max_attempts: int = 1
    backoff_ms: int = 1000
    exponential: bool = False

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("retry_config.max_attempts must be >= 1")
        if int(self.backoff_ms) < 0:
            raise ValueError("retry_config.backoff_ms must be non-negative")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TaskDefinition:
    """Registerable task template used to build chains."""

    id: UID
    type: str
    name: str
    description: str = ""
    priority: int = TaskPriority.MEDIUM.value
    dependencies: List[UID] = field(default_factory=list)
    parallelizable: bool = True
    timeout_ms: Optional[int] = None
    retry_config: Optional[RetryConfig] = None
    keywords: List[str] = field(default_factory=list)
    builtin: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["retry_config"] = self.retry_config.to_dict() if self.retry_config else None
        return payload


@dataclass
class PlannedTask:
    """An estimated unit of work inside a :class:`TaskPlan`."""

    id: UID
    name: str
    type: str
    priority: int
    estimated_duration_ms: int
    description: str = ""
    required_capabilities: List[str] = field(default_factory=list)
    dependencies: List[UID] = field(default_factory=list)
    parallelizable: bool = True
    optional: bool = False
    input_requirements: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionStrategy:
    type: str = "sequential"
    parallelism_level: int = 1
    checkpoints: List[UID] = field(default_factory=list)
    adaptive_replanning: bool = False
    priority_order: List[UID] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Risk:
    id: UID
    type: str
    description: str
    probability: float
    impact: float
    affected_tasks: List[UID] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MitigationStrategy:
    risk_id: UID
    strategy: str
    cost: float
    effectiveness: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RiskAssessment:
    """Overall risk level plus itemised risks and their mitigations."""

    overall_risk: str = "low"
    risks: List[Risk] = field(default_factory=list)
    mitigation_strategies: Dict[UID, List[MitigationStrategy]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_risk": self.overall_risk,
            "risks": [risk.to_dict() for risk in self.risks],
            "mitigation_strategies": {
                risk_id: [strategy.to_dict() for strategy in strategies]
                for risk_id, strategies in self.mitigation_strategies.items()
            },
        }


@dataclass
class ComplexityAnalysis:
    score: float
    level: str
    factors: Dict[str, Any] = field(default_factory=dict)
    recommended_approach: str = "template-based"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TaskPlan:
    """Planner output. Plans are immutable once returned to the caller."""

    id: UID
    goal_id: UID
    goal_type: str
    tasks: List[PlannedTask]
    execution_strategy: ExecutionStrategy
    estimated_duration_ms: int
    required_resources: List[str]
    risk_assessment: RiskAssessment = field(default_factory=RiskAssessment)
    alternatives: List["TaskPlan"] = field(default_factory=list)
    name: str = "primary"
    complexity: Optional[ComplexityAnalysis] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)

    def task_ids(self) -> List[UID]:
        return [task.id for task in self.tasks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "goal_type": self.goal_type,
            "name": self.name,
            "tasks": [task.to_dict() for task in self.tasks],
            "execution_strategy": self.execution_strategy.to_dict(),
            "estimated_duration_ms": self.estimated_duration_ms,
            "required_resources": list(self.required_resources),
            "risk_assessment": self.risk_assessment.to_dict(),
            "alternatives": [alt.to_dict() for alt in self.alternatives],
            "complexity": self.complexity.to_dict() if self.complexity else None,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class TaskContext:
    """Execution context shared by every task of a chain.

    ``shared_state`` is a single mutable mapping visible to all tasks that run
    concurrently within a chain; writes are last-write-wins.
    """

    user_id: str
    session_id: str = ""
    workspace_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    shared_state: MutableMapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "metadata": dict(self.metadata),
            "shared_state": dict(self.shared_state),
        }


@dataclass
class ChainTask:
    """A task instance derived from a :class:`TaskDefinition` inside a chain."""

    id: UID
    type: str
    name: str
    description: str
    priority: int
    dependencies: List[UID]
    parallelizable: bool
    timeout_ms: Optional[int] = None
    retry_config: Optional[RetryConfig] = None
    goal: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def from_definition(cls, definition: TaskDefinition, *, goal: Optional[str] = None) -> "ChainTask":
        return cls(
            id=definition.id,
            type=definition.type,
            name=definition.name,
            description=definition.description,
            priority=definition.priority,
            dependencies=list(definition.dependencies),
            parallelizable=definition.parallelizable,
            timeout_ms=definition.timeout_ms,
            retry_config=definition.retry_config,
            goal=goal,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "parallelizable": self.parallelizable,
            "timeout_ms": self.timeout_ms,
            "retry_config": self.retry_config.to_dict() if self.retry_config else None,
            "goal": self.goal,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class TaskChain:
    """An executable, dependency-ordered set of tasks derived from goals."""

    id: UID
    name: str
    goals: List[str]
    context: TaskContext
    tasks: List[ChainTask]
    execution_order: List[List[UID]]
    status: ChainStatus = ChainStatus.PLANNING
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def get_task(self, task_id: UID) -> Optional[ChainTask]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "goals": list(self.goals),
            "context": self.context.to_dict(),
            "tasks": [task.to_dict() for task in self.tasks],
            "execution_order": [list(wave) for wave in self.execution_order],
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }


@dataclass
class TaskExecution:
    """Runtime record for a task across its attempts."""

    chain_id: UID
    task_id: UID
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Any = None
    error: Optional[str] = None
    recovered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "task_id": self.task_id,
            "attempts": self.attempts,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "recovered": self.recovered,
        }


@dataclass
class ExecutorResult:
    """Normalised outcome of an executor invocation."""

    success: bool
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any) -> "ExecutorResult":
        """Normalise whatever an executor returned into an :class:`ExecutorResult`."""

        if isinstance(raw, ExecutorResult):
            return raw
        if isinstance(raw, Mapping) and "success" in raw:
            return cls(
                success=bool(raw.get("success")),
                output=raw.get("output"),
                error=raw.get("error"),
            )
        return cls(success=True, output=raw)
