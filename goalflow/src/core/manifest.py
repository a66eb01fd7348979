"""Goal validation and plan/chain manifests.

Goals arrive from callers as dataclasses, dictionaries or JSON files, so they
are normalised through :class:`GoalInput` before planning.  Plans and chains
are exported as versioned manifests so downstream tooling (and the CLI) can
validate them against a JSON schema.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import GoalValidationError
from .types import Goal, GoalConstraints, TaskChain, TaskExecution, TaskPlan


MANIFEST_SCHEMA_VERSION = "1.0.0"
DEFAULT_GOAL_TYPE = "development"


def _new_goal_id() -> str:
    return f"goal-{uuid.uuid4().hex[:12]}"


def _coerce_deadline(value: Any) -> Any:
    if value is None or isinstance(value, datetime):
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, bool):
        raise ValueError("deadline must be a datetime, ISO-8601 string or epoch milliseconds")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"deadline {value!r} is out of range") from exc
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise ValueError("deadline must be a datetime, ISO-8601 string or epoch milliseconds")


class GoalConstraintsInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    deadline: datetime | None = None
    budget: float | None = Field(default=None, ge=0)
    resources: list[str] | None = None
    dependencies: list[str] = Field(default_factory=list)

    @field_validator("deadline", mode="before")
    @classmethod
    def _validate_deadline(cls, value: Any) -> Any:
        return _coerce_deadline(value)

    def to_constraints(self) -> GoalConstraints:
        return GoalConstraints(
            deadline=self.deadline,
            budget=self.budget,
            resources=list(self.resources) if self.resources is not None else None,
            dependencies=[dep for dep in self.dependencies if dep],
        )


class GoalInput(BaseModel):
    """Validated representation of a caller supplied goal."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_goal_id, min_length=1)
    description: str = Field(min_length=1)
    type: str = DEFAULT_GOAL_TYPE
    priority: int = Field(default=50, ge=0, le=100)
    constraints: GoalConstraintsInput | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("description")
    @classmethod
    def _validate_description(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("description must not be blank")
        return value

    @field_validator("type")
    @classmethod
    def _validate_type(cls, value: str) -> str:
        return value.strip().lower() or DEFAULT_GOAL_TYPE

    def to_goal(self) -> Goal:
        return Goal(
            id=self.id,
            description=self.description,
            type=self.type,
            priority=self.priority,
            constraints=self.constraints.to_constraints() if self.constraints else None,
            metadata=dict(self.metadata),
        )


def _constraints_payload(constraints: Any) -> Any:
    if constraints is None or isinstance(constraints, Mapping):
        return constraints
    return {
        "deadline": getattr(constraints, "deadline", None),
        "budget": getattr(constraints, "budget", None),
        "resources": getattr(constraints, "resources", None),
        "dependencies": getattr(constraints, "dependencies", None) or [],
    }


def _goal_payload(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, Goal):
        # Dataclass fields are not type checked at construction.
        try:
            return {
                "id": raw.id,
                "description": raw.description,
                "type": raw.type,
                "priority": raw.priority,
                "constraints": _constraints_payload(raw.constraints),
                "metadata": raw.metadata if raw.metadata is not None else {},
            }
        except Exception as exc:
            raise GoalValidationError(f"Malformed goal: {exc}") from exc
    if isinstance(raw, GoalInput):
        return raw.model_dump()
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, str):
        return {"description": raw}
    raise GoalValidationError(f"Unsupported goal payload: {type(raw).__name__}")


def validate_goal(raw: Any) -> Goal:
    """Normalise ``raw`` into a :class:`Goal` or raise :class:`GoalValidationError`."""

    payload = _goal_payload(raw)
    try:
        return GoalInput.model_validate(dict(payload)).to_goal()
    except ValidationError as exc:
        raise GoalValidationError(f"Invalid goal: {exc.error_count()} validation error(s)") from exc


def salvage_goal(raw: Any) -> Goal:
    """Best-effort :class:`Goal` for input that failed validation. Never raises."""

    try:
        payload = dict(_goal_payload(raw))
    except Exception:
        payload = {}
    goal_id = payload.get("id")
    description = payload.get("description")
    goal_type = payload.get("type")
    try:
        priority = int(payload.get("priority", 0))
    except (TypeError, ValueError, OverflowError):
        priority = 0
    try:
        description_text = str(description).strip() if description else ""
        identifier = str(goal_id) if goal_id else _new_goal_id()
    except Exception:
        description_text, identifier = "", _new_goal_id()
    return Goal(
        id=identifier,
        description=description_text,
        type=goal_type.strip().lower() if isinstance(goal_type, str) and goal_type.strip() else DEFAULT_GOAL_TYPE,
        priority=max(0, min(priority, 100)),
    )


class ManifestPlannedTask(BaseModel):
    id: str
    name: str
    type: str
    priority: int
    estimated_duration_ms: int = Field(ge=0)
    description: str = ""
    required_capabilities: Sequence[str] = Field(default_factory=list)
    dependencies: Sequence[str] = Field(default_factory=list)
    parallelizable: bool = True
    optional: bool = False


class ManifestExecutionStrategy(BaseModel):
    type: str
    parallelism_level: int = Field(ge=1)
    checkpoints: Sequence[str] = Field(default_factory=list)
    adaptive_replanning: bool = False
    priority_order: Sequence[str] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def _validate_type(cls, value: str) -> str:
        if value not in {"sequential", "parallel", "hybrid"}:
            raise ValueError("type must be sequential, parallel or hybrid")
        return value


class ManifestRisk(BaseModel):
    id: str
    type: str
    description: str
    probability: float = Field(ge=0, le=1)
    impact: float = Field(ge=0, le=1)
    affected_tasks: Sequence[str] = Field(default_factory=list)


class ManifestMitigation(BaseModel):
    risk_id: str
    strategy: str
    cost: float
    effectiveness: float


class ManifestRiskAssessment(BaseModel):
    overall_risk: str
    risks: Sequence[ManifestRisk] = Field(default_factory=list)
    mitigation_strategies: dict[str, Sequence[ManifestMitigation]] = Field(default_factory=dict)

    @field_validator("overall_risk")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        if value not in {"low", "medium", "high", "critical"}:
            raise ValueError("overall_risk must be low, medium, high or critical")
        return value


class ManifestAlternative(BaseModel):
    id: str
    name: str
    estimated_duration_ms: int = Field(ge=0)
    task_count: int = Field(ge=0)
    execution_strategy: ManifestExecutionStrategy


class PlanManifest(BaseModel):
    """Versioned manifest describing a planner result."""

    schema_version: str = Field(default=MANIFEST_SCHEMA_VERSION)
    id: str
    goal_id: str
    goal_type: str
    name: str
    created_at: str
    tasks: Sequence[ManifestPlannedTask]
    execution_strategy: ManifestExecutionStrategy
    estimated_duration_ms: int = Field(ge=0)
    required_resources: Sequence[str] = Field(default_factory=list)
    risk_assessment: ManifestRiskAssessment
    alternatives: Sequence[ManifestAlternative] = Field(default_factory=list)
    complexity: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def _validate_created_at(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("created_at must be ISO-8601 formatted") from exc
        if parsed.tzinfo is None:
            raise ValueError("created_at must include timezone information")
        return value

    @classmethod
    def build(cls, plan: TaskPlan) -> "PlanManifest":
        """Construct a manifest from a :class:`TaskPlan`."""

        payload = plan.to_dict()
        payload["alternatives"] = [
            {
                "id": alt.id,
                "name": alt.name,
                "estimated_duration_ms": alt.estimated_duration_ms,
                "task_count": len(alt.tasks),
                "execution_strategy": alt.execution_strategy.to_dict(),
            }
            for alt in plan.alternatives
        ]
        return cls.model_validate(payload)

    def write(self, path: Path) -> None:
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def write_schema(cls, path: Path) -> None:
        path.write_text(json.dumps(cls.model_json_schema(), indent=2), encoding="utf-8")


class ChainManifest(BaseModel):
    """Snapshot of a chain and its task executions."""

    schema_version: str = Field(default=MANIFEST_SCHEMA_VERSION)
    id: str
    name: str
    status: str
    goals: Sequence[str]
    execution_order: Sequence[Sequence[str]]
    tasks: Sequence[dict[str, Any]]
    executions: Sequence[dict[str, Any]] = Field(default_factory=list)
    created_at: str
    completed_at: str | None = None
    error: str | None = None

    @classmethod
    def build(cls, chain: TaskChain, executions: Iterable[TaskExecution] = ()) -> "ChainManifest":
        payload = chain.to_dict()
        payload.pop("context", None)
        payload.pop("started_at", None)
        payload["executions"] = [execution.to_dict() for execution in executions]
        return cls.model_validate(payload)


def load_plan_schema() -> dict[str, Any]:
    return PlanManifest.model_json_schema()


__all__ = [
    "ChainManifest",
    "GoalConstraintsInput",
    "GoalInput",
    "MANIFEST_SCHEMA_VERSION",
    "ManifestAlternative",
    "ManifestExecutionStrategy",
    "ManifestMitigation",
    "ManifestPlannedTask",
    "ManifestRisk",
    "ManifestRiskAssessment",
    "PlanManifest",
    "load_plan_schema",
    "salvage_goal",
    "validate_goal",
]
