from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from goalflow.src.core.config import PlannerSettings
from goalflow.src.core.dependencies import is_topological
from goalflow.src.core.events import EventBus, InMemorySink
from goalflow.src.core.planner import Planner
from goalflow.src.core.types import Goal, GoalConstraints


NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

ENTERPRISE_GOALS = [
    {
        "id": "ent-1",
        "description": (
            "Build a multi-region enterprise payments platform. Implement fraud detection across all "
            "regions. Migrate the legacy ledger database. Integrate the settlement providers. Test every "
            "service end to end"
        ),
        "priority": 100,
        "constraints": {"dependencies": ["ledger-db", "settlement-api"]},
    },
    {
        "id": "ent-2",
        "description": (
            "Create a company-wide identity service. Migrate all existing accounts. Integrate single sign-on "
            "with every product. Deploy to every data center"
        ),
        "priority": 95,
    },
    {
        "id": "ent-3",
        "description": (
            "Refactor the monolithic order system into services. Optimize checkout latency. Update the "
            "warehouse integrations. Document the new architecture"
        ),
        "priority": 98,
    },
]


@pytest.fixture()
def planner() -> Planner:
    return Planner(clock=lambda: NOW)


def test_plan_tasks_follow_detected_actions_and_template(planner):
    plan = planner.create_plan(Goal(id="g1", description="Implement the login API. Test the login flow"))

    required = [task for task in plan.tasks if not task.optional]
    assert [task.type for task in required] == ["development", "testing"]
    assert required[1].dependencies == [required[0].id]
    assert required[1].priority == required[0].priority - 5

    optional_types = {task.type for task in plan.tasks if task.optional}
    assert optional_types == {"analysis", "review", "documentation", "deployment"}
    assert "coding" in plan.required_resources
    assert is_topological(planner.resolver.resolve(plan.tasks), plan.tasks)
    assert plan.execution_strategy.type == "hybrid"
    assert plan.metadata["degraded"] is False


def test_duration_uses_waves_not_plain_sum(planner):
    plan = planner.create_plan(Goal(id="g2", description="Analyze churn", type="custom", priority=0))

    assert len(plan.tasks) == 1
    assert plan.estimated_duration_ms == plan.tasks[0].estimated_duration_ms
    assert plan.execution_strategy.type == "sequential"
    assert plan.execution_strategy.parallelism_level == 1


def test_simple_goal_is_classified_simple_or_moderate(planner):
    analysis = planner.analyze_goals([{"description": "Fix button color", "priority": 20}])

    assert analysis["complexity_analysis"]["level"] in {"simple", "moderate"}
    assert len(analysis["plans"]) == 1
    assert analysis["recommendations"]


def test_enterprise_goals_are_classified_complex(planner):
    analysis = planner.analyze_goals(ENTERPRISE_GOALS)

    assert analysis["complexity_analysis"]["level"] in {"complex", "highly-complex"}
    assert analysis["complexity_analysis"]["factors"]["total_goals"] == 3
    assert "Phase-based implementation recommended" in analysis["recommendations"]
    assert all("tasks" in summary for summary in analysis["plans"])


def test_tight_deadline_fits_and_raises_parallelism():
    planner = Planner()
    deadline = datetime.now(timezone.utc) + timedelta(hours=1)
    plan = planner.create_plan(
        Goal(
            id="g3",
            description="Implement the payment API",
            constraints=GoalConstraints(deadline=deadline),
        )
    )

    assert plan.estimated_duration_ms <= 3_600_000
    assert plan.execution_strategy.parallelism_level >= 2
    assert plan.execution_strategy.adaptive_replanning is True
    assert not any(task.optional for task in plan.tasks)
    assert plan.execution_strategy.checkpoints == [task.id for task in plan.tasks]


def test_deadline_compresses_estimates_that_do_not_fit(planner):
    goal = Goal(
        id="g4",
        description="Build the service. Migrate the data. Integrate billing. Deploy it",
        priority=90,
        constraints=GoalConstraints(deadline=NOW + timedelta(minutes=30)),
    )

    plan = planner.create_plan(goal)

    assert plan.estimated_duration_ms <= 30 * 60_000
    assert 0 < plan.metadata["deadline_compression"] < 1
    assert any(risk.type == "deadline" for risk in plan.risk_assessment.risks)


def test_past_deadline_is_flagged(planner):
    plan = planner.create_plan(
        Goal(id="g5", description="Fix the crash", constraints=GoalConstraints(deadline=NOW - timedelta(hours=1)))
    )

    assert plan.metadata["deadline_missed"] is True
    deadline_risks = [risk for risk in plan.risk_assessment.risks if risk.type == "deadline"]
    assert deadline_risks and deadline_risks[0].probability == pytest.approx(0.9)


def test_resource_constraint_filters_tasks_and_dangling_dependencies(planner):
    plan = planner.create_plan(
        Goal(
            id="g6",
            description="Deploy the site. Document the release",
            type="custom",
            constraints=GoalConstraints(resources=["documentation", "writing"]),
        )
    )

    assert [task.type for task in plan.tasks] == ["documentation"]
    assert plan.tasks[0].dependencies == []
    assert len(plan.metadata["filtered_tasks"]) == 1
    assert any(risk.type == "resource" for risk in plan.risk_assessment.risks)


def test_external_dependencies_add_leading_tasks_and_risk(planner):
    plan = planner.create_plan(
        Goal(
            id="g7",
            description="Integrate the payment gateway",
            type="custom",
            constraints=GoalConstraints(dependencies=["stripe-api"]),
        )
    )

    dependency_tasks = [task for task in plan.tasks if task.type == "dependency"]
    assert len(dependency_tasks) == 1
    assert dependency_tasks[0].input_requirements == {"dependency": "stripe-api"}
    integration = next(task for task in plan.tasks if task.type == "integration")
    assert dependency_tasks[0].id in integration.dependencies

    risk = next(risk for risk in plan.risk_assessment.risks if risk.type == "external-dependency")
    assert len(plan.risk_assessment.mitigation_strategies[risk.id]) == 2


def test_many_risks_escalate_overall_level(planner):
    goal = Goal(
        id="g8",
        description="Build the core. Migrate the data. Integrate partners",
        priority=100,
        type="custom",
        constraints=GoalConstraints(
            deadline=NOW + timedelta(minutes=10),
            dependencies=["a", "b", "c"],
            resources=["coding", "architecture", "migration", "data-management", "dependency-management"],
        ),
    )

    plan = planner.create_plan(goal)

    types = {risk.type for risk in plan.risk_assessment.risks}
    assert {"external-dependency", "resource", "deadline", "dependency"} <= types
    assert plan.risk_assessment.overall_risk in {"high", "critical"}


def test_alternatives_trade_speed_for_safety(planner):
    plan = planner.create_plan(Goal(id="g9", description="Implement search. Test search"))

    names = [alt.name for alt in plan.alternatives]
    assert names == ["fast-track", "conservative"]
    fast, conservative = plan.alternatives
    assert fast.estimated_duration_ms < plan.estimated_duration_ms
    assert not any(task.optional for task in fast.tasks)
    assert conservative.estimated_duration_ms >= plan.estimated_duration_ms
    assert conservative.execution_strategy.parallelism_level == 1
    assert conservative.execution_strategy.type == "sequential"


def test_malformed_goal_degrades_to_minimal_plan():
    sink = InMemorySink()
    bus = EventBus()
    bus.attach_sink(sink)
    planner = Planner(events=bus)

    plan = planner.create_plan({"description": "   ", "priority": 500})

    assert plan.metadata["degraded"] is True
    assert len(plan.tasks) == 1
    assert plan.tasks[0].type == "general"
    assert plan.estimated_duration_ms > 0
    assert plan.risk_assessment.risks[0].type == "validation"
    assert sink.names() == ["plan:created"]
    assert sink.events[0]["degraded"] is True

    assert planner.create_plan(42).metadata["degraded"] is True


@pytest.mark.parametrize(
    "goal, degraded",
    [
        (Goal(id="g1", description="Build the API", metadata=None), False),
        (Goal(id="g2", description="Build the API", constraints={"deadline": None}), False),
        (Goal(id="g3", description="Build the API", metadata=[1, 2]), True),
        (Goal(id="g4", description=None, constraints={"deadline": "soon"}), True),
    ],
)
def test_loosely_typed_goal_objects_still_get_a_plan(planner, goal, degraded):
    plan = planner.create_plan(goal)

    assert plan.goal_id == goal.id
    assert plan.metadata["degraded"] is degraded
    assert plan.tasks


def test_string_goals_are_accepted(planner):
    plan = planner.create_plan("Document the onboarding flow")

    assert plan.goal_type == "development"
    assert any(task.type == "documentation" and not task.optional for task in plan.tasks)


def test_history_lookup_and_learned_patterns():
    planner = Planner(clock=lambda: NOW, settings=PlannerSettings(learning_threshold=3))
    plans = [planner.create_plan({"description": "Analyze sales", "type": "analysis"}) for _ in range(2)]

    assert planner.get_historical_plans("analysis") == plans
    assert planner.get_historical_plans("trading") == []
    assert planner.get_plan(plans[0].id) is plans[0]
    assert planner.get_plan("missing") is None
    assert planner.learned_patterns("analysis") == []

    planner.create_plan({"description": "Analyze sales", "type": "analysis"})
    patterns = planner.learned_patterns("analysis")
    assert patterns[0]["occurrences"] == 3
    assert patterns[0]["sequence"].startswith("analysis")


def test_available_templates_are_exposed(planner):
    templates = planner.get_available_templates()

    assert {"development", "analysis", "trading"} <= set(templates)
    assert templates["trading"]["required_capabilities"]
