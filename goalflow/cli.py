from __future__ import annotations

"""Developer-facing CLI for planning goals and running task chains."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from goalflow.src.core.config import EngineSettings, Settings
from goalflow.src.core.engine import ChainExecutionEngine
from goalflow.src.core.errors import ChainCancelledError, GoalflowError, TaskError
from goalflow.src.core.events import EventBus, JsonLinesSink
from goalflow.src.core.manifest import ChainManifest, PlanManifest, load_plan_schema
from goalflow.src.core.planner import Planner
from goalflow.src.core.types import ChainTask, TaskContext


app = typer.Typer(help="Plan goals and run task chains.")
plan_app = typer.Typer(help="Decompose goals into task plans.")
chain_app = typer.Typer(help="Build and execute task chains.")
app.add_typer(plan_app, name="plan")
app.add_typer(chain_app, name="chain")


@app.callback()
def configure(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level for goalflow output."),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        typer.secho(f"Unknown log level {log_level!r}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_json_file(path: Path) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        typer.secho(f"Failed to read {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON in {path}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _validate_against_schema(data: Dict[str, Any], schema_path: Path | None = None) -> None:
    schema = load_plan_schema() if schema_path is None else _load_json_file(schema_path)
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        typer.secho("Plan failed JSON schema validation:", err=True, fg=typer.colors.RED)
        for error in errors[:5]:
            location = "/".join(str(part) for part in error.path) or "<root>"
            typer.secho(f"- {location}: {error.message}", err=True, fg=typer.colors.RED)
        if len(errors) > 5:
            typer.secho(f"... {len(errors) - 5} additional errors omitted", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=True, default=str)


@plan_app.command("create")
def create_plan(
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Free-text goal description."),
    goal_type: str = typer.Option("development", "--type", "-t", help="Goal type used to pick a template."),
    priority: int = typer.Option(50, "--priority", "-p", min=0, max=100, help="Goal priority (0-100)."),
    deadline: Optional[str] = typer.Option(None, "--deadline", help="ISO-8601 deadline."),
    resources: List[str] | None = typer.Option(None, "--resource", "-r", help="Allowed capability (repeatable)."),
    dependencies: List[str] | None = typer.Option(None, "--dependency", help="External dependency (repeatable)."),
    goal_file: Optional[Path] = typer.Option(
        None, "--file", "-f", exists=True, resolve_path=True, help="JSON file holding a single goal."
    ),
    output: Optional[Path] = typer.Option(None, "--output", "-o", resolve_path=True, help="Write the plan manifest here."),
) -> None:
    """Create a plan for one goal and print its manifest."""

    if goal_file is not None:
        goal: Any = _load_json_file(goal_file)
    elif description:
        constraints: Dict[str, Any] = {}
        if deadline:
            constraints["deadline"] = deadline
        if resources:
            constraints["resources"] = list(resources)
        if dependencies:
            constraints["dependencies"] = list(dependencies)
        goal = {
            "description": description,
            "type": goal_type,
            "priority": priority,
            "constraints": constraints or None,
        }
    else:
        typer.secho("Provide --description or --file", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    plan = Planner(settings=Settings.from_env().planner).create_plan(goal)
    manifest = PlanManifest.build(plan)
    if output is not None:
        try:
            manifest.write(output)
        except OSError as exc:
            typer.secho(f"Failed to write plan: {exc}", err=True, fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc
        typer.secho(f"Wrote plan {plan.id} to {output}", fg=typer.colors.GREEN, err=True)
    typer.echo(manifest.model_dump_json(indent=2))


@plan_app.command("analyze")
def analyze_goals(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="JSON file with a list of goals."),
    include_tasks: bool = typer.Option(False, "--tasks/--no-tasks", help="Include task lists in the output."),
) -> None:
    """Plan several goals and print recommendations and aggregate complexity."""

    goals = _load_json_file(path)
    if not isinstance(goals, list):
        typer.secho("Goal file must contain a JSON list", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    planner = Planner(settings=Settings.from_env().planner)
    analysis = planner.analyze_goals(goals, {"include_tasks": include_tasks})
    typer.echo(_dump(analysis))


@plan_app.command("templates")
def list_templates(
    as_json: bool = typer.Option(False, "--json", help="Emit templates as JSON."),
) -> None:
    """List the goal templates known to the analyzer."""

    templates = Planner().get_available_templates()
    if as_json:
        typer.echo(_dump(templates))
        return
    for goal_type, template in sorted(templates.items()):
        tasks = ", ".join(template["standard_tasks"])
        capabilities = ", ".join(template["required_capabilities"])
        typer.echo(f"{goal_type}: {tasks} [{capabilities}]")


@plan_app.command("schema")
def write_plan_schema(
    output: Path = typer.Argument(..., resolve_path=True, help="Destination path for the plan JSON schema."),
) -> None:
    """Write the JSON schema describing plan manifests to ``output``."""

    try:
        PlanManifest.write_schema(output)
    except OSError as exc:
        typer.secho(f"Failed to write schema: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    typer.secho(f"Wrote plan schema to {output}", fg=typer.colors.GREEN)


@plan_app.command("validate")
def validate_plan(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a plan manifest."),
    schema: Path | None = typer.Option(
        None,
        "--schema",
        "-s",
        help="Optional JSON schema to validate against (defaults to the bundled schema).",
        dir_okay=False,
        resolve_path=True,
        readable=True,
    ),
) -> None:
    """Validate a plan manifest written by ``plan create --output``."""

    payload = _load_json_file(path)
    try:
        manifest = PlanManifest.model_validate(payload)
    except ValidationError as exc:
        typer.secho("Plan validation failed:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc
    _validate_against_schema(payload, schema)
    typer.secho(
        f"Plan {path} conforms to schema version {manifest.schema_version}",
        fg=typer.colors.GREEN,
    )


def _echo_executor(task: ChainTask, context: TaskContext) -> Dict[str, Any]:
    """Dry-run executor that reports what would have been done."""

    return {
        "success": True,
        "output": {"task": task.id, "type": task.type, "goal": task.goal, "user": context.user_id},
    }


@chain_app.command("run")
def run_chain(
    goals: List[str] = typer.Argument(..., help="Goal descriptions to build the chain from."),
    user: str = typer.Option("cli", "--user", "-u", help="User id recorded in the chain context."),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", min=1, help="Default task timeout."),
    parallelism: Optional[int] = typer.Option(None, "--parallelism", min=1, help="Maximum concurrent tasks per wave."),
    events: Optional[Path] = typer.Option(None, "--events", resolve_path=True, help="Append lifecycle events as JSONL."),
) -> None:
    """Build a chain from GOALS and run it with dry-run executors."""

    defaults = Settings.from_env().engine
    settings = EngineSettings(
        default_timeout_ms=timeout_ms or defaults.default_timeout_ms,
        default_parallelism=parallelism or defaults.default_parallelism,
        default_retry=defaults.default_retry,
        environment=defaults.environment,
        recovery_enabled=defaults.recovery_enabled,
    )
    bus = EventBus()
    if events is not None:
        bus.attach_sink(JsonLinesSink(events))
    engine = ChainExecutionEngine(settings, events=bus)
    for definition in engine.tasks.all():
        engine.register_executor(definition.type, _echo_executor)

    try:
        chain = engine.create_task_chain(goals, TaskContext(user_id=user))
        asyncio.run(engine.execute_chain(chain.id))
    except (TaskError, ChainCancelledError) as exc:
        typer.secho(f"Chain failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    except GoalflowError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    manifest = ChainManifest.build(chain, engine.get_task_executions(chain.id))
    typer.echo(manifest.model_dump_json(indent=2))


def main() -> None:
    """Entrypoint for ``python -m goalflow.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
