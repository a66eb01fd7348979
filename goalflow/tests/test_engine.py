from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from goalflow.src.core.config import EngineSettings
from goalflow.src.core.dependencies import is_topological
from goalflow.src.core.engine import ChainExecutionEngine, builtin_definitions, builtin_task_id
from goalflow.src.core.errors import (
    ChainCancelledError,
    ChainNotFoundError,
    ChainStateError,
    ExecutorNotFoundError,
    GoalValidationError,
    TaskExecutionError,
    TaskTimeoutError,
)
from goalflow.src.core.events import EventBus, InMemorySink
from goalflow.src.core.types import (
    ChainStatus,
    ExecutorResult,
    RetryConfig,
    TaskContext,
    TaskDefinition,
    TaskStatus,
)


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2030, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


def _engine(clock: _Clock | None = None, **settings: Any) -> tuple[ChainExecutionEngine, InMemorySink]:
    bus = EventBus()
    sink = InMemorySink()
    bus.attach_sink(sink)
    options: Dict[str, Any] = {"events": bus}
    if clock is not None:
        options["clock"] = clock
    return ChainExecutionEngine(EngineSettings(**settings), **options), sink


def _ok(task, context):
    return ExecutorResult(success=True, output=task.id)


def test_create_chain_from_goal_text():
    engine, sink = _engine()

    chain = engine.create_task_chain(["Generate code for login feature", "Add unit tests"], {"user_id": "u1"})

    assert chain.status is ChainStatus.PLANNING
    assert [task.id for task in chain.tasks] == [builtin_task_id("development"), builtin_task_id("testing")]
    assert chain.execution_order == [[builtin_task_id("development")], [builtin_task_id("testing")]]
    assert is_topological(chain.execution_order, chain.tasks)
    assert chain.context.user_id == "u1"
    assert chain.tasks[1].goal == "Add unit tests"
    assert sink.names() == ["chain:created"]
    assert engine.get_chain_status(chain.id) is chain


def test_builtin_dependencies_only_link_tasks_in_the_chain():
    engine, _ = _engine()

    chain = engine.create_task_chain(["Deploy the release"], TaskContext(user_id="u1"))

    assert [task.id for task in chain.tasks] == [builtin_task_id("deployment")]
    assert chain.tasks[0].dependencies == []
    assert chain.tasks[0].parallelizable is False


def test_registered_definitions_matching_goal_keywords_take_precedence():
    engine, _ = _engine()
    engine.register_task(
        TaskDefinition(id="sentiment", type="analysis", name="Sentiment scoring", keywords=["sentiment"])
    )
    engine.register_task(
        TaskDefinition(
            id="sentiment-report",
            type="reporting",
            name="Sentiment report",
            keywords=["sentiment"],
            dependencies=["sentiment"],
        )
    )

    chain = engine.create_task_chain(["Build a sentiment dashboard"], {"user_id": "u1"})

    assert [task.id for task in chain.tasks] == ["sentiment", "sentiment-report"]
    assert chain.execution_order == [["sentiment"], ["sentiment-report"]]


def test_unmatched_goal_falls_back_to_development_task():
    engine, _ = _engine()

    chain = engine.create_task_chain(["Make everyone happy"], {"user_id": "u1"})

    assert [task.type for task in chain.tasks] == ["development"]


def test_chain_requires_goals_and_user():
    engine, _ = _engine()

    with pytest.raises(GoalValidationError):
        engine.create_task_chain([], {"user_id": "u1"})
    with pytest.raises(GoalValidationError):
        engine.create_task_chain(["Build it"], {})


def test_successful_run_enriches_context_and_emits_lifecycle_events():
    engine, sink = _engine(environment="test")
    seen_state: List[Dict[str, Any]] = []

    async def develop(task, context):
        seen_state.append(dict(context.shared_state))
        context.shared_state["artifact"] = "build-1"
        return {"success": True, "output": "built"}

    def test(task, context):
        return context.shared_state["artifact"]

    engine.register_executor("development", develop)
    engine.register_executor("testing", test)
    chain = engine.create_task_chain(["Build the API", "Test the API"], {"user_id": "u1"})

    result = asyncio.run(engine.execute_chain(chain.id))

    assert result is chain
    assert chain.status is ChainStatus.COMPLETED
    assert chain.completed_at is not None
    assert seen_state[0]["environment"] == "test"
    assert "timestamp" in seen_state[0]
    assert [task.output for task in chain.tasks] == ["built", "build-1"]
    assert all(task.status is TaskStatus.COMPLETED for task in chain.tasks)
    assert sink.names() == [
        "chain:created",
        "chain:started",
        "task:started",
        "task:completed",
        "task:started",
        "task:completed",
        "chain:completed",
    ]


def test_retries_exhaust_after_max_attempts():
    engine, sink = _engine()
    engine.register_task(
        TaskDefinition(
            id="flaky",
            type="flaky",
            name="Flaky",
            keywords=["flaky"],
            retry_config=RetryConfig(max_attempts=3, backoff_ms=0),
        )
    )
    calls: List[str] = []

    def always_fail(task, context):
        calls.append(task.id)
        raise RuntimeError("boom")

    engine.register_executor("flaky", always_fail)
    chain = engine.create_task_chain(["Run the flaky job"], {"user_id": "u1"})

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(engine.execute_chain(chain.id))

    assert len(calls) == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.task_id == "flaky"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert chain.status is ChainStatus.FAILED
    assert chain.error == "boom"
    assert sink.names().count("task:retried") == 2
    assert sink.names()[-2:] == ["task:failed", "chain:failed"]
    [execution] = engine.get_task_executions(chain.id)
    assert execution.attempts == 3
    assert execution.status is TaskStatus.FAILED


def test_exponential_backoff_recovers_on_third_attempt():
    engine, sink = _engine()
    engine.register_task(
        TaskDefinition(
            id="sync",
            type="sync",
            name="Sync",
            keywords=["sync"],
            retry_config=RetryConfig(max_attempts=3, backoff_ms=100, exponential=True),
        )
    )
    calls: List[int] = []

    async def eventually(task, context):
        calls.append(len(calls) + 1)
        if len(calls) < 3:
            raise RuntimeError(f"attempt {len(calls)} failed")
        return "synced"

    engine.register_executor("sync", eventually)
    chain = engine.create_task_chain(["Sync the inventory"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))

    assert calls == [1, 2, 3]
    assert chain.status is ChainStatus.COMPLETED
    delays = [event["delay_ms"] for event in sink.events if event["event"] == "task:retried"]
    assert delays == [100, 200]


def test_timeout_fails_the_chain():
    engine, sink = _engine(default_timeout_ms=100)
    calls: List[str] = []

    async def slow(task, context):
        calls.append(task.id)
        await asyncio.sleep(0.2)
        return "too late"

    engine.register_executor("development", slow)
    chain = engine.create_task_chain(["Build the exporter"], {"user_id": "u1"})

    with pytest.raises(TaskTimeoutError) as excinfo:
        asyncio.run(engine.execute_chain(chain.id))

    assert "timeout after 100ms" in str(excinfo.value)
    assert calls == [builtin_task_id("development")]
    assert chain.status is ChainStatus.FAILED
    assert chain.tasks[0].status is TaskStatus.FAILED
    failed = [event for event in sink.events if event["event"] == "task:failed"]
    assert failed[0]["failure_class"] == "timeout"


def test_timed_out_attempt_is_retried_under_the_retry_policy():
    engine, sink = _engine()
    engine.register_task(
        TaskDefinition(
            id="report",
            type="report",
            name="Report",
            keywords=["report"],
            timeout_ms=50,
            retry_config=RetryConfig(max_attempts=2, backoff_ms=0),
        )
    )
    calls: List[str] = []

    async def slow_then_fast(task, context):
        calls.append(task.id)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return "rendered"

    engine.register_executor("report", slow_then_fast)
    chain = engine.create_task_chain(["Render the weekly report"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))

    assert calls == ["report", "report"]
    assert chain.status is ChainStatus.COMPLETED
    assert chain.tasks[0].output == "rendered"
    retried = sink.of("task:retried")
    assert len(retried) == 1
    assert retried[0]["failure_class"] == "timeout"
    assert retried[0]["recovery"] is False


def test_transient_error_gets_one_immediate_recovery_attempt():
    engine, sink = _engine()
    calls: List[str] = []

    def flaky(task, context):
        calls.append(task.id)
        if len(calls) == 1:
            raise RuntimeError("Network timeout while fetching")
        return "ok"

    engine.register_executor("development", flaky)
    chain = engine.create_task_chain(["Build the fetcher"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))

    assert len(calls) == 2
    assert chain.status is ChainStatus.COMPLETED
    retried = sink.of("task:retried")
    assert len(retried) == 1
    assert retried[0]["recovery"] is True
    assert retried[0]["delay_ms"] == 0
    [execution] = engine.get_task_executions(chain.id)
    assert execution.recovered is True
    assert execution.attempts == 2


def test_recovery_can_be_disabled():
    engine, _ = _engine(recovery_enabled=False)
    calls: List[str] = []

    def flaky(task, context):
        calls.append(task.id)
        raise RuntimeError("service temporarily unavailable")

    engine.register_executor("development", flaky)
    chain = engine.create_task_chain(["Build the fetcher"], {"user_id": "u1"})

    with pytest.raises(TaskExecutionError):
        asyncio.run(engine.execute_chain(chain.id))

    assert len(calls) == 1


def test_unsuccessful_result_is_a_task_failure():
    engine, _ = _engine()
    engine.register_executor("development", lambda task, context: {"success": False, "error": "bad input"})
    chain = engine.create_task_chain(["Build the parser"], {"user_id": "u1"})

    with pytest.raises(TaskExecutionError, match="bad input"):
        asyncio.run(engine.execute_chain(chain.id))

    assert chain.tasks[0].error == "bad input"


def test_missing_executor_fails_without_retry():
    engine, sink = _engine()
    engine.register_task(
        TaskDefinition(
            id="orphan",
            type="orphan",
            name="Orphan",
            keywords=["orphan"],
            retry_config=RetryConfig(max_attempts=3, backoff_ms=0),
        )
    )
    chain = engine.create_task_chain(["Handle the orphan records"], {"user_id": "u1"})

    with pytest.raises(ExecutorNotFoundError):
        asyncio.run(engine.execute_chain(chain.id))

    [execution] = engine.get_task_executions(chain.id)
    assert execution.attempts == 1
    assert "task:retried" not in sink.names()
    assert chain.status is ChainStatus.FAILED


def test_cancel_rejects_pending_execution():
    engine, sink = _engine()

    async def main():
        gate = asyncio.Event()

        async def slow(task, context):
            gate.set()
            await asyncio.sleep(5)
            return "late"

        engine.register_executor("development", slow)
        chain = engine.create_task_chain(["Build the dashboard", "Test the dashboard"], {"user_id": "u1"})
        pending = asyncio.ensure_future(engine.execute_chain(chain.id))
        await gate.wait()
        assert engine.cancel_chain(chain.id) is True
        with pytest.raises(ChainCancelledError):
            await pending
        return chain

    chain = asyncio.run(main())

    assert chain.status is ChainStatus.CANCELLED
    assert all(task.status is TaskStatus.CANCELLED for task in chain.tasks)
    assert "chain:cancelled" in sink.names()
    assert "chain:completed" not in sink.names()
    assert "chain:failed" not in sink.names()
    assert engine.cancel_chain(chain.id) is False
    assert engine.get_execution_queue() == {}


def test_cancelled_planning_chain_cannot_execute():
    engine, _ = _engine()
    chain = engine.create_task_chain(["Build it"], {"user_id": "u1"})

    assert engine.cancel_chain(chain.id) is True
    assert chain.status is ChainStatus.CANCELLED
    with pytest.raises(ChainCancelledError):
        asyncio.run(engine.execute_chain(chain.id))


def test_caller_cancellation_leaves_chain_cancelled():
    engine, sink = _engine()

    async def slow(task, context):
        await asyncio.sleep(5)

    engine.register_executor("development", slow)
    chain = engine.create_task_chain(["Build the importer"], {"user_id": "u1"})

    async def main():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(engine.execute_chain(chain.id), 0.1)

    asyncio.run(main())

    assert chain.status is ChainStatus.CANCELLED
    assert chain.completed_at is not None
    assert chain.tasks[0].status is TaskStatus.CANCELLED
    assert sink.names()[-1] == "chain:cancelled"
    assert engine.get_execution_queue() == {}
    assert engine.cancel_chain(chain.id) is False


def test_cancel_from_another_thread_interrupts_running_tasks():
    engine, _ = _engine()

    async def slow(task, context):
        await asyncio.sleep(3)
        return "late"

    engine.register_executor("development", slow)
    chain = engine.create_task_chain(["Build the importer"], {"user_id": "u1"})
    timer = threading.Timer(0.2, engine.cancel_chain, args=(chain.id,))
    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(ChainCancelledError):
            asyncio.run(engine.execute_chain(chain.id))
    finally:
        timer.cancel()

    assert time.monotonic() - started < 2
    assert chain.status is ChainStatus.CANCELLED
    assert chain.tasks[0].status is TaskStatus.CANCELLED


def test_fatal_failure_abandons_slow_siblings():
    engine, sink = _engine()
    for task_id in ("extract", "publish"):
        engine.register_task(TaskDefinition(id=task_id, type="pipeline", name=task_id.title(), keywords=["pipeline"]))

    async def work(task, context):
        if task.id == "extract":
            raise RuntimeError("schema mismatch")
        await asyncio.sleep(5)
        return "published"

    engine.register_executor("pipeline", work)
    chain = engine.create_task_chain(["Run the pipeline"], {"user_id": "u1"})
    started = time.monotonic()

    with pytest.raises(TaskExecutionError, match="schema mismatch"):
        asyncio.run(engine.execute_chain(chain.id))

    assert time.monotonic() - started < 2
    assert chain.status is ChainStatus.FAILED
    assert chain.get_task("extract").status is TaskStatus.FAILED
    assert chain.get_task("publish").status is TaskStatus.CANCELLED
    assert sink.names()[-1] == "chain:failed"


def test_chain_executes_at_most_once():
    engine, _ = _engine()
    engine.register_executor("development", _ok)
    chain = engine.create_task_chain(["Build it"], {"user_id": "u1"})
    asyncio.run(engine.execute_chain(chain.id))

    with pytest.raises(ChainStateError):
        asyncio.run(engine.execute_chain(chain.id))


def test_unknown_chain_lookups():
    engine, _ = _engine()

    with pytest.raises(ChainNotFoundError):
        asyncio.run(engine.execute_chain("missing"))
    assert engine.cancel_chain("missing") is False
    assert engine.get_chain_status("missing") is None


def test_parallel_tasks_are_bounded_by_parallelism():
    engine, _ = _engine(default_parallelism=2)
    for index in range(4):
        engine.register_task(TaskDefinition(id=f"part-{index}", type="batch", name=f"Part {index}", keywords=["batch"]))
    state = {"active": 0, "peak": 0}

    async def work(task, context):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0.02)
        state["active"] -= 1

    engine.register_executor("batch", work)
    chain = engine.create_task_chain(["Process the batch"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))

    assert len(chain.execution_order) == 1
    assert state["peak"] == 2
    assert chain.status is ChainStatus.COMPLETED


def test_non_parallelizable_tasks_run_alone():
    engine, _ = _engine()
    for index in range(3):
        engine.register_task(
            TaskDefinition(id=f"step-{index}", type="exclusive", name=f"Step {index}", keywords=["exclusive"], parallelizable=False)
        )
    state = {"active": 0, "peak": 0}

    async def work(task, context):
        state["active"] += 1
        state["peak"] = max(state["peak"], state["active"])
        await asyncio.sleep(0.01)
        state["active"] -= 1

    engine.register_executor("exclusive", work)
    chain = engine.create_task_chain(["Run exclusive steps"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))

    assert state["peak"] == 1


def test_execution_queue_tracks_pending_and_running_tasks():
    engine, _ = _engine()
    snapshots: List[List[str]] = []

    def develop(task, context):
        snapshots.append(sorted(engine.get_execution_queue()))
        return "ok"

    engine.register_executor("development", develop)
    engine.register_executor("testing", _ok)
    chain = engine.create_task_chain(["Build the API", "Test the API"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))

    assert snapshots == [
        sorted(
            [
                f"{chain.id}:{builtin_task_id('development')}",
                f"{chain.id}:{builtin_task_id('testing')}",
            ]
        )
    ]
    assert engine.get_execution_queue() == {}


def test_cleanup_removes_only_old_terminal_chains():
    clock = _Clock()
    engine, _ = _engine(clock=clock)
    engine.register_executor("development", _ok)

    old = engine.create_task_chain(["Build the old thing"], {"user_id": "u1"})
    asyncio.run(engine.execute_chain(old.id))
    clock.advance(minutes=10)
    recent = engine.create_task_chain(["Build the new thing"], {"user_id": "u1"})
    asyncio.run(engine.execute_chain(recent.id))
    planning = engine.create_task_chain(["Build the next thing"], {"user_id": "u1"})

    removed = engine.cleanup_completed_chains(5 * 60_000)

    assert removed == 1
    assert {chain.id for chain in engine.get_active_chains()} == {recent.id, planning.id}
    assert engine.get_task_executions(old.id) == []
    assert engine.cleanup_completed_chains(5 * 60_000) == 0


def test_metrics_and_subscriptions():
    engine, _ = _engine()
    completed: List[str] = []
    unsubscribe = engine.on("task:completed", lambda event: completed.append(event["task_id"]))
    engine.register_executor("development", _ok)
    engine.register_executor("testing", _ok)
    chain = engine.create_task_chain(["Build the API", "Test the API"], {"user_id": "u1"})

    asyncio.run(engine.execute_chain(chain.id))
    unsubscribe()

    assert completed == [builtin_task_id("development"), builtin_task_id("testing")]
    assert engine.off("task:completed", completed.append) is False
    metrics = engine.get_metrics()
    assert metrics["chains"] == {"completed": 1}
    assert metrics["tasks"] == {"completed": 2}
    assert metrics["in_flight"] == 0
    assert metrics["executors"] == 2
    assert metrics["task_definitions"] == len(builtin_definitions())
