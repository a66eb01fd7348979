"""Chain execution engine.

Builds :class:`TaskChain` objects from goal descriptions and drives them wave
by wave.  Each wave is dispatched concurrently on the running event loop,
bounded by a semaphore; every attempt races the executor against the task's
timeout, and failures are retried according to the task's retry policy.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from .analysis import ACTION_RULES, GoalAnalyzer, iter_rule_types
from .config import EngineSettings
from .dependencies import DependencyResolver
from .errors import (
    ChainCancelledError,
    ChainNotFoundError,
    ChainStateError,
    ExecutorNotFoundError,
    GoalValidationError,
    TaskError,
    TaskExecutionError,
    TaskTimeoutError,
)
from .events import (
    CHAIN_CANCELLED,
    CHAIN_COMPLETED,
    CHAIN_CREATED,
    CHAIN_FAILED,
    CHAIN_STARTED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRIED,
    TASK_STARTED,
    EventBus,
    Handler,
)
from .registry import Executor, ExecutorRegistry, ExecutorSpec, TaskRegistry
from .retry import backoff_delay_ms, classify_failure
from .types import (
    ChainStatus,
    ChainTask,
    ExecutorResult,
    TaskChain,
    TaskContext,
    TaskDefinition,
    TaskExecution,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger(__name__)

FALLBACK_TASK_TYPE = "development"

# Built-in task types that must wait for other built-in types in the same chain.
BUILTIN_DEPENDENCIES: Dict[str, Sequence[str]] = {
    "testing": ("development", "bugfix", "refactoring", "update", "optimization"),
    "review": ("development", "refactoring"),
    "documentation": ("development",),
    "integration": ("development",),
    "deployment": ("testing", "migration", "configuration", "integration"),
}

_HIGH_PRIORITY_TYPES = frozenset({"development", "bugfix", "migration"})


def builtin_task_id(task_type: str) -> str:
    return f"builtin-{task_type}"


def builtin_definitions() -> List[TaskDefinition]:
    """One built-in definition per task type of the action rule table."""

    parallel: Dict[str, bool] = {}
    for rule in ACTION_RULES:
        parallel.setdefault(rule.task_type, rule.parallelizable)
    definitions = []
    for task_type in iter_rule_types():
        priority = TaskPriority.HIGH if task_type in _HIGH_PRIORITY_TYPES else TaskPriority.MEDIUM
        definitions.append(
            TaskDefinition(
                id=builtin_task_id(task_type),
                type=task_type,
                name=task_type.replace("-", " ").title(),
                description=f"Built-in {task_type} task",
                priority=priority.value,
                dependencies=[builtin_task_id(dep) for dep in BUILTIN_DEPENDENCIES.get(task_type, ())],
                parallelizable=parallel[task_type],
                builtin=True,
            )
        )
    return definitions


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """Cooperative cancellation signal for one chain run.

    Futures registered with :meth:`track` are cancelled when the token fires.
    :meth:`cancel` may be called from any thread; the futures themselves are
    always cancelled on the loop that owns them.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._cancelled = False
        self._futures: Set[asyncio.Future] = set()
        self._loop = loop

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        loop = self._loop
        if loop is None or self._on_loop_thread():
            self._cancel_futures()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._cancel_futures)
        return True

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _cancel_futures(self) -> None:
        for future in list(self._futures):
            future.cancel()

    def track(self, future: asyncio.Future) -> None:
        if self._cancelled:
            future.cancel()
        self._futures.add(future)

    def untrack(self, future: asyncio.Future) -> None:
        self._futures.discard(future)

    def raise_if_cancelled(self, chain_id: str) -> None:
        if self._cancelled:
            raise ChainCancelledError(chain_id)


def _coerce_context(context: TaskContext | Mapping[str, Any]) -> TaskContext:
    if isinstance(context, TaskContext):
        return context
    if not isinstance(context, Mapping):
        raise TypeError("context must be a TaskContext or a mapping")
    payload = dict(context)
    user_id = payload.pop("user_id", None)
    if not user_id:
        raise GoalValidationError("Task context requires a user_id")
    return TaskContext(
        user_id=str(user_id),
        session_id=str(payload.pop("session_id", "") or ""),
        workspace_id=payload.pop("workspace_id", None),
        metadata=dict(payload.pop("metadata", None) or {}),
        shared_state=dict(payload.pop("shared_state", None) or {}),
    )


class ChainExecutionEngine:
    """Creates, runs, cancels and cleans up task chains."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        events: EventBus | None = None,
        executors: ExecutorRegistry | None = None,
        tasks: TaskRegistry | None = None,
        analyzer: GoalAnalyzer | None = None,
        resolver: DependencyResolver | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.events = events or EventBus()
        self.executors = executors or ExecutorRegistry()
        self.tasks = tasks or TaskRegistry()
        self.analyzer = analyzer or GoalAnalyzer()
        self.resolver = resolver or DependencyResolver()
        self.clock = clock
        for definition in builtin_definitions():
            if definition.id not in self.tasks:
                self.tasks.register(definition)

        self._chains: Dict[str, TaskChain] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._executions: Dict[str, TaskExecution] = {}
        self._queue: Dict[str, TaskExecution] = {}
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Registration and subscriptions
    # ------------------------------------------------------------------

    def register_task(self, definition: TaskDefinition) -> TaskDefinition:
        registered = self.tasks.register(replace(definition, builtin=False))
        logger.debug("Registered task definition %s (%s)", registered.id, registered.type)
        return registered

    def register_executor(self, task_type: str, executor: Executor) -> ExecutorSpec:
        spec = self.executors.register(task_type, executor)
        logger.debug("Registered executor for %s (async=%s)", task_type, spec.is_async)
        return spec

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        return self.events.on(event, handler)

    def off(self, event: str, handler: Handler) -> bool:
        return self.events.off(event, handler)

    # ------------------------------------------------------------------
    # Chain construction
    # ------------------------------------------------------------------

    def create_task_chain(
        self,
        goals: Sequence[str],
        context: TaskContext | Mapping[str, Any],
        *,
        name: Optional[str] = None,
    ) -> TaskChain:
        if isinstance(goals, str):
            goals = [goals]
        goal_list = [str(goal).strip() for goal in goals if goal and str(goal).strip()]
        if not goal_list:
            raise GoalValidationError("A task chain requires at least one goal")
        task_context = _coerce_context(context)

        selected: Dict[str, ChainTask] = {}
        for goal in goal_list:
            for definition in self._definitions_for_goal(goal):
                if definition.id in selected:
                    continue
                selected[definition.id] = ChainTask.from_definition(definition, goal=goal)

        for task in selected.values():
            definition = self.tasks.get(task.id)
            if definition is not None and definition.builtin:
                task.dependencies = [dep for dep in task.dependencies if dep in selected]

        tasks = list(selected.values())
        chain = TaskChain(
            id=f"chain-{uuid.uuid4().hex[:12]}",
            name=name or goal_list[0][:80],
            goals=goal_list,
            context=task_context,
            tasks=tasks,
            execution_order=self.resolver.resolve(tasks),
            created_at=self.clock(),
        )
        with self._lock:
            self._chains[chain.id] = chain
        logger.info(
            "Created chain %s with %d task(s) in %d wave(s)",
            chain.id,
            len(chain.tasks),
            len(chain.execution_order),
        )
        self.events.emit(
            CHAIN_CREATED,
            chain_id=chain.id,
            name=chain.name,
            goals=list(chain.goals),
            task_count=len(chain.tasks),
            execution_order=[list(wave) for wave in chain.execution_order],
        )
        return chain

    def _definitions_for_goal(self, goal: str) -> List[TaskDefinition]:
        custom = self.tasks.matching(goal)
        if custom:
            return custom
        definitions = []
        for task_type in self.analyzer.classify_text(goal):
            definition = self.tasks.builtin_for_type(task_type)
            if definition is not None:
                definitions.append(definition)
        if not definitions:
            fallback = self.tasks.builtin_for_type(FALLBACK_TASK_TYPE)
            if fallback is not None:
                definitions.append(fallback)
        return definitions

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_chain(self, chain_id: str) -> TaskChain:
        """Run every wave of ``chain_id`` and return the completed chain.

        Raises the failing task's :class:`TaskError` when a task exhausts its
        attempts, or :class:`ChainCancelledError` when the chain is cancelled.
        If the run itself is cancelled by the caller, the chain is marked
        cancelled before :class:`asyncio.CancelledError` propagates.
        """

        chain = self._require_chain(chain_id)
        with self._lock:
            if chain.status is ChainStatus.CANCELLED:
                raise ChainCancelledError(chain_id)
            if chain.status is not ChainStatus.PLANNING:
                raise ChainStateError(f"Chain {chain_id} is {chain.status.value}, expected planning")
            token = CancellationToken(asyncio.get_running_loop())
            self._tokens[chain_id] = token
            chain.status = ChainStatus.EXECUTING
            chain.started_at = self.clock()
            for task in chain.tasks:
                key = self._execution_key(chain_id, task.id)
                execution = TaskExecution(chain_id=chain_id, task_id=task.id)
                self._executions[key] = execution
                self._queue[key] = execution

        started = time.monotonic()
        logger.info("Executing chain %s (%d wave(s))", chain_id, len(chain.execution_order))
        self.events.emit(CHAIN_STARTED, chain_id=chain_id, task_count=len(chain.tasks))
        try:
            for index, wave in enumerate(chain.execution_order):
                token.raise_if_cancelled(chain_id)
                logger.debug("Chain %s dispatching wave %d: %s", chain_id, index, wave)
                await self._execute_wave(chain, wave, token)
            token.raise_if_cancelled(chain_id)
        except ChainCancelledError:
            logger.info("Chain %s cancelled", chain_id)
            raise
        except asyncio.CancelledError:
            if self.cancel_chain(chain_id):
                logger.warning("Chain %s interrupted by caller cancellation", chain_id)
            raise
        except TaskError as exc:
            self._fail_chain(chain, exc)
            raise
        finally:
            with self._lock:
                self._tokens.pop(chain_id, None)
                self._drop_queue(chain_id)

        with self._lock:
            chain.status = ChainStatus.COMPLETED
            chain.completed_at = self.clock()
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Chain %s completed in %dms", chain_id, duration_ms)
        self.events.emit(CHAIN_COMPLETED, chain_id=chain_id, duration_ms=duration_ms)
        return chain

    async def _execute_wave(self, chain: TaskChain, wave: Sequence[str], token: CancellationToken) -> None:
        batch: List[ChainTask] = []
        for task_id in wave:
            task = chain.get_task(task_id)
            if task is None:
                continue
            if task.parallelizable:
                batch.append(task)
                continue
            if batch:
                await self._execute_batch(chain, batch, token)
                batch = []
            await self._execute_batch(chain, [task], token)
        if batch:
            await self._execute_batch(chain, batch, token)

    async def _execute_batch(self, chain: TaskChain, batch: Sequence[ChainTask], token: CancellationToken) -> None:
        token.raise_if_cancelled(chain.id)
        limit = max(1, min(self.settings.default_parallelism, len(batch)))
        semaphore = asyncio.Semaphore(limit)

        async def guarded(task: ChainTask) -> TaskExecution:
            async with semaphore:
                token.raise_if_cancelled(chain.id)
                return await self._execute_task(chain, task, token)

        runners = [asyncio.ensure_future(guarded(task)) for task in batch]
        for runner in runners:
            token.track(runner)
        pending = set(runners)
        failure: Optional[BaseException] = None
        try:
            while pending and failure is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                for runner in runners:
                    if runner in done and not runner.cancelled() and runner.exception() is not None:
                        failure = runner.exception()
                        break
            if pending:
                # A sibling failed for good; the rest of the batch is abandoned.
                for runner in pending:
                    runner.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            for runner in runners:
                runner.cancel()
            raise
        finally:
            for runner in runners:
                token.untrack(runner)

        if token.cancelled:
            raise ChainCancelledError(chain.id)
        if failure is not None:
            raise failure
        if any(runner.cancelled() for runner in runners):
            # An executor cancelled itself; treat it as cancelling the chain.
            raise asyncio.CancelledError()

    async def _execute_task(self, chain: TaskChain, task: ChainTask, token: CancellationToken) -> TaskExecution:
        key = self._execution_key(chain.id, task.id)
        with self._lock:
            execution = self._executions.setdefault(key, TaskExecution(chain_id=chain.id, task_id=task.id))
            self._queue[key] = execution
        retry = task.retry_config or self.settings.default_retry
        timeout_ms = task.timeout_ms or self.settings.default_timeout_ms
        attempt = 0
        recovering = False
        recovery_used = False
        started = time.monotonic()

        try:
            while True:
                token.raise_if_cancelled(chain.id)
                if not recovering:
                    attempt += 1
                execution.attempts += 1
                execution.status = task.status = TaskStatus.RUNNING
                if execution.started_at is None:
                    execution.started_at = self.clock()
                self._enrich_context(chain.context)
                self.events.emit(
                    TASK_STARTED,
                    chain_id=chain.id,
                    task_id=task.id,
                    task_type=task.type,
                    attempt=execution.attempts,
                    recovery=recovering,
                )
                try:
                    spec = self.executors.require(task.type, chain_id=chain.id, task_id=task.id)
                    result = await self._run_with_timeout(spec, chain, task, timeout_ms)
                    if not result.success:
                        raise TaskExecutionError(
                            result.error or f"Task {task.id} reported failure",
                            chain_id=chain.id,
                            task_id=task.id,
                        )
                except TaskError as exc:
                    error: TaskError = exc
                except Exception as exc:
                    error = TaskExecutionError(
                        str(exc) or type(exc).__name__,
                        chain_id=chain.id,
                        task_id=task.id,
                    )
                    error.__cause__ = exc
                else:
                    token.raise_if_cancelled(chain.id)
                    return self._complete_task(chain, task, execution, result, started, recovering)

                error.attempts = execution.attempts
                classification = classify_failure(error)
                if isinstance(error, ExecutorNotFoundError):
                    self._fail_task(chain, task, execution, error, classification.to_event_details())
                    raise error

                if (
                    self.settings.recovery_enabled
                    and not recovery_used
                    and classification.transient
                    and not isinstance(error, TaskTimeoutError)
                ):
                    recovery_used = recovering = True
                    logger.warning("Task %s/%s hit a transient error, retrying immediately: %s", chain.id, task.id, error)
                    self._retried(chain, task, execution, error, 0, True, classification.to_event_details())
                    continue
                recovering = False

                if attempt < retry.max_attempts:
                    delay_ms = backoff_delay_ms(attempt, retry.backoff_ms, retry.exponential)
                    logger.info(
                        "Task %s/%s failed attempt %d/%d, retrying in %dms: %s",
                        chain.id,
                        task.id,
                        attempt,
                        retry.max_attempts,
                        delay_ms,
                        error,
                    )
                    self._retried(chain, task, execution, error, delay_ms, False, classification.to_event_details())
                    if delay_ms:
                        await asyncio.sleep(delay_ms / 1000.0)
                    continue

                self._fail_task(chain, task, execution, error, classification.to_event_details())
                raise error
        except asyncio.CancelledError:
            execution.status = task.status = TaskStatus.CANCELLED
            raise
        except ChainCancelledError:
            execution.status = task.status = TaskStatus.CANCELLED
            raise
        finally:
            with self._lock:
                self._queue.pop(key, None)

    async def _run_with_timeout(
        self,
        spec: ExecutorSpec,
        chain: TaskChain,
        task: ChainTask,
        timeout_ms: int,
    ) -> ExecutorResult:
        future = asyncio.ensure_future(self._call_executor(spec, task, chain.context))
        try:
            done, _ = await asyncio.wait({future}, timeout=timeout_ms / 1000.0)
        except asyncio.CancelledError:
            future.cancel()
            raise
        if future not in done:
            # Late results from the executor are discarded.
            future.cancel()
            raise TaskTimeoutError(timeout_ms, chain_id=chain.id, task_id=task.id)
        return ExecutorResult.coerce(future.result())

    async def _call_executor(self, spec: ExecutorSpec, task: ChainTask, context: TaskContext) -> Any:
        if spec.is_async:
            return await spec.executor(task, context)
        result = await asyncio.to_thread(spec.executor, task, context)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            return await result
        return result

    def _enrich_context(self, context: TaskContext) -> None:
        context.shared_state["timestamp"] = self.clock().isoformat()
        context.shared_state["environment"] = self.settings.environment

    def _complete_task(
        self,
        chain: TaskChain,
        task: ChainTask,
        execution: TaskExecution,
        result: ExecutorResult,
        started: float,
        recovered: bool,
    ) -> TaskExecution:
        execution.status = task.status = TaskStatus.COMPLETED
        execution.output = task.output = result.output
        execution.completed_at = self.clock()
        execution.recovered = recovered
        task.error = None
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug("Task %s/%s completed after %d attempt(s)", chain.id, task.id, execution.attempts)
        self.events.emit(
            TASK_COMPLETED,
            chain_id=chain.id,
            task_id=task.id,
            attempts=execution.attempts,
            duration_ms=duration_ms,
            recovered=recovered,
        )
        return execution

    def _fail_task(
        self,
        chain: TaskChain,
        task: ChainTask,
        execution: TaskExecution,
        error: TaskError,
        details: Mapping[str, Any],
    ) -> None:
        execution.status = task.status = TaskStatus.FAILED
        execution.error = task.error = str(error)
        execution.completed_at = self.clock()
        logger.error("Task %s/%s failed after %d attempt(s): %s", chain.id, task.id, execution.attempts, error)
        self.events.emit(
            TASK_FAILED,
            chain_id=chain.id,
            task_id=task.id,
            attempts=execution.attempts,
            error=str(error),
            **details,
        )

    def _retried(
        self,
        chain: TaskChain,
        task: ChainTask,
        execution: TaskExecution,
        error: TaskError,
        delay_ms: int,
        recovery: bool,
        details: Mapping[str, Any],
    ) -> None:
        execution.status = task.status = TaskStatus.RETRY_PENDING
        execution.error = task.error = str(error)
        self.events.emit(
            TASK_RETRIED,
            chain_id=chain.id,
            task_id=task.id,
            attempt=execution.attempts,
            delay_ms=delay_ms,
            recovery=recovery,
            error=str(error),
            **details,
        )

    def _fail_chain(self, chain: TaskChain, error: TaskError) -> None:
        with self._lock:
            if chain.status.terminal:
                return
            chain.status = ChainStatus.FAILED
            chain.error = str(error)
            chain.completed_at = self.clock()
        logger.error("Chain %s failed: %s", chain.id, error)
        self.events.emit(
            CHAIN_FAILED,
            chain_id=chain.id,
            task_id=error.task_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    # ------------------------------------------------------------------
    # Cancellation, introspection and cleanup
    # ------------------------------------------------------------------

    def cancel_chain(self, chain_id: str) -> bool:
        """Cancel ``chain_id``. Returns False for unknown or already finished chains."""

        with self._lock:
            chain = self._chains.get(chain_id)
            if chain is None or chain.status.terminal:
                return False
            chain.status = ChainStatus.CANCELLED
            chain.completed_at = self.clock()
            chain.error = "Chain cancelled"
            for task in chain.tasks:
                if task.status in {TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.RETRY_PENDING}:
                    task.status = TaskStatus.CANCELLED
            for execution in self._executions.values():
                if execution.chain_id == chain_id and execution.status not in {
                    TaskStatus.COMPLETED,
                    TaskStatus.FAILED,
                }:
                    execution.status = TaskStatus.CANCELLED
            self._drop_queue(chain_id)
            token = self._tokens.get(chain_id)
        if token is not None:
            token.cancel()
        logger.info("Cancelled chain %s", chain_id)
        self.events.emit(CHAIN_CANCELLED, chain_id=chain_id)
        return True

    def get_chain_status(self, chain_id: str) -> Optional[TaskChain]:
        with self._lock:
            return self._chains.get(chain_id)

    def get_active_chains(self) -> List[TaskChain]:
        with self._lock:
            return list(self._chains.values())

    def get_execution_queue(self) -> Dict[str, TaskExecution]:
        """In-flight and pending task records keyed by ``"<chain_id>:<task_id>"``."""

        with self._lock:
            return dict(self._queue)

    def get_task_executions(self, chain_id: str) -> List[TaskExecution]:
        with self._lock:
            return [execution for execution in self._executions.values() if execution.chain_id == chain_id]

    def cleanup_completed_chains(self, max_age_ms: int) -> int:
        """Forget terminal chains that finished more than ``max_age_ms`` ago."""

        cutoff = self.clock() - timedelta(milliseconds=max_age_ms)
        with self._lock:
            stale = [
                chain_id
                for chain_id, chain in self._chains.items()
                if chain.status.terminal and chain.completed_at is not None and chain.completed_at < cutoff
            ]
            for chain_id in stale:
                del self._chains[chain_id]
                for key in [key for key, execution in self._executions.items() if execution.chain_id == chain_id]:
                    del self._executions[key]
        if stale:
            logger.info("Cleaned up %d completed chain(s)", len(stale))
        return len(stale)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            chains = Counter(chain.status.value for chain in self._chains.values())
            tasks = Counter(task.status.value for chain in self._chains.values() for task in chain.tasks)
            in_flight = len(self._queue)
        return {
            "chains": dict(chains),
            "tasks": dict(tasks),
            "in_flight": in_flight,
            "executors": len(self.executors),
            "task_definitions": len(self.tasks),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_chain(self, chain_id: str) -> TaskChain:
        with self._lock:
            chain = self._chains.get(chain_id)
        if chain is None:
            raise ChainNotFoundError(chain_id)
        return chain

    def _drop_queue(self, chain_id: str) -> None:
        prefix = f"{chain_id}:"
        for key in [key for key in self._queue if key.startswith(prefix)]:
            del self._queue[key]

    @staticmethod
    def _execution_key(chain_id: str, task_id: str) -> str:
        return f"{chain_id}:{task_id}"


__all__ = [
    "BUILTIN_DEPENDENCIES",
    "CancellationToken",
    "ChainExecutionEngine",
    "builtin_definitions",
    "builtin_task_id",
]
