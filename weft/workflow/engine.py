"""Workflow engine: drives executions from creation to a terminal or paused status.

Each execution runs on one asyncio task. Top-level steps run strictly in
order; before each step the engine moves the current-step pointer, checks
the cancellation token and honors a pending pause request. Human-in-the-loop
steps pause the execution with a deadline enforced by a timer, so no task is
blocked while a human decides. Branches a first-wins parallel step left
running are drained before the execution pauses or settles. Executions are
persisted to the execution store at every status transition and every step
record change.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from weft.config.schema import EngineConfig, WeftConfig
from weft.observe.metrics import get_metrics
from weft.workflow.cancellation import CancellationToken
from weft.workflow.errors import (
    CancellationError,
    ExecutionNotFoundError,
    IllegalTransitionError,
    ValidationError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
)
from weft.workflow.executor import ExecutionContext, StepExecutor, step_failure
from weft.workflow.history import ExecutionHistory
from weft.workflow.models import (
    ErrorInfo,
    ExecutionStatus,
    HumanInTheLoopStep,
    StepStatus,
    WorkflowDef,
    WorkflowExecution,
)
from weft.workflow.ports import (
    AgentExecutorPort,
    ExecutionStore,
    ExpressionEvaluatorPort,
    RAGPort,
    ToolExecutorPort,
    WorkflowRepository,
)
from weft.workflow.scope import VariableScope
from weft.workflow.state import ExecutionStateMachine
from weft.workflow.store import InMemoryExecutionStore, JsonExecutionStore, JsonWorkflowRepository


def _new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class _Run:
    """In-memory driving state for one execution. Never persisted."""

    execution: WorkflowExecution
    workflow: WorkflowDef
    scope: VariableScope
    token: CancellationToken
    history: ExecutionHistory
    machine: ExecutionStateMachine
    background: set[asyncio.Task[Any]] = field(default_factory=set)
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    pause_requested: bool = False
    timed_out: bool = False
    active_seconds: float = 0.0
    timeout_handle: asyncio.TimerHandle | None = None
    input_handle: asyncio.TimerHandle | None = None
    driver: asyncio.Task[Any] | None = None


class WorkflowEngine:
    """Executes workflow definitions through a StepExecutor.

    Usage:
        engine = WorkflowEngine(StepExecutor(agents=my_agents, tools=my_tools))
        execution = await engine.execute(workflow, {"topic": "weft"})
    """

    def __init__(
        self,
        executor: StepExecutor,
        *,
        execution_store: ExecutionStore | None = None,
        workflow_repository: WorkflowRepository | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._executor = executor
        self._store = execution_store if execution_store is not None else InMemoryExecutionStore()
        self._repository = workflow_repository
        self._config = config or EngineConfig()
        self._workflows: dict[str, WorkflowDef] = {}
        self._runs: dict[str, _Run] = {}
        self._tasks: dict[str, asyncio.Task[WorkflowExecution]] = {}

    @classmethod
    def from_config(
        cls,
        config: WeftConfig,
        *,
        agents: AgentExecutorPort | None = None,
        tools: ToolExecutorPort | None = None,
        rag: RAGPort | None = None,
        evaluator: ExpressionEvaluatorPort | None = None,
    ) -> WorkflowEngine:
        """Build an engine with JSON persistence under ``config.state_dir``.

        Definitions go to ``<state_dir>/workflows`` and executions to
        ``<state_dir>/executions``, so paused runs survive a restart.
        """
        state_dir = Path(config.state_dir).expanduser()
        executor = StepExecutor(
            agents=agents, tools=tools, rag=rag, evaluator=evaluator, config=config.engine
        )
        logger.debug("Engine state directory: {}", state_dir)
        return cls(
            executor,
            execution_store=JsonExecutionStore(state_dir / "executions"),
            workflow_repository=JsonWorkflowRepository(state_dir / "workflows"),
            config=config.engine,
        )

    # -- definitions --------------------------------------------------------

    def register(self, workflow: WorkflowDef) -> None:
        """Validate and cache a definition, saving it to the repository if one is set."""
        self._validate(workflow)
        self._workflows[workflow.id] = workflow
        if self._repository is not None:
            self._repository.save(workflow)

    def get_workflow(self, workflow_id: str) -> WorkflowDef:
        workflow = self._workflows.get(workflow_id)
        if workflow is None and self._repository is not None:
            workflow = self._repository.get(workflow_id)
            if workflow is not None:
                self._workflows[workflow_id] = workflow
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    # -- running ------------------------------------------------------------

    async def execute(
        self, workflow: WorkflowDef, input: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Run a workflow until it completes, fails, is cancelled or pauses."""
        run = self._create(workflow, input)
        await self._drive(run, 0)
        return run.execution

    async def submit(
        self, workflow: WorkflowDef, input: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Start a workflow on a background task and return the pending execution."""
        run = self._create(workflow, input)
        execution_id = run.execution.id
        task = asyncio.create_task(self._drive(run, 0), name=f"workflow:{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution_id, None))
        return run.execution

    async def wait(self, execution_id: str) -> WorkflowExecution:
        """Wait for a submitted execution to leave the running state."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait({task})
        execution = self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def resume(
        self, execution_id: str, input: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Continue a paused execution from its current step.

        ``input`` is merged into the execution's variables. When the execution
        is waiting on a human-in-the-loop step, the input also completes that
        step and is bound to its output variable; a wait whose deadline has
        passed fails the execution with a timeout instead.
        """
        run = self._runs.get(execution_id) or self._restore(execution_id, "resume")
        execution = run.execution
        if execution.status != ExecutionStatus.PAUSED:
            raise IllegalTransitionError(
                f"Cannot resume execution {execution_id} while {execution.status.value}"
            )

        index = run.workflow.top_level_index(execution.current_step or "")
        if index < 0:
            raise IllegalTransitionError(
                f"Execution {execution_id} is paused at unknown step '{execution.current_step}'"
            )

        self._disarm_input_timer(run)
        pending = run.history.pending_record()
        if pending is not None and self._input_expired(execution):
            self._expire_input(run)
            return execution

        if input:
            run.scope.update(input)
        run.machine.resume()
        self._persist(execution)

        if pending is not None:
            step = run.workflow.steps[index]
            run.history.complete(pending, input)
            if isinstance(step, HumanInTheLoopStep) and step.output:
                run.scope.set(step.output, input)
            get_metrics().record_step(StepStatus.COMPLETED)
            index += 1

        logger.info("Resuming execution {} at step index {}", execution_id, index)
        await self._drive(run, index)
        return execution

    def pause(self, execution_id: str) -> WorkflowExecution:
        """Request suspension at the next step boundary."""
        run = self._runs.get(execution_id)
        if run is None or run.execution.status not in (
            ExecutionStatus.PENDING,
            ExecutionStatus.RUNNING,
        ):
            execution = self._require_execution(execution_id)
            raise IllegalTransitionError(
                f"Cannot pause execution {execution_id} while {execution.status.value}"
            )
        run.pause_requested = True
        logger.info("Pause requested for execution {}", execution_id)
        return run.execution

    async def cancel(
        self, execution_id: str, reason: str = "Execution cancelled"
    ) -> WorkflowExecution:
        """Cancel an execution and wait until it settles.

        Running work (port calls, retry sleeps, parallel branches) observes
        the signal at its next suspension point. A paused execution is
        cancelled directly.
        """
        run = self._runs.get(execution_id) or self._restore(execution_id, "cancel")
        execution = run.execution
        if execution.status.is_terminal:
            raise IllegalTransitionError(
                f"Cannot cancel execution {execution_id} while {execution.status.value}"
            )

        if execution.status != ExecutionStatus.PAUSED:
            run.token.cancel(reason)
            if asyncio.current_task() is not run.driver:
                await run.settled.wait()

        if execution.status == ExecutionStatus.PAUSED:
            await self._cancel_paused(run, reason)
        return execution

    async def shutdown(self) -> None:
        """Cancel every live execution and wait for submitted tasks to finish."""
        for run in list(self._runs.values()):
            if run.execution.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
                run.token.cancel("Engine shutting down")
            elif run.execution.status == ExecutionStatus.PAUSED:
                self._disarm_input_timer(run)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # -- queries ------------------------------------------------------------

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        run = self._runs.get(execution_id)
        if run is not None:
            return run.execution
        return self._store.load(execution_id)

    def list_active(self) -> list[WorkflowExecution]:
        return [run.execution for run in self._runs.values() if run.execution.is_active]

    def list_executions(self, workflow_id: str | None = None) -> list[WorkflowExecution]:
        by_id = {e.id: e for e in self._store.list(workflow_id)}
        for run in self._runs.values():
            if workflow_id is None or run.execution.workflow_id == workflow_id:
                by_id[run.execution.id] = run.execution
        return sorted(by_id.values(), key=lambda e: e.started_at)

    # -- internals ----------------------------------------------------------

    @staticmethod
    def _validate(workflow: WorkflowDef) -> None:
        errors = workflow.validate()
        if errors:
            raise ValidationError(errors)

    def _create(self, workflow: WorkflowDef, input: dict[str, Any] | None) -> _Run:
        self._validate(workflow)
        self._workflows[workflow.id] = workflow
        execution = WorkflowExecution(
            id=_new_execution_id(),
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            variables=dict(input or {}),
        )
        run = self._track(execution, workflow)
        self._persist(execution)
        logger.info(
            "Created execution {} for workflow '{}' ({} steps)",
            execution.id,
            workflow.name,
            len(workflow.steps),
        )
        return run

    def _track(self, execution: WorkflowExecution, workflow: WorkflowDef) -> _Run:
        token = CancellationToken()
        run = _Run(
            execution=execution,
            workflow=workflow,
            scope=VariableScope(execution.variables),
            token=token,
            history=ExecutionHistory(execution, token, on_change=lambda: self._persist(execution)),
            machine=ExecutionStateMachine(execution),
        )
        self._runs[execution.id] = run
        return run

    def _restore(self, execution_id: str, action: str) -> _Run:
        """Rebuild driving state for a paused execution known only to the store."""
        execution = self._require_execution(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            raise IllegalTransitionError(
                f"Cannot {action} execution {execution_id} while {execution.status.value}"
            )
        workflow = self.get_workflow(execution.workflow_id)
        return self._track(execution, workflow)

    def _require_execution(self, execution_id: str) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def _context(self, run: _Run) -> ExecutionContext:
        return ExecutionContext(
            execution_id=run.execution.id,
            workflow_id=run.workflow.id,
            token=run.token,
            history=run.history,
            background=run.background,
        )

    async def _drive(self, run: _Run, index: int) -> WorkflowExecution:
        execution = run.execution
        machine = run.machine
        steps = run.workflow.steps
        loop = asyncio.get_running_loop()
        run.settled.clear()
        run.driver = asyncio.current_task()
        self._arm_workflow_timer(run, loop)
        leg_started = loop.time()
        step_id: str | None = None

        try:
            for i in range(index, len(steps)):
                step = steps[i]
                step_id = step.id
                if execution.status == ExecutionStatus.PENDING:
                    machine.start(step.id)
                else:
                    machine.advance(step.id)
                self._persist(execution)

                run.token.raise_if_cancelled()
                if run.pause_requested:
                    await self._drain(run)
                    run.token.raise_if_cancelled()
                    run.pause_requested = False
                    machine.pause()
                    logger.info("Execution {} paused before step '{}'", execution.id, step.id)
                    return execution

                record = await self._executor.execute_step(step, run.scope, self._context(run))
                if record.status == StepStatus.FAILED:
                    raise step_failure(record)
                if record.status == StepStatus.PENDING:
                    await self._drain(run)
                    run.token.raise_if_cancelled()
                    self._await_human_input(run, step, loop)
                    return execution

            await self._drain(run)
            machine.complete()
            logger.info(
                "Execution {} completed ({} records)", execution.id, len(execution.step_history)
            )
        except IllegalTransitionError:
            raise
        except CancellationError as exc:
            await self._drain(run)
            self._stop(run, step_id, exc.message or run.token.reason)
        except WorkflowError as exc:
            await self._drain(run)
            machine.fail(ErrorInfo.from_exception(exc, step_id))
            logger.error("Execution {} failed at step '{}': {}", execution.id, step_id, exc.message)
        except asyncio.CancelledError:
            # The driving task itself was cancelled, e.g. by a caller's wait_for.
            run.token.cancel("Execution task was cancelled")
            await self._drain(run)
            self._stop(run, step_id, run.token.reason)
            raise
        finally:
            run.active_seconds += loop.time() - leg_started
            self._disarm_workflow_timer(run)
            if execution.status.is_terminal:
                self._settle(run)
            else:
                self._persist(execution)
            run.settled.set()
        return execution

    def _stop(self, run: _Run, step_id: str | None, reason: str) -> None:
        """Settle a run whose token fired: a timeout fails it, anything else cancels it."""
        self._fail_pending(run, reason)
        if run.timed_out:
            timeout_error = WorkflowTimeoutError(run.token.reason, step_id=step_id)
            run.machine.fail(ErrorInfo.from_exception(timeout_error))
            logger.warning("Execution {} timed out", run.execution.id)
        else:
            run.machine.cancel(reason)
            logger.info("Execution {} cancelled", run.execution.id)

    def _fail_pending(self, run: _Run, reason: str) -> None:
        pending = run.history.pending_record()
        if pending is not None:
            run.history.fail(pending, CancellationError(reason, step_id=pending.step_id))
            get_metrics().record_step(StepStatus.FAILED)

    async def _drain(self, run: _Run) -> None:
        """Wait for branch tasks still running outside the step that started them."""
        while run.background:
            await asyncio.gather(*list(run.background), return_exceptions=True)

    def _await_human_input(
        self, run: _Run, step: HumanInTheLoopStep, loop: asyncio.AbstractEventLoop
    ) -> None:
        timeout = step.timeout or self._config.human_input_timeout
        deadline = datetime.now(UTC) + timedelta(seconds=timeout)
        run.machine.pause(awaiting_input_until=deadline.isoformat())
        run.input_handle = loop.call_later(timeout, self._expire_input, run)
        logger.info(
            "Execution {} waiting for human input at step '{}' (timeout {}s)",
            run.execution.id,
            step.id,
            timeout,
        )

    @staticmethod
    def _input_expired(execution: WorkflowExecution) -> bool:
        deadline = execution.awaiting_input_until
        return deadline is not None and datetime.fromisoformat(deadline) <= datetime.now(UTC)

    def _expire_input(self, run: _Run) -> None:
        run.input_handle = None
        execution = run.execution
        if execution.status != ExecutionStatus.PAUSED:
            return
        pending = run.history.pending_record()
        if pending is None:
            return
        error = WorkflowTimeoutError(
            f"Human input for step '{pending.step_id}' timed out", step_id=pending.step_id
        )
        run.history.fail(pending, error)
        get_metrics().record_step(StepStatus.FAILED)
        run.machine.resume()
        run.machine.fail(ErrorInfo.from_exception(error))
        logger.warning("Execution {} failed: {}", execution.id, error.message)
        self._settle(run)

    async def _cancel_paused(self, run: _Run, reason: str) -> None:
        self._disarm_input_timer(run)
        run.token.cancel(reason)
        await self._drain(run)
        if run.execution.status != ExecutionStatus.PAUSED:
            # Resumed while branches were draining; the driver observes the token.
            await run.settled.wait()
            return
        self._fail_pending(run, reason)
        run.machine.cancel(reason)
        logger.info("Paused execution {} cancelled", run.execution.id)
        self._settle(run)

    def _arm_workflow_timer(self, run: _Run, loop: asyncio.AbstractEventLoop) -> None:
        timeout = run.workflow.timeout
        if timeout is None:
            return
        remaining = max(0.0, timeout - run.active_seconds)
        run.timeout_handle = loop.call_later(remaining, self._on_workflow_timeout, run)

    def _disarm_workflow_timer(self, run: _Run) -> None:
        if run.timeout_handle is not None:
            run.timeout_handle.cancel()
            run.timeout_handle = None

    def _disarm_input_timer(self, run: _Run) -> None:
        if run.input_handle is not None:
            run.input_handle.cancel()
            run.input_handle = None

    def _on_workflow_timeout(self, run: _Run) -> None:
        run.timeout_handle = None
        run.timed_out = True
        run.token.cancel(
            f"Workflow '{run.workflow.name}' exceeded its timeout of {run.workflow.timeout}s"
        )

    def _settle(self, run: _Run) -> None:
        execution = run.execution
        self._persist(execution)
        get_metrics().record_workflow_run(execution.status, execution.duration_seconds)
        self._runs.pop(execution.id, None)

    def _persist(self, execution: WorkflowExecution) -> None:
        self._store.save(execution)
