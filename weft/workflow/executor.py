"""Step executor: runs one workflow step of any variant.

Leaf steps (agent, tool, RAG) resolve their input, call the matching port
under the step's retry policy and timeout, and bind the result to their
output variable. Composite steps (conditional, parallel, loop) run nested
sequences through the same entry point, so every nested step gets its own
history record. Transforms evaluate in-process; human-in-the-loop steps only
open a pending record and leave the pause to the engine.

``execute_step`` always returns the step's record. A failed record carries
the exception; composite steps re-raise the innermost failure so it ends up
on every enclosing record.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from itertools import islice
from typing import Any, assert_never

from loguru import logger

from weft.config.schema import EngineConfig
from weft.observe.metrics import get_metrics
from weft.workflow.cancellation import CancellationToken
from weft.workflow.errors import (
    CancellationError,
    IllegalTransitionError,
    ResolutionError,
    ResolutionFailure,
    RetryExhaustedError,
    StepExecutionError,
    WorkflowError,
    WorkflowTimeoutError,
)
from weft.workflow.expressions import SafeExpressionEvaluator
from weft.workflow.history import ExecutionHistory
from weft.workflow.models import (
    AgentStep,
    ConditionalStep,
    HumanInTheLoopStep,
    LoopStep,
    ParallelStep,
    RAGStep,
    RetryPolicy,
    StepRecord,
    StepStatus,
    ToolStep,
    TransformStep,
    WorkflowStep,
)
from weft.workflow.ports import (
    AgentExecutorPort,
    ExpressionEvaluatorPort,
    RAGPort,
    ToolExecutorPort,
)
from weft.workflow.retry import RetryCoordinator, policy_from_defaults
from weft.workflow.scope import InputResolver, VariableScope

PortCall = Callable[["ExecutionContext"], Awaitable[Any]]


@dataclass(slots=True)
class ExecutionContext:
    """Per-call context handed to ports and threaded through nested steps.

    ``background`` is shared by every context of one execution: it holds
    the losing branches of ``wait_for_all=False`` parallel steps, which the
    engine drains before settling the execution.
    """

    execution_id: str
    workflow_id: str
    token: CancellationToken
    history: ExecutionHistory
    parent_id: str | None = None
    branch: int | None = None
    iteration: int | None = None
    attempt: int = 0
    background: set[asyncio.Task[Any]] = field(default_factory=set)

    def nested(
        self,
        parent_id: str,
        *,
        branch: int | None = None,
        iteration: int | None = None,
        token: CancellationToken | None = None,
    ) -> ExecutionContext:
        return replace(
            self,
            parent_id=parent_id,
            branch=branch,
            iteration=iteration,
            token=token or self.token,
            attempt=0,
        )


class StepExecutor:
    def __init__(
        self,
        *,
        agents: AgentExecutorPort | None = None,
        tools: ToolExecutorPort | None = None,
        rag: RAGPort | None = None,
        evaluator: ExpressionEvaluatorPort | None = None,
        retry: RetryCoordinator | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        config = config or EngineConfig()
        self._agents = agents
        self._tools = tools
        self._rag = rag
        self._resolver = InputResolver(evaluator or SafeExpressionEvaluator())
        self._retry = retry or RetryCoordinator()
        self._default_policy = policy_from_defaults(config.retry)
        self._default_timeout = config.default_step_timeout

    @property
    def resolver(self) -> InputResolver:
        return self._resolver

    async def execute_step(
        self, step: WorkflowStep, scope: VariableScope, ctx: ExecutionContext
    ) -> StepRecord:
        ctx.token.raise_if_cancelled()
        record = ctx.history.begin(
            step, parent_id=ctx.parent_id, branch=ctx.branch, iteration=ctx.iteration
        )
        try:
            match step:
                case AgentStep():
                    await self._run_agent(step, scope, ctx, record)
                case ToolStep():
                    await self._run_tool(step, scope, ctx, record)
                case ConditionalStep():
                    await self._run_conditional(step, scope, ctx, record)
                case ParallelStep():
                    await self._run_parallel(step, scope, ctx, record)
                case LoopStep():
                    await self._run_loop(step, scope, ctx, record)
                case HumanInTheLoopStep():
                    self._open_human_input(step, ctx, record)
                case RAGStep():
                    await self._run_rag(step, scope, ctx, record)
                case TransformStep():
                    self._run_transform(step, scope, ctx, record)
                case _:
                    assert_never(step)
        except IllegalTransitionError:
            raise
        except WorkflowError as exc:
            ctx.history.fail(record, exc)
        except asyncio.CancelledError:
            if not record.status.is_terminal:
                ctx.history.fail(record, CancellationError("Step task was cancelled", step_id=step.id))
            raise
        if record.status.is_terminal:
            get_metrics().record_step(record.status, record.retry_count)
        return record

    async def run_sequence(
        self, steps: list[WorkflowStep], scope: VariableScope, ctx: ExecutionContext
    ) -> None:
        """Run steps in order, raising the first failure."""
        for step in steps:
            record = await self.execute_step(step, scope, ctx)
            if record.status == StepStatus.FAILED:
                raise step_failure(record)

    # -- leaf steps ---------------------------------------------------------

    async def _run_agent(
        self, step: AgentStep, scope: VariableScope, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        value = self._resolver.resolve(step.input, scope, step_id=step.id)
        record.input = value
        port = self._require_port(self._agents, "agent executor", step.id)
        result = await self._call_with_retry(
            step.id,
            step.retry,
            step.timeout,
            record,
            ctx,
            lambda c: port.execute(step.agent_id, value, c),
        )
        self._bind(scope, step.output, result)
        ctx.history.complete(record, result)

    async def _run_tool(
        self, step: ToolStep, scope: VariableScope, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        value = self._resolver.resolve(step.input, scope, step_id=step.id)
        record.input = value
        port = self._require_port(self._tools, "tool executor", step.id)
        result = await self._call_with_retry(
            step.id,
            step.retry,
            step.timeout,
            record,
            ctx,
            lambda c: port.execute(step.tool_name, value, c),
        )
        self._bind(scope, step.output, result)
        ctx.history.complete(record, result)

    async def _run_rag(
        self, step: RAGStep, scope: VariableScope, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        query = self._resolver.resolve(step.query, scope, step_id=step.id)
        record.input = query
        port = self._require_port(self._rag, "RAG", step.id)
        result = await self._call_with_retry(
            step.id,
            step.retry,
            step.timeout,
            record,
            ctx,
            lambda _c: port.retrieve(step.pipeline, query, step.top_k),
        )
        self._bind(scope, step.output, result)
        ctx.history.complete(record, result)

    def _run_transform(
        self, step: TransformStep, scope: VariableScope, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        value = self._resolver.resolve(step.input, scope, step_id=step.id)
        record.input = value
        result = self._resolver.transform(
            step.expression, value, scope, input_variable=step.input_variable, step_id=step.id
        )
        scope.set(step.output, result)
        ctx.history.complete(record, result)

    def _open_human_input(
        self, step: HumanInTheLoopStep, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        record.input = {"prompt": step.prompt, "options": step.options, "assignee": step.assignee}
        ctx.history.await_input(record)

    # -- composite steps ----------------------------------------------------

    async def _run_conditional(
        self,
        step: ConditionalStep,
        scope: VariableScope,
        ctx: ExecutionContext,
        record: StepRecord,
    ) -> None:
        matched = self._resolver.evaluate_condition(step.condition, scope, step_id=step.id)
        record.input = {"condition": step.condition, "result": matched}
        if matched:
            await self.run_sequence(step.then, scope, ctx.nested(step.id, branch=0))
            ctx.history.complete(record, {"branch": "then"})
        elif step.else_ is not None:
            await self.run_sequence(step.else_, scope, ctx.nested(step.id, branch=1))
            ctx.history.complete(record, {"branch": "else"})
        else:
            ctx.history.skip(record, "condition not met")

    async def _run_loop(
        self, step: LoopStep, scope: VariableScope, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        collection = self._resolver.resolve(step.collection, scope, step_id=step.id)
        if isinstance(collection, (str, bytes)) or not isinstance(collection, Iterable):
            raise ResolutionError(
                ResolutionFailure.NOT_ITERABLE,
                f"Loop collection is not iterable: {type(collection).__name__}",
                step_id=step.id,
            )
        items = list(islice(collection, step.max_iterations + 1))
        if len(items) > step.max_iterations:
            logger.warning(
                "Loop step '{}' truncated to max_iterations={}", step.id, step.max_iterations
            )
            items = items[: step.max_iterations]
        record.input = {"count": len(items)}

        for i, item in enumerate(items):
            with scope.frame({step.item_variable: item}):
                await self.run_sequence(step.steps, scope, ctx.nested(step.id, iteration=i))
        ctx.history.complete(record, {"iterations": len(items)})

    async def _run_parallel(
        self, step: ParallelStep, scope: VariableScope, ctx: ExecutionContext, record: StepRecord
    ) -> None:
        token = ctx.token.child()
        forks = [scope.fork() for _ in step.branches]
        tasks = [
            asyncio.create_task(
                self.run_sequence(branch, forks[i], ctx.nested(step.id, branch=i, token=token)),
                name=f"{ctx.execution_id}:{step.id}:{i}",
            )
            for i, branch in enumerate(step.branches)
        ]
        record.input = {"branches": len(tasks), "wait_for_all": step.wait_for_all}

        try:
            if step.wait_for_all:
                await self._join_all(step, tasks, token)
                scope.merge(forks)
                ctx.history.complete(record, {"branches": len(tasks)})
            else:
                winner = await self._join_first(step, tasks)
                scope.merge([forks[winner]])
                for i, task in enumerate(tasks):
                    if i != winner and not task.done():
                        ctx.background.add(task)
                        task.add_done_callback(ctx.background.discard)
                ctx.history.complete(record, {"winner": winner})
        except BaseException:
            token.cancel(f"Parallel step '{step.id}' aborted")
            # Branches still unwinding are drained by the engine.
            for task in tasks:
                if not task.done():
                    ctx.background.add(task)
                    task.add_done_callback(ctx.background.discard)
            raise
        finally:
            for task in tasks:
                task.add_done_callback(_reap)

    async def _join_all(
        self, step: ParallelStep, tasks: list[asyncio.Task[Any]], token: CancellationToken
    ) -> None:
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        if not pending:
            errors = _branch_errors(tasks)
            if errors:
                raise _pick_error(errors)
            return

        token.cancel(f"Parallel step '{step.id}' aborted after a branch failed")
        await asyncio.gather(*tasks, return_exceptions=True)
        raise _pick_error(_branch_errors(tasks))

    async def _join_first(self, step: ParallelStep, tasks: list[asyncio.Task[Any]]) -> int:
        index = {task: i for i, task in enumerate(tasks)}
        failures: list[BaseException] = []
        pending: set[asyncio.Task[Any]] = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=index.__getitem__):
                if task.cancelled():
                    failures.append(CancellationError("Branch task was cancelled", step_id=step.id))
                    continue
                exc = task.exception()
                if exc is None:
                    logger.debug("Parallel step '{}': branch {} finished first", step.id, index[task])
                    return index[task]
                failures.append(exc)
        raise failures[0]

    # -- helpers ------------------------------------------------------------

    def _require_port(self, port: Any, label: str, step_id: str) -> Any:
        if port is None:
            raise StepExecutionError(
                f"No {label} port configured", kind="PortNotConfigured", step_id=step_id
            )
        return port

    async def _call_with_retry(
        self,
        step_id: str,
        policy: RetryPolicy | None,
        timeout: float | None,
        record: StepRecord,
        ctx: ExecutionContext,
        call: PortCall,
    ) -> Any:
        policy = policy or self._default_policy
        timeout = timeout or self._default_timeout
        attempt = 0
        while True:
            try:
                return await self._attempt(step_id, timeout, replace(ctx, attempt=attempt), call)
            except StepExecutionError as exc:
                if not self._retry.should_retry(exc, attempt, policy):
                    if policy.max_retries > 0 and self._retry.is_retryable(exc, policy):
                        raise RetryExhaustedError(attempt + 1, exc, step_id=step_id) from exc
                    raise
                delay = self._retry.next_delay(policy, attempt)
                logger.info(
                    "Step '{}' attempt {} failed ({}), retrying in {:.2f}s",
                    step_id,
                    attempt + 1,
                    exc.kind,
                    delay,
                )
                attempt += 1
                record.retry_count = attempt
                await ctx.token.sleep(delay)

    async def _attempt(
        self, step_id: str, timeout: float | None, ctx: ExecutionContext, call: PortCall
    ) -> Any:
        async def invoke() -> Any:
            try:
                return await call(ctx)
            except WorkflowError:
                raise
            except Exception as exc:
                raise StepExecutionError.from_exception(exc, step_id=step_id) from exc

        guarded = ctx.token.guard(invoke())
        if timeout is None:
            return await guarded
        try:
            return await asyncio.wait_for(guarded, timeout)
        except TimeoutError as exc:
            if isinstance(exc, WorkflowError):
                raise
            raise WorkflowTimeoutError(
                f"Step '{step_id}' timed out after {timeout}s", step_id=step_id
            ) from exc

    @staticmethod
    def _bind(scope: VariableScope, output: str | None, value: Any) -> None:
        if output:
            scope.set(output, value)


def step_failure(record: StepRecord) -> BaseException:
    """The exception that failed ``record``.

    Records loaded from a store carry no exception object, so one is rebuilt
    from the stored error fields.
    """
    if record.exception is not None:
        return record.exception
    return StepExecutionError(
        record.error or f"Step '{record.step_id}' failed",
        kind=record.error_kind or "StepExecutionError",
        step_id=record.step_id,
    )


def _branch_errors(tasks: list[asyncio.Task[Any]]) -> list[BaseException]:
    errors: list[BaseException] = []
    for task in tasks:
        if task.cancelled():
            errors.append(CancellationError("Branch task was cancelled"))
            continue
        exc = task.exception()
        if exc is not None:
            errors.append(exc)
    return errors


def _pick_error(errors: list[BaseException]) -> BaseException:
    """Lowest-index branch failure, preferring real failures over sibling cancellations."""
    for exc in errors:
        if not isinstance(exc, CancellationError):
            return exc
    return errors[0]


def _reap(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, WorkflowError):
        logger.error("Branch task {} crashed: {}", task.get_name(), exc)
