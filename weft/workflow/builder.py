"""Fluent construction of workflow definitions.

    workflow = (
        WorkflowBuilder("support-triage")
        .name("Support triage")
        .agent("classifier", input=WorkflowBuilder.variable("ticket"), output="category")
        .condition(
            "category == 'billing'",
            lambda b: b.tool("refund_lookup", WorkflowBuilder.variable("ticket"), output="refund"),
        )
        .human_approval("Send the reply?", options=["yes", "no"], output="approval")
        .build()
    )

Step ids are generated as ``step-1``, ``step-2``, ... from one counter shared
with every nested builder, so ids stay unique across the whole tree. Pass
``id=`` to any step method to choose one explicitly.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterator
from typing import Any

from weft.workflow.errors import ValidationError
from weft.workflow.models import (
    AgentStep,
    ConditionalStep,
    ExpressionInput,
    HumanInTheLoopStep,
    LiteralInput,
    LoopStep,
    ParallelStep,
    RAGStep,
    RetryPolicy,
    StepInput,
    ToolStep,
    TransformStep,
    Trigger,
    TriggerType,
    VariableInput,
    WorkflowDef,
    WorkflowStep,
)

DEFAULT_APPROVAL_TIMEOUT = 300.0

BranchFn = Callable[["WorkflowBuilder"], Any]


class WorkflowBuilder:
    def __init__(
        self, workflow_id: str, version: str = "1.0.0", *, _counter: Iterator[int] | None = None
    ) -> None:
        self._id = workflow_id
        self._version = version
        self._name: str | None = None
        self._description = ""
        self._steps: list[WorkflowStep] = []
        self._triggers: list[Trigger] = []
        self._timeout: float | None = None
        self._metadata: dict[str, Any] = {}
        self._counter = _counter if _counter is not None else itertools.count(1)

    # -- workflow attributes ------------------------------------------------

    def name(self, name: str) -> WorkflowBuilder:
        self._name = name
        return self

    def description(self, text: str) -> WorkflowBuilder:
        self._description = text
        return self

    def with_timeout(self, seconds: float) -> WorkflowBuilder:
        self._timeout = seconds
        return self

    def with_metadata(self, **metadata: Any) -> WorkflowBuilder:
        self._metadata.update(metadata)
        return self

    def with_trigger(self, type: TriggerType | str, **config: Any) -> WorkflowBuilder:
        self._triggers.append(Trigger(type=TriggerType(type), config=config))
        return self

    # -- steps --------------------------------------------------------------

    def agent(
        self,
        agent_id: str,
        *,
        input: StepInput | None = None,
        output: str | None = None,
        retry: RetryPolicy | None = None,
        timeout: float | None = None,
        id: str | None = None,
    ) -> WorkflowBuilder:
        return self._add(
            AgentStep(
                id=self._step_id(id),
                agent_id=agent_id,
                input=input or LiteralInput(),
                output=output,
                retry=retry,
                timeout=timeout,
            )
        )

    def tool(
        self,
        tool_name: str,
        input: StepInput | None = None,
        *,
        output: str | None = None,
        retry: RetryPolicy | None = None,
        timeout: float | None = None,
        id: str | None = None,
    ) -> WorkflowBuilder:
        return self._add(
            ToolStep(
                id=self._step_id(id),
                tool_name=tool_name,
                input=input or LiteralInput(),
                output=output,
                retry=retry,
                timeout=timeout,
            )
        )

    def condition(
        self,
        expression: str,
        then: BranchFn,
        otherwise: BranchFn | None = None,
        *,
        id: str | None = None,
    ) -> WorkflowBuilder:
        step_id = self._step_id(id)
        return self._add(
            ConditionalStep(
                id=step_id,
                condition=expression,
                then=self._nested(then),
                else_=self._nested(otherwise) if otherwise is not None else None,
            )
        )

    def parallel(
        self, *branches: BranchFn, wait_for_all: bool = True, id: str | None = None
    ) -> WorkflowBuilder:
        step_id = self._step_id(id)
        return self._add(
            ParallelStep(
                id=step_id,
                branches=[self._nested(fn) for fn in branches],
                wait_for_all=wait_for_all,
            )
        )

    def loop(
        self,
        collection: StepInput,
        item_variable: str,
        body: BranchFn,
        *,
        max_iterations: int = 100,
        id: str | None = None,
    ) -> WorkflowBuilder:
        step_id = self._step_id(id)
        return self._add(
            LoopStep(
                id=step_id,
                collection=collection,
                item_variable=item_variable,
                steps=self._nested(body),
                max_iterations=max_iterations,
            )
        )

    def human_approval(
        self,
        prompt: str,
        options: list[str] | None = None,
        *,
        timeout: float = DEFAULT_APPROVAL_TIMEOUT,
        assignee: str | None = None,
        output: str | None = None,
        id: str | None = None,
    ) -> WorkflowBuilder:
        return self._add(
            HumanInTheLoopStep(
                id=self._step_id(id),
                prompt=prompt,
                options=options,
                assignee=assignee,
                timeout=timeout,
                output=output,
            )
        )

    def rag(
        self,
        pipeline: str,
        query: StepInput,
        *,
        top_k: int = 5,
        output: str | None = None,
        retry: RetryPolicy | None = None,
        timeout: float | None = None,
        id: str | None = None,
    ) -> WorkflowBuilder:
        return self._add(
            RAGStep(
                id=self._step_id(id),
                pipeline=pipeline,
                query=query,
                top_k=top_k,
                output=output,
                retry=retry,
                timeout=timeout,
            )
        )

    def transform(
        self,
        input: StepInput,
        expression: str,
        output: str,
        *,
        input_variable: str = "x",
        id: str | None = None,
    ) -> WorkflowBuilder:
        return self._add(
            TransformStep(
                id=self._step_id(id),
                input=input,
                expression=expression,
                output=output,
                input_variable=input_variable,
            )
        )

    # -- input and policy helpers ------------------------------------------

    @staticmethod
    def literal(value: Any) -> StepInput:
        return LiteralInput(value)

    @staticmethod
    def variable(name: str) -> StepInput:
        return VariableInput(name)

    @staticmethod
    def expression(expression: str) -> StepInput:
        return ExpressionInput(expression)

    @staticmethod
    def retry(
        max_retries: int,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        retryable_errors: list[str] | None = None,
        jitter: float = 0.0,
    ) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max_retries,
            initial_delay=initial_delay,
            max_delay=max_delay,
            backoff_multiplier=backoff_multiplier,
            retryable_errors=tuple(retryable_errors) if retryable_errors is not None else None,
            jitter=jitter,
        )

    # -- output -------------------------------------------------------------

    def build(self) -> WorkflowDef:
        """Return the workflow, raising ValidationError if it is malformed."""
        workflow = WorkflowDef(
            id=self._id,
            name=self._name or self._id,
            version=self._version,
            description=self._description,
            steps=list(self._steps),
            triggers=list(self._triggers),
            timeout=self._timeout,
            metadata=dict(self._metadata),
        )
        errors = workflow.validate()
        if errors:
            raise ValidationError(errors)
        return workflow

    def _add(self, step: WorkflowStep) -> WorkflowBuilder:
        self._steps.append(step)
        return self

    def _step_id(self, explicit: str | None) -> str:
        return explicit or f"step-{next(self._counter)}"

    def _nested(self, fn: BranchFn) -> list[WorkflowStep]:
        child = WorkflowBuilder(self._id, self._version, _counter=self._counter)
        fn(child)
        return child._steps
