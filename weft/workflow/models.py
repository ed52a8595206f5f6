"""Workflow data models: definitions, step variants, executions and history.

A workflow is an ordered sequence of steps. Branching only happens inside
Conditional, Parallel and Loop steps, which hold nested step sequences, so a
definition is a tree of steps addressed by stable string ids. Definitions are
plain data: every model round-trips through ``to_dict``/``from_dict``.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar

from weft.workflow.errors import IllegalTransitionError, describe

_STEP_ID_RE = re.compile(r"^[\w.-]+$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_]\w*$")


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ExecutionStatus(StrEnum):
    """Lifecycle states for a workflow execution."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_EXECUTION


_TERMINAL_EXECUTION = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepStatus(StrEnum):
    """Lifecycle states for a step record.

    PENDING is only used by a human-in-the-loop record waiting for input.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class StepType(StrEnum):
    AGENT = "agent"
    TOOL = "tool"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    LOOP = "loop"
    HUMAN_IN_THE_LOOP = "human_in_the_loop"
    RAG = "rag"
    TRANSFORM = "transform"


class TriggerType(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    WEBHOOK = "webhook"


# ---------------------------------------------------------------------------
# Step inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LiteralInput:
    value: Any = None


@dataclass(frozen=True, slots=True)
class VariableInput:
    name: str


@dataclass(frozen=True, slots=True)
class ExpressionInput:
    expression: str


StepInput = LiteralInput | VariableInput | ExpressionInput


def input_to_dict(step_input: StepInput) -> dict[str, Any]:
    match step_input:
        case LiteralInput(value=value):
            return {"type": "literal", "value": value}
        case VariableInput(name=name):
            return {"type": "variable", "name": name}
        case ExpressionInput(expression=expression):
            return {"type": "expression", "expression": expression}
    raise TypeError(f"Unknown step input: {step_input!r}")


def input_from_dict(data: dict[str, Any]) -> StepInput:
    kind = data.get("type")
    if kind == "literal":
        return LiteralInput(data.get("value"))
    if kind == "variable":
        return VariableInput(data["name"])
    if kind == "expression":
        return ExpressionInput(data["expression"])
    raise ValueError(f"Unknown step input type: {kind!r}")


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry parameters for a failable step. Delays are in seconds.

    ``retryable_errors`` is an allow-list of error kinds; None means every
    error is retryable. ``jitter`` spreads each delay by +/- that fraction.
    """

    max_retries: int = 0
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: tuple[str, ...] | None = None
    jitter: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "retryable_errors": (
                list(self.retryable_errors) if self.retryable_errors is not None else None
            ),
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        retryable = data.get("retryable_errors")
        return cls(
            max_retries=int(data.get("max_retries", 0)),
            initial_delay=float(data.get("initial_delay", 1.0)),
            max_delay=float(data.get("max_delay", 30.0)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
            retryable_errors=tuple(retryable) if retryable is not None else None,
            jitter=float(data.get("jitter", 0.0)),
        )


# ---------------------------------------------------------------------------
# Step variants
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class AgentStep:
    type: ClassVar[StepType] = StepType.AGENT

    id: str
    agent_id: str
    input: StepInput = field(default_factory=LiteralInput)
    output: str | None = None
    retry: RetryPolicy | None = None
    timeout: float | None = None


@dataclass(slots=True)
class ToolStep:
    type: ClassVar[StepType] = StepType.TOOL

    id: str
    tool_name: str
    input: StepInput = field(default_factory=LiteralInput)
    output: str | None = None
    retry: RetryPolicy | None = None
    timeout: float | None = None


@dataclass(slots=True)
class ConditionalStep:
    type: ClassVar[StepType] = StepType.CONDITIONAL

    id: str
    condition: str
    then: list[WorkflowStep] = field(default_factory=list)
    else_: list[WorkflowStep] | None = None


@dataclass(slots=True)
class ParallelStep:
    type: ClassVar[StepType] = StepType.PARALLEL

    id: str
    branches: list[list[WorkflowStep]] = field(default_factory=list)
    wait_for_all: bool = True


@dataclass(slots=True)
class LoopStep:
    type: ClassVar[StepType] = StepType.LOOP

    id: str
    collection: StepInput
    item_variable: str
    steps: list[WorkflowStep] = field(default_factory=list)
    max_iterations: int = 100


@dataclass(slots=True)
class HumanInTheLoopStep:
    type: ClassVar[StepType] = StepType.HUMAN_IN_THE_LOOP

    id: str
    prompt: str
    options: list[str] | None = None
    assignee: str | None = None
    timeout: float | None = None
    output: str | None = None


@dataclass(slots=True)
class RAGStep:
    type: ClassVar[StepType] = StepType.RAG

    id: str
    pipeline: str
    query: StepInput
    top_k: int = 5
    output: str | None = None
    retry: RetryPolicy | None = None
    timeout: float | None = None


@dataclass(slots=True)
class TransformStep:
    """Evaluate ``expression`` with the resolved input visible as ``input_variable``."""

    type: ClassVar[StepType] = StepType.TRANSFORM

    id: str
    input: StepInput
    expression: str
    output: str
    input_variable: str = "x"


WorkflowStep = (
    AgentStep
    | ToolStep
    | ConditionalStep
    | ParallelStep
    | LoopStep
    | HumanInTheLoopStep
    | RAGStep
    | TransformStep
)


def child_sequences(step: WorkflowStep) -> list[list[WorkflowStep]]:
    """Return the nested step sequences held by a step (empty for leaves)."""
    match step:
        case ConditionalStep(then=then, else_=else_):
            return [then] + ([else_] if else_ is not None else [])
        case ParallelStep(branches=branches):
            return list(branches)
        case LoopStep(steps=steps):
            return [steps]
    return []


def walk_steps(
    steps: list[WorkflowStep], *, _nested: bool = False
) -> Iterator[tuple[WorkflowStep, bool]]:
    """Yield ``(step, nested)`` for every step in the tree, depth first."""
    for step in steps:
        yield step, _nested
        for sequence in child_sequences(step):
            yield from walk_steps(sequence, _nested=True)


def _opt_retry(data: dict[str, Any]) -> RetryPolicy | None:
    raw = data.get("retry")
    return RetryPolicy.from_dict(raw) if raw is not None else None


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


def step_to_dict(step: WorkflowStep) -> dict[str, Any]:
    data: dict[str, Any] = {"type": step.type.value, "id": step.id}
    match step:
        case AgentStep() | ToolStep():
            if isinstance(step, AgentStep):
                data["agent_id"] = step.agent_id
            else:
                data["tool_name"] = step.tool_name
            data["input"] = input_to_dict(step.input)
            data["output"] = step.output
            data["retry"] = step.retry.to_dict() if step.retry else None
            data["timeout"] = step.timeout
        case ConditionalStep():
            data["condition"] = step.condition
            data["then"] = [step_to_dict(s) for s in step.then]
            data["else"] = [step_to_dict(s) for s in step.else_] if step.else_ is not None else None
        case ParallelStep():
            data["branches"] = [[step_to_dict(s) for s in branch] for branch in step.branches]
            data["wait_for_all"] = step.wait_for_all
        case LoopStep():
            data["collection"] = input_to_dict(step.collection)
            data["item_variable"] = step.item_variable
            data["steps"] = [step_to_dict(s) for s in step.steps]
            data["max_iterations"] = step.max_iterations
        case HumanInTheLoopStep():
            data["prompt"] = step.prompt
            data["options"] = step.options
            data["assignee"] = step.assignee
            data["timeout"] = step.timeout
            data["output"] = step.output
        case RAGStep():
            data["pipeline"] = step.pipeline
            data["query"] = input_to_dict(step.query)
            data["top_k"] = step.top_k
            data["output"] = step.output
            data["retry"] = step.retry.to_dict() if step.retry else None
            data["timeout"] = step.timeout
        case TransformStep():
            data["input"] = input_to_dict(step.input)
            data["expression"] = step.expression
            data["output"] = step.output
            data["input_variable"] = step.input_variable
    return data


def step_from_dict(data: dict[str, Any]) -> WorkflowStep:
    kind = StepType(data["type"])
    step_id = data["id"]
    match kind:
        case StepType.AGENT:
            return AgentStep(
                id=step_id,
                agent_id=data["agent_id"],
                input=input_from_dict(data.get("input") or {"type": "literal"}),
                output=data.get("output"),
                retry=_opt_retry(data),
                timeout=_opt_float(data.get("timeout")),
            )
        case StepType.TOOL:
            return ToolStep(
                id=step_id,
                tool_name=data["tool_name"],
                input=input_from_dict(data.get("input") or {"type": "literal"}),
                output=data.get("output"),
                retry=_opt_retry(data),
                timeout=_opt_float(data.get("timeout")),
            )
        case StepType.CONDITIONAL:
            raw_else = data.get("else")
            return ConditionalStep(
                id=step_id,
                condition=data["condition"],
                then=[step_from_dict(s) for s in data.get("then", [])],
                else_=[step_from_dict(s) for s in raw_else] if raw_else is not None else None,
            )
        case StepType.PARALLEL:
            return ParallelStep(
                id=step_id,
                branches=[[step_from_dict(s) for s in b] for b in data.get("branches", [])],
                wait_for_all=bool(data.get("wait_for_all", True)),
            )
        case StepType.LOOP:
            return LoopStep(
                id=step_id,
                collection=input_from_dict(data["collection"]),
                item_variable=data["item_variable"],
                steps=[step_from_dict(s) for s in data.get("steps", [])],
                max_iterations=int(data.get("max_iterations", 100)),
            )
        case StepType.HUMAN_IN_THE_LOOP:
            return HumanInTheLoopStep(
                id=step_id,
                prompt=data["prompt"],
                options=data.get("options"),
                assignee=data.get("assignee"),
                timeout=_opt_float(data.get("timeout")),
                output=data.get("output"),
            )
        case StepType.RAG:
            return RAGStep(
                id=step_id,
                pipeline=data["pipeline"],
                query=input_from_dict(data["query"]),
                top_k=int(data.get("top_k", 5)),
                output=data.get("output"),
                retry=_opt_retry(data),
                timeout=_opt_float(data.get("timeout")),
            )
        case StepType.TRANSFORM:
            return TransformStep(
                id=step_id,
                input=input_from_dict(data["input"]),
                expression=data["expression"],
                output=data["output"],
                input_variable=data.get("input_variable", "x"),
            )


# ---------------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Trigger:
    type: TriggerType = TriggerType.MANUAL
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "config": dict(self.config)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Trigger:
        return cls(type=TriggerType(data.get("type", "manual")), config=data.get("config") or {})


def _validate_retry(step_id: str, policy: RetryPolicy | None, errors: list[str]) -> None:
    if policy is None:
        return
    if policy.max_retries < 0:
        errors.append(f"Step '{step_id}' has negative max_retries")
    if policy.initial_delay < 0 or policy.max_delay < 0:
        errors.append(f"Step '{step_id}' has a negative retry delay")
    if policy.backoff_multiplier < 1:
        errors.append(f"Step '{step_id}' has backoff_multiplier < 1")
    if not 0 <= policy.jitter <= 1:
        errors.append(f"Step '{step_id}' has jitter outside [0, 1]")


def _validate_step(step: WorkflowStep, nested: bool, errors: list[str]) -> None:
    sid = step.id
    timeout = getattr(step, "timeout", None)
    if timeout is not None and timeout <= 0:
        errors.append(f"Step '{sid}' has invalid timeout ({timeout}s); must be > 0")

    match step:
        case AgentStep():
            if not step.agent_id:
                errors.append(f"Agent step '{sid}' has no agent_id")
            _validate_retry(sid, step.retry, errors)
        case ToolStep():
            if not step.tool_name:
                errors.append(f"Tool step '{sid}' has no tool_name")
            _validate_retry(sid, step.retry, errors)
        case ConditionalStep():
            if not step.condition.strip():
                errors.append(f"Conditional step '{sid}' has an empty condition")
            if not step.then:
                errors.append(f"Conditional step '{sid}' has no 'then' steps")
        case ParallelStep():
            if not step.branches:
                errors.append(f"Parallel step '{sid}' has no branches")
            for i, branch in enumerate(step.branches):
                if not branch:
                    errors.append(f"Parallel step '{sid}' branch {i} is empty")
        case LoopStep():
            if not _IDENTIFIER_RE.match(step.item_variable or ""):
                errors.append(f"Loop step '{sid}' has invalid item_variable '{step.item_variable}'")
            if not step.steps:
                errors.append(f"Loop step '{sid}' has no nested steps")
            if step.max_iterations < 1:
                errors.append(f"Loop step '{sid}' has max_iterations < 1")
        case HumanInTheLoopStep():
            if nested:
                errors.append(
                    f"Human-in-the-loop step '{sid}' must be a top-level step"
                )
            if not step.prompt.strip():
                errors.append(f"Human-in-the-loop step '{sid}' has an empty prompt")
        case RAGStep():
            if not step.pipeline:
                errors.append(f"RAG step '{sid}' has no pipeline")
            if step.top_k < 1:
                errors.append(f"RAG step '{sid}' has top_k < 1")
            _validate_retry(sid, step.retry, errors)
        case TransformStep():
            if not step.output:
                errors.append(f"Transform step '{sid}' requires an output variable")
            if not step.expression.strip():
                errors.append(f"Transform step '{sid}' has an empty expression")
            if not _IDENTIFIER_RE.match(step.input_variable or ""):
                errors.append(
                    f"Transform step '{sid}' has invalid input_variable '{step.input_variable}'"
                )


@dataclass(slots=True)
class WorkflowDef:
    """Complete workflow definition: a named, versioned sequence of steps.

    Validated at load time to ensure:
      - Non-empty workflow name and id
      - At least one step
      - Valid, unique step ids across the whole tree
      - Well-formed step variants (non-empty branches, positive bounds)
      - Human-in-the-loop steps only at top level
    """

    id: str
    name: str
    steps: list[WorkflowStep] = field(default_factory=list)
    version: str = "1.0.0"
    description: str = ""
    triggers: list[Trigger] = field(default_factory=list)
    timeout: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty = valid)."""
        errors: list[str] = []

        if not self.id or not self.id.strip():
            errors.append("Workflow id cannot be empty")
        if not self.name or not self.name.strip():
            errors.append("Workflow name cannot be empty")
        if self.timeout is not None and self.timeout <= 0:
            errors.append(f"Workflow timeout must be > 0 (got {self.timeout})")

        if not self.steps:
            errors.append("Workflow must have at least one step")
            return errors

        seen: set[str] = set()
        duplicates: list[str] = []
        for step, nested in walk_steps(self.steps):
            if not step.id or not _STEP_ID_RE.match(step.id):
                errors.append(
                    f"Step id '{step.id}' is invalid "
                    "(must be non-empty, only alphanumeric/underscore/hyphen/dot)"
                )
            if step.id in seen and step.id not in duplicates:
                duplicates.append(step.id)
            seen.add(step.id)
            _validate_step(step, nested, errors)

        for dup in duplicates:
            errors.append(f"Duplicate step id: {dup}")

        return errors

    def step_ids(self) -> list[str]:
        return [step.id for step, _ in walk_steps(self.steps)]

    def find_step(self, step_id: str) -> WorkflowStep | None:
        for step, _ in walk_steps(self.steps):
            if step.id == step_id:
                return step
        return None

    def top_level_index(self, step_id: str) -> int:
        """Index of a top-level step, or -1."""
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "steps": [step_to_dict(s) for s in self.steps],
            "triggers": [t.to_dict() for t in self.triggers],
            "timeout": self.timeout,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDef:
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            version=data.get("version", "1.0.0"),
            description=data.get("description", ""),
            steps=[step_from_dict(s) for s in data.get("steps", [])],
            triggers=[Trigger.from_dict(t) for t in data.get("triggers", [])],
            timeout=_opt_float(data.get("timeout")),
            metadata=data.get("metadata") or {},
        )


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Serializable description of the error that failed a step or execution."""

    kind: str
    message: str
    step_id: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, step_id: str | None = None) -> ErrorInfo:
        info = describe(exc)
        return cls(kind=info["kind"], message=info["message"], step_id=info["step_id"] or step_id)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "step_id": self.step_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorInfo:
        return cls(kind=data["kind"], message=data.get("message", ""), step_id=data.get("step_id"))


@dataclass(slots=True)
class StepRecord:
    """History entry for one step execution.

    Nested steps (inside loops, conditionals and parallel branches) get their
    own records, addressed by ``parent_id`` plus ``branch``/``iteration``.
    Once a record reaches a terminal status it can no longer change.
    """

    step_id: str
    step_type: StepType
    status: StepStatus = StepStatus.RUNNING
    input: Any = None
    output: Any = None
    error: str = ""
    error_kind: str = ""
    retry_count: int = 0
    parent_id: str | None = None
    branch: int | None = None
    iteration: int | None = None
    started_at: str = field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    def _ensure_open(self) -> None:
        if self.status.is_terminal:
            raise IllegalTransitionError(
                f"Record for step '{self.step_id}' is already {self.status.value}",
                step_id=self.step_id,
            )

    def mark_completed(self, output: Any = None) -> None:
        self._ensure_open()
        self.status = StepStatus.COMPLETED
        self.output = output
        self._set_completed_time()

    def mark_failed(self, exc: BaseException) -> None:
        self._ensure_open()
        info = describe(exc)
        self.status = StepStatus.FAILED
        self.error = info["message"]
        self.error_kind = info["kind"]
        self.exception = exc
        self._set_completed_time()

    def mark_skipped(self, reason: str) -> None:
        self._ensure_open()
        self.status = StepStatus.SKIPPED
        self.error = reason
        self._set_completed_time()

    def mark_pending(self) -> None:
        self._ensure_open()
        self.status = StepStatus.PENDING

    def _set_completed_time(self) -> None:
        self.completed_at = _now()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_type": self.step_type.value,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind,
            "retry_count": self.retry_count,
            "parent_id": self.parent_id,
            "branch": self.branch,
            "iteration": self.iteration,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepRecord:
        return cls(
            step_id=data["step_id"],
            step_type=StepType(data["step_type"]),
            status=StepStatus(data["status"]),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error", ""),
            error_kind=data.get("error_kind", ""),
            retry_count=int(data.get("retry_count", 0)),
            parent_id=data.get("parent_id"),
            branch=data.get("branch"),
            iteration=data.get("iteration"),
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
        )


@dataclass(slots=True)
class WorkflowExecution:
    """One run of a workflow against a specific input."""

    id: str
    workflow_id: str
    workflow_name: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=_now)
    completed_at: str | None = None
    error: ErrorInfo | None = None
    step_history: list[StepRecord] = field(default_factory=list)
    awaiting_input_until: str | None = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def duration_seconds(self) -> float:
        if not self.completed_at:
            return 0.0
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        return (end - start).total_seconds()

    def records_for(self, step_id: str) -> list[StepRecord]:
        return [r for r in self.step_history if r.step_id == step_id]

    def last_record(self, step_id: str) -> StepRecord | None:
        records = self.records_for(step_id)
        return records[-1] if records else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "current_step": self.current_step,
            "variables": dict(self.variables),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error.to_dict() if self.error else None,
            "step_history": [r.to_dict() for r in self.step_history],
            "awaiting_input_until": self.awaiting_input_until,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowExecution:
        raw_error = data.get("error")
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            workflow_name=data.get("workflow_name", ""),
            status=ExecutionStatus(data["status"]),
            current_step=data.get("current_step"),
            variables=data.get("variables") or {},
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            error=ErrorInfo.from_dict(raw_error) if raw_error else None,
            step_history=[StepRecord.from_dict(r) for r in data.get("step_history", [])],
            awaiting_input_until=data.get("awaiting_input_until"),
        )
