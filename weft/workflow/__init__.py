"""Workflow execution engine: step variants, retries, pause/resume and cancellation."""

from weft.workflow.builder import WorkflowBuilder
from weft.workflow.cancellation import CancellationToken
from weft.workflow.engine import WorkflowEngine
from weft.workflow.errors import (
    CancellationError,
    ExecutionNotFoundError,
    IllegalTransitionError,
    ResolutionError,
    RetryExhaustedError,
    StepExecutionError,
    ValidationError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
)
from weft.workflow.executor import ExecutionContext, StepExecutor
from weft.workflow.expressions import SafeExpressionEvaluator
from weft.workflow.models import (
    AgentStep,
    ConditionalStep,
    ExecutionStatus,
    ExpressionInput,
    HumanInTheLoopStep,
    LiteralInput,
    LoopStep,
    ParallelStep,
    RAGStep,
    RetryPolicy,
    StepRecord,
    StepStatus,
    ToolStep,
    TransformStep,
    VariableInput,
    WorkflowDef,
    WorkflowExecution,
)
from weft.workflow.store import (
    InMemoryExecutionStore,
    InMemoryWorkflowRepository,
    JsonExecutionStore,
    JsonWorkflowRepository,
)

__all__ = [
    "AgentStep",
    "CancellationError",
    "CancellationToken",
    "ConditionalStep",
    "ExecutionContext",
    "ExecutionNotFoundError",
    "ExecutionStatus",
    "ExpressionInput",
    "HumanInTheLoopStep",
    "IllegalTransitionError",
    "InMemoryExecutionStore",
    "InMemoryWorkflowRepository",
    "JsonExecutionStore",
    "JsonWorkflowRepository",
    "LiteralInput",
    "LoopStep",
    "ParallelStep",
    "RAGStep",
    "ResolutionError",
    "RetryExhaustedError",
    "RetryPolicy",
    "SafeExpressionEvaluator",
    "StepExecutionError",
    "StepExecutor",
    "StepRecord",
    "StepStatus",
    "ToolStep",
    "TransformStep",
    "ValidationError",
    "VariableInput",
    "WorkflowBuilder",
    "WorkflowDef",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowExecution",
    "WorkflowNotFoundError",
    "WorkflowTimeoutError",
]
