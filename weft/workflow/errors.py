"""Exception hierarchy for workflow validation and execution.

Every error carries a ``kind`` string. Kinds are what retry policies match
against (``RetryPolicy.retryable_errors``) and what ends up in
``ErrorInfo.kind`` on a failed execution.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


def error_kind(exc: BaseException) -> str:
    """Return the kind string for an arbitrary exception.

    Workflow errors report their own kind. Foreign exceptions use a string
    ``code`` attribute when present (e.g. ``RATE_LIMIT``), otherwise the
    class name.
    """
    if isinstance(exc, WorkflowError):
        return exc.kind
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(exc).__name__


class WorkflowError(Exception):
    """Base class for all engine errors."""

    kind: str = "WorkflowError"

    def __init__(self, message: str = "", *, step_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step_id = step_id


class ValidationError(WorkflowError):
    """The workflow definition is malformed."""

    kind = "ValidationError"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Workflow validation failed: " + "; ".join(errors))
        self.errors = errors


class ResolutionFailure(StrEnum):
    MISSING_VARIABLE = "missing_variable"
    EXPRESSION_FAILED = "expression_failed"
    NOT_ITERABLE = "not_iterable"


class ResolutionError(WorkflowError):
    """A step input, condition or transform could not be resolved."""

    kind = "ResolutionError"

    def __init__(
        self, reason: ResolutionFailure, message: str, *, step_id: str | None = None
    ) -> None:
        super().__init__(message, step_id=step_id)
        self.reason = reason


class StepExecutionError(WorkflowError):
    """A port call failed.

    ``kind`` is taken from the underlying exception so retry policies can
    allow-list specific failures.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str = "StepExecutionError",
        step_id: str | None = None,
    ) -> None:
        super().__init__(message, step_id=step_id)
        self.kind = kind

    @classmethod
    def from_exception(cls, exc: BaseException, *, step_id: str | None = None) -> StepExecutionError:
        return cls(f"{type(exc).__name__}: {exc}", kind=error_kind(exc), step_id=step_id)


class RetryExhaustedError(WorkflowError):
    """A retryable failure persisted through every allowed attempt."""

    kind = "RetryExhaustedError"

    def __init__(
        self, attempts: int, last_error: WorkflowError, *, step_id: str | None = None
    ) -> None:
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error.message}", step_id=step_id
        )
        self.attempts = attempts
        self.last_error = last_error


class WorkflowTimeoutError(WorkflowError, TimeoutError):
    """A step, a human-in-the-loop wait or the whole workflow ran out of time."""

    kind = "TimeoutError"


class CancellationError(WorkflowError):
    """Work observed a cancellation signal."""

    kind = "CancellationError"


class IllegalTransitionError(WorkflowError):
    """Programming error: an execution or record was driven through an invalid state change."""

    kind = "IllegalTransitionError"


class ExecutionNotFoundError(WorkflowError):
    kind = "ExecutionNotFoundError"

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class WorkflowNotFoundError(WorkflowError):
    kind = "WorkflowNotFoundError"

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


def describe(exc: BaseException) -> dict[str, Any]:
    """Flatten an exception into the fields stored on records and executions."""
    message = exc.message if isinstance(exc, WorkflowError) else str(exc)
    return {
        "kind": error_kind(exc),
        "message": message or type(exc).__name__,
        "step_id": getattr(exc, "step_id", None),
    }
