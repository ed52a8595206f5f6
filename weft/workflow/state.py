"""Execution status transitions and the current-step pointer."""

from __future__ import annotations

from datetime import UTC, datetime

from loguru import logger

from weft.workflow.errors import IllegalTransitionError
from weft.workflow.models import ErrorInfo, ExecutionStatus, WorkflowExecution

_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING}),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.PAUSED,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


class ExecutionStateMachine:
    """Drives one execution through its status transitions.

    Entering ``running`` requires a current step id. Entering a terminal
    status clears ``current_step`` and the human-input deadline and stamps
    ``completed_at``.
    """

    def __init__(self, execution: WorkflowExecution) -> None:
        self._execution = execution

    @property
    def status(self) -> ExecutionStatus:
        return self._execution.status

    def start(self, step_id: str) -> None:
        self._require_step(step_id)
        self._transition(ExecutionStatus.RUNNING)
        self._execution.current_step = step_id

    def advance(self, step_id: str) -> None:
        if self._execution.status != ExecutionStatus.RUNNING:
            raise IllegalTransitionError(
                f"Cannot advance execution {self._execution.id} while {self._execution.status.value}"
            )
        self._require_step(step_id)
        self._execution.current_step = step_id

    def pause(self, awaiting_input_until: str | None = None) -> None:
        self._transition(ExecutionStatus.PAUSED)
        self._execution.awaiting_input_until = awaiting_input_until

    def resume(self, step_id: str | None = None) -> None:
        target = step_id or self._execution.current_step
        self._require_step(target)
        self._transition(ExecutionStatus.RUNNING)
        self._execution.current_step = target
        self._execution.awaiting_input_until = None

    def complete(self) -> None:
        self._transition(ExecutionStatus.COMPLETED)
        self._settle()

    def fail(self, error: ErrorInfo) -> None:
        self._transition(ExecutionStatus.FAILED)
        self._execution.error = error
        self._settle()

    def cancel(self, reason: str = "") -> None:
        self._transition(ExecutionStatus.CANCELLED)
        if reason:
            self._execution.error = ErrorInfo(kind="CancellationError", message=reason)
        self._settle()

    def _require_step(self, step_id: str | None) -> None:
        if not step_id:
            raise IllegalTransitionError(
                f"Execution {self._execution.id} cannot run without a current step"
            )

    def _transition(self, target: ExecutionStatus) -> None:
        current = self._execution.status
        if not can_transition(current, target):
            raise IllegalTransitionError(
                f"Illegal transition for execution {self._execution.id}: "
                f"{current.value} -> {target.value}"
            )
        self._execution.status = target
        logger.debug("Execution {}: {} -> {}", self._execution.id, current.value, target.value)

    def _settle(self) -> None:
        self._execution.current_step = None
        self._execution.awaiting_input_until = None
        self._execution.completed_at = datetime.now(UTC).isoformat()
