"""Tests for execution status transitions."""

from __future__ import annotations

import pytest

from weft.workflow.errors import IllegalTransitionError
from weft.workflow.models import ErrorInfo, ExecutionStatus, WorkflowExecution
from weft.workflow.state import ExecutionStateMachine, can_transition


def _machine() -> tuple[WorkflowExecution, ExecutionStateMachine]:
    execution = WorkflowExecution(id="exec_1", workflow_id="wf")
    return execution, ExecutionStateMachine(execution)


class TestTransitions:
    def test_happy_path(self):
        execution, machine = _machine()
        machine.start("a")
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.current_step == "a"
        machine.advance("b")
        assert execution.current_step == "b"
        machine.complete()
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.current_step is None
        assert execution.completed_at is not None

    def test_start_requires_step(self):
        _, machine = _machine()
        with pytest.raises(IllegalTransitionError):
            machine.start("")

    def test_pause_and_resume_keep_current_step(self):
        execution, machine = _machine()
        machine.start("a")
        machine.pause(awaiting_input_until="2030-01-01T00:00:00+00:00")
        assert execution.status == ExecutionStatus.PAUSED
        assert execution.current_step == "a"
        machine.resume()
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.current_step == "a"
        assert execution.awaiting_input_until is None

    def test_fail_records_error(self):
        execution, machine = _machine()
        machine.start("a")
        machine.fail(ErrorInfo(kind="StepExecutionError", message="boom", step_id="a"))
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error is not None and execution.error.step_id == "a"
        assert execution.current_step is None

    def test_paused_can_be_cancelled(self):
        execution, machine = _machine()
        machine.start("a")
        machine.pause()
        machine.cancel("stop")
        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.error is not None and execution.error.kind == "CancellationError"

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (ExecutionStatus.PENDING, ExecutionStatus.COMPLETED),
            (ExecutionStatus.PENDING, ExecutionStatus.PAUSED),
            (ExecutionStatus.PAUSED, ExecutionStatus.COMPLETED),
            (ExecutionStatus.PAUSED, ExecutionStatus.FAILED),
            (ExecutionStatus.COMPLETED, ExecutionStatus.RUNNING),
            (ExecutionStatus.CANCELLED, ExecutionStatus.RUNNING),
            (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED),
        ],
    )
    def test_illegal_transitions(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_execution_cannot_restart(self):
        _, machine = _machine()
        machine.start("a")
        machine.complete()
        with pytest.raises(IllegalTransitionError):
            machine.resume("a")
        with pytest.raises(IllegalTransitionError):
            machine.advance("b")

    def test_pending_cannot_complete(self):
        _, machine = _machine()
        with pytest.raises(IllegalTransitionError):
            machine.complete()
