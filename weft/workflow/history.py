"""Append-only step history for one execution."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger

from weft.workflow.cancellation import CancellationToken
from weft.workflow.models import StepRecord, WorkflowExecution, WorkflowStep


class ExecutionHistory:
    """Single writer to ``execution.step_history``.

    Records are appended when a step begins and only mutated until they are
    terminal. Once the execution's token is cancelled no new records are
    opened, so a cancelled execution never gains a running record.
    ``on_change`` fires after every append or status change.
    """

    def __init__(
        self,
        execution: WorkflowExecution,
        token: CancellationToken,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._execution = execution
        self._token = token
        self._on_change = on_change

    def begin(
        self,
        step: WorkflowStep,
        *,
        input: Any = None,
        parent_id: str | None = None,
        branch: int | None = None,
        iteration: int | None = None,
    ) -> StepRecord:
        self._token.raise_if_cancelled()
        record = StepRecord(
            step_id=step.id,
            step_type=step.type,
            input=input,
            parent_id=parent_id,
            branch=branch,
            iteration=iteration,
        )
        self._execution.step_history.append(record)
        logger.debug("Execution {}: step '{}' started", self._execution.id, step.id)
        self._changed()
        return record

    def complete(self, record: StepRecord, output: Any = None) -> None:
        record.mark_completed(output)
        logger.debug(
            "Execution {}: step '{}' completed in {:.3f}s",
            self._execution.id,
            record.step_id,
            record.duration_seconds,
        )
        self._changed()

    def fail(self, record: StepRecord, exc: BaseException) -> None:
        record.mark_failed(exc)
        logger.warning(
            "Execution {}: step '{}' failed ({}): {}",
            self._execution.id,
            record.step_id,
            record.error_kind,
            record.error,
        )
        self._changed()

    def skip(self, record: StepRecord, reason: str) -> None:
        record.mark_skipped(reason)
        logger.debug("Execution {}: step '{}' skipped: {}", self._execution.id, record.step_id, reason)
        self._changed()

    def await_input(self, record: StepRecord) -> None:
        record.mark_pending()
        logger.info("Execution {}: step '{}' awaiting human input", self._execution.id, record.step_id)
        self._changed()

    def pending_record(self) -> StepRecord | None:
        for record in reversed(self._execution.step_history):
            if record.status == "pending":
                return record
        return None

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
