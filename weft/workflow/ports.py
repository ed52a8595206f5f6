"""Interfaces the engine consumes from the outside world.

Agent, tool and retrieval calls are async. Expression evaluation and the
persistence ports are synchronous: the shipped adapters do small local work
(AST evaluation, one JSON file per object).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from weft.workflow.executor import ExecutionContext
    from weft.workflow.models import WorkflowDef, WorkflowExecution


@runtime_checkable
class AgentExecutorPort(Protocol):
    async def execute(self, agent_id: str, input: Any, ctx: ExecutionContext) -> Any: ...


@runtime_checkable
class ToolExecutorPort(Protocol):
    async def execute(self, tool_name: str, input: Any, ctx: ExecutionContext) -> Any: ...


@runtime_checkable
class ExpressionEvaluatorPort(Protocol):
    def evaluate(self, expression: str, scope: Mapping[str, Any]) -> Any:
        """Evaluate ``expression`` against a read-only view of the scope."""
        ...


@runtime_checkable
class RAGPort(Protocol):
    async def retrieve(self, pipeline_id: str, query: Any, top_k: int) -> Any: ...


@runtime_checkable
class WorkflowRepository(Protocol):
    def save(self, workflow: WorkflowDef) -> None: ...

    def get(self, workflow_id: str) -> WorkflowDef | None: ...

    def list(self) -> list[WorkflowDef]: ...

    def delete(self, workflow_id: str) -> bool: ...


@runtime_checkable
class ExecutionStore(Protocol):
    def save(self, execution: WorkflowExecution) -> None: ...

    def load(self, execution_id: str) -> WorkflowExecution | None: ...

    def list(self, workflow_id: str | None = None) -> list[WorkflowExecution]: ...
