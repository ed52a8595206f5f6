"""Variable scope for one execution, and step input resolution against it."""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

from weft.workflow.errors import ResolutionError, ResolutionFailure
from weft.workflow.models import ExpressionInput, LiteralInput, StepInput, VariableInput
from weft.workflow.ports import ExpressionEvaluatorPort

_MISSING = object()


class VariableScope:
    """Mutable key/value store threaded through one execution.

    The base mapping is the execution's ``variables`` dict and is written in
    place. Loops push frames holding their item variable; a frame shadows the
    base for reads, and ``set`` writes into the innermost frame that already
    defines the key (otherwise into the base), so loop-local names never leak
    while other writes reach the enclosing scope.

    Parallel branches work on ``fork()`` copies. A fork records the keys it
    writes so only those are merged back after the join.
    """

    def __init__(self, base: dict[str, Any] | None = None) -> None:
        self._base: dict[str, Any] = base if base is not None else {}
        self._frames: list[dict[str, Any]] = []
        self._writes: list[str] | None = None

    def get(self, name: str, default: Any = None) -> Any:
        value = self._lookup(name)
        return default if value is _MISSING else value

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._lookup(name) is not _MISSING

    def __getitem__(self, name: str) -> Any:
        value = self._lookup(name)
        if value is _MISSING:
            raise KeyError(name)
        return value

    def _lookup(self, name: str) -> Any:
        for frame in reversed(self._frames):
            if name in frame:
                return frame[name]
        return self._base.get(name, _MISSING)

    def set(self, name: str, value: Any) -> None:
        for frame in reversed(self._frames):
            if name in frame:
                frame[name] = value
                break
        else:
            self._base[name] = value
            if self._writes is not None:
                self._writes.append(name)

    def update(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.set(name, value)

    @contextlib.contextmanager
    def frame(self, bindings: Mapping[str, Any]) -> Iterator[None]:
        """Push a local frame for the duration of the block."""
        self._frames.append(dict(bindings))
        try:
            yield
        finally:
            self._frames.pop()

    def snapshot(self) -> dict[str, Any]:
        merged = dict(self._base)
        for frame in self._frames:
            merged.update(frame)
        return merged

    def view(self) -> Mapping[str, Any]:
        """Read-only view used by the expression evaluator."""
        return MappingProxyType(self.snapshot())

    def fork(self) -> VariableScope:
        forked = VariableScope(self.snapshot())
        forked._writes = []
        return forked

    def written(self) -> dict[str, Any]:
        """Final values of the keys written on this fork, in first-write order."""
        if self._writes is None:
            return {}
        return {name: self._base[name] for name in dict.fromkeys(self._writes)}

    def merge(self, forks: list[VariableScope]) -> None:
        """Apply fork writes in list order; a later fork overwrites an earlier one."""
        for forked in forks:
            self.update(forked.written())


class InputResolver:
    """Resolves step inputs, conditions and transforms against a scope."""

    def __init__(self, evaluator: ExpressionEvaluatorPort) -> None:
        self._evaluator = evaluator

    def resolve(self, step_input: StepInput, scope: VariableScope, *, step_id: str | None = None) -> Any:
        match step_input:
            case LiteralInput(value=value):
                return value
            case VariableInput(name=name):
                if name not in scope:
                    raise ResolutionError(
                        ResolutionFailure.MISSING_VARIABLE,
                        f"Variable not found: {name}",
                        step_id=step_id,
                    )
                return scope[name]
            case ExpressionInput(expression=expression):
                return self.evaluate(expression, scope.view(), step_id=step_id)
        raise TypeError(f"Unknown step input: {step_input!r}")

    def evaluate(
        self, expression: str, view: Mapping[str, Any], *, step_id: str | None = None
    ) -> Any:
        try:
            return self._evaluator.evaluate(expression, view)
        except Exception as exc:
            raise ResolutionError(
                ResolutionFailure.EXPRESSION_FAILED,
                f"Failed to evaluate '{expression}': {exc}",
                step_id=step_id,
            ) from exc

    def evaluate_condition(
        self, condition: str, scope: VariableScope, *, step_id: str | None = None
    ) -> bool:
        return bool(self.evaluate(condition, scope.view(), step_id=step_id))

    def transform(
        self,
        expression: str,
        value: Any,
        scope: VariableScope,
        *,
        input_variable: str = "x",
        step_id: str | None = None,
    ) -> Any:
        view = scope.snapshot()
        view[input_variable] = value
        return self.evaluate(expression, MappingProxyType(view), step_id=step_id)
