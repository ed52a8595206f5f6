"""Tests for the variable scope and step input resolution."""

from __future__ import annotations

import pytest

from weft.workflow.errors import ResolutionError, ResolutionFailure
from weft.workflow.expressions import SafeExpressionEvaluator
from weft.workflow.models import ExpressionInput, LiteralInput, VariableInput
from weft.workflow.scope import InputResolver, VariableScope


@pytest.fixture
def resolver() -> InputResolver:
    return InputResolver(SafeExpressionEvaluator())


class TestVariableScope:
    def test_writes_go_to_base_mapping(self):
        variables = {"a": 1}
        scope = VariableScope(variables)
        scope.set("b", 2)
        assert variables == {"a": 1, "b": 2}

    def test_frame_shadows_and_disappears(self):
        scope = VariableScope({"item": "outer"})
        with scope.frame({"item": "inner"}):
            assert scope["item"] == "inner"
        assert scope["item"] == "outer"

    def test_frame_local_writes_do_not_leak(self):
        variables: dict = {}
        scope = VariableScope(variables)
        with scope.frame({"item": 1}):
            scope.set("item", 99)
            scope.set("total", 5)
        assert "item" not in variables
        assert variables["total"] == 5

    def test_view_is_read_only(self):
        scope = VariableScope({"a": 1})
        view = scope.view()
        with pytest.raises(TypeError):
            view["a"] = 2  # type: ignore[index]

    def test_fork_isolated_until_merge(self):
        scope = VariableScope({"shared": 0})
        left, right = scope.fork(), scope.fork()
        left.set("shared", 1)
        left.set("left_only", "L")
        right.set("shared", 2)
        assert scope["shared"] == 0

        scope.merge([left, right])
        assert scope["shared"] == 2
        assert scope["left_only"] == "L"

    def test_fork_only_merges_written_keys(self):
        scope = VariableScope({"a": 1, "b": 1})
        forked = scope.fork()
        scope.set("b", 50)
        forked.set("a", 2)
        scope.merge([forked])
        assert scope.snapshot() == {"a": 2, "b": 50}

    def test_fork_inside_frame_merges_into_frame(self):
        variables: dict = {}
        scope = VariableScope(variables)
        with scope.frame({"item": 1}):
            forked = scope.fork()
            forked.set("item", 2)
            scope.merge([forked])
            assert scope["item"] == 2
        assert "item" not in variables


class TestInputResolver:
    def test_literal_returned_unchanged(self, resolver):
        value = {"nested": [1, 2]}
        assert resolver.resolve(LiteralInput(value), VariableScope()) is value

    def test_variable_lookup(self, resolver):
        scope = VariableScope({"topic": "weft"})
        assert resolver.resolve(VariableInput("topic"), scope) == "weft"

    def test_missing_variable(self, resolver):
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve(VariableInput("nope"), VariableScope(), step_id="s1")
        assert exc_info.value.reason == ResolutionFailure.MISSING_VARIABLE
        assert exc_info.value.step_id == "s1"

    def test_expression_sees_frames(self, resolver):
        scope = VariableScope({"base": 10})
        with scope.frame({"item": 5}):
            assert resolver.resolve(ExpressionInput("base + item"), scope) == 15

    def test_expression_failure_wrapped(self, resolver):
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve(ExpressionInput("missing * 2"), VariableScope())
        assert exc_info.value.reason == ResolutionFailure.EXPRESSION_FAILED

    def test_condition_truthiness(self, resolver):
        scope = VariableScope({"items": []})
        assert resolver.evaluate_condition("len(items) == 0", scope) is True
        assert resolver.evaluate_condition("items", scope) is False

    def test_transform_binds_input_variable(self, resolver):
        scope = VariableScope({"x": "shadowed"})
        assert resolver.transform("x * 21", 2, scope) == 42
        assert resolver.transform("value + offset", 1, VariableScope({"offset": 2}), input_variable="value") == 3
        assert scope["x"] == "shadowed"

    def test_resolution_has_no_side_effects(self, resolver):
        variables = {"a": [1, 2]}
        scope = VariableScope(variables)
        resolver.resolve(ExpressionInput("sorted(a, reverse=True)"), scope)
        assert variables == {"a": [1, 2]}
