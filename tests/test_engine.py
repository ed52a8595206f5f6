"""Tests for the workflow engine: end-to-end runs, pause/resume, cancellation and persistence."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import FakePort, hang

from weft.config.schema import EngineConfig, WeftConfig
from weft.observe.metrics import MetricsCollector
from weft.workflow.builder import WorkflowBuilder as B
from weft.workflow.engine import WorkflowEngine
from weft.workflow.errors import (
    ExecutionNotFoundError,
    IllegalTransitionError,
    ValidationError,
    WorkflowNotFoundError,
)
from weft.workflow.executor import StepExecutor
from weft.workflow.models import (
    AgentStep,
    ExecutionStatus,
    LiteralInput,
    StepStatus,
    TransformStep,
    WorkflowDef,
)
from weft.workflow.store import JsonExecutionStore, JsonWorkflowRepository


def _engine(agents=None, tools=None, **kwargs) -> WorkflowEngine:
    return WorkflowEngine(StepExecutor(agents=agents, tools=tools), **kwargs)


def _no_running_records(execution) -> bool:
    return all(r.status != StepStatus.RUNNING for r in execution.step_history)


# ===================================================================
# Straight-through runs
# ===================================================================


class TestExecute:
    @pytest.mark.asyncio
    async def test_sequential_workflow(self):
        agents = FakePort({"writer": lambda topic: f"draft about {topic}"})
        wf = (
            B("blog")
            .agent("writer", input=B.variable("topic"), output="draft")
            .transform(B.variable("draft"), "len(x)", "length")
            .build()
        )
        execution = await _engine(agents).execute(wf, {"topic": "weft"})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.variables["draft"] == "draft about weft"
        assert execution.variables["length"] == len("draft about weft")
        assert [r.step_id for r in execution.step_history] == ["step-1", "step-2"]
        assert execution.current_step is None
        assert execution.completed_at is not None

    @pytest.mark.asyncio
    async def test_transform_answer(self):
        wf = WorkflowDef(
            id="wf",
            name="answer",
            steps=[TransformStep(id="t", input=LiteralInput(2), expression="x*21", output="answer")],
        )
        execution = await _engine().execute(wf)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.variables["answer"] == 42

    @pytest.mark.asyncio
    async def test_false_condition_skipped_and_execution_proceeds(self):
        agents = FakePort()
        wf = (
            B("cond")
            .condition("flag", lambda b: b.agent("never"))
            .agent("after", output="done")
            .build()
        )
        execution = await _engine(agents).execute(wf, {"flag": False})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.step_history[0].status == StepStatus.SKIPPED
        assert execution.variables["done"] == "after-done"
        assert agents.count("never") == 0

    @pytest.mark.asyncio
    async def test_always_failing_agent_exhausts_retries(self):
        agents = FakePort({"broken": RuntimeError("model unavailable")})
        wf = (
            B("retry")
            .agent("broken", id="call", retry=B.retry(2, initial_delay=0, max_delay=0))
            .agent("after")
            .build()
        )
        execution = await _engine(agents).execute(wf)

        assert agents.count("broken") == 3
        assert agents.count("after") == 0
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "RetryExhaustedError"
        assert execution.error.step_id == "call"
        (record,) = execution.step_history
        assert record.status == StepStatus.FAILED
        assert record.retry_count == 2

    @pytest.mark.asyncio
    async def test_loop_bound(self):
        agents = FakePort({"each": lambda item: item})
        wf = (
            B("loop")
            .loop(
                B.variable("items"),
                "item",
                lambda b: b.agent("each", id="inner", input=B.variable("item")),
                max_iterations=3,
            )
            .build()
        )
        execution = await _engine(agents).execute(wf, {"items": [1, 2, 3, 4, 5]})

        assert execution.status == ExecutionStatus.COMPLETED
        inner = execution.records_for("inner")
        assert len(inner) == 3
        assert agents.calls == [("each", 1), ("each", 2), ("each", 3)]

    @pytest.mark.asyncio
    async def test_business_failure_does_not_raise(self):
        agents = AsyncMock()
        agents.execute.side_effect = RuntimeError("exploded")
        wf = WorkflowDef(id="wf", name="x", steps=[AgentStep(id="a", agent_id="any")])
        execution = await _engine(agents).execute(wf)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "RuntimeError"
        assert "exploded" in execution.error.message

    @pytest.mark.asyncio
    async def test_invalid_workflow_raises(self):
        wf = WorkflowDef(id="wf", name="", steps=[])
        with pytest.raises(ValidationError) as exc_info:
            await _engine().execute(wf)
        assert len(exc_info.value.errors) >= 2

    @pytest.mark.asyncio
    async def test_first_wins_branches_drained_before_completion(self):
        async def late(_input):
            await asyncio.sleep(0.05)
            return "late"

        agents = FakePort({"late": late, "fast": "fast"})
        wf = (
            B("race")
            .parallel(
                lambda b: b.agent("late", id="slow_branch"),
                lambda b: b.agent("fast", id="fast_branch", output="first"),
                wait_for_all=False,
            )
            .build()
        )
        execution = await _engine(agents).execute(wf)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.variables["first"] == "fast"
        assert execution.last_record("slow_branch").status == StepStatus.COMPLETED
        assert _no_running_records(execution)

    @pytest.mark.asyncio
    async def test_workflow_timeout(self):
        agents = FakePort({"slow": hang})
        wf = B("timeout").with_timeout(0.05).agent("slow").build()
        execution = await asyncio.wait_for(_engine(agents).execute(wf), timeout=2)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "TimeoutError"
        assert _no_running_records(execution)


# ===================================================================
# Pause / resume
# ===================================================================


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_at_step_boundary_and_resume(self):
        started, release = asyncio.Event(), asyncio.Event()

        async def gated(_input):
            started.set()
            await release.wait()
            return "first"

        agents = FakePort({"gated": gated})
        wf = (
            B("pausable")
            .agent("gated", id="one", output="a")
            .agent("second", id="two", output="b")
            .build()
        )
        engine = _engine(agents)
        execution = await engine.submit(wf, {"keep": "me"})
        await started.wait()

        engine.pause(execution.id)
        release.set()
        paused = await engine.wait(execution.id)

        assert paused.status == ExecutionStatus.PAUSED
        assert paused.current_step == "two"
        assert agents.count("second") == 0

        resumed = await engine.resume(execution.id, {"extra": 1})
        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.variables == {"keep": "me", "a": "first", "extra": 1, "b": "second-done"}

    @pytest.mark.asyncio
    async def test_human_approval_pauses_then_completes(self):
        wf = (
            B("approval")
            .transform(B.literal("draft"), "x", "doc")
            .human_approval("Publish?", ["yes", "no"], id="approve", output="decision")
            .transform(B.variable("decision"), "x['choice'] == 'yes'", "publish")
            .build()
        )
        engine = _engine()
        execution = await engine.execute(wf)

        assert execution.status == ExecutionStatus.PAUSED
        assert execution.current_step == "approve"
        assert execution.awaiting_input_until is not None
        assert execution.last_record("approve").status == StepStatus.PENDING
        assert engine.list_active() == [execution]

        execution = await engine.resume(execution.id, {"choice": "yes"})
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.variables["doc"] == "draft"
        assert execution.variables["decision"] == {"choice": "yes"}
        assert execution.variables["publish"] is True
        assert execution.last_record("approve").output == {"choice": "yes"}
        assert engine.list_active() == []

    @pytest.mark.asyncio
    async def test_human_input_deadline_timer(self):
        wf = B("approval").human_approval("Approve?", id="approve", timeout=0.05).build()
        engine = _engine()
        execution = await engine.execute(wf)
        assert execution.status == ExecutionStatus.PAUSED

        await asyncio.sleep(0.2)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "TimeoutError"
        assert execution.last_record("approve").status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_expired_deadline_checked_on_resume(self):
        wf = B("approval").human_approval("Approve?", id="approve", timeout=600).build()
        engine = _engine()
        execution = await engine.execute(wf)
        execution.awaiting_input_until = "2000-01-01T00:00:00+00:00"

        execution = await engine.resume(execution.id, {"ok": True})
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.kind == "TimeoutError"

    @pytest.mark.asyncio
    async def test_default_human_timeout_from_config(self):
        wf = WorkflowDef.from_dict(
            {
                "id": "wf",
                "name": "hitl",
                "steps": [{"type": "human_in_the_loop", "id": "h", "prompt": "ok?"}],
            }
        )
        engine = _engine(config=EngineConfig(human_input_timeout=0.05))
        execution = await engine.execute(wf)
        await asyncio.sleep(0.2)
        assert execution.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_resume_errors(self):
        engine = _engine()
        with pytest.raises(ExecutionNotFoundError):
            await engine.resume("exec_missing")

        wf = B("done").transform(B.literal(1), "x", "y").build()
        execution = await engine.execute(wf)
        with pytest.raises(IllegalTransitionError):
            await engine.resume(execution.id)
        with pytest.raises(IllegalTransitionError):
            engine.pause(execution.id)


# ===================================================================
# Cancellation
# ===================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_execution(self):
        started = asyncio.Event()

        async def blocked(_input):
            started.set()
            await asyncio.sleep(30)

        agents = FakePort({"blocked": blocked})
        wf = B("cancel").agent("blocked").agent("never").build()
        engine = _engine(agents)
        execution = await engine.submit(wf)
        await started.wait()

        cancelled = await asyncio.wait_for(engine.cancel(execution.id), timeout=2)

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.current_step is None
        assert _no_running_records(cancelled)
        assert agents.count("never") == 0
        assert cancelled.step_history[0].error_kind == "CancellationError"

    @pytest.mark.asyncio
    async def test_cancel_reaches_parallel_branches(self):
        started = asyncio.Event()

        async def blocked(_input):
            started.set()
            await asyncio.sleep(30)

        agents = FakePort({"blocked": blocked})
        wf = (
            B("par")
            .parallel(lambda b: b.agent("blocked"), lambda b: b.agent("blocked"))
            .build()
        )
        engine = _engine(agents)
        execution = await engine.submit(wf)
        await started.wait()
        await asyncio.wait_for(engine.cancel(execution.id), timeout=2)

        assert execution.status == ExecutionStatus.CANCELLED
        assert _no_running_records(execution)

    @pytest.mark.asyncio
    async def test_cancel_paused_execution(self):
        wf = B("hitl").human_approval("ok?", id="approve").build()
        engine = _engine()
        execution = await engine.execute(wf)
        await engine.cancel(execution.id, "no longer needed")

        assert execution.status == ExecutionStatus.CANCELLED
        record = execution.last_record("approve")
        assert record.status == StepStatus.FAILED
        assert record.error_kind == "CancellationError"
        assert execution.error.message == "no longer needed"

    @pytest.mark.asyncio
    async def test_first_wins_losers_drained_before_human_pause(self):
        async def late(_input):
            await asyncio.sleep(0.05)
            return "late"

        agents = FakePort({"late": late, "fast": "fast"})
        wf = (
            B("race-then-approve")
            .parallel(
                lambda b: b.agent("fast", id="fast_branch"),
                lambda b: b.agent("late", id="slow_branch"),
                wait_for_all=False,
            )
            .human_approval("ship?", id="approve")
            .build()
        )
        engine = _engine(agents)
        execution = await engine.execute(wf)

        assert execution.status == ExecutionStatus.PAUSED
        assert execution.last_record("slow_branch").status == StepStatus.COMPLETED
        assert execution.last_record("approve").status == StepStatus.PENDING

        await engine.cancel(execution.id)

        assert execution.status == ExecutionStatus.CANCELLED
        assert _no_running_records(execution)
        assert execution.last_record("approve").status == StepStatus.FAILED
        assert engine.get_execution(execution.id).status == ExecutionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_abandoned_execute_settles_cancelled(self):
        agents = FakePort({"slow": hang})
        wf = B("abandoned").agent("slow", id="stuck").agent("never").build()
        engine = _engine(agents)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(engine.execute(wf), timeout=0.05)

        [execution] = engine.list_executions()
        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.completed_at is not None
        assert engine.list_active() == []
        assert _no_running_records(execution)
        assert execution.last_record("stuck").error_kind == "CancellationError"
        assert agents.count("never") == 0
        with pytest.raises(IllegalTransitionError):
            await engine.cancel(execution.id)

    @pytest.mark.asyncio
    async def test_abandoned_execute_drains_parallel_branches(self):
        agents = FakePort({"slow": hang})
        wf = (
            B("abandoned-par")
            .parallel(lambda b: b.agent("slow"), lambda b: b.agent("slow"))
            .build()
        )
        engine = _engine(agents)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(engine.execute(wf), timeout=0.05)

        [execution] = engine.list_executions()
        assert execution.status == ExecutionStatus.CANCELLED
        assert len(execution.step_history) == 3
        assert _no_running_records(execution)

    @pytest.mark.asyncio
    async def test_cancel_terminal_raises(self):
        engine = _engine()
        execution = await engine.execute(B("x").transform(B.literal(1), "x", "y").build())
        with pytest.raises(IllegalTransitionError):
            await engine.cancel(execution.id)
        with pytest.raises(ExecutionNotFoundError):
            await engine.cancel("exec_missing")


# ===================================================================
# Persistence and queries
# ===================================================================


class TestPersistence:
    @pytest.mark.asyncio
    async def test_execution_persisted(self, tmp_path):
        store = JsonExecutionStore(tmp_path / "executions")
        engine = _engine(execution_store=store)
        execution = await engine.execute(B("p").transform(B.literal(3), "x + 1", "y").build())

        loaded = store.load(execution.id)
        assert loaded is not None
        assert loaded.status == ExecutionStatus.COMPLETED
        assert loaded.variables == {"y": 4}
        assert len(loaded.step_history) == 1

    @pytest.mark.asyncio
    async def test_resume_after_restart(self, tmp_path):
        store = JsonExecutionStore(tmp_path / "executions")
        repo = JsonWorkflowRepository(tmp_path / "workflows")
        wf = (
            B("restart")
            .transform(B.literal(5), "x", "before")
            .human_approval("go?", id="approve", output="answer")
            .transform(B.variable("before"), "x * 2", "after")
            .build()
        )

        first = _engine(execution_store=store, workflow_repository=repo)
        first.register(wf)
        paused = await first.execute(wf)
        assert paused.status == ExecutionStatus.PAUSED

        second = _engine(execution_store=store, workflow_repository=repo)
        resumed = await second.resume(paused.id, {"approved": True})

        assert resumed.id == paused.id
        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.variables["after"] == 10
        assert resumed.variables["answer"] == {"approved": True}
        assert store.load(paused.id).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_without_definition_raises(self, tmp_path):
        store = JsonExecutionStore(tmp_path / "executions")
        wf = B("orphan").human_approval("go?").build()
        paused = await _engine(execution_store=store).execute(wf)

        with pytest.raises(WorkflowNotFoundError):
            await _engine(execution_store=store).resume(paused.id)

    @pytest.mark.asyncio
    async def test_settled_execution_is_not_aliased(self):
        engine = _engine()
        execution = await engine.execute(B("answer").transform(B.literal(2), "x * 21", "answer").build())

        engine.get_execution(execution.id).variables["answer"] = "tampered"

        assert engine.get_execution(execution.id).variables["answer"] == 42

    @pytest.mark.asyncio
    async def test_from_config_persists_under_state_dir(self, tmp_path):
        state_dir = tmp_path / "state"
        config = WeftConfig(state_dir=str(state_dir))
        wf = (
            B("configured")
            .transform(B.literal(1), "x + 1", "y")
            .human_approval("go?", id="approve")
            .build()
        )

        first = WorkflowEngine.from_config(config)
        first.register(wf)
        paused = await first.execute(wf)

        assert paused.status == ExecutionStatus.PAUSED
        assert (state_dir / "executions" / f"{paused.id}.json").exists()
        assert (state_dir / "workflows" / "configured.json").exists()

        resumed = await WorkflowEngine.from_config(config).resume(paused.id, {"ok": True})
        assert resumed.status == ExecutionStatus.COMPLETED
        assert resumed.variables["y"] == 2

    @pytest.mark.asyncio
    async def test_queries(self):
        engine = _engine()
        done = await engine.execute(B("a").transform(B.literal(1), "x", "y").build())
        waiting = await engine.execute(B("b").human_approval("ok?").build())

        assert engine.get_execution(done.id).status == ExecutionStatus.COMPLETED
        assert engine.get_execution("exec_missing") is None
        assert [e.id for e in engine.list_active()] == [waiting.id]
        assert {e.id for e in engine.list_executions()} == {done.id, waiting.id}
        assert [e.id for e in engine.list_executions("b")] == [waiting.id]


# ===================================================================
# Metrics wiring
# ===================================================================


def test_workflow_run_records_metrics(monkeypatch):
    """Verify that record_workflow_run() is called when an execution settles."""
    mock_collector = MetricsCollector()
    monkeypatch.setattr("weft.workflow.engine.get_metrics", lambda: mock_collector)

    wf = B("metrics-test").transform(B.literal(1), "x", "y").build()
    asyncio.run(_engine().execute(wf))

    snap = mock_collector.snapshot()
    assert snap.total_workflow_runs == 1
    assert snap.workflow_runs_by_status == {"completed": 1}
