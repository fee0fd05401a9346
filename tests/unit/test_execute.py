from datetime import timedelta

import pytest

from cmsflow.collaborators import ActionRegistry
from cmsflow.contracts import (
    DecisionStep,
    ParallelStep,
    RetryPolicy,
    SubprocessStep,
    TaskStep,
    WaitStep,
    WorkflowInstance,
)
from cmsflow.errors import StepError
from cmsflow.execute import ExecutionContext, StepExecutor
from cmsflow.scheduling import ManualScheduler


class FlakyAction:
    """Fails ``failures`` times before returning ``value``."""

    def __init__(self, failures, value="ok"):
        self.failures = failures
        self.value = value
        self.calls = []

    async def __call__(self, spec, context):
        self.calls.append(context.attempt)
        if len(self.calls) <= self.failures:
            raise RuntimeError(f"boom {len(self.calls)}")
        return self.value


@pytest.fixture
def registry() -> ActionRegistry:
    return ActionRegistry()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def executor(registry, scheduler) -> StepExecutor:
    return StepExecutor(registry, scheduler)


@pytest.fixture
def instance() -> WorkflowInstance:
    return WorkflowInstance(
        workflow_id="wf",
        subject_id="post-1",
        input={"title": "Hello"},
        variables={"score": 7},
    )


@pytest.mark.asyncio
async def test_task_invokes_action_with_context(registry, executor, instance):
    seen = {}

    @registry.action("summarize")
    def summarize(spec, context):
        seen["params"] = spec.params
        seen["subject"] = context.subject_id
        seen["title"] = context.input["title"]
        return {"length": spec.params["words"]}

    step = TaskStep(id="t", action="summarize", params={"words": 50})
    result = await executor.execute(step, instance, ExecutionContext(actor="alice"))
    assert result.value == {"length": 50}
    assert result.suspend is None
    assert seen == {"params": {"words": 50}, "subject": "post-1", "title": "Hello"}


@pytest.mark.asyncio
async def test_unknown_action_is_a_step_error(executor, instance):
    with pytest.raises(StepError) as exc_info:
        await executor.execute(TaskStep(id="t", action="missing"), instance, ExecutionContext())
    assert exc_info.value.step_id == "t"


@pytest.mark.asyncio
async def test_retry_succeeds_within_budget(registry, executor, scheduler, instance):
    action = FlakyAction(failures=2)
    registry.register("flaky", action)
    step = TaskStep(
        id="t",
        action="flaky",
        retry_policy=RetryPolicy(max_retries=2, retry_delay_seconds=1.5),
    )
    result = await executor.execute_with_retry(step, instance, ExecutionContext())
    assert result.value == "ok"
    assert result.attempts == 3
    assert action.calls == [1, 2, 3]
    assert scheduler.sleeps == [1.5, 3.0]


@pytest.mark.asyncio
async def test_retry_exhaustion_reports_attempts(registry, executor, instance):
    action = FlakyAction(failures=10)
    registry.register("flaky", action)
    step = TaskStep(id="t", action="flaky", retry_policy=RetryPolicy(max_retries=2))
    with pytest.raises(StepError) as exc_info:
        await executor.execute_with_retry(step, instance, ExecutionContext())
    assert exc_info.value.attempts == 3
    assert exc_info.value.detail == "boom 3"
    assert len(action.calls) == 3


@pytest.mark.asyncio
async def test_no_retry_policy_fails_after_one_attempt(registry, executor, scheduler, instance):
    action = FlakyAction(failures=1)
    registry.register("flaky", action)
    with pytest.raises(StepError) as exc_info:
        await executor.execute_with_retry(
            TaskStep(id="t", action="flaky"), instance, ExecutionContext()
        )
    assert exc_info.value.attempts == 1
    assert exc_info.value.detail == "boom 1"
    assert isinstance(exc_info.value.__cause__, StepError)
    assert action.calls == [1]
    assert scheduler.sleeps == []


@pytest.mark.asyncio
async def test_decision_evaluates_against_variables(executor, instance):
    step = DecisionStep(id="d", expression="variables.score > 5 and input.title")
    result = await executor.execute(step, instance, ExecutionContext())
    assert result.value is True


@pytest.mark.asyncio
async def test_parallel_collects_results_by_branch(registry, executor, instance):
    registry.register("a", lambda spec, ctx: 1)
    registry.register("b", lambda spec, ctx: 2)
    step = ParallelStep(
        id="p",
        branches=[TaskStep(id="left", action="a"), TaskStep(id="right", action="b")],
    )
    result = await executor.execute(step, instance, ExecutionContext())
    assert result.value == {"left": 1, "right": 2}


@pytest.mark.asyncio
async def test_parallel_failure_does_not_cancel_siblings(registry, executor, instance):
    sibling = FlakyAction(failures=0, value="done")
    registry.register("bad", FlakyAction(failures=5))
    registry.register("good", sibling)
    step = ParallelStep(
        id="p",
        branches=[TaskStep(id="x", action="bad"), TaskStep(id="y", action="good")],
    )
    with pytest.raises(StepError) as exc_info:
        await executor.execute(step, instance, ExecutionContext())
    assert "branch x" in exc_info.value.detail
    assert sibling.calls == [1]


@pytest.mark.asyncio
async def test_parallel_best_effort_keeps_errors(registry, executor, instance):
    registry.register("bad", FlakyAction(failures=5))
    registry.register("good", lambda spec, ctx: "done")
    step = ParallelStep(
        id="p",
        best_effort=True,
        branches=[TaskStep(id="x", action="bad"), TaskStep(id="y", action="good")],
    )
    result = await executor.execute(step, instance, ExecutionContext())
    assert result.value == {"x": {"error": "boom 1"}, "y": "done"}


@pytest.mark.asyncio
async def test_wait_suspends_then_returns_signal(executor, scheduler, instance):
    step = WaitStep(id="w", timeout_seconds=60)
    first = await executor.execute(step, instance, ExecutionContext())
    assert first.suspend is not None
    assert first.suspend.correlation_id == f"{instance.id}:w"
    assert first.suspend.deadline == scheduler.now() + timedelta(seconds=60)

    resumed = await executor.execute(step, instance, ExecutionContext(signal={"ok": True}))
    assert resumed.suspend is None
    assert resumed.value == {"ok": True}


@pytest.mark.asyncio
async def test_wait_uses_correlation_key(executor, instance):
    result = await executor.execute(
        WaitStep(id="w", correlation_key="legal-signoff"), instance, ExecutionContext()
    )
    assert result.suspend.correlation_id == "legal-signoff"
    assert result.suspend.deadline is None


@pytest.mark.asyncio
async def test_subprocess_without_launcher(executor, instance):
    with pytest.raises(StepError):
        await executor.execute(
            SubprocessStep(id="s", workflow_id="child"), instance, ExecutionContext()
        )


@pytest.mark.asyncio
async def test_subprocess_depth_limit(registry, scheduler, instance):
    class Launcher:
        async def launch_subprocess(self, step, parent, actor):  # pragma: no cover
            raise AssertionError("should not launch")

        async def run_subprocess(self, child_id, actor):  # pragma: no cover
            raise AssertionError("should not run")

    executor = StepExecutor(registry, scheduler, launcher=Launcher(), max_subprocess_depth=2)
    instance.depth = 2
    with pytest.raises(StepError) as exc_info:
        await executor.execute(
            SubprocessStep(id="s", workflow_id="child"), instance, ExecutionContext()
        )
    assert "nesting" in exc_info.value.detail


@pytest.mark.asyncio
async def test_subprocess_failed_child_signal_raises(executor, instance):
    signal = {"instance_id": "c1", "status": "failed", "error": "nope"}
    with pytest.raises(StepError):
        await executor.execute(
            SubprocessStep(id="s", workflow_id="child"),
            instance,
            ExecutionContext(signal=signal),
        )
