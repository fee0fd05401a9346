"""Step execution for cmsflow workflow instances."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .collaborators import ActionRunner, ActionSpec, TaskContext
from .constants import DEFAULT_MAX_SUBPROCESS_DEPTH
from .contracts import (
    DecisionStep,
    InstanceStatus,
    ParallelStep,
    Step,
    StepType,
    SubprocessStep,
    TaskStep,
    WaitStep,
    WorkflowInstance,
)
from .errors import StepError
from .expressions import evaluate_condition
from .scheduling import Scheduler
from .utils.retry import max_attempts, schedule_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Suspension:
    """Instructs the runner to park the instance until ``correlation_id`` is signalled.

    ``on_suspended`` is scheduled once the waiting state has been persisted.
    """

    correlation_id: str
    deadline: Optional[datetime] = None
    on_suspended: Optional[Callable[[], Awaitable[Any]]] = None


@dataclass(frozen=True)
class StepResult:
    value: Any = None
    suspend: Optional[Suspension] = None
    attempts: int = 1


@dataclass(frozen=True)
class ExecutionContext:
    """Per-call execution scope.

    ``signal`` is set only when re-entering a suspended wait or subprocess
    step and carries the payload that resumed it.
    """

    actor: Optional[str] = None
    signal: Optional[Dict[str, Any]] = None
    attempt: int = 1


class SubprocessLauncher(Protocol):
    async def launch_subprocess(
        self, step: SubprocessStep, parent: WorkflowInstance, actor: Optional[str]
    ) -> WorkflowInstance:
        """Create (and for sync mode, run) a child instance for ``step``."""

    async def run_subprocess(self, child_id: str, actor: Optional[str]) -> None:
        """Run a child created in async mode."""


def subprocess_outcome(child: WorkflowInstance) -> Dict[str, Any]:
    """Payload delivered to a parent when a child instance finishes."""
    return {
        "instance_id": child.id,
        "status": child.status.value,
        "output": child.output,
        "variables": child.variables,
        "error": child.error,
    }


class StepExecutor:
    """Executes one step of one instance according to its type."""

    def __init__(
        self,
        action_runner: ActionRunner,
        scheduler: Scheduler,
        launcher: Optional[SubprocessLauncher] = None,
        max_subprocess_depth: int = DEFAULT_MAX_SUBPROCESS_DEPTH,
    ) -> None:
        self._actions = action_runner
        self._scheduler = scheduler
        self.launcher = launcher
        self._max_depth = max_subprocess_depth
        self._handlers: Dict[
            StepType, Callable[[Any, WorkflowInstance, ExecutionContext], Awaitable[StepResult]]
        ] = {
            StepType.TASK: self._execute_task,
            StepType.DECISION: self._execute_decision,
            StepType.PARALLEL: self._execute_parallel,
            StepType.WAIT: self._execute_wait,
            StepType.SUBPROCESS: self._execute_subprocess,
        }
        missing = set(StepType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No executor for step types: {sorted(missing)}")

    async def execute(
        self, step: Step, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        """Run ``step`` once. Any failure surfaces as :class:`StepError`."""
        handler = self._handlers[StepType(step.type)]
        try:
            return await handler(step, instance, context)
        except StepError:
            raise
        except Exception as exc:
            raise StepError(step.id, str(exc) or type(exc).__name__, context.attempt) from exc

    async def execute_with_retry(
        self, step: Step, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        """Run ``step`` honouring its retry policy.

        Makes ``1 + max_retries`` attempts, sleeping ``retry_delay_seconds * n``
        before retry ``n``. Re-raises the last :class:`StepError` with the
        total attempt count once the budget is spent.
        """

        policy = step.retry_policy
        attempts = max_attempts(policy)
        attempt = 1
        while True:
            try:
                result = await self.execute(step, instance, replace(context, attempt=attempt))
            except StepError as exc:
                logger.warning(f"Step {step.id} of instance {instance.id} failed: {exc.detail}")
                if attempt >= attempts:
                    raise StepError(step.id, exc.detail, attempts) from exc
                attempt += 1
                logger.info(
                    f"Retrying step {step.id} of instance {instance.id} "
                    f"(attempt {attempt}/{attempts})"
                )
                await schedule_retry(self._scheduler, attempt - 1, policy)
                continue
            return replace(result, attempts=attempt)

    # ------------------------------------------------------------------
    async def _execute_task(
        self, step: TaskStep, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        spec = ActionSpec(action=step.action, params=step.params)
        task_context = TaskContext(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            step_id=step.id,
            subject_id=instance.subject_id,
            actor=context.actor,
            input=instance.input,
            variables=instance.variables,
            attempt=context.attempt,
        )
        value = await self._actions.invoke(spec, task_context)
        return StepResult(value=value)

    async def _execute_decision(
        self, step: DecisionStep, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        namespace = {"variables": instance.variables, "input": instance.input}
        return StepResult(value=evaluate_condition(step.expression, namespace))

    async def _execute_parallel(
        self, step: ParallelStep, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        branch_context = replace(context, signal=None, attempt=1)
        outcomes = await asyncio.gather(
            *(self.execute_with_retry(b, instance, branch_context) for b in step.branches),
            return_exceptions=True,
        )

        results: Dict[str, Any] = {}
        first_failure: Optional[tuple[str, str]] = None
        for branch, outcome in zip(step.branches, outcomes):
            if isinstance(outcome, BaseException):
                detail = outcome.detail if isinstance(outcome, StepError) else str(outcome)
            elif outcome.suspend is not None:
                detail = "branch suspended; only run-to-completion branches are allowed"
            else:
                results[branch.id] = outcome.value
                continue
            results[branch.id] = {"error": detail}
            if first_failure is None:
                first_failure = (branch.id, detail)

        if first_failure is not None and not step.best_effort:
            branch_id, detail = first_failure
            raise StepError(step.id, f"branch {branch_id}: {detail}", context.attempt)
        return StepResult(value=results)

    async def _execute_wait(
        self, step: WaitStep, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        if context.signal is not None:
            return StepResult(value=context.signal)
        correlation = step.correlation_key or f"{instance.id}:{step.id}"
        deadline = None
        if step.timeout_seconds is not None:
            deadline = self._scheduler.now() + timedelta(seconds=step.timeout_seconds)
        return StepResult(suspend=Suspension(correlation, deadline))

    async def _execute_subprocess(
        self, step: SubprocessStep, instance: WorkflowInstance, context: ExecutionContext
    ) -> StepResult:
        if context.signal is not None:
            return StepResult(value=self._check_child(step, context.signal))

        if self.launcher is None:
            raise StepError(step.id, "no subprocess launcher configured", context.attempt)
        if instance.depth + 1 > self._max_depth:
            raise StepError(
                step.id,
                f"subprocess nesting exceeds {self._max_depth} levels",
                context.attempt,
            )

        child = await self.launcher.launch_subprocess(step, instance, context.actor)
        correlation = child.parent_correlation or child.id
        if step.mode == "async":
            # the child may only start after the parent is durably waiting for it
            start = partial(self.launcher.run_subprocess, child.id, context.actor)
            return StepResult(suspend=Suspension(correlation, on_suspended=start))
        if child.is_terminal:
            return StepResult(value=self._check_child(step, subprocess_outcome(child)))
        return StepResult(suspend=Suspension(correlation))

    @staticmethod
    def _check_child(step: SubprocessStep, outcome: Dict[str, Any]) -> Dict[str, Any]:
        if outcome.get("status") == InstanceStatus.FAILED.value:
            raise StepError(
                step.id,
                f"subprocess {outcome.get('instance_id')} failed: {outcome.get('error')}",
            )
        return outcome
