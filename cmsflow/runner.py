"""Instance runner: drives a workflow instance through its step graph."""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import EngineConfig
from .contracts import (
    HistoryEntry,
    InstanceStatus,
    StageKind,
    Step,
    SubState,
    Transition,
    WorkflowDefinition,
    WorkflowInstance,
)
from .errors import (
    ConcurrentModification,
    ConflictError,
    ExpressionError,
    NotFound,
    StepError,
    ValidationError,
)
from .execute import ExecutionContext, StepExecutor, Suspension
from .persistence.store import WorkflowStore
from .scheduling import Scheduler
from .transitions import is_dead_end, resolve_next

logger = logging.getLogger(__name__)

FinishedHook = Callable[[WorkflowInstance], Awaitable[None]]


class _Superseded(Exception):
    """The stored instance reached a terminal state behind the runner's back."""

    def __init__(self, instance: WorkflowInstance) -> None:
        super().__init__(instance.id)
        self.instance = instance


class InstanceRunner:
    """Owns every mutation of a step-graph instance.

    Each loop iteration executes the current step, records the result in
    history and variables, checkpoints, resolves the next step and
    checkpoints again. Checkpoints are compare-and-swap writes against the
    instance version, so a concurrent writer (a cancellation, a second
    signal) makes this runner stop rather than overwrite.
    """

    def __init__(
        self,
        store: WorkflowStore,
        executor: StepExecutor,
        scheduler: Scheduler,
        config: Optional[EngineConfig] = None,
        on_finished: Optional[FinishedHook] = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._scheduler = scheduler
        self._config = config or EngineConfig()
        self._on_finished = on_finished

    # ------------------------------------------------------------------
    async def run(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        actor: Optional[str] = None,
        signal: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Advance ``instance`` until it completes, fails or suspends."""
        try:
            return await self._loop(instance, definition, actor, signal)
        except _Superseded as exc:
            logger.info(
                f"Instance {instance.id} became {exc.instance.status.value} "
                "while running; no further steps scheduled"
            )
            return exc.instance

    async def _loop(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        actor: Optional[str],
        signal: Optional[Dict[str, Any]],
    ) -> WorkflowInstance:
        while instance.status == InstanceStatus.ACTIVE:
            step = definition.get_step(instance.current_step)
            if step is None:
                return await self._fail(
                    instance,
                    instance.current_step,
                    "DanglingReference",
                    f"Step {instance.current_step!r} not found in workflow {definition.id}",
                    actor,
                )

            completed = self._completed_result(instance, step)
            if completed is not None:
                # the step ran but its successor was never checkpointed
                logger.info(
                    f"Step {step.id} of instance {instance.id} already executed; "
                    "resolving its successor"
                )
                instance = await self._advance(instance, definition, step, completed.result, actor)
                continue

            if self._timed_out(instance, definition):
                return await self._fail(
                    instance,
                    step.id,
                    "Timeout",
                    f"Instance exceeded {definition.settings.timeout_seconds}s timeout",
                    actor,
                )

            context = ExecutionContext(actor=actor, signal=signal)
            signal = None
            try:
                result = await self._executor.execute_with_retry(step, instance, context)
            except StepError as exc:
                return await self._fail(
                    instance, step.id, exc.reason, str(exc), actor, attempts=exc.attempts
                )

            if result.suspend is not None:
                return await self._suspend(instance, step, result.suspend, actor)

            instance.record(
                "execute",
                step_id=step.id,
                actor=actor,
                result=result.value,
                attempts=result.attempts,
                timestamp=self._scheduler.now(),
            )
            instance.variables[step.id] = result.value
            instance = await self.checkpoint(instance)
            instance = await self._advance(instance, definition, step, result.value, actor)
        return instance

    async def _advance(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        value: Any,
        actor: Optional[str],
    ) -> WorkflowInstance:
        """Move past a completed step: to its successor, or to a terminal state."""
        try:
            next_id = resolve_next(definition, step.id, value, instance.variables)
        except ExpressionError as exc:
            return await self._fail(instance, step.id, exc.reason, str(exc), actor)

        if next_id is None:
            if is_dead_end(definition, step.id, next_id):
                return await self._dead_end(instance, definition, step, actor)
            return await self._complete(instance, definition, actor)

        instance.current_step = next_id
        return await self.checkpoint(instance)

    @staticmethod
    def _completed_result(
        instance: WorkflowInstance, step: Step
    ) -> Optional[HistoryEntry]:
        """The ``execute`` entry of ``step`` if it is the last thing that happened."""
        if not instance.history:
            return None
        last = instance.history[-1]
        if last.action == "execute" and last.step_id == step.id and step.id in instance.variables:
            return last
        return None

    # ------------------------------------------------------------------
    async def resume(
        self,
        instance_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Re-enter a waiting instance at the step it is parked on."""
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            raise NotFound("WorkflowInstance", instance_id)
        if not instance.is_waiting:
            raise ValidationError(f"Instance {instance_id} is not waiting")
        if correlation_id is not None and instance.waiting_for != correlation_id:
            raise ValidationError(
                f"Instance {instance_id} is waiting for {instance.waiting_for!r}, "
                f"not {correlation_id!r}"
            )
        definition = await self._store.get_definition(instance.workflow_id)
        if definition is None:
            raise NotFound("Workflow", instance.workflow_id)

        payload = dict(payload or {})
        instance.sub_state = SubState.RUNNING
        instance.waiting_for = None
        instance.wait_deadline = None
        instance.record(
            "resume",
            step_id=instance.current_step,
            actor=actor,
            result=payload,
            timestamp=self._scheduler.now(),
        )
        # the swap doubles as the lease: of two racing signals only one resumes
        try:
            instance = await self.checkpoint(instance)
        except _Superseded:
            raise ConcurrentModification(instance.id)
        logger.info(f"Resuming instance {instance.id} at step {instance.current_step}")
        return await self.run(instance, definition, actor, signal=payload)

    async def expire_wait(self, instance_id: str, step_id: str, correlation_id: str) -> None:
        """Deadline callback for a suspended wait step."""
        instance = await self._store.get_instance(instance_id)
        if (
            instance is None
            or not instance.is_waiting
            or instance.current_step != step_id
            or instance.waiting_for != correlation_id
        ):
            return
        logger.info(f"Wait deadline reached for instance {instance_id} at step {step_id}")
        try:
            await self.resume(instance_id, {"timed_out": True}, correlation_id=correlation_id)
        except ConcurrentModification:
            logger.info(f"Instance {instance_id} was resumed before its deadline fired")

    async def apply_stage_action(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        transition: Transition,
        actor: Optional[str],
        comments: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        """Move a stage instance along ``transition`` and persist it.

        Entering a stage of kind ``end`` completes the instance.
        """
        now = self._scheduler.now()
        instance.current_stage = transition.to_stage
        instance.record(
            transition.action,
            stage_id=transition.to_stage,
            actor=actor,
            comments=comments,
            timestamp=now,
        )
        if metadata:
            instance.metadata = {**instance.metadata, **metadata}
        target = definition.get_stage(transition.to_stage)
        if target is not None and target.kind == StageKind.END:
            instance.status = InstanceStatus.COMPLETED
            instance.completed_at = now

        try:
            instance = await self.checkpoint(instance, expected_version)
        except _Superseded:
            raise ConcurrentModification(instance.id)
        logger.info(
            f"Instance {instance.id} moved {transition.from_stage} -> "
            f"{transition.to_stage} via {transition.action}"
        )
        if instance.is_terminal:
            await self.finish(instance)
        return instance

    async def cancel(
        self, instance: WorkflowInstance, actor: Optional[str], reason: str = "Cancelled"
    ) -> WorkflowInstance:
        """Fail ``instance`` as cancelled; a runner mid-step stops at its next checkpoint."""
        now = self._scheduler.now()
        instance.record(
            "cancel",
            step_id=instance.current_step,
            stage_id=instance.current_stage,
            actor=actor,
            result={"reason": reason},
            timestamp=now,
        )
        instance.status = InstanceStatus.FAILED
        instance.sub_state = SubState.RUNNING
        instance.waiting_for = None
        instance.wait_deadline = None
        instance.error = f"Cancelled by {actor}" if actor else "Cancelled"
        instance.error_reason = "Cancelled"
        instance.failed_at = now
        try:
            instance = await self.checkpoint(instance)
        except _Superseded:
            raise ConcurrentModification(instance.id)
        logger.info(f"Cancelled instance {instance.id}: {reason}")
        await self.finish(instance)
        return instance

    # ------------------------------------------------------------------
    async def checkpoint(
        self, instance: WorkflowInstance, expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        """Persist ``instance`` if nobody else has written it since it was read."""
        expected = instance.version if expected_version is None else expected_version
        instance.updated_at = self._scheduler.now()
        try:
            return await self._store.swap_instance(instance, expected)
        except ConflictError:
            fresh = await self._store.get_instance(instance.id)
            if fresh is not None and fresh.is_terminal:
                raise _Superseded(fresh)
            raise ConcurrentModification(instance.id)

    async def finish(self, instance: WorkflowInstance) -> None:
        """Book-keeping once an instance reaches a terminal state."""
        stat = (
            "completed_instances"
            if instance.status == InstanceStatus.COMPLETED
            else "failed_instances"
        )
        ended = instance.completed_at or instance.failed_at or self._scheduler.now()
        duration_ms = max(0.0, (ended - instance.created_at).total_seconds() * 1000)
        await self._store.increment_stat(instance.workflow_id, stat)
        await self._store.increment_stat(instance.workflow_id, "total_duration_ms", duration_ms)
        if self._on_finished is not None:
            await self._on_finished(instance)

    # ------------------------------------------------------------------
    def _timed_out(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> bool:
        timeout = definition.settings.timeout_seconds
        if not timeout:
            return False
        elapsed = (self._scheduler.now() - instance.created_at).total_seconds()
        return elapsed > timeout

    async def _suspend(
        self,
        instance: WorkflowInstance,
        step: Step,
        suspension: Suspension,
        actor: Optional[str],
    ) -> WorkflowInstance:
        instance.sub_state = SubState.WAITING
        instance.waiting_for = suspension.correlation_id
        instance.wait_deadline = suspension.deadline
        instance.record(
            "wait",
            step_id=step.id,
            actor=actor,
            result={
                "correlation_id": suspension.correlation_id,
                "deadline": suspension.deadline.isoformat() if suspension.deadline else None,
            },
            timestamp=self._scheduler.now(),
        )
        instance = await self.checkpoint(instance)
        logger.info(
            f"Instance {instance.id} waiting at step {step.id} for {suspension.correlation_id}"
        )
        if suspension.deadline is not None:
            delay = (suspension.deadline - self._scheduler.now()).total_seconds()
            self._scheduler.after(
                delay,
                partial(self.expire_wait, instance.id, step.id, suspension.correlation_id),
            )
        if suspension.on_suspended is not None:
            self._scheduler.after(0, suspension.on_suspended)
        return instance

    async def _dead_end(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        actor: Optional[str],
    ) -> WorkflowInstance:
        policy = definition.settings.on_dead_end or self._config.default_on_dead_end
        if policy == "fail":
            return await self._fail(
                instance,
                step.id,
                "DeadEnd",
                f"No branch condition matched after step {step.id}",
                actor,
            )
        instance.record(
            "dead_end",
            step_id=step.id,
            actor=actor,
            result={"candidates": list(step.next)},
            timestamp=self._scheduler.now(),
        )
        return await self._complete(instance, definition, actor)

    async def _complete(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        actor: Optional[str],
    ) -> WorkflowInstance:
        schema = definition.output_schema or {}
        properties = schema.get("properties") or {}
        missing = [k for k in schema.get("required") or [] if k not in instance.variables]
        if missing:
            return await self._fail(
                instance,
                instance.current_step,
                ValidationError.reason,
                f"Output is missing required fields: {', '.join(missing)}",
                actor,
            )
        instance.output = {k: instance.variables[k] for k in properties if k in instance.variables}
        instance.status = InstanceStatus.COMPLETED
        instance.sub_state = SubState.RUNNING
        instance.completed_at = self._scheduler.now()
        instance = await self.checkpoint(instance)
        logger.info(f"Instance {instance.id} of workflow {instance.workflow_id} completed")
        await self.finish(instance)
        return instance

    async def _fail(
        self,
        instance: WorkflowInstance,
        step_id: Optional[str],
        reason: str,
        message: str,
        actor: Optional[str],
        attempts: int = 1,
    ) -> WorkflowInstance:
        now = self._scheduler.now()
        instance.record(
            "fail",
            step_id=step_id,
            actor=actor,
            result={"error": message, "reason": reason},
            attempts=attempts,
            timestamp=now,
        )
        instance.status = InstanceStatus.FAILED
        instance.sub_state = SubState.RUNNING
        instance.waiting_for = None
        instance.wait_deadline = None
        instance.error = message
        instance.error_reason = reason
        instance.failed_at = now
        instance = await self.checkpoint(instance)
        logger.error(f"Instance {instance.id} failed at step {step_id} ({reason}): {message}")
        await self.finish(instance)
        return instance
