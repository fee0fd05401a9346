"""Workflow service: the public entry point of the cmsflow engine."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .abtest import score_variants, select_winner
from .collaborators import (
    ActionRegistry,
    ActionRunner,
    AnalyticsService,
    InMemorySubjectStore,
    RoleChecker,
    StaticAnalyticsService,
    StaticRoleChecker,
    StaticSuggestionService,
    SubjectStore,
    SuggestionService,
)
from .config import EngineConfig
from .constants import DEFAULT_RETENTION_DAYS, DEFAULT_WORKFLOW_NAME
from .contracts import (
    ABTest,
    ABTestResults,
    ABTestStatus,
    ContentVersion,
    DefinitionStatus,
    FieldChange,
    InstanceStatus,
    Stage,
    StageKind,
    SubprocessStep,
    Transition,
    Variant,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowStats,
)
from .errors import (
    AuthorizationError,
    ConcurrencyLimitExceeded,
    ConcurrentModification,
    ConflictError,
    DefinitionError,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .execute import StepExecutor, subprocess_outcome
from .persistence.store import WorkflowStore
from .runner import InstanceRunner
from .scheduling import AsyncioScheduler, Scheduler
from .transitions import resolve_transition, transition_kind
from .validation import is_startable, validate_definition

logger = logging.getLogger(__name__)

IN_USE = "InUse"

# fields a caller may not overwrite through update_workflow
_PROTECTED_FIELDS = {"id", "version", "stats", "created_at", "created_by"}


def default_content_workflow() -> WorkflowDefinition:
    """The stock draft -> review -> approved -> published approval flow."""
    return WorkflowDefinition(
        name=DEFAULT_WORKFLOW_NAME,
        description="Default workflow for content approval",
        stages=[
            Stage(id="draft", name="Draft", kind=StageKind.START),
            Stage(id="review", name="In Review", kind=StageKind.REVIEW),
            Stage(id="approved", name="Approved", kind=StageKind.APPROVAL),
            Stage(id="published", name="Published", kind=StageKind.END),
        ],
        transitions=[
            Transition(from_stage="draft", to_stage="review", action="submit", roles=["author", "editor"]),
            Transition(from_stage="review", to_stage="approved", action="approve", roles=["editor", "admin"]),
            Transition(from_stage="review", to_stage="draft", action="reject", roles=["editor", "admin"]),
            Transition(from_stage="approved", to_stage="published", action="publish", roles=["editor", "admin"]),
        ],
    )


def _bump_patch(semver: str) -> str:
    parts = semver.split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return semver
    major, minor, patch = (int(p) for p in parts)
    return f"{major}.{minor}.{patch + 1}"


class WorkflowService:
    """Facade over definitions, instances, content versions and A/B tests."""

    def __init__(
        self,
        store: WorkflowStore,
        *,
        action_runner: Optional[ActionRunner] = None,
        role_checker: Optional[RoleChecker] = None,
        subject_store: Optional[SubjectStore] = None,
        suggestions: Optional[SuggestionService] = None,
        analytics: Optional[AnalyticsService] = None,
        scheduler: Optional[Scheduler] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.store = store
        self.actions = action_runner or ActionRegistry()
        self.roles = role_checker or StaticRoleChecker()
        self.subjects = subject_store or InMemorySubjectStore()
        self.suggestions = suggestions or StaticSuggestionService()
        self.analytics = analytics or StaticAnalyticsService()
        self.scheduler = scheduler or AsyncioScheduler()
        self.config = config or EngineConfig()

        self.executor = StepExecutor(
            self.actions,
            self.scheduler,
            launcher=self,
            max_subprocess_depth=self.config.max_subprocess_depth,
        )
        self.runner = InstanceRunner(
            store,
            self.executor,
            self.scheduler,
            self.config,
            on_finished=self._notify_parent,
        )

    # ------------------------------------------------------------------
    # Helpers
    async def _load_definition(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.store.get_definition(workflow_id)
        if definition is None:
            raise NotFound("Workflow", workflow_id)
        return definition

    async def _load_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise NotFound("WorkflowInstance", instance_id)
        return instance

    async def _has_any_role(self, actor: Optional[str], roles: Iterable[str]) -> bool:
        for role in roles:
            if await self.roles.has_role(actor, role):
                return True
        return False

    async def _require_any_role(
        self, actor: Optional[str], roles: Sequence[str], operation: str
    ) -> None:
        if not roles:
            return
        if not await self._has_any_role(actor, roles):
            raise AuthorizationError(
                f"{actor!r} needs one of {list(roles)} to {operation}"
            )

    # ------------------------------------------------------------------
    # Definitions
    async def create_workflow(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        actor: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Validate and persist a new workflow definition."""
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.model_validate(definition)
        validate_definition(definition)
        if await self.store.get_definition(definition.id) is not None:
            raise DefinitionError("DuplicateId", f"Workflow {definition.id} already exists")

        now = self.scheduler.now()
        settings = definition.settings
        if "timeout_seconds" not in settings.model_fields_set:
            settings = settings.model_copy(
                update={"timeout_seconds": self.config.default_timeout_seconds}
            )
        definition = definition.model_copy(
            update={
                "version": 0,
                "status": DefinitionStatus.ACTIVE,
                "settings": settings,
                "stats": WorkflowStats(),
                "created_by": definition.created_by or actor,
                "created_at": now,
                "updated_at": now,
            }
        )
        stored = await self.store.save_definition(definition)
        logger.info(f"Created workflow {stored.id} ({stored.name})")
        return stored

    async def update_workflow(
        self, workflow_id: str, changes: Mapping[str, Any], actor: Optional[str] = None
    ) -> WorkflowDefinition:
        """Apply ``changes`` to a definition and bump its patch version.

        Steps or stages that an active instance currently sits on cannot be
        removed.
        """

        current = await self._load_definition(workflow_id)
        await self._require_any_role(actor, current.permissions.manage, "update workflows")

        data = current.model_dump()
        data.update({k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS})
        updated = WorkflowDefinition.model_validate(data)
        validate_definition(updated)

        step_ids = {s.id for s in updated.steps}
        stage_ids = {s.id for s in updated.stages}
        for instance in await self.store.query_instances(
            workflow_id=workflow_id, status=InstanceStatus.ACTIVE.value
        ):
            if instance.current_step is not None and instance.current_step not in step_ids:
                raise DefinitionError(
                    IN_USE, f"Step {instance.current_step} is in use by instance {instance.id}"
                )
            if instance.current_stage is not None and instance.current_stage not in stage_ids:
                raise DefinitionError(
                    IN_USE, f"Stage {instance.current_stage} is in use by instance {instance.id}"
                )

        if "semver" not in changes:
            updated.semver = _bump_patch(current.semver)
        updated.updated_at = self.scheduler.now()
        stored = await self.store.swap_definition(updated, current.version)
        logger.info(f"Updated workflow {workflow_id} to {stored.semver}")
        return stored

    async def deactivate_workflow(
        self, workflow_id: str, actor: Optional[str] = None
    ) -> WorkflowDefinition:
        definition = await self._load_definition(workflow_id)
        await self._require_any_role(actor, definition.permissions.manage, "deactivate workflows")
        definition.status = DefinitionStatus.INACTIVE
        definition.updated_at = self.scheduler.now()
        stored = await self.store.swap_definition(definition, definition.version)
        logger.info(f"Deactivated workflow {workflow_id}")
        return stored

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self._load_definition(workflow_id)

    async def list_workflows(
        self, status: Optional[Union[DefinitionStatus, str]] = None
    ) -> List[WorkflowDefinition]:
        if status is None:
            return await self.store.query_definitions()
        return await self.store.query_definitions(status=DefinitionStatus(status).value)

    async def ensure_default_workflow(self) -> WorkflowDefinition:
        """Create the default content approval workflow unless it already exists."""
        existing = await self.store.query_definitions(name=DEFAULT_WORKFLOW_NAME)
        if existing:
            return existing[0]
        return await self.create_workflow(default_content_workflow(), actor="system")

    # ------------------------------------------------------------------
    # Instances
    async def start_instance(
        self,
        workflow_id: str,
        subject_id: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create an instance of ``workflow_id`` and advance it as far as it goes.

        Stage workflows stop at their first stage. Step workflows run inline
        unless the definition's ``execution_mode`` is ``async``, in which case
        the run is handed to the scheduler and the fresh instance is returned.
        """

        definition = await self._load_definition(workflow_id)
        if not is_startable(definition):
            raise ValidationError(f"Workflow {workflow_id} is {definition.status.value}")
        validate_definition(definition)
        await self._require_any_role(actor, definition.permissions.start, "start this workflow")

        input = dict(input or {})
        self._check_input(definition, input)

        active = await self.store.query_instances(
            workflow_id=workflow_id, status=InstanceStatus.ACTIVE.value
        )
        limit = definition.settings.max_concurrent_instances
        if limit and len(active) >= limit:
            raise ConcurrencyLimitExceeded(
                f"Workflow {workflow_id} already has {len(active)} active instances"
            )

        instance = self._new_instance(definition, subject_id, input, actor)
        if definition.is_stage_workflow:
            instance.record(
                "start",
                stage_id=instance.current_stage,
                actor=actor,
                timestamp=self.scheduler.now(),
            )
        instance = await self.store.save_instance(instance)
        await self.store.increment_stat(workflow_id, "total_instances")
        logger.info(f"Started instance {instance.id} of workflow {workflow_id}")

        if definition.is_stage_workflow:
            return instance
        if definition.settings.execution_mode == "async":
            self.scheduler.after(0, partial(self._run_deferred, instance.id, actor))
            return instance
        return await self.runner.run(instance, definition, actor)

    @staticmethod
    def _check_input(definition: WorkflowDefinition, input: Dict[str, Any]) -> None:
        required = (definition.input_schema or {}).get("required") or []
        missing = [key for key in required if key not in input]
        if missing:
            raise ValidationError(f"Input is missing required fields: {', '.join(missing)}")

    def _new_instance(
        self,
        definition: WorkflowDefinition,
        subject_id: Optional[str],
        input: Dict[str, Any],
        actor: Optional[str],
        **fields: Any,
    ) -> WorkflowInstance:
        now = self.scheduler.now()
        first_step = definition.first_step()
        first_stage = definition.first_stage() if definition.is_stage_workflow else None
        return WorkflowInstance(
            workflow_id=definition.id,
            subject_id=subject_id,
            initiated_by=actor,
            input=input,
            variables=definition.initial_variables(),
            current_step=first_step.id if first_step else None,
            current_stage=first_stage.id if first_stage else None,
            created_at=now,
            updated_at=now,
            **fields,
        )

    async def _run_deferred(self, instance_id: str, actor: Optional[str]) -> None:
        instance = await self.store.get_instance(instance_id)
        if instance is None or instance.is_terminal or instance.is_waiting:
            return
        definition = await self._load_definition(instance.workflow_id)
        await self.runner.run(instance, definition, actor)

    async def recover_instance(
        self, instance_id: str, actor: Optional[str] = None
    ) -> WorkflowInstance:
        """Continue an active step instance whose runner went away.

        A step whose result was checkpointed is not executed again; the
        instance moves on to that step's successor. Terminal, waiting and
        stage instances are returned unchanged.
        """
        instance = await self._load_instance(instance_id)
        if instance.is_terminal or instance.is_waiting:
            return instance
        definition = await self._load_definition(instance.workflow_id)
        if definition.is_stage_workflow:
            return instance
        logger.info(f"Recovering instance {instance_id} at step {instance.current_step}")
        return await self.runner.run(instance, definition, actor)

    async def transition_instance(
        self,
        instance_id: str,
        action: str,
        actor: Optional[str] = None,
        comments: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        """Apply a stage action to a stage-workflow instance.

        Nothing is written when the action is not available from the current
        stage. ``expected_version`` lets callers assert the instance has not
        changed since they read it.
        """

        instance = await self._load_instance(instance_id)
        if expected_version is not None and instance.version != expected_version:
            raise ConcurrentModification(instance.id)
        definition = await self._load_definition(instance.workflow_id)
        if not definition.is_stage_workflow or instance.is_terminal:
            raise InvalidTransition(instance.current_stage, action)

        transition = resolve_transition(definition, instance.current_stage, action)
        await self._require_any_role(actor, transition.roles, f"{action} this instance")

        kind = transition_kind(definition, transition)
        if kind == "review":
            instance.review_metadata = await self._review_metadata(instance)
        elif kind == "publish":
            instance.publish_metadata = await self._publish_metadata(instance)

        instance = await self.runner.apply_stage_action(
            instance,
            definition,
            transition,
            actor,
            comments=comments,
            metadata=metadata,
            expected_version=instance.version,
        )
        if kind == "publish" and instance.publish_metadata is not None:
            # the subject only goes live once the move to the published stage is committed
            await self.subjects.update_subject(
                instance.subject_id,
                {
                    "status": "published",
                    "published_at": instance.publish_metadata["published_at"],
                },
            )
        return instance

    async def _review_metadata(self, instance: WorkflowInstance) -> Optional[Dict[str, Any]]:
        subject = await self._subject_snapshot(instance)
        if subject is None:
            return None
        try:
            suggestions = await self.suggestions.suggest(subject)
        except Exception as exc:
            logger.warning(f"Suggestions unavailable for instance {instance.id}: {exc}")
            return None
        return {
            "suggestions": suggestions.get("suggestions"),
            "scores": suggestions.get("scores") or {},
        }

    async def _publish_metadata(self, instance: WorkflowInstance) -> Optional[Dict[str, Any]]:
        subject = await self._subject_snapshot(instance)
        if subject is None:
            return None
        published_at = self.scheduler.now()
        metadata: Dict[str, Any] = {"published_at": published_at.isoformat()}
        try:
            metadata["recommendations"] = await self.suggestions.suggest(subject)
        except Exception as exc:
            logger.warning(f"Recommendations unavailable for instance {instance.id}: {exc}")
            metadata["recommendations"] = None
        try:
            metadata["analytics"] = await self.analytics.get_analytics(
                {
                    "timeframe": "24h",
                    "metrics": ["page_views", "engagement"],
                    "filters": {"content_id": instance.subject_id},
                }
            )
        except Exception as exc:
            logger.warning(f"Analytics unavailable for instance {instance.id}: {exc}")
            metadata["analytics"] = None
        return metadata

    async def _subject_snapshot(self, instance: WorkflowInstance) -> Optional[Dict[str, Any]]:
        if instance.subject_id is None:
            return None
        subject = await self.subjects.get_subject(instance.subject_id)
        if subject is None:
            logger.warning(
                f"Subject {instance.subject_id} of instance {instance.id} not found"
            )
        return subject

    async def resume_instance(
        self,
        instance_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowInstance:
        return await self.runner.resume(instance_id, payload, actor)

    async def signal(
        self,
        correlation_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        """Resume every instance waiting on ``correlation_id``."""
        waiting = [
            i
            for i in await self.store.query_instances(
                waiting_for=correlation_id, status=InstanceStatus.ACTIVE.value
            )
            if i.is_waiting
        ]
        if not waiting:
            raise NotFound("WaitingInstance", correlation_id)
        resumed = []
        for instance in waiting:
            resumed.append(
                await self.runner.resume(instance.id, payload, actor, correlation_id=correlation_id)
            )
        return resumed

    async def cancel_instance(
        self, instance_id: str, actor: Optional[str] = None, reason: str = "Cancelled"
    ) -> WorkflowInstance:
        """Fail an active instance on behalf of its initiator or a manager.

        Steps already in flight are allowed to finish; the runner sees the
        cancellation at its next checkpoint and schedules nothing further.
        """

        instance = await self._load_instance(instance_id)
        if instance.is_terminal:
            raise ValidationError(f"Instance {instance_id} is already {instance.status.value}")
        definition = await self.store.get_definition(instance.workflow_id)
        manage_roles = definition.permissions.manage if definition else []
        if actor is None or actor != instance.initiated_by:
            await self._require_any_role(actor, manage_roles, "cancel this instance")

        return await self.runner.cancel(instance, actor, reason)

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        return await self._load_instance(instance_id)

    async def list_instances(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[Union[InstanceStatus, str]] = None,
    ) -> List[WorkflowInstance]:
        filters: Dict[str, Any] = {}
        if workflow_id is not None:
            filters["workflow_id"] = workflow_id
        if status is not None:
            filters["status"] = InstanceStatus(status).value
        return await self.store.query_instances(**filters)

    async def purge_expired_instances(self, now: Optional[datetime] = None) -> int:
        """Delete terminal instances older than their workflow's retention period."""
        now = now or self.scheduler.now()
        retention: Dict[str, int] = {}
        purged = 0
        for instance in await self.store.query_instances():
            if not instance.is_terminal:
                continue
            if instance.workflow_id not in retention:
                definition = await self.store.get_definition(instance.workflow_id)
                retention[instance.workflow_id] = (
                    definition.settings.retention_days if definition else DEFAULT_RETENTION_DAYS
                )
            ended = instance.completed_at or instance.failed_at or instance.updated_at
            if ended + timedelta(days=retention[instance.workflow_id]) < now:
                if await self.store.delete_instance(instance.id):
                    purged += 1
        if purged:
            logger.info(f"Purged {purged} expired instances")
        return purged

    # ------------------------------------------------------------------
    # Subprocesses
    async def launch_subprocess(
        self, step: SubprocessStep, parent: WorkflowInstance, actor: Optional[str]
    ) -> WorkflowInstance:
        definition = await self._load_definition(step.workflow_id)
        if definition.is_stage_workflow:
            raise ValidationError(f"Workflow {definition.id} cannot run as a subprocess")
        validate_definition(definition)

        child_input = dict(step.input)
        for key in step.input_from:
            if key in parent.variables:
                child_input[key] = parent.variables[key]
        self._check_input(definition, child_input)

        child = self._new_instance(
            definition,
            parent.subject_id,
            child_input,
            actor,
            parent_instance_id=parent.id,
            depth=parent.depth + 1,
        )
        child.parent_correlation = f"subprocess:{child.id}"
        child = await self.store.save_instance(child)
        await self.store.increment_stat(definition.id, "total_instances")
        logger.info(
            f"Instance {parent.id} started {step.mode} subprocess {child.id} "
            f"of workflow {definition.id}"
        )
        if step.mode == "sync":
            child = await self.runner.run(child, definition, actor)
        return child

    async def run_subprocess(self, child_id: str, actor: Optional[str]) -> None:
        await self._run_deferred(child_id, actor)

    async def _notify_parent(self, child: WorkflowInstance) -> None:
        if child.parent_instance_id is None or child.parent_correlation is None:
            return
        parent = await self.store.get_instance(child.parent_instance_id)
        # sync children report back through the executor's return value
        if parent is None or not parent.is_waiting or parent.waiting_for != child.parent_correlation:
            return
        try:
            await self.runner.resume(
                parent.id,
                subprocess_outcome(child),
                correlation_id=child.parent_correlation,
            )
        except ConcurrentModification:
            logger.warning(f"Parent {parent.id} changed while child {child.id} was reporting back")

    # ------------------------------------------------------------------
    # Content versions
    async def create_version(
        self,
        subject_id: str,
        actor: Optional[str],
        changes: Mapping[str, Any],
        description: str = "",
    ) -> ContentVersion:
        """Append an immutable version record for ``subject_id``."""
        if await self.subjects.get_subject(subject_id) is None:
            raise NotFound("Subject", subject_id)
        version = ContentVersion(
            subject_id=subject_id,
            actor=actor,
            changes={k: FieldChange.model_validate(v) for k, v in changes.items()},
            description=description,
            timestamp=self.scheduler.now(),
        )
        stored = await self.store.save_version(version)
        logger.info(f"Recorded version {stored.id} of subject {subject_id}")
        return stored

    async def track_changes(
        self,
        subject_id: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        actor: Optional[str] = None,
        fields: Optional[Iterable[str]] = None,
        description: str = "",
    ) -> Optional[ContentVersion]:
        """Record a version holding every field that differs between ``before`` and ``after``."""
        names = list(fields) if fields is not None else sorted(set(before) | set(after))
        changes = {
            name: {"old": before.get(name), "new": after.get(name)}
            for name in names
            if before.get(name) != after.get(name)
        }
        if not changes:
            return None
        return await self.create_version(subject_id, actor, changes, description)

    async def list_versions(self, subject_id: str) -> List[ContentVersion]:
        versions = await self.store.query_versions(subject_id=subject_id)
        return sorted(versions, key=lambda v: v.timestamp)

    # ------------------------------------------------------------------
    # A/B tests
    async def start_ab_test(
        self,
        subject_id: str,
        variants: Sequence[Union[Variant, Mapping[str, Any]]],
        metrics: Sequence[str],
        duration_seconds: float,
        actor: Optional[str] = None,
    ) -> ABTest:
        """Persist a running test and schedule its single completion check."""
        parsed = [v if isinstance(v, Variant) else Variant.model_validate(v) for v in variants]
        if len(parsed) < 2:
            raise ValidationError("An A/B test needs at least two variants")
        if len({v.id for v in parsed}) != len(parsed):
            raise ValidationError("Variant ids must be unique")
        if not metrics:
            raise ValidationError("An A/B test needs at least one metric")
        if duration_seconds < 0:
            raise ValidationError("duration_seconds must not be negative")

        test = ABTest(
            subject_id=subject_id,
            variants=parsed,
            metrics=list(metrics),
            duration_seconds=duration_seconds,
            started_by=actor,
            started_at=self.scheduler.now(),
        )
        test = await self.store.save_ab_test(test)
        self.scheduler.after(duration_seconds, partial(self.complete_ab_test, test.id))
        logger.info(f"Started A/B test {test.id} on subject {subject_id} for {duration_seconds}s")
        return test

    async def complete_ab_test(self, test_id: str) -> ABTest:
        """Aggregate variant metrics and record the winner.

        Does nothing if the test is no longer running or its duration has not
        elapsed yet. Completion is a compare-and-swap, so it happens once.
        """

        test = await self.store.get_ab_test(test_id)
        if test is None:
            raise NotFound("ABTest", test_id)
        if test.status != ABTestStatus.RUNNING:
            return test
        now = self.scheduler.now()
        if now < test.started_at + timedelta(seconds=test.duration_seconds):
            return test

        results: Dict[str, Dict[str, Any]] = {}
        for variant in test.variants:
            results[variant.id] = await self.analytics.get_analytics(
                {
                    "timeframe": f"{test.duration_seconds:g}s",
                    "metrics": test.metrics,
                    "filters": {"content_id": test.subject_id, "variant": variant.id},
                }
            )
        order = [v.id for v in test.variants]
        winner = select_winner(results, test.metrics, order)
        test.status = ABTestStatus.COMPLETED
        test.results = ABTestResults(
            variant_results=results,
            scores=score_variants(results, test.metrics),
            winner=winner,
            completed_at=now,
        )
        try:
            test = await self.store.swap_ab_test(test, test.version)
        except ConflictError:
            stored = await self.store.get_ab_test(test_id)
            if stored is not None and stored.status == ABTestStatus.COMPLETED:
                return stored
            raise
        logger.info(f"A/B test {test_id} completed; winner {winner.variant_id}")
        return test
