import asyncio
import logging
from datetime import timedelta

import pytest

from cmsflow.contracts import DefinitionStatus, InstanceStatus
from cmsflow.errors import (
    AuthorizationError,
    ConcurrentModification,
    DefinitionError,
    InvalidTransition,
)
from cmsflow.service import WorkflowService


class BrokenSuggestions:
    async def suggest(self, snapshot):
        raise RuntimeError("model overloaded")


class GatedSuggestions:
    """Blocks inside ``suggest`` until the test lets it go."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def suggest(self, snapshot):
        self.entered.set()
        await self.release.wait()
        return {"suggestions": [], "scores": {}}


def _retractable_workflow():
    return {
        "name": "retractable",
        "stages": [
            {"id": "draft", "kind": "start"},
            {"id": "approved", "kind": "approval"},
            {"id": "published", "kind": "end"},
        ],
        "transitions": [
            {"from": "draft", "to": "approved", "action": "approve"},
            {"from": "approved", "to": "published", "action": "publish"},
            {"from": "approved", "to": "draft", "action": "retract"},
        ],
    }


@pytest.mark.asyncio
async def test_default_workflow_from_draft_to_published(service, subjects, analytics):
    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")

    assert instance.current_stage == "draft"
    assert [h.action for h in instance.history] == ["start"]

    instance = await service.transition_instance(instance.id, "submit", actor="alice")
    assert instance.current_stage == "review"
    assert instance.review_metadata == {
        "suggestions": ["shorter title"],
        "scores": {"seo": 80},
    }

    instance = await service.transition_instance(
        instance.id, "approve", actor="ed", comments="Looks good"
    )
    assert instance.current_stage == "approved"
    assert instance.history[-1].comments == "Looks good"

    instance = await service.transition_instance(instance.id, "publish", actor="ed")
    assert instance.current_stage == "published"
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.completed_at is not None
    assert instance.publish_metadata["analytics"] == {"page_views": 120, "engagement": 0.4}
    assert instance.publish_metadata["recommendations"]["suggestions"] == ["shorter title"]
    assert [h.action for h in instance.history] == ["start", "submit", "approve", "publish"]
    assert [h.stage_id for h in instance.history] == ["draft", "review", "approved", "published"]

    subject = await subjects.get_subject("post-1")
    assert subject["status"] == "published"
    assert subject["published_at"] == instance.publish_metadata["published_at"]

    stats = (await service.get_workflow(workflow.id)).stats
    assert stats.total_instances == 1
    assert stats.completed_instances == 1

    with pytest.raises(InvalidTransition):
        await service.transition_instance(instance.id, "reject", actor="ed")


@pytest.mark.asyncio
async def test_unknown_action_leaves_instance_untouched(service):
    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")

    with pytest.raises(InvalidTransition):
        await service.transition_instance(instance.id, "publish", actor="ed")

    stored = await service.get_instance(instance.id)
    assert stored.version == instance.version
    assert stored.current_stage == "draft"
    assert len(stored.history) == 1


@pytest.mark.asyncio
async def test_transition_roles_are_enforced(service):
    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")
    await service.transition_instance(instance.id, "submit", actor="alice")

    with pytest.raises(AuthorizationError):
        await service.transition_instance(instance.id, "approve", actor="alice")
    with pytest.raises(AuthorizationError):
        await service.transition_instance(instance.id, "approve", actor=None)

    instance = await service.transition_instance(instance.id, "approve", actor="root")
    assert instance.current_stage == "approved"


@pytest.mark.asyncio
async def test_stale_expected_version_is_rejected(service):
    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")
    read_version = instance.version
    await service.transition_instance(instance.id, "submit", actor="alice")

    with pytest.raises(ConcurrentModification):
        await service.transition_instance(
            instance.id, "approve", actor="ed", expected_version=read_version
        )
    assert (await service.get_instance(instance.id)).current_stage == "review"


@pytest.mark.asyncio
async def test_racing_transitions_only_one_wins(service):
    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")
    instance = await service.transition_instance(instance.id, "submit", actor="alice")

    outcomes = await asyncio.gather(
        service.transition_instance(
            instance.id, "approve", actor="ed", expected_version=instance.version
        ),
        service.transition_instance(
            instance.id, "reject", actor="ed", expected_version=instance.version
        ),
        return_exceptions=True,
    )

    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], ConcurrentModification)
    stored = await service.get_instance(instance.id)
    assert len(stored.history) == 3


@pytest.mark.asyncio
async def test_publish_that_loses_a_race_leaves_subject_unpublished(
    store, roles, subjects, scheduler
):
    gated = GatedSuggestions()
    service = WorkflowService(
        store, role_checker=roles, subject_store=subjects, suggestions=gated, scheduler=scheduler
    )
    workflow = await service.create_workflow(_retractable_workflow())
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")
    instance = await service.transition_instance(instance.id, "approve", actor="ed")

    publishing = asyncio.ensure_future(
        service.transition_instance(instance.id, "publish", actor="ed")
    )
    await gated.entered.wait()
    retracted = await service.transition_instance(instance.id, "retract", actor="ed")
    gated.release.set()

    with pytest.raises(ConcurrentModification):
        await publishing
    assert retracted.current_stage == "draft"
    stored = await service.get_instance(instance.id)
    assert stored.current_stage == "draft"
    assert stored.status == InstanceStatus.ACTIVE
    subject = await subjects.get_subject("post-1")
    assert subject["status"] == "draft"
    assert "published_at" not in subject


@pytest.mark.asyncio
async def test_review_survives_suggestion_outage(store, roles, subjects, scheduler, caplog):
    service = WorkflowService(
        store,
        role_checker=roles,
        subject_store=subjects,
        suggestions=BrokenSuggestions(),
        scheduler=scheduler,
    )
    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-1", actor="alice")

    with caplog.at_level(logging.WARNING, logger="cmsflow.service"):
        instance = await service.transition_instance(instance.id, "submit", actor="alice")

    assert instance.current_stage == "review"
    assert instance.review_metadata is None
    assert "Suggestions unavailable" in caplog.text


@pytest.mark.asyncio
async def test_step_workflow_has_no_stage_actions(service):
    definition = await service.create_workflow(
        {"name": "steps", "steps": [{"id": "hold", "type": "wait"}]}
    )
    instance = await service.start_instance(definition.id)
    with pytest.raises(InvalidTransition):
        await service.transition_instance(instance.id, "submit", actor="alice")


@pytest.mark.asyncio
async def test_ensure_default_workflow_is_idempotent(service):
    first = await service.ensure_default_workflow()
    second = await service.ensure_default_workflow()
    assert first.id == second.id
    assert len(await service.list_workflows()) == 1


@pytest.mark.asyncio
async def test_update_workflow(service):
    definition = await service.create_workflow(
        {
            "name": "hold",
            "permissions": {"manage": ["admin"]},
            "steps": [{"id": "hold", "type": "wait"}],
        }
    )

    with pytest.raises(AuthorizationError):
        await service.update_workflow(definition.id, {"description": "x"}, actor="ed")

    updated = await service.update_workflow(definition.id, {"description": "x"}, actor="root")
    assert updated.description == "x"
    assert updated.semver == "1.0.1"
    pinned = await service.update_workflow(definition.id, {"semver": "2.0.0"}, actor="root")
    assert pinned.semver == "2.0.0"

    await service.start_instance(definition.id)
    with pytest.raises(DefinitionError) as exc_info:
        await service.update_workflow(
            definition.id,
            {"steps": [{"id": "other", "type": "task", "action": "noop"}]},
            actor="root",
        )
    assert exc_info.value.reason == "InUse"


@pytest.mark.asyncio
async def test_deactivated_workflow_is_listed_by_status(service):
    workflow = await service.ensure_default_workflow()
    await service.deactivate_workflow(workflow.id)

    assert await service.list_workflows(DefinitionStatus.ACTIVE) == []
    [inactive] = await service.list_workflows("inactive")
    assert inactive.id == workflow.id


@pytest.mark.asyncio
async def test_purge_removes_only_expired_terminal_instances(service, scheduler):
    workflow = await service.ensure_default_workflow()
    finished = await service.start_instance(workflow.id, "post-1", actor="alice")
    await service.cancel_instance(finished.id, actor="alice")
    active = await service.start_instance(workflow.id, "post-1", actor="alice")

    assert await service.purge_expired_instances(scheduler.now() + timedelta(days=29)) == 0
    assert await service.purge_expired_instances(scheduler.now() + timedelta(days=31)) == 1

    remaining = await service.list_instances(workflow_id=workflow.id)
    assert [i.id for i in remaining] == [active.id]
