"""Example walking an article through the default approval stages."""

import asyncio

from cmsflow import WorkflowService, WorkflowStore, get_repository
from cmsflow.collaborators import InMemorySubjectStore, StaticRoleChecker


async def main():
    """Submit, approve and publish one article."""
    subjects = InMemorySubjectStore({"post-42": {"title": "Release notes", "status": "draft"}})
    roles = StaticRoleChecker({"alice": ["author"], "ed": ["editor"]})
    service = WorkflowService(
        WorkflowStore(get_repository()),
        role_checker=roles,
        subject_store=subjects,
    )

    workflow = await service.ensure_default_workflow()
    instance = await service.start_instance(workflow.id, "post-42", actor="alice")

    for action, actor in [("submit", "alice"), ("approve", "ed"), ("publish", "ed")]:
        instance = await service.transition_instance(instance.id, action, actor=actor)
        print(f"{action:>8} -> {instance.current_stage}")

    print(f"Instance status: {instance.status.value}")
    print(f"Subject: {await subjects.get_subject('post-42')}")


if __name__ == "__main__":
    asyncio.run(main())
