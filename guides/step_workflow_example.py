"""Example of an automated step workflow that waits for an embargo signal."""

import asyncio

from cmsflow import ActionRegistry, AsyncioScheduler, WorkflowService, WorkflowStore, get_repository

actions = ActionRegistry()


@actions.action("word_count")
def word_count(spec, context):
    return len(context.input["body"].split())


@actions.action("notify")
async def notify(spec, context):
    print(f"Notifying {spec.params['channel']} about {context.subject_id}")
    return "sent"


DEFINITION = {
    "name": "Embargoed release",
    "input_schema": {"type": "object", "required": ["body"]},
    "steps": [
        {"id": "count", "type": "task", "action": "word_count", "next": ["embargo"]},
        {
            "id": "embargo",
            "type": "wait",
            "correlation_key": "embargo-lifted",
            "timeout_seconds": 5,
            "next": ["notify"],
        },
        {"id": "notify", "type": "task", "action": "notify", "params": {"channel": "#news"}},
    ],
}


async def main():
    scheduler = AsyncioScheduler()
    service = WorkflowService(
        WorkflowStore(get_repository()), action_runner=actions, scheduler=scheduler
    )

    workflow = await service.create_workflow(DEFINITION, actor="alice")
    instance = await service.start_instance(
        workflow.id, "post-7", input={"body": "Big news today"}, actor="alice"
    )
    print(f"Waiting for: {instance.waiting_for}")

    [instance] = await service.signal("embargo-lifted", {"lifted_by": "ed"}, actor="ed")
    print(f"Status: {instance.status.value}, variables: {instance.variables}")


if __name__ == "__main__":
    asyncio.run(main())
