"""cmsflow: durable content workflows with approval stages and A/B tests."""

from .collaborators import ActionRegistry, ActionSpec, TaskContext
from .contracts import (
    ABTest,
    ContentVersion,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .errors import CmsFlowError
from .persistence import WorkflowStore, get_repository
from .scheduling import AsyncioScheduler, ManualScheduler
from .service import WorkflowService
from .validation import validate_definition

__version__ = "0.1.0"
__all__ = [
    "ABTest",
    "ActionRegistry",
    "ActionSpec",
    "AsyncioScheduler",
    "CmsFlowError",
    "ContentVersion",
    "InstanceStatus",
    "ManualScheduler",
    "TaskContext",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowService",
    "WorkflowStore",
    "get_repository",
    "validate_definition",
]
