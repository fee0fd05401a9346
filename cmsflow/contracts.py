"""Core data contracts for cmsflow workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    DEFAULT_MAX_CONCURRENT_INSTANCES,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SEMVER,
    DEFAULT_TIMEOUT_SECONDS,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Steps


class StepType(str, Enum):
    TASK = "task"
    DECISION = "decision"
    PARALLEL = "parallel"
    WAIT = "wait"
    SUBPROCESS = "subprocess"


class RetryPolicy(BaseModel):
    """Retry budget for a failing step; delays grow linearly."""

    max_retries: int = Field(default=0, ge=0)
    retry_delay_seconds: float = Field(default=0.0, ge=0)


class BaseStep(BaseModel):
    """Fields shared by every step kind."""

    id: str
    name: Optional[str] = None
    next: List[str] = Field(default_factory=list)
    conditions: Dict[str, str] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None


class TaskStep(BaseStep):
    """Invokes a named action through the task action runner."""

    type: Literal["task"] = "task"
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


class DecisionStep(BaseStep):
    """Evaluates ``expression`` against instance variables."""

    type: Literal["decision"] = "decision"
    expression: str


class SubprocessStep(BaseStep):
    """Starts a nested instance of ``workflow_id``."""

    type: Literal["subprocess"] = "subprocess"
    workflow_id: str
    mode: Literal["sync", "async"] = "sync"
    input: Dict[str, Any] = Field(default_factory=dict)
    input_from: List[str] = Field(default_factory=list)


Branch = Annotated[
    Union[TaskStep, DecisionStep, SubprocessStep], Field(discriminator="type")
]


class ParallelStep(BaseStep):
    """Runs ``branches`` concurrently and aggregates results by branch id."""

    type: Literal["parallel"] = "parallel"
    branches: List[Branch] = Field(default_factory=list)
    best_effort: bool = False


class WaitStep(BaseStep):
    """Suspends the instance until a signal arrives or the deadline passes."""

    type: Literal["wait"] = "wait"
    timeout_seconds: Optional[float] = Field(default=None, ge=0)
    correlation_key: Optional[str] = None


Step = Annotated[
    Union[TaskStep, DecisionStep, ParallelStep, WaitStep, SubprocessStep],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Stages


class StageKind(str, Enum):
    START = "start"
    REVIEW = "review"
    APPROVAL = "approval"
    END = "end"


class Stage(BaseModel):
    id: str
    name: str = ""
    kind: StageKind = StageKind.REVIEW


class Transition(BaseModel):
    """Permitted move between stages, gated by an action name and roles."""

    model_config = ConfigDict(populate_by_name=True)

    from_stage: str = Field(alias="from")
    to_stage: str = Field(alias="to")
    action: str
    roles: List[str] = Field(default_factory=list)
    kind: Optional[Literal["publish", "review"]] = None


# ----------------------------------------------------------------------
# Definitions


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class VariableSpec(BaseModel):
    name: str
    default: Any = None


class Permissions(BaseModel):
    """Roles allowed to start, view and manage a workflow. Empty means anyone."""

    start: List[str] = Field(default_factory=list)
    view: List[str] = Field(default_factory=list)
    manage: List[str] = Field(default_factory=list)


class WorkflowSettings(BaseModel):
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_concurrent_instances: int = DEFAULT_MAX_CONCURRENT_INSTANCES
    retention_days: int = DEFAULT_RETENTION_DAYS
    execution_mode: Literal["sync", "async"] = "sync"
    on_dead_end: Optional[Literal["complete", "fail"]] = None


class WorkflowStats(BaseModel):
    total_instances: int = 0
    completed_instances: int = 0
    failed_instances: int = 0
    total_duration_ms: float = 0.0

    @property
    def average_duration_ms(self) -> float:
        finished = self.completed_instances + self.failed_instances
        return self.total_duration_ms / finished if finished else 0.0


def _object_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class WorkflowDefinition(BaseModel):
    """Authored description of a workflow's steps or stages."""

    id: str = Field(default_factory=_new_id)
    version: int = 0
    name: str
    description: str = ""
    semver: str = DEFAULT_SEMVER
    status: DefinitionStatus = DefinitionStatus.ACTIVE

    steps: List[Step] = Field(default_factory=list)
    stages: List[Stage] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)

    input_schema: Dict[str, Any] = Field(default_factory=_object_schema)
    output_schema: Dict[str, Any] = Field(default_factory=_object_schema)
    variables: List[VariableSpec] = Field(default_factory=list)
    permissions: Permissions = Field(default_factory=Permissions)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    stats: WorkflowStats = Field(default_factory=WorkflowStats)

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_stage_workflow(self) -> bool:
        return not self.steps and bool(self.stages)

    def first_step(self) -> Optional[Step]:
        return self.steps[0] if self.steps else None

    def first_stage(self) -> Optional[Stage]:
        return self.stages[0] if self.stages else None

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def get_stage(self, stage_id: Optional[str]) -> Optional[Stage]:
        return next((s for s in self.stages if s.id == stage_id), None)

    def initial_variables(self) -> Dict[str, Any]:
        return {v.name: v.default for v in self.variables}


# ----------------------------------------------------------------------
# Instances


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SubState(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"


class HistoryEntry(BaseModel):
    """One append-only record in an instance's execution log."""

    step_id: Optional[str] = None
    stage_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    actor: Optional[str] = None
    action: str
    result: Any = None
    comments: str = ""
    attempts: int = 1


class WorkflowInstance(BaseModel):
    """One execution of a definition against a subject."""

    id: str = Field(default_factory=_new_id)
    version: int = 0
    workflow_id: str
    subject_id: Optional[str] = None
    initiated_by: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)

    current_step: Optional[str] = None
    current_stage: Optional[str] = None
    status: InstanceStatus = InstanceStatus.ACTIVE
    sub_state: SubState = SubState.RUNNING
    waiting_for: Optional[str] = None
    wait_deadline: Optional[datetime] = None

    parent_instance_id: Optional[str] = None
    parent_correlation: Optional[str] = None
    depth: int = 0

    output: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    review_metadata: Optional[Dict[str, Any]] = None
    publish_metadata: Optional[Dict[str, Any]] = None

    error: Optional[str] = None
    error_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status != InstanceStatus.ACTIVE

    @property
    def is_waiting(self) -> bool:
        return self.status == InstanceStatus.ACTIVE and self.sub_state == SubState.WAITING

    def record(self, action: str, **fields: Any) -> HistoryEntry:
        entry = HistoryEntry(action=action, **fields)
        self.history.append(entry)
        return entry


# ----------------------------------------------------------------------
# Versions and A/B tests


class FieldChange(BaseModel):
    old: Any = None
    new: Any = None


class ContentVersion(BaseModel):
    """Immutable snapshot of a change to a governed object."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    version: int = 0
    subject_id: str
    actor: Optional[str] = None
    changes: Dict[str, FieldChange] = Field(default_factory=dict)
    description: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class Variant(BaseModel):
    id: str
    changes: Dict[str, Any] = Field(default_factory=dict)


class WinnerInfo(BaseModel):
    variant_id: str
    score: float
    improvement: Optional[float] = None


class ABTestResults(BaseModel):
    variant_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    scores: Dict[str, float] = Field(default_factory=dict)
    winner: WinnerInfo
    completed_at: datetime = Field(default_factory=utcnow)


class ABTestStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class ABTest(BaseModel):
    id: str = Field(default_factory=_new_id)
    version: int = 0
    subject_id: str
    variants: List[Variant]
    metrics: List[str]
    duration_seconds: float
    started_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    status: ABTestStatus = ABTestStatus.RUNNING
    results: Optional[ABTestResults] = None
