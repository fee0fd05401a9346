"""Next-step and stage-transition resolution."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .contracts import StageKind, Transition, WorkflowDefinition
from .errors import DefinitionError, InvalidTransition
from .expressions import evaluate_condition
from .validation import DANGLING_REFERENCE

logger = logging.getLogger(__name__)


def resolve_next(
    definition: WorkflowDefinition,
    current_step_id: str,
    step_result: Any,
    variables: Dict[str, Any],
) -> Optional[str]:
    """Return the id of the step that follows ``current_step_id``.

    ``None`` means there is nowhere to go: either the step has no successors
    or none of its branch conditions matched (see :func:`is_dead_end`).
    A successor without a condition is always taken when reached, so the
    first declared successor acts as the default branch.
    """

    step = definition.get_step(current_step_id)
    if step is None:
        raise DefinitionError(DANGLING_REFERENCE, f"Unknown step {current_step_id}")

    if not step.next:
        return None
    if len(step.next) == 1:
        return step.next[0]

    namespace = {"result": step_result, "variables": variables}
    for successor in step.next:
        condition = step.conditions.get(successor)
        if condition is None or evaluate_condition(condition, namespace):
            return successor

    logger.info(f"No branch condition matched after step {current_step_id}")
    return None


def is_dead_end(
    definition: WorkflowDefinition, step_id: str, resolved: Optional[str]
) -> bool:
    """True when ``step_id`` has successors but resolution found none."""
    step = definition.get_step(step_id)
    return resolved is None and step is not None and bool(step.next)


def resolve_transition(
    definition: WorkflowDefinition, current_stage: Optional[str], action: str
) -> Transition:
    """Find the first transition leaving ``current_stage`` via ``action``."""
    for transition in definition.transitions:
        if transition.from_stage == current_stage and transition.action == action:
            return transition
    raise InvalidTransition(current_stage, action)


def available_actions(
    definition: WorkflowDefinition, current_stage: Optional[str]
) -> List[str]:
    return [t.action for t in definition.transitions if t.from_stage == current_stage]


def transition_kind(definition: WorkflowDefinition, transition: Transition) -> Optional[str]:
    """Return ``"publish"``, ``"review"`` or ``None`` for ``transition``.

    An explicit ``kind`` wins; otherwise it follows the target stage: entering
    a review stage is a review, entering an end stage is a publish.
    """

    if transition.kind:
        return transition.kind
    target = definition.get_stage(transition.to_stage)
    if target is None:
        return None
    if target.kind == StageKind.REVIEW:
        return "review"
    if target.kind == StageKind.END:
        return "publish"
    return None
