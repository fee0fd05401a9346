"""Structural validation of workflow definitions."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Tuple

from .contracts import DecisionStep, DefinitionStatus, ParallelStep, Step, WorkflowDefinition
from .errors import DefinitionError, ExpressionError
from .expressions import compile_expression

logger = logging.getLogger(__name__)

EMPTY_DEFINITION = "EmptyDefinition"
DUPLICATE_ID = "DuplicateId"
DANGLING_REFERENCE = "DanglingReference"
CYCLE_DETECTED = "CycleDetected"
MISSING_CONDITION = "MissingCondition"
INVALID_EXPRESSION = "InvalidExpression"


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise :class:`DefinitionError` if ``definition`` is structurally invalid.

    Step definitions are checked for at least one step, unique ids, resolvable
    successor references, an acyclic graph from the first declared step, a
    condition for every decision successor beyond the first, and parseable
    expressions, in that order. Stage definitions are checked for unique stage
    ids and transitions that name existing stages.
    """

    if not definition.steps and not definition.stages:
        raise DefinitionError(EMPTY_DEFINITION, "Workflow must have at least one step")

    if definition.steps:
        _validate_steps(definition.steps)
    if definition.stages:
        _validate_stages(definition)


def _validate_steps(steps: List[Step]) -> None:
    by_id: Dict[str, Step] = {}
    for step in steps:
        if step.id in by_id:
            raise DefinitionError(DUPLICATE_ID, f"Duplicate step id: {step.id}")
        by_id[step.id] = step

    for step in steps:
        for next_id in step.next:
            if next_id not in by_id:
                raise DefinitionError(
                    DANGLING_REFERENCE,
                    f"Invalid step reference: {next_id} (from {step.id})",
                )
        for target in step.conditions:
            if target not in step.next:
                raise DefinitionError(
                    DANGLING_REFERENCE,
                    f"Condition on {step.id} targets {target}, which is not a successor",
                )

    _check_acyclic(steps[0].id, by_id)

    for step in steps:
        if isinstance(step, DecisionStep) and len(step.next) >= 2:
            for successor in step.next[1:]:
                if successor not in step.conditions:
                    raise DefinitionError(
                        MISSING_CONDITION,
                        f"Decision step {step.id} has no condition for successor {successor}",
                    )

    for step in steps:
        expressions = list(step.conditions.values())
        if isinstance(step, DecisionStep):
            expressions.append(step.expression)
        if isinstance(step, ParallelStep):
            expressions.extend(b.expression for b in step.branches if isinstance(b, DecisionStep))
        for expression in expressions:
            try:
                compile_expression(expression)
            except ExpressionError as exc:
                raise DefinitionError(INVALID_EXPRESSION, f"Step {step.id}: {exc}") from exc


def _check_acyclic(start: str, by_id: Dict[str, Step]) -> None:
    visited: set[str] = {start}
    on_stack: set[str] = {start}
    # (step, remaining successors) for every step on the current path
    stack: List[Tuple[str, Iterator[str]]] = [(start, iter(by_id[start].next))]
    while stack:
        step_id, successors = stack[-1]
        next_id = next(successors, None)
        if next_id is None:
            stack.pop()
            on_stack.discard(step_id)
            continue
        if next_id in on_stack:
            raise DefinitionError(CYCLE_DETECTED, f"Workflow contains a cycle through {next_id}")
        if next_id in visited:
            continue
        visited.add(next_id)
        on_stack.add(next_id)
        stack.append((next_id, iter(by_id[next_id].next)))


def _validate_stages(definition: WorkflowDefinition) -> None:
    stage_ids: set[str] = set()
    for stage in definition.stages:
        if stage.id in stage_ids:
            raise DefinitionError(DUPLICATE_ID, f"Duplicate stage id: {stage.id}")
        stage_ids.add(stage.id)

    for transition in definition.transitions:
        for ref in (transition.from_stage, transition.to_stage):
            if ref not in stage_ids:
                raise DefinitionError(
                    DANGLING_REFERENCE,
                    f"Transition {transition.action!r} references unknown stage {ref}",
                )


def is_startable(definition: WorkflowDefinition) -> bool:
    return definition.status == DefinitionStatus.ACTIVE
