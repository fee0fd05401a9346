import pytest

from cmsflow.contracts import WorkflowDefinition
from cmsflow.errors import DefinitionError
from cmsflow.validation import validate_definition


def _task(step_id, *successors, **extra):
    return {"id": step_id, "type": "task", "action": "noop", "next": list(successors), **extra}


def _definition(steps=None, **fields) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({"name": "wf", "steps": steps or [], **fields})


def _reason(definition) -> str:
    with pytest.raises(DefinitionError) as exc_info:
        validate_definition(definition)
    return exc_info.value.reason


def test_cycle_is_rejected():
    definition = _definition([_task("A", "B"), _task("B", "C"), _task("C", "A")])
    assert _reason(definition) == "CycleDetected"


def test_linear_chain_is_accepted():
    validate_definition(_definition([_task("A", "B"), _task("B", "C"), _task("C")]))


def test_self_loop_is_a_cycle():
    assert _reason(_definition([_task("A", "A")])) == "CycleDetected"


def test_cycle_unreachable_from_first_step_is_ignored():
    definition = _definition([_task("A"), _task("B", "C"), _task("C", "B")])
    validate_definition(definition)


def test_diamond_is_not_a_cycle():
    definition = _definition(
        [_task("A", "B", "C"), _task("B", "D"), _task("C", "D"), _task("D")]
    )
    validate_definition(definition)


def _chain(length, back_to=None):
    steps = [_task(f"s{i}", f"s{i + 1}") for i in range(length - 1)]
    steps.append(_task(f"s{length - 1}", *([back_to] if back_to else [])))
    return steps


def test_long_chain_is_accepted():
    validate_definition(_definition(_chain(5000)))


def test_cycle_at_the_end_of_a_long_chain():
    assert _reason(_definition(_chain(5000, back_to="s2500"))) == "CycleDetected"


def test_empty_definition():
    assert _reason(_definition()) == "EmptyDefinition"


def test_duplicate_step_ids():
    assert _reason(_definition([_task("A"), _task("A")])) == "DuplicateId"


def test_duplicate_reported_before_cycle():
    definition = _definition([_task("A", "B"), _task("B", "A"), _task("B")])
    assert _reason(definition) == "DuplicateId"


def test_dangling_successor():
    assert _reason(_definition([_task("A", "missing")])) == "DanglingReference"


def test_condition_on_non_successor():
    definition = _definition([_task("A", "B", conditions={"C": "true"}), _task("B"), _task("C")])
    assert _reason(definition) == "DanglingReference"


def test_decision_needs_condition_beyond_first_successor():
    definition = _definition(
        [
            {"id": "D", "type": "decision", "expression": "true", "next": ["X", "Y"]},
            _task("X"),
            _task("Y"),
        ]
    )
    assert _reason(definition) == "MissingCondition"


def test_decision_with_conditions_is_accepted():
    definition = _definition(
        [
            {
                "id": "D",
                "type": "decision",
                "expression": "variables.score > 5",
                "next": ["X", "Y"],
                "conditions": {"Y": "result == false"},
            },
            _task("X"),
            _task("Y"),
        ]
    )
    validate_definition(definition)


@pytest.mark.parametrize(
    "expression",
    ["__import__('os')", "variables.__class__", "lambda: 1", "x = 1", "open('f')"],
)
def test_unsafe_or_malformed_expressions(expression):
    definition = _definition([_task("A", "B", conditions={"B": expression}), _task("B")])
    assert _reason(definition) == "InvalidExpression"


def test_parallel_branch_expression_is_checked():
    definition = _definition(
        [
            {
                "id": "P",
                "type": "parallel",
                "branches": [{"id": "b", "type": "decision", "expression": "1 +"}],
            }
        ]
    )
    assert _reason(definition) == "InvalidExpression"


def test_stage_transition_to_unknown_stage():
    definition = _definition(
        stages=[{"id": "draft", "kind": "start"}],
        transitions=[{"from": "draft", "to": "review", "action": "submit"}],
    )
    assert _reason(definition) == "DanglingReference"


def test_duplicate_stage_ids():
    definition = _definition(stages=[{"id": "draft"}, {"id": "draft"}])
    assert _reason(definition) == "DuplicateId"
