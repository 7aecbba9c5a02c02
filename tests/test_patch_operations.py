"""Tests for applying patch operations to workflows."""

import pytest

from stepwise.config import StructureLimits
from stepwise.contracts import Workflow
from stepwise.engine import apply_operations
from stepwise.exceptions import DuplicateStepIdError
from stepwise.operations import AddStepAfter, RemoveStep, parse_operations


def _todo(step_id):
    return {"stepId": step_id, "type": "TODO", "title": step_id.upper()}


def _workflow(steps=None, **extra):
    return Workflow.model_validate(
        {"workflowId": "wf", "name": "Onboarding", "steps": steps or [], **extra}
    )


def _branch_workflow(path_count=2):
    return _workflow(
        [
            _todo("a"),
            {
                "stepId": "b",
                "type": "MULTI_CHOICE_BRANCH",
                "paths": [
                    {"pathId": f"p{i}", "steps": [_todo(f"p{i}-s1")]}
                    for i in range(1, path_count + 1)
                ],
            },
        ]
    )


def _decision_workflow():
    return _workflow(
        [
            {
                "stepId": "d",
                "type": "DECISION",
                "outcomes": [
                    {"outcomeId": "yes", "label": "Yes", "steps": [_todo("y1")]},
                    {"outcomeId": "no", "label": "No"},
                ],
            }
        ]
    )


def _ids(steps):
    return [step.step_id for step in steps]


def test_later_operations_see_earlier_insertions():
    workflow = _workflow([_todo("a")])

    result = apply_operations(
        workflow,
        [
            {"op": "ADD_STEP_AFTER", "afterStepId": "a", "step": _todo("x")},
            {"op": "ADD_STEP_AFTER", "afterStepId": "x", "step": _todo("y")},
        ],
    )

    assert result.success
    assert _ids(result.workflow.steps) == ["a", "x", "y"]


def test_failed_operation_does_not_abort_batch():
    workflow = _workflow([_todo("a")])

    result = apply_operations(
        workflow,
        [
            AddStepAfter(after_step_id="a", step=_todo("x")),
            RemoveStep(step_id="missing"),
            {"op": "ADD_STEP_BEFORE", "beforeStepId": "a", "step": _todo("z")},
        ],
    )

    assert [r.success for r in result.results] == [True, False, True]
    assert result.results[1].error == "Step not found: missing"
    assert not result.success
    assert result.failures == [result.results[1]]
    assert _ids(result.workflow.steps) == ["z", "a", "x"]


def test_input_workflow_is_not_mutated():
    workflow = _workflow([_todo("a")])

    apply_operations(workflow, [{"op": "REMOVE_STEP", "stepId": "a"}])

    assert _ids(workflow.steps) == ["a"]


def test_invalid_payload_is_reported_not_raised():
    workflow = _workflow([_todo("a")])

    result = apply_operations(
        workflow,
        [{"op": "ADD_STEP_AFTER", "afterStepId": "a"}, {"op": "EXPLODE"}],
    )

    assert [r.success for r in result.results] == [False, False]
    assert result.results[0].op == "ADD_STEP_AFTER"
    assert result.results[0].error.startswith("Invalid operation")


def test_duplicate_ids_in_input_raise():
    workflow = _workflow([_todo("a"), _todo("a")])

    with pytest.raises(DuplicateStepIdError):
        apply_operations(workflow, [])


def test_insert_with_existing_id_fails():
    workflow = _branch_workflow()

    result = apply_operations(
        workflow,
        [
            {"op": "ADD_STEP_AFTER", "afterStepId": "a", "step": _todo("p1-s1")},
            {
                "op": "ADD_STEP_AFTER",
                "afterStepId": "a",
                "step": {
                    "stepId": "new-branch",
                    "type": "PARALLEL_BRANCH",
                    "paths": [
                        {"pathId": "x", "steps": [_todo("a")]},
                        {"pathId": "y"},
                    ],
                },
            },
        ],
    )

    assert [r.error for r in result.results] == [
        "Duplicate step id: p1-s1",
        "Duplicate step id: a",
    ]
    assert _ids(result.workflow.steps) == ["a", "b"]


def test_insert_malformed_branch_fails():
    workflow = _workflow([_todo("a")])

    result = apply_operations(
        workflow,
        [
            {
                "op": "ADD_STEP_AFTER",
                "afterStepId": "a",
                "step": {"stepId": "b", "type": "PARALLEL_BRANCH", "paths": [{"pathId": "only"}]},
            }
        ],
    )

    assert not result.success
    assert "at least 2 paths" in result.results[0].error


def test_update_and_move_main_path_steps():
    workflow = _workflow([_todo("a"), _todo("b"), _todo("c")])

    result = apply_operations(
        workflow,
        [
            {"op": "UPDATE_STEP", "stepId": "b", "updates": {"title": "Renamed", "assigneeRole": "Owner"}},
            {"op": "MOVE_STEP", "stepId": "c", "afterStepId": None},
            {"op": "MOVE_STEP", "stepId": "a", "afterStepId": "missing"},
        ],
    )

    assert [r.success for r in result.results] == [True, True, False]
    assert _ids(result.workflow.steps) == ["c", "a", "b"]
    updated = result.workflow.steps[2]
    assert updated.title == "Renamed"
    assert updated.assignee_role == "Owner"


def test_update_cannot_change_step_id_to_existing_one():
    workflow = _workflow([_todo("a"), _todo("b")])

    result = apply_operations(workflow, [{"op": "UPDATE_STEP", "stepId": "b", "updates": {"stepId": "a"}}])

    assert result.results[0].error == "Duplicate step id: a"
    assert _ids(result.workflow.steps) == ["a", "b"]


def test_update_into_invalid_shape_fails():
    workflow = _workflow([_todo("a")])

    result = apply_operations(workflow, [{"op": "UPDATE_STEP", "stepId": "a", "updates": {"type": "GOTO"}}])

    assert not result.success
    assert result.results[0].error.startswith("Invalid update for step a")


def test_update_with_unknown_field_fails():
    workflow = _workflow([_todo("a")])

    result = apply_operations(
        workflow,
        [
            {"op": "UPDATE_STEP", "stepId": "a", "updates": {"titel": "x", "title": "Kept?"}},
            {"op": "UPDATE_STEP", "stepId": "a", "updates": {"milestoneId": None, "description": "ok"}},
        ],
    )

    assert result.results[0].error == "Invalid update for step a: unknown field(s) titel"
    assert result.results[1].success
    assert result.workflow.steps[0].title == "A"
    assert result.workflow.steps[0].description == "ok"


def test_path_step_operations():
    workflow = _branch_workflow()

    result = apply_operations(
        workflow,
        [
            {"op": "ADD_PATH_STEP_AFTER", "branchStepId": "b", "pathId": "p1", "afterStepId": "p1-s1", "step": _todo("p1-s2")},
            {"op": "ADD_PATH_STEP_AFTER", "branchStepId": "b", "pathId": "p1", "step": _todo("p1-s0")},
            {"op": "ADD_PATH_STEP_BEFORE", "branchStepId": "b", "pathId": "p2", "beforeStepId": "p2-s1", "step": _todo("p2-s0")},
            {"op": "UPDATE_PATH_STEP", "branchStepId": "b", "pathId": "p1", "stepId": "p1-s2", "updates": {"title": "Second"}},
            {"op": "MOVE_PATH_STEP", "branchStepId": "b", "pathId": "p1", "stepId": "p1-s0", "afterStepId": "p1-s2"},
            {"op": "REMOVE_PATH_STEP", "branchStepId": "b", "pathId": "p2", "stepId": "p2-s1"},
            {"op": "REMOVE_PATH_STEP", "branchStepId": "b", "pathId": "nope", "stepId": "p2-s1"},
            {"op": "REMOVE_PATH_STEP", "branchStepId": "a", "pathId": "p1", "stepId": "p1-s1"},
        ],
    )

    assert [r.success for r in result.results] == [True] * 6 + [False, False]
    assert result.results[6].error == "Path not found: nope"
    assert result.results[7].error == "Branch step not found: a"
    p1, p2 = result.workflow.steps[1].paths
    assert _ids(p1.steps) == ["p1-s1", "p1-s2", "p1-s0"]
    assert p1.steps[1].title == "Second"
    assert _ids(p2.steps) == ["p2-s0"]


def test_removing_branch_path_respects_minimum():
    two = apply_operations(
        _branch_workflow(2), [{"op": "REMOVE_BRANCH_PATH", "branchStepId": "b", "pathId": "p2"}]
    )
    three = apply_operations(
        _branch_workflow(3), [{"op": "REMOVE_BRANCH_PATH", "branchStepId": "b", "pathId": "p2"}]
    )

    assert not two.success
    assert "minimum of 2 paths" in two.results[0].error
    assert len(two.workflow.steps[1].paths) == 2
    assert three.success
    assert [p.path_id for p in three.workflow.steps[1].paths] == ["p1", "p3"]


def test_adding_branch_path_respects_maximum_and_unique_ids():
    result = apply_operations(
        _branch_workflow(2),
        [
            {"op": "ADD_BRANCH_PATH", "branchStepId": "b", "path": {"pathId": "p1"}},
            {"op": "ADD_BRANCH_PATH", "branchStepId": "b", "path": {"pathId": "p3", "steps": [_todo("p3-s1")]}},
            {"op": "ADD_BRANCH_PATH", "branchStepId": "b", "path": {"pathId": "p4"}},
        ],
    )

    assert [r.success for r in result.results] == [False, True, False]
    assert result.results[0].error == "Path already exists: p1"
    assert "maximum of 3 paths" in result.results[2].error


def test_update_branch_path_condition():
    result = apply_operations(
        _branch_workflow(),
        [
            {
                "op": "UPDATE_BRANCH_PATH_CONDITION",
                "branchStepId": "b",
                "pathId": "p1",
                "condition": {"source": "{Kickoff / Tier}", "operator": "equals", "value": "gold"},
            },
            {"op": "UPDATE_BRANCH_PATH_CONDITION", "branchStepId": "b", "pathId": "p2", "condition": None},
        ],
    )

    assert result.success
    p1, p2 = result.workflow.steps[1].paths
    assert p1.condition.value == "gold"
    assert p2.is_default


def test_decision_outcome_operations():
    result = apply_operations(
        _decision_workflow(),
        [
            {"op": "ADD_DECISION_OUTCOME", "decisionStepId": "d", "outcome": {"outcomeId": "maybe", "label": "Maybe"}},
            {"op": "ADD_DECISION_OUTCOME", "decisionStepId": "d", "outcome": {"outcomeId": "never"}},
            {"op": "UPDATE_DECISION_OUTCOME_LABEL", "decisionStepId": "d", "outcomeId": "no", "label": "Nope"},
            {"op": "ADD_OUTCOME_STEP_BEFORE", "decisionStepId": "d", "outcomeId": "yes", "beforeStepId": "y1", "step": _todo("y0")},
            {"op": "ADD_OUTCOME_STEP_AFTER", "decisionStepId": "d", "outcomeId": "no", "step": _todo("n1")},
            {"op": "UPDATE_OUTCOME_STEP", "decisionStepId": "d", "outcomeId": "no", "stepId": "n1", "updates": {"title": "Notify"}},
            {"op": "MOVE_OUTCOME_STEP", "decisionStepId": "d", "outcomeId": "yes", "stepId": "y0", "afterStepId": "y1"},
            {"op": "REMOVE_OUTCOME_STEP", "decisionStepId": "d", "outcomeId": "yes", "stepId": "y1"},
            {"op": "REMOVE_DECISION_OUTCOME", "decisionStepId": "d", "outcomeId": "maybe"},
            {"op": "REMOVE_DECISION_OUTCOME", "decisionStepId": "d", "outcomeId": "no"},
            {"op": "REMOVE_OUTCOME_STEP", "decisionStepId": "x", "outcomeId": "yes", "stepId": "y0"},
        ],
    )

    assert [r.success for r in result.results] == [
        True, False, True, True, True, True, True, True, True, False, False
    ]
    assert "maximum of 3 outcomes" in result.results[1].error
    assert "minimum of 2 outcomes" in result.results[9].error
    assert result.results[10].error == "Decision step not found: x"
    yes, no = result.workflow.steps[0].outcomes
    assert _ids(yes.steps) == ["y0"]
    assert no.label == "Nope"
    assert no.steps[0].title == "Notify"


def test_terminate_and_goto_updates_check_step_type():
    workflow = _workflow(
        [
            _todo("a"),
            {"stepId": "g", "type": "GOTO", "targetStepId": "a"},
            {"stepId": "t", "type": "TERMINATE"},
        ]
    )

    result = apply_operations(
        workflow,
        [
            {"op": "UPDATE_TERMINATE_STATUS", "stepId": "t", "status": "CANCELLED"},
            {"op": "UPDATE_TERMINATE_STATUS", "stepId": "a", "status": "CANCELLED"},
            {"op": "UPDATE_GOTO_TARGET", "stepId": "g", "targetStepId": "t"},
            {"op": "UPDATE_GOTO_TARGET", "stepId": "t", "targetStepId": "a"},
        ],
    )

    assert [r.success for r in result.results] == [True, False, True, False]
    assert result.results[1].error == "Step is not a TERMINATE step: a"
    assert result.results[3].error == "Step is not a GOTO step: t"
    assert result.workflow.steps[2].status == "CANCELLED"
    assert result.workflow.steps[1].target_step_id == "t"


def test_terminate_status_limited_by_configuration():
    workflow = _workflow([{"stepId": "t", "type": "TERMINATE"}])
    limits = StructureLimits(terminate_statuses=["COMPLETED"])

    result = apply_operations(
        workflow, [{"op": "UPDATE_TERMINATE_STATUS", "stepId": "t", "status": "CANCELLED"}], limits
    )

    assert result.results[0].error == "Invalid terminate status: CANCELLED"


def test_milestones_stay_sorted_and_in_use_ones_are_kept():
    workflow = _workflow(
        [{"stepId": "a", "type": "TODO", "milestoneId": "m2"}],
        milestones=[{"milestoneId": "m2", "name": "Second", "sequence": 2}],
    )

    result = apply_operations(
        workflow,
        [
            {"op": "ADD_MILESTONE", "milestone": {"milestoneId": "m1", "name": "First", "sequence": 1}},
            {"op": "ADD_MILESTONE", "milestone": {"milestoneId": "m1", "name": "Again"}},
            {"op": "ADD_MILESTONE", "milestone": {"milestoneId": "m3", "name": "Third", "sequence": 3}},
            {"op": "UPDATE_MILESTONE", "milestoneId": "m3", "updates": {"sequence": 0, "name": "Zero"}},
            {"op": "REMOVE_MILESTONE", "milestoneId": "m2"},
            {"op": "REMOVE_MILESTONE", "milestoneId": "m1"},
        ],
    )

    assert [r.success for r in result.results] == [True, False, True, True, False, True]
    assert result.results[1].error == "Milestone already exists: m1"
    assert result.results[4].error == "Cannot remove milestone m2: 1 steps are assigned to it"
    assert [(m.milestone_id, m.name) for m in result.workflow.milestones] == [
        ("m3", "Zero"),
        ("m2", "Second"),
    ]


def test_flow_name_and_roles():
    workflow = _workflow([{"stepId": "a", "type": "TODO", "assigneeRole": "Owner"}], roles=[{"name": "Owner"}])

    result = apply_operations(
        workflow,
        [
            {"op": "UPDATE_FLOW_NAME", "name": "  "},
            {"op": "UPDATE_FLOW_NAME", "name": "Renamed"},
            {"op": "ADD_ROLE", "name": "Owner"},
            {"op": "ADD_ROLE", "name": "Reviewer", "resolution": {"type": "WORKSPACE_INITIALIZER"}},
            {"op": "REMOVE_ROLE", "name": "Owner"},
            {"op": "UPDATE_ROLE", "name": "Owner", "newName": "Lead"},
            {"op": "REMOVE_ROLE", "name": "Reviewer"},
        ],
    )

    assert [r.success for r in result.results] == [False, True, False, True, False, True, True]
    assert result.workflow.name == "Renamed"
    assert [role.name for role in result.workflow.roles] == ["Lead"]
    assert result.workflow.steps[0].assignee_role == "Lead"


def test_parse_operations_accepts_mixed_input():
    ops = parse_operations([RemoveStep(step_id="a"), {"op": "UPDATE_FLOW_NAME", "name": "x"}])

    assert [op.op for op in ops] == ["REMOVE_STEP", "UPDATE_FLOW_NAME"]
