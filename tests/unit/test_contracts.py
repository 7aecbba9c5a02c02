"""Tests for the workflow IR models."""

import pytest
from pydantic import ValidationError

from stepwise.contracts import (
    ActionStep,
    BranchStep,
    DecisionStep,
    FixedContactResolution,
    GotoStep,
    RulesResolution,
    TerminateStep,
    Workflow,
)


def _payload():
    return {
        "workflowId": "wf-1",
        "name": "Client onboarding",
        "steps": [
            {"stepId": "intake", "type": "FORM", "title": "Intake"},
            {
                "stepId": "route",
                "type": "SINGLE_CHOICE_BRANCH",
                "paths": [
                    {
                        "pathId": "us",
                        "label": "US",
                        "condition": {
                            "source": "{Kickoff / Country}",
                            "operator": "equals",
                            "value": "USA",
                        },
                        "steps": [{"stepId": "w9", "type": "FILE_REQUEST"}],
                    },
                    {"pathId": "other", "label": "Other", "steps": []},
                ],
            },
            {
                "stepId": "review",
                "type": "DECISION",
                "outcomes": [
                    {"outcomeId": "ok", "label": "Approve"},
                    {
                        "outcomeId": "redo",
                        "label": "Rework",
                        "steps": [
                            {"stepId": "back", "type": "GOTO", "targetStepId": "intake"}
                        ],
                    },
                ],
            },
            {"stepId": "done", "type": "TERMINATE", "status": "COMPLETED"},
        ],
        "roles": [
            {
                "name": "Client",
                "resolution": {"type": "FIXED_CONTACT", "email": "a@b.com"},
            }
        ],
    }


def test_workflow_parses_camel_case_and_discriminates_steps():
    workflow = Workflow.model_validate(_payload())

    intake, route, review, done = workflow.steps
    assert isinstance(intake, ActionStep)
    assert isinstance(route, BranchStep)
    assert isinstance(review, DecisionStep)
    assert isinstance(done, TerminateStep)
    assert route.paths[0].condition.value == "USA"
    assert route.paths[1].is_default
    assert isinstance(review.outcomes[1].steps[0], GotoStep)
    assert isinstance(workflow.roles[0].resolution, FixedContactResolution)


def test_unknown_step_type_is_rejected():
    payload = _payload()
    payload["steps"][0]["type"] = "TELEPORT"
    with pytest.raises(ValidationError):
        Workflow.model_validate(payload)


def test_iter_steps_walks_depth_first_with_parents():
    workflow = Workflow.model_validate(_payload())

    walked = [(step.step_id, parent.step_id if parent else None) for step, _, parent in workflow.iter_steps()]
    assert walked == [
        ("intake", None),
        ("route", None),
        ("w9", "route"),
        ("review", None),
        ("back", "review"),
        ("done", None),
    ]
    assert workflow.step_ids() == ["intake", "route", "w9", "review", "back", "done"]


def test_json_uses_camel_case_aliases():
    workflow = Workflow.model_validate(_payload())

    restored = Workflow.from_json(workflow.to_json())
    assert '"workflowId":"wf-1"' in workflow.to_json()
    assert restored == workflow


def test_rules_resolution_accepts_config_wrapper():
    rules = RulesResolution.model_validate(
        {
            "type": "RULES",
            "config": {
                "source": "KICKOFF_FORM_FIELD",
                "fieldKey": "region",
                "rules": [
                    {
                        "if": {"equals": "emea"},
                        "then": {"type": "FIXED_CONTACT", "email": "emea@x.com"},
                    }
                ],
                "default": {"type": "WORKSPACE_INITIALIZER"},
            },
        }
    )

    assert rules.field_key == "region"
    assert rules.rules[0].when.equals == "emea"
    assert rules.default.type == "WORKSPACE_INITIALIZER"
