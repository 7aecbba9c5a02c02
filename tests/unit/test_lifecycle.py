"""Tests for step execution state and the lifecycle controller."""

from datetime import datetime, timedelta, timezone

import pytest

from stepwise.contracts import Workflow
from stepwise.exceptions import InvalidStatusTransition
from stepwise.lifecycle import (
    FlowRun,
    NotificationKind,
    NotificationSettings,
    StepExecution,
    StepLifecycleController,
    StepStatus,
    seed_step_executions,
)
from stepwise.resolution.assignees import ResolvedAssignee

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ALL_ON = NotificationSettings(
    reminder_enabled=True, reminder_lead_days=1, overdue_enabled=True, escalation_delay_days=2
)


def _execution(**kwargs):
    defaults = {"flow_run_id": "run-1", "step_id": "s1", "step_type": "TODO"}
    defaults.update(kwargs)
    return StepExecution(**defaults)


def _run():
    workflow = Workflow.model_validate(
        {
            "workflowId": "tpl",
            "name": "Flow",
            "steps": [
                {"stepId": "a", "type": "TODO", "title": "First", "assigneeRole": "Owner"},
                {"stepId": "b", "type": "FORM"},
            ],
        }
    )
    return FlowRun(
        template_id="tpl",
        organization_id="org",
        started_by_user_id="starter",
        name="Flow",
        workflow=workflow,
        role_assignments={"Owner": ResolvedAssignee(contact_id="c-1")},
    )


def test_transitions_stamp_times():
    execution = _execution()

    execution.transition(StepStatus.IN_PROGRESS, NOW)
    assert execution.started_at == NOW
    execution.transition(StepStatus.COMPLETED, NOW + timedelta(hours=1))
    assert execution.completed_at == NOW + timedelta(hours=1)


def test_invalid_transition_raises():
    execution = _execution()
    execution.transition(StepStatus.CANCELLED, NOW)

    with pytest.raises(InvalidStatusTransition) as exc:
        execution.transition(StepStatus.IN_PROGRESS, NOW)
    assert exc.value.current == "CANCELLED"
    assert exc.value.requested == "IN_PROGRESS"


def test_reopening_resets_times_and_bumps_iteration():
    execution = _execution(due_at=NOW)
    execution.transition(StepStatus.IN_PROGRESS, NOW)
    execution.transition(StepStatus.COMPLETED, NOW)

    execution.transition(StepStatus.PENDING, NOW)

    assert execution.iteration == 1
    assert execution.started_at is None
    assert execution.completed_at is None
    assert execution.due_at is None


def test_seed_step_executions_copies_role_assignments():
    run = _run()

    executions = seed_step_executions(run, run.workflow.steps)

    assert [(e.step_id, e.position, e.status) for e in executions] == [
        ("a", 0, StepStatus.PENDING),
        ("b", 1, StepStatus.PENDING),
    ]
    assert executions[0].assigned_contact_id == "c-1"
    assert executions[0].step_name == "First"
    assert executions[1].assignee_id is None


def test_activate_schedules_enabled_events():
    controller = StepLifecycleController(clock=lambda: NOW)
    execution = _execution(started_at=NOW)

    effects = controller.activate(execution, {"type": "RELATIVE", "value": 3, "unit": "DAYS"}, ALL_ON)

    due = NOW + timedelta(days=3)
    assert effects.due_at == due
    assert [(e.kind, e.fire_at) for e in effects.schedule] == [
        ("send-reminder", due - timedelta(days=1)),
        ("check-overdue", due),
        ("escalation", due + timedelta(days=2)),
    ]
    assert effects.schedule[0].event_id == f"send-reminder:{execution.execution_id}"


def test_reminder_in_the_past_is_dropped():
    controller = StepLifecycleController(clock=lambda: NOW)
    execution = _execution(started_at=NOW)

    effects = controller.activate(execution, {"type": "RELATIVE", "value": 12, "unit": "HOURS"}, ALL_ON)

    assert [e.kind for e in effects.schedule] == ["check-overdue", "escalation"]


def test_activate_without_settings_or_policy():
    controller = StepLifecycleController(clock=lambda: NOW)
    execution = _execution(started_at=NOW)

    no_settings = controller.activate(execution, {"value": 1, "unit": "DAYS"}, None)
    no_policy = controller.activate(execution, None, ALL_ON)
    before_flow = controller.activate(execution, {"type": "BEFORE_FLOW_DUE", "value": 1, "unit": "DAYS"}, ALL_ON)

    assert no_settings.due_at == NOW + timedelta(days=1)
    assert no_settings.schedule == []
    assert no_policy.empty
    assert before_flow.empty


def test_existing_due_date_is_kept():
    controller = StepLifecycleController(clock=lambda: NOW)
    fixed = NOW + timedelta(days=10)
    execution = _execution(started_at=NOW, due_at=fixed)

    effects = controller.activate(execution, {"value": 1, "unit": "DAYS"}, ALL_ON)

    assert effects.due_at == fixed


def test_reassign_due_cancels_then_reschedules():
    controller = StepLifecycleController(clock=lambda: NOW)
    execution = _execution(started_at=NOW, due_at=NOW + timedelta(days=1))

    effects = controller.reassign_due(execution, NOW + timedelta(days=5), ALL_ON)

    assert effects.cancel == [execution.execution_id]
    assert effects.due_at == NOW + timedelta(days=5)
    assert len(effects.schedule) == 3


def test_complete_cancels_and_notifies():
    controller = StepLifecycleController()
    execution = _execution()

    effects = controller.complete(execution, recipients=["starter"])

    assert effects.cancel == [execution.execution_id]
    notification = effects.notifications[0]
    assert notification.kind == NotificationKind.STEP_COMPLETED
    assert notification.step_id == "s1"
    assert notification.recipients == ["starter"]


def test_flow_completed_notifies_starter():
    effects = StepLifecycleController().flow_completed(_run())

    assert effects.notifications[0].kind == NotificationKind.FLOW_COMPLETED
    assert effects.notifications[0].recipients == ["starter"]


def test_flow_cancelled_targets_active_assignees():
    active = _execution(status=StepStatus.IN_PROGRESS, assigned_contact_id="c-1")
    waiting = _execution(step_id="s2", status=StepStatus.WAITING_FOR_ASSIGNEE, assigned_user_id="u-2")
    duplicate = _execution(step_id="s3", status=StepStatus.IN_PROGRESS, assigned_contact_id="c-1")
    done = _execution(step_id="s4", status=StepStatus.COMPLETED, assigned_contact_id="c-9")
    executions = [active, waiting, duplicate, done]

    effects = StepLifecycleController().flow_cancelled(_run(), executions)

    assert effects.cancel == [e.execution_id for e in executions]
    assert effects.notifications[0].kind == NotificationKind.FLOW_CANCELLED
    assert effects.notifications[0].recipients == ["c-1", "u-2"]


def test_merge_keeps_order_and_dedupes_cancels():
    controller = StepLifecycleController(clock=lambda: NOW)
    execution = _execution(started_at=NOW)

    merged = controller.complete(execution).merge(controller.complete(execution))

    assert merged.cancel == [execution.execution_id]
    assert len(merged.notifications) == 2


def test_merge_later_cancel_drops_earlier_timers():
    controller = StepLifecycleController(clock=lambda: NOW)
    settings = NotificationSettings(overdue_enabled=True)
    execution = _execution(started_at=NOW)
    other = _execution(step_id="s2", started_at=NOW)

    activated = controller.activate(execution, {"value": 1, "unit": "DAYS"}, settings, now=NOW).merge(
        controller.activate(other, {"value": 1, "unit": "DAYS"}, settings, now=NOW)
    )
    merged = activated.merge(controller.complete(execution))

    assert [e.step_execution_id for e in merged.schedule] == [other.execution_id]

    rescheduled = merged.merge(controller.reassign_due(execution, NOW + timedelta(days=3), settings, NOW))
    assert [e.step_execution_id for e in rescheduled.schedule] == [other.execution_id, execution.execution_id]
