"""Tests for role assignee resolution."""

import asyncio
import logging

import pytest

from stepwise.contracts import Role
from stepwise.persistence import InMemoryRepository
from stepwise.resolution.assignees import AssigneeResolver, ResolutionContext


class CountingDirectory(InMemoryRepository):
    """In-memory contacts with preset round-robin history keyed by email."""

    def __init__(self, counts=None):
        super().__init__()
        self.counts = dict(counts or {})

    async def count_assignments(self, template_id, contact_id):
        contact = next(c for c in self._contacts.values() if c.contact_id == contact_id)
        return self.counts.get(contact.email, 0)


class FailingDirectory(InMemoryRepository):
    """Directory whose contact lookups fail for selected emails."""

    def __init__(self, failing):
        super().__init__()
        self.failing = set(failing)

    async def find_contact(self, organization_id, email):
        if email in self.failing:
            raise RuntimeError("database unavailable")
        return await super().find_contact(organization_id, email)


def _ctx(**kwargs):
    defaults = {"organization_id": "org-1", "started_by_user_id": "user-1", "template_id": "tpl-1"}
    defaults.update(kwargs)
    return ResolutionContext(**defaults)


def _role(name, resolution):
    return Role.model_validate({"name": name, "resolution": resolution})


async def _email_of(directory, assignee):
    contacts = [c for c in directory._contacts.values() if c.contact_id == assignee.contact_id]
    return contacts[0].email if contacts else None


@pytest.mark.asyncio
async def test_contact_tbd_uses_manual_assignments():
    resolver = AssigneeResolver(InMemoryRepository())
    roles = [_role("Client", {"type": "CONTACT_TBD"}), _role("Other", {"type": "CONTACT_TBD"})]

    resolved = await resolver.resolve_assignees(roles, _ctx(role_assignments={"Client": "c-42"}))

    assert resolved["Client"].contact_id == "c-42"
    assert not resolved["Other"].resolved


@pytest.mark.asyncio
async def test_fixed_contact_finds_or_creates_by_lowercased_email():
    directory = InMemoryRepository()
    resolver = AssigneeResolver(directory)
    role = _role("Owner", {"type": "FIXED_CONTACT", "email": "Jane.Doe@Example.com"})

    first = await resolver.resolve_role(role, _ctx())
    second = await resolver.resolve_role(role, _ctx())

    assert first.contact_id == second.contact_id
    contact = await directory.find_contact("org-1", "jane.doe@example.com")
    assert contact.name == "jane.doe"


@pytest.mark.asyncio
async def test_workspace_initializer_is_the_starting_user():
    resolver = AssigneeResolver(InMemoryRepository())

    resolved = await resolver.resolve_role(_role("Me", {"type": "WORKSPACE_INITIALIZER"}), _ctx())

    assert resolved.user_id == "user-1"
    assert resolved.contact_id is None


@pytest.mark.asyncio
async def test_kickoff_field_and_flow_variable():
    directory = InMemoryRepository()
    resolver = AssigneeResolver(directory)
    roles = [
        _role("Client", {"type": "KICKOFF_FORM_FIELD", "fieldKey": "email"}),
        _role("Partner", {"type": "FLOW_VARIABLE", "variableKey": "partner"}),
        _role("Numeric", {"type": "KICKOFF_FORM_FIELD", "fieldKey": "count"}),
    ]

    resolved = await resolver.resolve_assignees(
        roles,
        _ctx(kickoff_data={"email": "client@x.com", "count": 3}, flow_variables={"partner": "p@x.com"}),
    )

    assert await _email_of(directory, resolved["Client"]) == "client@x.com"
    assert await _email_of(directory, resolved["Partner"]) == "p@x.com"
    assert not resolved["Numeric"].resolved


@pytest.mark.asyncio
async def test_round_robin_picks_least_assigned():
    directory = CountingDirectory({"a@x.com": 2, "b@x.com": 0, "c@x.com": 1})
    resolver = AssigneeResolver(directory)
    role = _role("Agent", {"type": "ROUND_ROBIN", "emails": ["a@x.com", "b@x.com", "c@x.com"]})

    resolved = await resolver.resolve_role(role, _ctx())

    assert await _email_of(directory, resolved) == "b@x.com"


@pytest.mark.asyncio
async def test_round_robin_ties_go_to_first_candidate():
    directory = CountingDirectory({"a@x.com": 1, "b@x.com": 1})
    resolver = AssigneeResolver(directory)
    role = _role("Agent", {"type": "ROUND_ROBIN", "emails": ["b@x.com", "a@x.com", "B@x.com"]})

    resolved = await resolver.resolve_role(role, _ctx())

    assert await _email_of(directory, resolved) == "b@x.com"


@pytest.mark.asyncio
async def test_round_robin_skips_failing_candidates(caplog):
    directory = FailingDirectory({"a@x.com"})
    resolver = AssigneeResolver(directory)
    role = _role("Agent", {"type": "ROUND_ROBIN", "emails": ["a@x.com", "b@x.com"]})

    with caplog.at_level(logging.WARNING):
        resolved = await resolver.resolve_role(role, _ctx())

    assert await _email_of(directory, resolved) == "b@x.com"
    assert "Skipping round-robin candidate a@x.com" in caplog.text


@pytest.mark.asyncio
async def test_concurrent_round_robin_may_pick_same_contact():
    """Concurrent starts read the same counts; fairness catches up afterwards."""
    directory = CountingDirectory()
    resolver = AssigneeResolver(directory)
    role = _role("Agent", {"type": "ROUND_ROBIN", "emails": ["a@x.com", "b@x.com"]})

    first, second = await asyncio.gather(
        resolver.resolve_role(role, _ctx()), resolver.resolve_role(role, _ctx())
    )
    assert first.contact_id == second.contact_id

    directory.counts[await _email_of(directory, first)] = 2
    third = await resolver.resolve_role(role, _ctx())
    assert third.contact_id != first.contact_id


@pytest.mark.asyncio
async def test_rules_first_match_wins_and_default_applies():
    resolver = AssigneeResolver(InMemoryRepository())
    role = _role(
        "Approver",
        {
            "type": "RULES",
            "source": "KICKOFF_FORM_FIELD",
            "fieldKey": "region",
            "rules": [
                {"if": {"contains": "EU"}, "then": {"type": "WORKSPACE_INITIALIZER"}},
                {"if": {"notEmpty": True}, "then": {"type": "CONTACT_TBD"}},
            ],
            "default": {"type": "FIXED_CONTACT", "email": "fallback@x.com"},
        },
    )

    eu = await resolver.resolve_role(role, _ctx(kickoff_data={"region": "west-eu"}))
    manual = await resolver.resolve_role(
        role, _ctx(kickoff_data={"region": "apac"}, role_assignments={"Approver": "c-7"})
    )
    fallback = await resolver.resolve_role(role, _ctx(kickoff_data={"region": ""}))

    assert eu.user_id == "user-1"
    assert manual.contact_id == "c-7"
    assert fallback.contact_id is not None


@pytest.mark.asyncio
async def test_rules_from_step_output_use_empty_value():
    resolver = AssigneeResolver(InMemoryRepository())
    role = _role(
        "Approver",
        {
            "type": "RULES",
            "source": "STEP_OUTPUT",
            "stepOutputRef": "intake.region",
            "rules": [{"if": {"notEmpty": True}, "then": {"type": "WORKSPACE_INITIALIZER"}}],
        },
    )

    assert not (await resolver.resolve_role(role, _ctx())).resolved


@pytest.mark.asyncio
async def test_nested_rules_target_is_unresolved(caplog):
    resolver = AssigneeResolver(InMemoryRepository())
    role = _role(
        "Approver",
        {
            "type": "RULES",
            "source": "FLOW_VARIABLE",
            "variableKey": "tier",
            "rules": [
                {
                    "if": {"equals": "GOLD"},
                    "then": {"type": "ROUND_ROBIN", "emails": ["a@x.com"]},
                }
            ],
        },
    )

    with caplog.at_level(logging.WARNING):
        resolved = await resolver.resolve_role(role, _ctx(flow_variables={"tier": "gold"}))

    assert not resolved.resolved
    assert "is not supported" in caplog.text


@pytest.mark.asyncio
async def test_storage_error_leaves_only_that_role_unresolved():
    resolver = AssigneeResolver(FailingDirectory({"bad@x.com"}))
    roles = [
        _role("Broken", {"type": "FIXED_CONTACT", "email": "bad@x.com"}),
        _role("Fine", {"type": "WORKSPACE_INITIALIZER"}),
    ]

    resolved = await resolver.resolve_assignees(roles, _ctx())

    assert not resolved["Broken"].resolved
    assert resolved["Fine"].user_id == "user-1"


@pytest.mark.asyncio
async def test_rules_contact_tbd_target_reads_manual_assignments():
    resolver = AssigneeResolver(InMemoryRepository())
    role = _role(
        "Reviewer",
        {
            "type": "RULES",
            "source": "FLOW_VARIABLE",
            "variableKey": "tier",
            "rules": [{"if": {"equals": "gold"}, "then": {"type": "CONTACT_TBD"}}],
        },
    )

    chosen = await resolver.resolve_role(
        role, _ctx(flow_variables={"tier": "Gold"}, role_assignments={"Reviewer": "c-5"})
    )
    unassigned = await resolver.resolve_role(role, _ctx(flow_variables={"tier": "gold"}))
    other_role = await resolver.resolve_role(
        role, _ctx(flow_variables={"tier": "gold"}, role_assignments={"Approver": "c-5"})
    )

    assert chosen.contact_id == "c-5"
    assert not unassigned.resolved
    assert not other_role.resolved
