"""Resolve role placeholders to concrete contacts or users at flow start."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import Field

from ..contracts import (
    AssigneeRule,
    Contact,
    ContactTbdResolution,
    FixedContactResolution,
    FlowVariableResolution,
    IRModel,
    KickoffFormFieldResolution,
    Role,
    RoundRobinResolution,
    RulesResolution,
    WorkspaceInitializerResolution,
)
from .tokens import stringify

logger = logging.getLogger(__name__)


class ContactDirectory(Protocol):
    """Storage the resolver needs for contacts and round-robin history."""

    async def find_contact(self, organization_id: str, email: str) -> Optional[Contact]:
        ...

    async def create_contact(
        self, organization_id: str, email: str, name: str
    ) -> Contact:
        ...

    async def count_assignments(self, template_id: str, contact_id: str) -> int:
        """Step executions assigned to ``contact_id`` across runs of ``template_id``."""
        ...


class ResolutionContext(IRModel):
    organization_id: str
    started_by_user_id: str
    template_id: str
    role_assignments: Dict[str, str] = Field(default_factory=dict)
    kickoff_data: Dict[str, Any] = Field(default_factory=dict)
    flow_variables: Dict[str, Any] = Field(default_factory=dict)


class ResolvedAssignee(IRModel):
    """A contact, an internal user, or neither (unresolved)."""

    contact_id: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return bool(self.contact_id or self.user_id)


def rule_matches(rule: AssigneeRule, value: str) -> bool:
    when = rule.when
    if when.equals is not None:
        return value.lower() == when.equals.lower()
    if when.contains is not None:
        return when.contains.lower() in value.lower()
    if when.not_empty:
        return value.strip() != ""
    return False


class AssigneeResolver:
    """Resolve every role of a template independently.

    A role that cannot be resolved, including one whose storage lookups
    fail, maps to an unresolved assignee instead of failing the batch.
    """

    def __init__(self, directory: ContactDirectory) -> None:
        self.directory = directory

    async def resolve_assignees(
        self, roles: Iterable[Role], ctx: ResolutionContext
    ) -> Dict[str, ResolvedAssignee]:
        resolved: Dict[str, ResolvedAssignee] = {}
        for role in roles:
            try:
                resolved[role.name] = await self.resolve_role(role, ctx)
            except Exception as e:
                logger.warning(f"Failed to resolve role {role.name}: {e}")
                resolved[role.name] = ResolvedAssignee()
            if not resolved[role.name].resolved:
                logger.info(f"Role {role.name} left unresolved")
        return resolved

    async def resolve_role(self, role: Role, ctx: ResolutionContext) -> ResolvedAssignee:
        resolution = role.resolution
        if isinstance(resolution, ContactTbdResolution):
            return self._manual(role.name, ctx)
        if isinstance(resolution, FixedContactResolution):
            return await self._fixed_contact(resolution.email, ctx)
        if isinstance(resolution, WorkspaceInitializerResolution):
            return ResolvedAssignee(user_id=ctx.started_by_user_id)
        if isinstance(resolution, KickoffFormFieldResolution):
            return await self._email_value(ctx.kickoff_data.get(resolution.field_key), ctx)
        if isinstance(resolution, FlowVariableResolution):
            return await self._email_value(
                ctx.flow_variables.get(resolution.variable_key), ctx
            )
        if isinstance(resolution, RoundRobinResolution):
            return await self._round_robin(resolution.emails, ctx)
        if isinstance(resolution, RulesResolution):
            return await self._rules(role.name, resolution, ctx)
        logger.warning(f"Unsupported resolution for role {role.name}: {resolution!r}")
        return ResolvedAssignee()

    # ------------------------------------------------------------------
    # Strategies

    @staticmethod
    def _manual(role_name: str, ctx: ResolutionContext) -> ResolvedAssignee:
        contact_id = ctx.role_assignments.get(role_name)
        return ResolvedAssignee(contact_id=contact_id) if contact_id else ResolvedAssignee()

    async def find_or_create_contact(
        self, email: str, organization_id: str
    ) -> Optional[Contact]:
        """Find a contact by lower-cased email, creating it when missing."""
        email = (email or "").strip().lower()
        if not email:
            return None
        contact = await self.directory.find_contact(organization_id, email)
        if contact is not None:
            return contact
        logger.info(f"Creating contact {email} in organization {organization_id}")
        return await self.directory.create_contact(
            organization_id, email, email.split("@")[0]
        )

    async def _fixed_contact(self, email: str, ctx: ResolutionContext) -> ResolvedAssignee:
        contact = await self.find_or_create_contact(email, ctx.organization_id)
        if contact is None:
            return ResolvedAssignee()
        return ResolvedAssignee(contact_id=contact.contact_id)

    async def _email_value(self, value: Any, ctx: ResolutionContext) -> ResolvedAssignee:
        if not value or not isinstance(value, str):
            return ResolvedAssignee()
        return await self._fixed_contact(value, ctx)

    async def _round_robin(
        self, emails: List[str], ctx: ResolutionContext
    ) -> ResolvedAssignee:
        candidates: List[str] = []
        for email in emails:
            try:
                contact = await self.find_or_create_contact(email, ctx.organization_id)
            except Exception as e:
                logger.warning(f"Skipping round-robin candidate {email}: {e}")
                continue
            if contact is not None and contact.contact_id not in candidates:
                candidates.append(contact.contact_id)

        if not candidates:
            return ResolvedAssignee()
        if len(candidates) == 1:
            return ResolvedAssignee(contact_id=candidates[0])

        counts = {
            contact_id: await self.directory.count_assignments(ctx.template_id, contact_id)
            for contact_id in candidates
        }
        # min() keeps the first of equal counts, preserving candidate order.
        chosen = min(candidates, key=lambda contact_id: counts[contact_id])
        logger.debug(f"Round-robin picked {chosen} from counts {counts}")
        return ResolvedAssignee(contact_id=chosen)

    async def _rules(
        self, role_name: str, resolution: RulesResolution, ctx: ResolutionContext
    ) -> ResolvedAssignee:
        value = ""
        if resolution.source == "KICKOFF_FORM_FIELD" and resolution.field_key:
            value = stringify(ctx.kickoff_data.get(resolution.field_key)) or ""
        elif resolution.source == "FLOW_VARIABLE" and resolution.variable_key:
            value = stringify(ctx.flow_variables.get(resolution.variable_key)) or ""
        # STEP_OUTPUT: no step has produced output when a flow starts.

        for rule in resolution.rules:
            if rule_matches(rule, value):
                return await self._rule_target(role_name, rule.then, ctx)
        if resolution.default is not None:
            return await self._rule_target(role_name, resolution.default, ctx)
        return ResolvedAssignee()

    async def _rule_target(
        self, role_name: str, target: Any, ctx: ResolutionContext
    ) -> ResolvedAssignee:
        if isinstance(target, FixedContactResolution):
            return await self._fixed_contact(target.email, ctx)
        if isinstance(target, WorkspaceInitializerResolution):
            return ResolvedAssignee(user_id=ctx.started_by_user_id)
        if isinstance(target, ContactTbdResolution):
            return self._manual(role_name, ctx)
        logger.warning(
            f"Role {role_name}: rule target {target.type} is not supported, leaving unresolved"
        )
        return ResolvedAssignee()
