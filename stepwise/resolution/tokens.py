"""Dynamic data reference tokens.

Text may embed ``{Source / Field}`` references that are substituted at run
time::

    {Kickoff / Client Name}     kickoff form answer
    {Role: Client / Email}      assigned contact of a role (Name, Email, Contact ID)
    {Workspace / Name}          organization name (or ID)
    {Intake Form / Budget}      output field of a completed step, by name or id

Braces without the `` / `` separator are ordinary text. Unresolvable tokens
become the empty string, and substituted values are never rescanned.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from ..contracts import IRModel

TOKEN_PATTERN = re.compile(r"\{([^}]+)\}")
SEPARATOR = " / "
ROLE_PREFIX = "Role:"


class ParsedToken(BaseModel):
    token: str
    source: str
    field: str


class RoleAssignment(IRModel):
    """Identity a role resolved to, as exposed to tokens."""

    name: str = ""
    email: str = ""
    contact_id: Optional[str] = None


class WorkspaceInfo(IRModel):
    name: str
    id: str


class EvaluationContext(IRModel):
    """Runtime snapshot that tokens and conditions are evaluated against."""

    kickoff_data: Dict[str, Any] = Field(default_factory=dict)
    role_assignments: Dict[str, RoleAssignment] = Field(default_factory=dict)
    step_outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    workspace: Optional[WorkspaceInfo] = None


class CompletedStep(IRModel):
    step_id: str
    step_name: Optional[str] = None
    result_data: Optional[Dict[str, Any]] = None


def _split(inner: str) -> Optional[tuple[str, str]]:
    position = inner.find(SEPARATOR)
    if position == -1:
        return None
    source = inner[:position].strip()
    field = inner[position + len(SEPARATOR) :].strip()
    if not source or not field:
        return None
    return source, field


def parse_tokens(text: str) -> List[ParsedToken]:
    """Return every well-formed token in ``text`` in order of appearance."""
    tokens = []
    for match in TOKEN_PATTERN.finditer(text or ""):
        parts = _split(match.group(1))
        if parts is not None:
            tokens.append(ParsedToken(token=match.group(0), source=parts[0], field=parts[1]))
    return tokens


def has_tokens(text: str) -> bool:
    return bool(parse_tokens(text))


def stringify(value: Any) -> Optional[str]:
    """Render a context value the way it appears in substituted text."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve_token(source: str, field: str, ctx: EvaluationContext) -> Optional[str]:
    """Look up a single reference; ``None`` when the context lacks it."""

    if source == "Kickoff":
        return stringify(ctx.kickoff_data.get(field))

    if source.startswith(ROLE_PREFIX):
        assignment = ctx.role_assignments.get(source[len(ROLE_PREFIX) :].strip())
        if assignment is None:
            return None
        key = field.lower()
        if key == "name":
            return assignment.name
        if key == "email":
            return assignment.email
        if key in ("contactid", "contact id"):
            return assignment.contact_id
        return None

    if source == "Workspace":
        if ctx.workspace is None:
            return None
        key = field.lower()
        if key == "name":
            return ctx.workspace.name
        if key == "id":
            return ctx.workspace.id
        return None

    outputs = ctx.step_outputs.get(source)
    if outputs is None:
        return None
    return stringify(outputs.get(field))


def resolve(text: str, ctx: EvaluationContext) -> str:
    """Substitute every token in ``text`` in a single pass."""

    def substitute(match: re.Match) -> str:
        parts = _split(match.group(1))
        if parts is None:
            return match.group(0)
        return resolve_token(parts[0], parts[1], ctx) or ""

    if not text:
        return text
    return TOKEN_PATTERN.sub(substitute, text)


def build_evaluation_context(
    kickoff_data: Optional[Dict[str, Any]] = None,
    role_assignments: Optional[Dict[str, Union[RoleAssignment, Dict[str, Any]]]] = None,
    completed_steps: Iterable[Union[CompletedStep, Dict[str, Any]]] = (),
    workspace: Optional[Union[WorkspaceInfo, Dict[str, Any]]] = None,
) -> EvaluationContext:
    """Assemble an ``EvaluationContext`` from a flow run's data.

    Step outputs are keyed by step name, falling back to the step id.
    """

    step_outputs: Dict[str, Dict[str, Any]] = {}
    for item in completed_steps:
        step = item if isinstance(item, CompletedStep) else CompletedStep.model_validate(item)
        if step.result_data:
            step_outputs[step.step_name or step.step_id] = step.result_data

    return EvaluationContext(
        kickoff_data=kickoff_data or {},
        role_assignments=role_assignments or {},
        step_outputs=step_outputs,
        workspace=workspace,
    )
