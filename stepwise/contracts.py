"""Workflow IR contracts for the stepwise engine.

A workflow is an owned tree: the main path is an ordered list of steps, and
branch/decision steps own ordered nested sequences (paths, outcomes). GOTO and
TERMINATE steps refer to other steps by id instead of by nesting.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class IRModel(BaseModel):
    """Base model accepting camelCase or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepType(str, Enum):
    # Human actions
    FORM = "FORM"
    QUESTIONNAIRE = "QUESTIONNAIRE"
    FILE_REQUEST = "FILE_REQUEST"
    TODO = "TODO"
    APPROVAL = "APPROVAL"
    ACKNOWLEDGEMENT = "ACKNOWLEDGEMENT"
    ESIGN = "ESIGN"
    DECISION = "DECISION"
    CUSTOM_ACTION = "CUSTOM_ACTION"
    WEB_APP = "WEB_APP"
    PDF_FORM = "PDF_FORM"
    # Controls
    SINGLE_CHOICE_BRANCH = "SINGLE_CHOICE_BRANCH"
    MULTI_CHOICE_BRANCH = "MULTI_CHOICE_BRANCH"
    PARALLEL_BRANCH = "PARALLEL_BRANCH"
    GOTO = "GOTO"
    GOTO_DESTINATION = "GOTO_DESTINATION"
    TERMINATE = "TERMINATE"
    WAIT = "WAIT"
    SUB_FLOW = "SUB_FLOW"
    # Automations
    AI_CUSTOM_PROMPT = "AI_CUSTOM_PROMPT"
    AI_EXTRACT = "AI_EXTRACT"
    AI_SUMMARIZE = "AI_SUMMARIZE"
    AI_TRANSCRIBE = "AI_TRANSCRIBE"
    AI_TRANSLATE = "AI_TRANSLATE"
    AI_WRITE = "AI_WRITE"
    SYSTEM_WEBHOOK = "SYSTEM_WEBHOOK"
    SYSTEM_EMAIL = "SYSTEM_EMAIL"
    SYSTEM_CHAT_MESSAGE = "SYSTEM_CHAT_MESSAGE"
    SYSTEM_UPDATE_WORKSPACE = "SYSTEM_UPDATE_WORKSPACE"
    BUSINESS_RULE = "BUSINESS_RULE"
    INTEGRATION_AIRTABLE = "INTEGRATION_AIRTABLE"
    INTEGRATION_CLICKUP = "INTEGRATION_CLICKUP"
    INTEGRATION_DROPBOX = "INTEGRATION_DROPBOX"
    INTEGRATION_GMAIL = "INTEGRATION_GMAIL"
    INTEGRATION_GOOGLE_DRIVE = "INTEGRATION_GOOGLE_DRIVE"
    INTEGRATION_GOOGLE_SHEETS = "INTEGRATION_GOOGLE_SHEETS"
    INTEGRATION_WRIKE = "INTEGRATION_WRIKE"


BRANCH_TYPES = frozenset(
    {
        StepType.SINGLE_CHOICE_BRANCH,
        StepType.MULTI_CHOICE_BRANCH,
        StepType.PARALLEL_BRANCH,
    }
)

AUTOMATION_TYPES = frozenset(
    t
    for t in StepType
    if t.value.startswith(("AI_", "SYSTEM_", "INTEGRATION_"))
    or t is StepType.BUSINESS_RULE
)

LeafStepType = Literal[
    "FORM",
    "QUESTIONNAIRE",
    "FILE_REQUEST",
    "TODO",
    "APPROVAL",
    "ACKNOWLEDGEMENT",
    "ESIGN",
    "CUSTOM_ACTION",
    "WEB_APP",
    "PDF_FORM",
    "GOTO_DESTINATION",
    "WAIT",
    "SUB_FLOW",
    "AI_CUSTOM_PROMPT",
    "AI_EXTRACT",
    "AI_SUMMARIZE",
    "AI_TRANSCRIBE",
    "AI_TRANSLATE",
    "AI_WRITE",
    "SYSTEM_WEBHOOK",
    "SYSTEM_EMAIL",
    "SYSTEM_CHAT_MESSAGE",
    "SYSTEM_UPDATE_WORKSPACE",
    "BUSINESS_RULE",
    "INTEGRATION_AIRTABLE",
    "INTEGRATION_CLICKUP",
    "INTEGRATION_DROPBOX",
    "INTEGRATION_GMAIL",
    "INTEGRATION_GOOGLE_DRIVE",
    "INTEGRATION_GOOGLE_SHEETS",
    "INTEGRATION_WRIKE",
]

TerminateStatus = Literal["COMPLETED", "CANCELLED"]


# ---------------------------------------------------------------------------
# Conditions


class Condition(IRModel):
    """A single branch condition: ``source`` compared to ``value``."""

    source: str
    operator: str
    value: Any = None


class BranchPath(IRModel):
    """One path of a branch step. No condition at all marks the default path."""

    path_id: str
    label: str = ""
    condition: Optional[Condition] = None
    conditions: List[Condition] = Field(default_factory=list)
    condition_logic: Literal["ALL", "ANY"] = "ALL"
    steps: List["Step"] = Field(default_factory=list)

    @property
    def is_default(self) -> bool:
        return self.condition is None and not self.conditions


class DecisionOutcome(IRModel):
    """One outcome a decision step's assignee can choose."""

    outcome_id: str
    label: str = ""
    steps: List["Step"] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Steps


class BaseStep(IRModel):
    step_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    milestone_id: Optional[str] = None
    assignee_role: Optional[str] = None
    due: Optional[dict[str, Any]] = None
    config: dict[str, Any] = Field(default_factory=dict)


class ActionStep(BaseStep):
    """Leaf step: human action, automation, wait or goto destination."""

    type: LeafStepType


class BranchStep(BaseStep):
    type: Literal["SINGLE_CHOICE_BRANCH", "MULTI_CHOICE_BRANCH", "PARALLEL_BRANCH"]
    paths: List[BranchPath] = Field(default_factory=list)


class DecisionStep(BaseStep):
    type: Literal["DECISION"]
    outcomes: List[DecisionOutcome] = Field(default_factory=list)


class GotoStep(BaseStep):
    type: Literal["GOTO"]
    target_step_id: str


class TerminateStep(BaseStep):
    type: Literal["TERMINATE"]
    status: TerminateStatus = "COMPLETED"


Step = Annotated[
    Union[ActionStep, BranchStep, DecisionStep, GotoStep, TerminateStep],
    Field(discriminator="type"),
]


def nested_containers(step: Any) -> list[tuple[str, List[Any]]]:
    """Return ``(container_id, steps)`` for every sequence ``step`` owns."""
    if isinstance(step, BranchStep):
        return [(path.path_id, path.steps) for path in step.paths]
    if isinstance(step, DecisionStep):
        return [(outcome.outcome_id, outcome.steps) for outcome in step.outcomes]
    return []


# ---------------------------------------------------------------------------
# Roles and resolutions


class ContactTbdResolution(IRModel):
    type: Literal["CONTACT_TBD"] = "CONTACT_TBD"


class FixedContactResolution(IRModel):
    type: Literal["FIXED_CONTACT"] = "FIXED_CONTACT"
    email: str


class WorkspaceInitializerResolution(IRModel):
    type: Literal["WORKSPACE_INITIALIZER"] = "WORKSPACE_INITIALIZER"


class KickoffFormFieldResolution(IRModel):
    type: Literal["KICKOFF_FORM_FIELD"] = "KICKOFF_FORM_FIELD"
    field_key: str


class FlowVariableResolution(IRModel):
    type: Literal["FLOW_VARIABLE"] = "FLOW_VARIABLE"
    variable_key: str


class RoundRobinResolution(IRModel):
    type: Literal["ROUND_ROBIN"] = "ROUND_ROBIN"
    emails: List[str] = Field(default_factory=list)


class RuleCondition(IRModel):
    equals: Optional[str] = None
    contains: Optional[str] = None
    not_empty: Optional[bool] = None


class AssigneeRule(IRModel):
    when: RuleCondition = Field(alias="if")
    then: "Resolution"


class RulesResolution(IRModel):
    """First matching rule wins; ``default`` applies when none match."""

    type: Literal["RULES"] = "RULES"
    source: Literal["KICKOFF_FORM_FIELD", "FLOW_VARIABLE", "STEP_OUTPUT"]
    field_key: Optional[str] = None
    variable_key: Optional[str] = None
    step_output_ref: Optional[str] = None
    rules: List[AssigneeRule] = Field(default_factory=list)
    default: Optional["Resolution"] = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_config(cls, data: Any) -> Any:
        # Stored templates nest everything except ``type`` under ``config``.
        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            unwrapped = {k: v for k, v in data.items() if k != "config"}
            unwrapped.update(data["config"])
            return unwrapped
        return data


Resolution = Annotated[
    Union[
        ContactTbdResolution,
        FixedContactResolution,
        WorkspaceInitializerResolution,
        KickoffFormFieldResolution,
        FlowVariableResolution,
        RoundRobinResolution,
        RulesResolution,
    ],
    Field(discriminator="type"),
]


class Role(IRModel):
    """Named placeholder resolved to a concrete assignee at flow start."""

    name: str
    role_id: Optional[str] = None
    resolution: Resolution = Field(default_factory=ContactTbdResolution)


class Contact(IRModel):
    """A person outside the organization's user base who can be assigned steps."""

    contact_id: str
    organization_id: str
    email: str
    name: str


# ---------------------------------------------------------------------------
# Workflow


class Milestone(IRModel):
    milestone_id: str
    name: str
    sequence: int = 0


class Workflow(IRModel):
    """Template (or per-run snapshot) of a workflow."""

    workflow_id: str
    name: str
    steps: List[Step] = Field(default_factory=list)
    milestones: List[Milestone] = Field(default_factory=list)
    roles: List[Role] = Field(default_factory=list)
    flow_due: Optional[dict[str, Any]] = None
    notifications: Optional[dict[str, Any]] = None

    def iter_steps(self) -> Iterator[tuple[Any, List[Any], Optional[Any]]]:
        """Yield ``(step, container, parent_step)`` depth-first in order."""

        def walk(steps: List[Any], parent: Optional[Any]):
            for step in steps:
                yield step, steps, parent
                for _, nested in nested_containers(step):
                    yield from walk(nested, step)

        yield from walk(self.steps, None)

    def step_ids(self) -> list[str]:
        return [step.step_id for step, _, _ in self.iter_steps()]

    def find_role(self, name: str) -> Optional[Role]:
        return next((role for role in self.roles if role.name == name), None)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "Workflow":
        return cls.model_validate_json(data)


BranchPath.model_rebuild()
DecisionOutcome.model_rebuild()
BranchStep.model_rebuild()
DecisionStep.model_rebuild()
AssigneeRule.model_rebuild()
RulesResolution.model_rebuild()
Role.model_rebuild()
Workflow.model_rebuild()
