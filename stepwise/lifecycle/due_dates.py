"""Due date policies for steps and flows.

Durations are plain fixed-length arithmetic: a day is 24 hours and a week is
7 days, with no calendar or timezone adjustment.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from ..constants import DAY_MS, HOUR_MS, WEEK_MS
from ..contracts import IRModel

logger = logging.getLogger(__name__)

DueUnit = Literal["HOURS", "DAYS", "WEEKS"]

UNIT_MS = {"HOURS": HOUR_MS, "DAYS": DAY_MS, "WEEKS": WEEK_MS}


class RelativeDue(IRModel):
    """Due a fixed duration after the step (or flow) starts."""

    type: Literal["RELATIVE"] = "RELATIVE"
    value: float = Field(ge=0)
    unit: DueUnit


class FixedDue(IRModel):
    type: Literal["FIXED"] = "FIXED"
    date: datetime


class BeforeFlowDue(IRModel):
    """Due a fixed duration before the flow's own deadline."""

    type: Literal["BEFORE_FLOW_DUE"] = "BEFORE_FLOW_DUE"
    value: float = Field(ge=0)
    unit: DueUnit


DuePolicy = Annotated[
    Union[RelativeDue, FixedDue, BeforeFlowDue], Field(discriminator="type")
]
FlowDuePolicy = Annotated[Union[RelativeDue, FixedDue], Field(discriminator="type")]

_STEP_POLICY: TypeAdapter[DuePolicy] = TypeAdapter(DuePolicy)
_FLOW_POLICY: TypeAdapter[FlowDuePolicy] = TypeAdapter(FlowDuePolicy)


def duration(value: float, unit: str) -> timedelta:
    return timedelta(milliseconds=value * UNIT_MS[unit])


def ensure_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _parse(raw: Any, adapter: TypeAdapter) -> Optional[Any]:
    if raw is None:
        return None
    if isinstance(raw, (RelativeDue, FixedDue, BeforeFlowDue)):
        return raw
    if isinstance(raw, dict) and "type" not in raw:
        # Legacy shape: {"value": 2, "unit": "DAYS"}
        raw = {**raw, "type": "RELATIVE"}
    try:
        return adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed due policy {raw!r}: {e.error_count()} error(s)")
        return None


def parse_due_policy(raw: Any) -> Optional[DuePolicy]:
    """Parse a step due policy; malformed input means no due date."""
    return _parse(raw, _STEP_POLICY)


def parse_flow_due_policy(raw: Any) -> Optional[FlowDuePolicy]:
    return _parse(raw, _FLOW_POLICY)


def compute_step_due_at(
    policy: Any,
    started_at: datetime,
    flow_due_at: Optional[datetime] = None,
) -> Optional[datetime]:
    """Compute when a step activated at ``started_at`` falls due."""
    parsed = parse_due_policy(policy)
    if isinstance(parsed, RelativeDue):
        return ensure_utc(started_at) + duration(parsed.value, parsed.unit)
    if isinstance(parsed, FixedDue):
        return ensure_utc(parsed.date)
    if isinstance(parsed, BeforeFlowDue):
        if flow_due_at is None:
            return None
        return ensure_utc(flow_due_at) - duration(parsed.value, parsed.unit)
    return None


def compute_flow_due_at(policy: Any, started_at: datetime) -> Optional[datetime]:
    parsed = parse_flow_due_policy(policy)
    if isinstance(parsed, RelativeDue):
        return ensure_utc(started_at) + duration(parsed.value, parsed.unit)
    if isinstance(parsed, FixedDue):
        return ensure_utc(parsed.date)
    return None
