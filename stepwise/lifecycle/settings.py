"""Per-workflow notification settings and the cache that holds them."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from pydantic import Field, ValidationError

from ..constants import DEFAULT_SETTINGS_CACHE_TTL
from ..contracts import IRModel

logger = logging.getLogger(__name__)


class NotificationSettings(IRModel):
    """Which timed events a step schedules once it has a due date.

    Everything is off unless configured.
    """

    reminder_enabled: bool = False
    reminder_lead_days: float = Field(default=1, ge=0)
    overdue_enabled: bool = False
    escalation_delay_days: Optional[float] = Field(default=None, ge=0)

    @classmethod
    def from_raw(cls, raw: Any) -> "NotificationSettings":
        """Build settings from a flat payload or the nested alert layout::

            {"assignee": {"actionAlerts": {"dueDateApproaching": true,
                                           "dueDateApproachingDays": 2,
                                           "actionDue": true}},
             "coordinator": {"escalationAlerts": {"assigneeNotStartedDays": 1}}}
        """

        if raw is None:
            return cls()
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring notification settings of type {type(raw).__name__}")
            return cls()

        data: Dict[str, Any] = raw
        if "assignee" in raw or "coordinator" in raw:
            alerts = (raw.get("assignee") or {}).get("actionAlerts") or {}
            escalation = (raw.get("coordinator") or {}).get("escalationAlerts") or {}
            data = {
                "reminder_enabled": bool(alerts.get("dueDateApproaching")),
                "overdue_enabled": bool(alerts.get("actionDue")),
                "escalation_delay_days": escalation.get("assigneeNotStartedDays"),
            }
            if alerts.get("dueDateApproachingDays") is not None:
                data["reminder_lead_days"] = alerts["dueDateApproachingDays"]

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed notification settings: {e.error_count()} error(s)")
            return cls()


class SettingsCache:
    """TTL cache of ``NotificationSettings`` owned by the caller.

    ``clock`` returns seconds and defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_SETTINGS_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, NotificationSettings]] = {}

    def get(self, key: Hashable) -> Optional[NotificationSettings]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, settings = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return settings

    def put(self, key: Hashable, settings: NotificationSettings) -> None:
        self._entries[key] = (self._clock() + self.ttl, settings)

    def get_or_load(
        self, key: Hashable, loader: Callable[[], Any]
    ) -> NotificationSettings:
        """Return cached settings, or parse ``loader()`` and cache the result."""
        settings = self.get(key)
        if settings is None:
            settings = NotificationSettings.from_raw(loader())
            self.put(key, settings)
        return settings

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
