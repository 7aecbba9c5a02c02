"""Policy constants shared across the engine."""

MIN_BRANCH_PATHS = 2
MAX_BRANCH_PATHS = 3
MIN_DECISION_OUTCOMES = 2
MAX_DECISION_OUTCOMES = 3
MAX_BRANCH_NESTING_DEPTH = 2

TERMINATE_STATUSES = ("COMPLETED", "CANCELLED")

DEFAULT_SETTINGS_CACHE_TTL = 60.0

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS
