"""Constants and enums for the schedule execution engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Record action execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduleMode(str, Enum):
    """How often a schedule runs."""

    ONCE = "once"
    RECURRING = "recurring"


class ScheduleStatus(str, Enum):
    """Whether a schedule is picked up by the poller."""

    ACTIVE = "active"
    PAUSED = "paused"


class StepType(str, Enum):
    """Action step types."""

    AI_REASONING = "ai_reasoning"
    WEB_SEARCH = "web_search"
    IMAGE_GENERATION = "image_generation"
    CUSTOM = "custom"


class FailurePolicy(str, Enum):
    """What a step does when its backend fails."""

    RAISE = "raise"
    DEGRADE = "degrade"  # placeholder value per output field


class QueryLogic(str, Enum):
    """How schedule query filters combine."""

    AND = "AND"
    OR = "OR"


class FilterOperator(str, Enum):
    """Structured query filter operators."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"


class OAuthProvider(str, Enum):
    """OAuth providers with stored token bundles."""

    GOOGLE = "google"
    FACEBOOK = "facebook"
    X = "x"
    INSTAGRAM = "instagram"
    THREADS = "threads"


# Providers whose tokens cannot be refreshed; expiry is handled by re-authorization
NON_REFRESHABLE_PROVIDERS = frozenset({OAuthProvider.INSTAGRAM.value, OAuthProvider.THREADS.value})

# Markers that identify an OAuth bootstrap snippet in custom step code
OAUTH_CODE_MARKERS = ("OAUTH_REQUIRED", "requiresOAuth")

FIELD_TYPE_REFERENCE = "reference"
REFERENCE_TO_MANY = "to_many"
