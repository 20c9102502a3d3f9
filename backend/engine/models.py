"""Domain types for schedules, records, actions and executions.

These are plain dataclasses. ``from_dict`` accepts the camelCase JSON shape
stored in agent definitions and sent by the UI, so the engine can be fed
either by the SQL services or directly from JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from core.constants import (
    FIELD_TYPE_REFERENCE,
    REFERENCE_TO_MANY,
    QueryLogic,
    ScheduleMode,
    ScheduleStatus,
)


# ─── Queries ──────────────────────────────────────────────────

@dataclass(frozen=True)
class ScheduleFilter:
    """One ``field operator value`` predicate."""
    field: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleFilter":
        return cls(
            field=str(data.get("field", "")),
            operator=str(data.get("operator", "")),
            value=data.get("value"),
        )

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class ScheduleQuery:
    """Structured query: filters combined with AND / OR."""
    filters: tuple = ()
    logic: str = QueryLogic.AND.value

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleQuery":
        filters = tuple(
            ScheduleFilter.from_dict(f) for f in (data.get("filters") or []) if isinstance(f, dict)
        )
        logic = str(data.get("logic") or QueryLogic.AND.value).upper()
        return cls(filters=filters, logic=logic)

    def to_dict(self) -> dict:
        return {"filters": [f.to_dict() for f in self.filters], "logic": self.logic}


QueryLike = Union[ScheduleQuery, str, None]


def parse_query(raw: Any) -> QueryLike:
    """Normalize a stored query into a ScheduleQuery, a legacy string, or None."""
    if raw is None or isinstance(raw, (ScheduleQuery, str)):
        return raw
    if isinstance(raw, dict) and "filters" in raw:
        return ScheduleQuery.from_dict(raw)
    # Objects without filters impose no constraint
    return None


def query_to_wire(query: QueryLike) -> Any:
    """Render a query the way it is stored and streamed."""
    if isinstance(query, ScheduleQuery):
        return query.to_dict()
    return query


# ─── Schedules ────────────────────────────────────────────────

@dataclass
class ScheduleStep:
    """One {model, query, action} triple of a schedule."""
    id: str
    order: int
    model_id: str
    action_id: str
    query: QueryLike = None
    model_name: Optional[str] = None
    action_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleStep":
        return cls(
            id=str(data.get("id", "")),
            order=int(data.get("order", 0)),
            model_id=str(data.get("modelId", data.get("model_id", ""))),
            action_id=str(data.get("actionId", data.get("action_id", ""))),
            query=parse_query(data.get("query")),
            model_name=data.get("modelName", data.get("model_name")),
            action_name=data.get("actionName", data.get("action_name")),
        )


@dataclass
class Schedule:
    """A named, ordered list of steps run as one unit."""
    id: str
    name: str
    agent_id: Optional[str] = None
    mode: str = ScheduleMode.ONCE.value
    interval_hours: Optional[float] = None
    status: str = ScheduleStatus.ACTIVE.value
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    steps: list = field(default_factory=list)

    def sorted_steps(self) -> list:
        """Steps in ascending ``order``. Ties keep their declared order."""
        return sorted(self.steps, key=lambda s: s.order)

    @classmethod
    def from_dict(cls, data: dict) -> "Schedule":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name") or "Untitled Schedule",
            agent_id=data.get("agentId", data.get("agent_id")),
            mode=data.get("mode", ScheduleMode.ONCE.value),
            interval_hours=data.get("intervalHours", data.get("interval_hours")),
            status=data.get("status", ScheduleStatus.ACTIVE.value),
            steps=[ScheduleStep.from_dict(s) for s in data.get("steps", [])],
        )


# ─── Data models & records ────────────────────────────────────

@dataclass
class FieldDefinition:
    """A field declared on a data model."""
    name: str
    type: str = "text"
    title: Optional[str] = None
    description: Optional[str] = None
    reference_type: Optional[str] = None
    references_model: Optional[str] = None  # referenced model *name*

    @property
    def is_to_many(self) -> bool:
        return (
            self.type == FIELD_TYPE_REFERENCE
            and self.reference_type == REFERENCE_TO_MANY
            and bool(self.references_model)
        )

    @classmethod
    def from_dict(cls, data: dict) -> "FieldDefinition":
        return cls(
            name=data["name"],
            type=data.get("type", "text"),
            title=data.get("title"),
            description=data.get("description"),
            reference_type=data.get("referenceType", data.get("reference_type")),
            references_model=data.get("referencesModel", data.get("references_model")),
        )


@dataclass
class ModelDefinition:
    """A user-defined data model (e.g. Lead, Post)."""
    id: str
    name: str
    fields: list = field(default_factory=list)

    def get_field(self, name: str) -> Optional[FieldDefinition]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "ModelDefinition":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            fields=[FieldDefinition.from_dict(f) for f in data.get("fields", [])],
        )


@dataclass
class Record:
    """One row of a user-defined model."""
    id: str
    model_id: str
    data: dict = field(default_factory=dict)
    deleted_at: Optional[datetime] = None

    @property
    def is_alive(self) -> bool:
        return self.deleted_at is None


# ─── Actions & connections ────────────────────────────────────

@dataclass
class ActionStep:
    """One step of an action's pipeline."""
    name: str
    type: str
    input_fields: list = field(default_factory=list)
    output_fields: list = field(default_factory=list)
    config: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ActionStep":
        config = dict(data.get("config") or {})
        return cls(
            name=data.get("name") or data.get("type", "step"),
            type=data.get("type", ""),
            input_fields=list(data.get("inputFields") or config.get("inputFields") or []),
            output_fields=list(data.get("outputFields") or config.get("outputFields") or []),
            config=config,
        )


@dataclass
class Action:
    """An ordered pipeline of steps run against one record of ``model_id``."""
    id: str
    name: str
    model_id: str
    steps: list = field(default_factory=list)
    requires_connection: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            model_id=str(data.get("modelId", data.get("model_id", ""))),
            steps=[ActionStep.from_dict(s) for s in data.get("steps", [])],
            requires_connection=data.get("requiresConnection", data.get("requires_connection")),
        )


@dataclass
class Connection:
    """An OAuth connection whose token bundle is stored in a record field."""
    id: str
    provider: str
    field_name: str
    title: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Connection":
        return cls(
            id=str(data["id"]),
            provider=data["provider"],
            field_name=data.get("fieldName", data.get("field_name", "")),
            title=data.get("title") or data["provider"],
        )


@dataclass
class Agent:
    """The workspace a schedule runs in: models, actions and connections."""
    id: str
    name: str = ""
    models: list = field(default_factory=list)
    actions: list = field(default_factory=list)
    connections: list = field(default_factory=list)

    def find_model(self, model_id: str) -> Optional[ModelDefinition]:
        return next((m for m in self.models if m.id == model_id), None)

    def find_model_by_name(self, name: str) -> Optional[ModelDefinition]:
        return next((m for m in self.models if m.name == name), None)

    def find_action(self, action_id: str) -> Optional[Action]:
        return next((a for a in self.actions if a.id == action_id), None)

    def find_connection(self, connection_id: str) -> Optional[Connection]:
        return next((c for c in self.connections if c.id == connection_id), None)

    def relationship_field(self, model_id: str, field_name: str) -> Optional[FieldDefinition]:
        """The to-many relationship field ``field_name`` on ``model_id``, if any."""
        model = self.find_model(model_id)
        if model is None:
            return None
        f = model.get_field(field_name)
        return f if f is not None and f.is_to_many else None

    def back_reference_field(self, child: ModelDefinition, parent: ModelDefinition) -> Optional[FieldDefinition]:
        """The field on ``child`` that references ``parent``."""
        for f in child.fields:
            if f.type == FIELD_TYPE_REFERENCE and f.references_model == parent.name:
                return f
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "Agent":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            models=[ModelDefinition.from_dict(m) for m in data.get("models", [])],
            actions=[Action.from_dict(a) for a in data.get("actions", [])],
            connections=[Connection.from_dict(c) for c in data.get("connections", [])],
        )


# ─── Execution results ────────────────────────────────────────

@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by a backend call."""
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            total_tokens=self.total_tokens + other.total_tokens,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    @classmethod
    def from_counts(cls, input_tokens: int = 0, output_tokens: int = 0) -> "TokenUsage":
        input_tokens = input_tokens or 0
        output_tokens = output_tokens or 0
        return cls(
            total_tokens=input_tokens + output_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def to_dict(self) -> dict:
        return {
            "totalTokens": self.total_tokens,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }


@dataclass(frozen=True)
class OAuthRequirement:
    """Returned by an OAuth bootstrap step: the user must authorize first."""
    provider: str
    scopes: tuple = ()
    output_field: Optional[str] = None
    requires_existing: bool = False

    def to_dict(self) -> dict:
        return {
            "requiresOAuth": True,
            "provider": self.provider,
            "scopes": list(self.scopes),
            "outputField": self.output_field,
            "requiresExisting": self.requires_existing,
        }


@dataclass
class StepOutput:
    """What a step executor returns."""
    outputs: dict = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)
    oauth_requirement: Optional[OAuthRequirement] = None
    degraded: bool = False


@dataclass
class StepRecord:
    """One executed action step, kept in the execution result."""
    step_name: str
    step_type: str
    inputs: dict
    outputs: dict
    token_usage: TokenUsage
    executed_at: str
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "stepName": self.step_name,
            "stepType": self.step_type,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "tokenUsage": self.token_usage.to_dict(),
            "executedAt": self.executed_at,
            "degraded": self.degraded,
        }


@dataclass
class ExecutionMetrics:
    execution_time_ms: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class RecordRunResult:
    """Outcome of running one action against one record."""
    record_id: str
    step_results: list
    final_data: dict
    metrics: ExecutionMetrics

    def to_dict(self) -> dict:
        return {
            "recordId": self.record_id,
            "stepResults": [s.to_dict() for s in self.step_results],
            "finalData": self.final_data,
            "executionMetrics": {
                "executionTimeMs": self.metrics.execution_time_ms,
                "tokenUsage": self.metrics.token_usage.to_dict(),
            },
        }
