"""Progress events streamed by the schedule runner.

One pydantic model per event kind, discriminated by ``type``. Events are
serialized with camelCase keys, one JSON object per frame.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class EngineEvent(BaseModel):
    """Base for all stream events."""

    type: str

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        protected_namespaces = ()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        """Server-sent-events frame."""
        return f"data: {self.to_json()}\n\n"


class StartEvent(EngineEvent):
    type: Literal["start"] = "start"
    total_steps: int
    schedule_name: str


class StepStartEvent(EngineEvent):
    type: Literal["step_start"] = "step_start"
    step_index: int
    step: int = Field(description="The schedule step's order value")
    model_name: Optional[str] = None
    action_name: Optional[str] = None
    query: Any = None


class RecordsFoundEvent(EngineEvent):
    type: Literal["records_found"] = "records_found"
    step_index: int
    total_records: int
    model_name: str


class RecordsFilteredEvent(EngineEvent):
    type: Literal["records_filtered"] = "records_filtered"
    step_index: int
    processed_records: int
    query: Any = None


class BatchStartEvent(EngineEvent):
    type: Literal["batch_start"] = "batch_start"
    step_index: int
    total_records: int
    batch_size: int
    total_batches: int


class RecordStartEvent(EngineEvent):
    type: Literal["record_start"] = "record_start"
    step_index: int
    record_index: int
    record_id: str
    total_records: int


class ActionStepStartEvent(EngineEvent):
    """Emitted by the record runner; tagged by the schedule runner when forwarded."""

    type: Literal["action_step_start"] = "action_step_start"
    record_id: str
    action_step_index: int
    action_step_name: str
    action_step_type: str
    total_action_steps: int
    inputs: Dict[str, Any] = Field(default_factory=dict)
    schedule_step_index: Optional[int] = None
    record_index: Optional[int] = None


class ActionStepCompleteEvent(EngineEvent):
    type: Literal["action_step_complete"] = "action_step_complete"
    record_id: str
    action_step_index: int
    action_step_name: str
    action_step_type: str
    success: bool
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Optional[Dict[str, Any]] = None
    output_fields: Optional[List[str]] = None
    token_usage: Optional[Dict[str, int]] = None
    degraded: Optional[bool] = None
    error: Optional[str] = None
    schedule_step_index: Optional[int] = None
    record_index: Optional[int] = None


class RecordCompleteEvent(EngineEvent):
    type: Literal["record_complete"] = "record_complete"
    step_index: int
    record_index: int
    record_id: str
    success: bool
    error: Optional[str] = None
    completed: int
    total: int


class BatchProgressEvent(EngineEvent):
    type: Literal["batch_progress"] = "batch_progress"
    step_index: int
    completed: int
    total: int
    progress: int


class StepCompleteEvent(EngineEvent):
    type: Literal["step_complete"] = "step_complete"
    step_index: int
    step: int
    success: bool
    model_name: Optional[str] = None
    action_name: Optional[str] = None
    query: Any = None
    total_records: Optional[int] = None
    processed_records: Optional[int] = None
    record_results: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None


class CompleteEvent(EngineEvent):
    type: Literal["complete"] = "complete"


class ErrorEvent(EngineEvent):
    type: Literal["error"] = "error"
    error: str


ActionEvent = Union[ActionStepStartEvent, ActionStepCompleteEvent]

ScheduleEvent = Annotated[
    Union[
        StartEvent,
        StepStartEvent,
        RecordsFoundEvent,
        RecordsFilteredEvent,
        BatchStartEvent,
        RecordStartEvent,
        ActionStepStartEvent,
        ActionStepCompleteEvent,
        RecordCompleteEvent,
        BatchProgressEvent,
        StepCompleteEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(ScheduleEvent)


def parse_event(data: Dict[str, Any]) -> EngineEvent:
    """Rebuild a typed event from its wire (camelCase) dict."""
    return _event_adapter.validate_python(data)
