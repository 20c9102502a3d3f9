"""In-memory stores, fake backends and agent builders shared by the tests."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from core.exceptions import TransientBackendError
from engine.models import Agent, Record, TokenUsage
from engine.stores import GenerationResult, TokenRefreshResult

# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------

class InMemoryRecordStore:
    def __init__(self, records: Optional[List[Record]] = None):
        self.records: Dict[str, Record] = {r.id: r for r in (records or [])}
        self.updates: List[tuple] = []
        self.fail_updates_for: set = set()

    def add(self, model_id: str, data: dict, record_id: Optional[str] = None, deleted: bool = False) -> Record:
        record = Record(
            id=record_id or str(uuid4()),
            model_id=model_id,
            data=dict(data),
            deleted_at=datetime(2024, 1, 1) if deleted else None,
        )
        self.records[record.id] = record
        return record

    def by_model(self, model_id: str) -> List[Record]:
        return [r for r in self.records.values() if r.model_id == model_id]

    async def find_all_by_model(self, model_id: str) -> List[Record]:
        return [
            Record(id=r.id, model_id=r.model_id, data=dict(r.data), deleted_at=r.deleted_at)
            for r in self.by_model(model_id)
        ]

    async def update(self, record_id: str, data: Dict[str, Any]) -> Optional[Record]:
        if record_id in self.fail_updates_for:
            raise RuntimeError("database is locked")
        self.updates.append((record_id, dict(data)))
        record = self.records.get(record_id)
        if record is None:
            return None
        record.data = dict(data)
        return record

    async def create(self, model_id: str, data: Dict[str, Any]) -> Record:
        return self.add(model_id, data)


class InMemoryExecutionStore:
    def __init__(self):
        self.executions: Dict[str, Dict[str, Any]] = {}
        self.history: List[tuple] = []

    async def create(self, record_id, action_id, status, schedule_id=None) -> str:
        execution_id = str(uuid4())
        self.executions[execution_id] = {
            "record_id": record_id,
            "action_id": action_id,
            "status": status,
            "schedule_id": schedule_id,
        }
        self.history.append((execution_id, status))
        return execution_id

    async def update(self, execution_id, status, result=None, error=None, total_tokens=0,
                     input_tokens=0, output_tokens=0, execution_time_ms=0) -> None:
        self.executions[execution_id].update(
            status=status,
            result=result,
            error=error,
            total_tokens=total_tokens,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            execution_time_ms=execution_time_ms,
        )
        self.history.append((execution_id, status))

    def for_record(self, record_id: str) -> List[Dict[str, Any]]:
        return [e for e in self.executions.values() if e["record_id"] == record_id]


class InMemoryScheduleStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.last_runs: List[tuple] = []
        self.updates: List[tuple] = []

    async def update_last_run(self, schedule_id, when=None) -> None:
        if self.fail:
            raise RuntimeError("schedule table unavailable")
        self.last_runs.append((schedule_id, when))

    async def update(self, schedule_id, next_run_at=None, status=None) -> None:
        self.updates.append((schedule_id, next_run_at, status))


class FakeTokenRefresher:
    def __init__(self, result: Optional[TokenRefreshResult] = None, error: Optional[Exception] = None):
        self.result = result or TokenRefreshResult(success=True)
        self.error = error
        self.calls: List[tuple] = []

    async def ensure_fresh_token(self, token_data_json: str, provider: str) -> TokenRefreshResult:
        self.calls.append((token_data_json, provider))
        if self.error is not None:
            raise self.error
        return self.result


# ---------------------------------------------------------------------------
# Fake backends
# ---------------------------------------------------------------------------

Responder = Union[Dict[str, Any], Callable[[str, Dict[str, Any]], Dict[str, Any]], Exception]


def _respond(responder: Responder, prompt: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(responder, Exception):
        raise responder
    if callable(responder):
        return responder(prompt, schema)
    return dict(responder)


class FakeGenerator:
    """Structured generator and web searcher in one; records every call."""

    def __init__(self, responder: Responder = None, usage: TokenUsage = TokenUsage.from_counts(10, 5)):
        self.responder = responder if responder is not None else (lambda prompt, schema: {
            name: f"generated {name}" for name in schema["properties"]
        })
        self.usage = usage
        self.calls: List[Dict[str, Any]] = []

    async def generate_object(self, prompt, schema, model=None) -> GenerationResult:
        self.calls.append({"prompt": prompt, "schema": schema, "model": model})
        return GenerationResult(object=_respond(self.responder, prompt, schema), usage=self.usage)

    async def search_object(self, prompt, schema) -> GenerationResult:
        self.calls.append({"prompt": prompt, "schema": schema})
        return GenerationResult(object=_respond(self.responder, prompt, schema), usage=self.usage)


class FakeImages:
    def __init__(self, images: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.images = images if images is not None else ["aW1hZ2U="]
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate_images(self, prompt, model, n=1, size=None, aspect_ratio=None, seed=None) -> List[str]:
        self.calls.append({
            "prompt": prompt, "model": model, "n": n, "size": size, "aspect_ratio": aspect_ratio, "seed": seed,
        })
        if self.error is not None:
            raise self.error
        return list(self.images[:n]) if n > 1 else list(self.images)


class FakeCodeGenerator:
    def __init__(self, code: str = "def handler(inputs):\n    return {}"):
        self.code = code
        self.calls: List[tuple] = []

    async def generate_code(self, description, step_name, input_fields, output_fields) -> str:
        self.calls.append((description, step_name, list(input_fields), list(output_fields)))
        return self.code


class FakeSandbox:
    """Runs nothing; returns ``result`` (or calls it with the inputs)."""

    def __init__(self, result: Responder = None):
        self.result = result if result is not None else {}
        self.calls: List[Dict[str, Any]] = []

    async def run(self, code, inputs, timeout=None) -> Dict[str, Any]:
        self.calls.append({"code": code, "inputs": dict(inputs), "timeout": timeout})
        if isinstance(self.result, Exception):
            raise self.result
        if callable(self.result):
            return self.result(inputs)
        return dict(self.result)


def backend_error(message: str = "upstream unavailable") -> TransientBackendError:
    return TransientBackendError(message, backend="test")


# ---------------------------------------------------------------------------
# Agent fixtures
# ---------------------------------------------------------------------------

LEAD_MODEL_ID = "model-lead"
POST_MODEL_ID = "model-post"


def make_agent(actions: Optional[List[dict]] = None, connections: Optional[List[dict]] = None) -> Agent:
    return Agent.from_dict({
        "id": "agent-1",
        "name": "Outreach",
        "models": [
            {
                "id": LEAD_MODEL_ID,
                "name": "Lead",
                "fields": [
                    {"name": "name", "type": "text"},
                    {"name": "company", "type": "text"},
                    {"name": "status", "type": "text"},
                    {"name": "score", "type": "number"},
                    {"name": "summary", "type": "text"},
                    {"name": "pitch", "type": "text"},
                    {"name": "posts", "type": "reference", "referenceType": "to_many", "referencesModel": "Post"},
                    {"name": "google_token", "type": "text"},
                ],
            },
            {
                "id": POST_MODEL_ID,
                "name": "Post",
                "fields": [
                    {"name": "title", "type": "text"},
                    {"name": "content", "type": "text"},
                    {"name": "publish_date", "type": "date", "description": "When to publish"},
                    {"name": "lead", "type": "reference", "referencesModel": "Lead"},
                ],
            },
        ],
        "actions": actions or [],
        "connections": connections or [],
    })


def make_action(steps: List[dict], action_id: str = "action-1", **extra) -> dict:
    return {"id": action_id, "name": "Enrich", "modelId": LEAD_MODEL_ID, "steps": steps, **extra}

