"""Collaborator contracts consumed by the engine.

The SQL implementations live in ``services/``; backends live in
``integrations/`` and ``steps/sandbox.py``. Tests provide in-memory fakes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from engine.models import Record, TokenUsage


class RecordStore(Protocol):
    async def find_all_by_model(self, model_id: str) -> List[Record]:
        """All live (not soft-deleted) records of a model."""

    async def update(self, record_id: str, data: Dict[str, Any]) -> Optional[Record]:
        """Overwrite a record's data."""

    async def create(self, model_id: str, data: Dict[str, Any]) -> Record:
        """Create a record and return it with its new id."""


class ExecutionStore(Protocol):
    async def create(
        self,
        record_id: str,
        action_id: str,
        status: str,
        schedule_id: Optional[str] = None,
    ) -> str:
        """Create an execution audit row and return its id."""

    async def update(
        self,
        execution_id: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        total_tokens: int = 0,
        input_tokens: int = 0,
        output_tokens: int = 0,
        execution_time_ms: int = 0,
    ) -> None:
        ...


class ScheduleStore(Protocol):
    async def update_last_run(self, schedule_id: str, when: Optional[datetime] = None) -> None:
        ...

    async def update(
        self,
        schedule_id: str,
        next_run_at: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> None:
        ...


@dataclass
class TokenRefreshResult:
    success: bool
    refreshed: bool = False
    new_token_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class TokenRefresher(Protocol):
    async def ensure_fresh_token(self, token_data_json: str, provider: str) -> TokenRefreshResult:
        ...


@dataclass
class GenerationResult:
    """A structured object produced by a model, with token usage."""
    object: Dict[str, Any]
    usage: TokenUsage


class StructuredGenerator(Protocol):
    async def generate_object(
        self,
        prompt: str,
        schema: Dict[str, Any],
        model: Optional[str] = None,
    ) -> GenerationResult:
        ...


class WebSearchGenerator(Protocol):
    async def search_object(self, prompt: str, schema: Dict[str, Any]) -> GenerationResult:
        ...


class ImageGenerator(Protocol):
    async def generate_images(
        self,
        prompt: str,
        model: str,
        n: int = 1,
        size: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> List[str]:
        """Base64-encoded PNG images."""


class CodeGenerator(Protocol):
    async def generate_code(
        self,
        description: str,
        step_name: str,
        input_fields: List[str],
        output_fields: List[str],
    ) -> str:
        ...


class CodeSandbox(Protocol):
    async def run(self, code: str, inputs: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        ...
