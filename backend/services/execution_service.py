"""Execution audit rows for record action runs."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import ExecutionStatus
from db.models import Execution
from services.base import BaseService

TERMINAL_STATUSES = (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value)


class ExecutionService(BaseService[Execution]):
    """Creates and finalizes execution rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        super().__init__(Execution, session_factory)

    async def create(
        self,
        record_id: str,
        action_id: str,
        status: str,
        schedule_id: Optional[str] = None,
    ) -> str:
        row = await super().create({
            "record_id": record_id,
            "action_id": action_id,
            "status": status,
            "schedule_id": schedule_id,
        })
        return row.id

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
        """Move an execution to ``status``, stamping start/completion times."""
        now = datetime.now(timezone.utc)
        data: Dict[str, Any] = {
            "status": status,
            "result": result,
            "error": error,
        }
        if status == ExecutionStatus.RUNNING.value:
            data["started_at"] = now
        elif status in TERMINAL_STATUSES:
            data.update(
                completed_at=now,
                total_tokens=total_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                execution_time_ms=execution_time_ms,
            )
        await super().update(execution_id, data)

    async def list_for_record(self, record_id: str) -> List[Execution]:
        """Executions of a record, newest first."""
        rows = await self.list(limit=None, filters={"record_id": record_id})
        return list(rows)
