"""Execution model: audit row for one action run on one record."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus
from db.base import BaseModel


class Execution(BaseModel):
    """Execution model representing one record action run.

    Attributes:
        id: Unique identifier (UUID string)
        record_id: Record the action ran against
        action_id: Action that ran
        schedule_id: Schedule that triggered the run, if any
        status: pending, running, completed or failed
        result: ``{stepResults, finalData, totalTokenUsage, executionTimeMs}`` on success
        error: Error message on failure
        total_tokens / input_tokens / output_tokens: Aggregated token usage
        execution_time_ms: Wall-clock duration
        started_at: When the run moved to running
        completed_at: When the run reached a terminal status
    """

    __tablename__ = "agent_executions"

    record_id: Mapped[str] = mapped_column(nullable=False, index=True)
    action_id: Mapped[str] = mapped_column(nullable=False, index=True)
    schedule_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    status: Mapped[str] = mapped_column(default=ExecutionStatus.PENDING.value, index=True)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_tokens: Mapped[int] = mapped_column(default=0)
    input_tokens: Mapped[int] = mapped_column(default=0)
    output_tokens: Mapped[int] = mapped_column(default=0)
    execution_time_ms: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
