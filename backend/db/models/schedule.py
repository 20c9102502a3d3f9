"""Schedule model for the schedule engine."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ScheduleMode, ScheduleStatus
from db.base import BaseModel


class Schedule(BaseModel):
    """A named, ordered list of {model, query, action} steps.

    Attributes:
        id: Unique identifier (UUID string)
        agent_id: Foreign key to Agent
        name: Schedule name
        mode: once or recurring
        interval_hours: Hours between runs of a recurring schedule
        status: active or paused
        next_run_at: Timestamp of next scheduled run
        last_run_at: Timestamp of the last completed run
    """

    __tablename__ = "schedules"

    agent_id: Mapped[str] = mapped_column(
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False, default="Untitled Schedule")
    mode: Mapped[str] = mapped_column(default=ScheduleMode.ONCE.value)
    interval_hours: Mapped[Optional[float]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(default=ScheduleStatus.ACTIVE.value, index=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # selectin: loaded eagerly with the schedule, no lazy IO in async sessions
    steps: Mapped[List["ScheduleStep"]] = relationship(
        "ScheduleStep",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="ScheduleStep.order",
        lazy="selectin",
    )
