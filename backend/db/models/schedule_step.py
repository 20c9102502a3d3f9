"""Schedule step model."""

from typing import Any, Optional

from sqlalchemy import JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class ScheduleStep(BaseModel):
    """One step of a schedule: run ``action_id`` on records of ``model_id`` matching ``query``.

    ``query`` is either a structured ``{"filters": [...], "logic": "AND"}``
    object or a legacy free-text string.
    """

    __tablename__ = "schedule_steps"

    schedule_id: Mapped[str] = mapped_column(
        ForeignKey("schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order: Mapped[int] = mapped_column(default=0)
    model_id: Mapped[str] = mapped_column(nullable=False)
    action_id: Mapped[str] = mapped_column(nullable=False)
    query: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    model_name: Mapped[Optional[str]] = mapped_column(nullable=True)
    action_name: Mapped[Optional[str]] = mapped_column(nullable=True)

    schedule: Mapped["Schedule"] = relationship("Schedule", back_populates="steps", lazy="noload")
