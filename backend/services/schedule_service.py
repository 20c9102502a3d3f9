"""Schedule persistence: loading, run bookkeeping, due-schedule lookup."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import get_settings
from core.constants import ScheduleMode, ScheduleStatus
from db.models import Schedule as ScheduleRow
from engine.models import Schedule, ScheduleStep, parse_query
from services.base import BaseService

logger = structlog.get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ScheduleService(BaseService[ScheduleRow]):
    """Implements the schedule store used by the schedule runner."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        super().__init__(ScheduleRow, session_factory)

    @staticmethod
    def to_domain(row: ScheduleRow) -> Schedule:
        return Schedule(
            id=row.id,
            name=row.name or "Untitled Schedule",
            agent_id=row.agent_id,
            mode=row.mode,
            interval_hours=row.interval_hours,
            status=row.status,
            next_run_at=_aware(row.next_run_at),
            last_run_at=_aware(row.last_run_at),
            steps=[
                ScheduleStep(
                    id=step.id,
                    order=step.order,
                    model_id=step.model_id,
                    action_id=step.action_id,
                    query=parse_query(step.query),
                    model_name=step.model_name,
                    action_name=step.action_name,
                )
                for step in row.steps
                if not step.is_deleted
            ],
        )

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        """A schedule with its steps, or None if missing."""
        row = await self.get_by_id(schedule_id)
        return self.to_domain(row) if row else None

    async def update_last_run(self, schedule_id: str, when: Optional[datetime] = None) -> None:
        row = await super().update(schedule_id, {"last_run_at": when or datetime.now(timezone.utc)})
        if row is None:
            logger.warning("Schedule not found for last-run update", schedule_id=schedule_id)

    async def update(
        self,
        schedule_id: str,
        next_run_at: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> None:
        row = await super().update(schedule_id, {"next_run_at": next_run_at, "status": status})
        if row is None:
            logger.warning("Schedule not found for update", schedule_id=schedule_id)

    async def list_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Schedule]:
        """Active recurring schedules whose interval has elapsed since the last run.

        Schedules that never ran are due immediately. ``once`` schedules are
        only ever run on demand.
        """
        settings = get_settings()
        now = now or datetime.now(timezone.utc)
        query = (
            select(ScheduleRow)
            .where(
                ScheduleRow.is_deleted == False,
                ScheduleRow.status == ScheduleStatus.ACTIVE.value,
                ScheduleRow.mode == ScheduleMode.RECURRING.value,
            )
            .order_by(ScheduleRow.created_at.asc())
            .limit(limit or settings.SCHEDULER_MAX_SCHEDULES_PER_RUN)
        )
        async with self.session() as db:
            result = await db.execute(query)
            rows = result.scalars().all()

        due = []
        for row in rows:
            last_run_at = _aware(row.last_run_at)
            interval = timedelta(hours=float(row.interval_hours or settings.DEFAULT_INTERVAL_HOURS))
            if last_run_at is None or now - last_run_at >= interval:
                due.append(self.to_domain(row))
        return due
