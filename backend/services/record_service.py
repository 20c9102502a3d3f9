"""Agent record persistence for the schedule engine."""

from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from db.models import AgentRecord
from engine.models import Record
from services.base import BaseService

logger = structlog.get_logger(__name__)


class RecordService(BaseService[AgentRecord]):
    """Reads and writes rows of user-defined models.

    Returns domain ``Record`` objects rather than ORM rows, so the engine
    never touches a session.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        super().__init__(AgentRecord, session_factory)

    @staticmethod
    def to_domain(row: AgentRecord) -> Record:
        return Record(
            id=row.id,
            model_id=row.model_id,
            data=dict(row.data or {}),
            deleted_at=row.deleted_at,
        )

    async def find_all_by_model(self, model_id: str) -> List[Record]:
        """All live records of a model, oldest first."""
        rows = await self.list(
            limit=None,
            order_by="created_at",
            order_desc=False,
            filters={"model_id": model_id},
        )
        return [self.to_domain(row) for row in rows]

    async def get_record(self, record_id: str) -> Optional[Record]:
        row = await self.get_by_id(record_id)
        return self.to_domain(row) if row else None

    async def update(self, record_id: str, data: Dict[str, Any]) -> Optional[Record]:
        """Overwrite a record's data."""
        row = await super().update(record_id, {"data": dict(data)})
        if row is None:
            logger.warning("Record not found for update", record_id=record_id)
            return None
        return self.to_domain(row)

    async def create(self, model_id: str, data: Dict[str, Any]) -> Record:
        row = await super().create({"model_id": model_id, "data": dict(data)})
        logger.debug("Record created", record_id=row.id, model_id=model_id)
        return self.to_domain(row)
