"""Base CRUD service with soft-delete aware queries.

All service classes inherit from this. Provides standard create, read
and update with automatic soft-delete filtering and pagination. Every
operation opens its own session from the session factory and commits
before returning, so services can be shared by concurrently running
record actions.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Generic, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.base import BaseModel
from db.database import get_session_factory

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class RecordService(BaseService[AgentRecord]):
            def __init__(self, session_factory=None):
                super().__init__(AgentRecord, session_factory)
    """

    def __init__(self, model: Type[ModelType], session_factory: Optional[async_sessionmaker] = None):
        self.model = model
        self.session_factory = session_factory or get_session_factory()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """A session that commits on success and rolls back on error."""
        async with self.session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    # ─── Read ──────────────────────────────────────────────

    async def _get(self, db: AsyncSession, id: str, include_deleted: bool = False) -> Optional[ModelType]:
        query = select(self.model).where(self.model.id == id)
        if not include_deleted:
            query = query.where(self.model.is_deleted == False)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_id(
        self,
        id: str,
        include_deleted: bool = False,
    ) -> Optional[ModelType]:
        """Get a single row by ID."""
        async with self.session() as db:
            return await self._get(db, id, include_deleted)

    async def list(
        self,
        offset: int = 0,
        limit: Optional[int] = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        include_deleted: bool = False,
        filters: Optional[dict] = None,
    ) -> Sequence[ModelType]:
        """List rows with pagination, filtering, and sorting."""
        query = select(self.model)

        # Soft delete filter
        if not include_deleted:
            query = query.where(self.model.is_deleted == False)

        # Additional filters
        if filters:
            for field, value in filters.items():
                if hasattr(self.model, field):
                    col = getattr(self.model, field)
                    if isinstance(value, list):
                        query = query.where(col.in_(value))
                    else:
                        query = query.where(col == value)

        # Sorting
        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())

        # Pagination
        query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self.session() as db:
            result = await db.execute(query)
            return result.scalars().all()

    # ─── Create ────────────────────────────────────────────

    async def create(self, data: dict) -> ModelType:
        """Create a new row.

        Args:
            data: Dict of field values

        Returns:
            Created model instance
        """
        if "id" not in data:
            data["id"] = str(uuid4())

        instance = self.model(**data)
        async with self.session() as db:
            db.add(instance)
            await db.flush()
            await db.refresh(instance)
        return instance

    # ─── Update ────────────────────────────────────────────

    async def update(self, id: str, data: dict) -> Optional[ModelType]:
        """Update a row by ID.

        Args:
            id: Row UUID
            data: Dict of fields to update (None values are skipped)

        Returns:
            Updated model instance or None if not found
        """
        # Filter out None values
        update_data = {k: v for k, v in data.items() if v is not None}

        async with self.session() as db:
            instance = await self._get(db, id)
            if not instance:
                return None

            for key, value in update_data.items():
                if hasattr(instance, key):
                    setattr(instance, key, value)

            await db.flush()
            await db.refresh(instance)
        return instance

