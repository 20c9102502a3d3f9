"""Declarative base and shared columns for the engine's SQLAlchemy models."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, Boolean, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base; ``Base.metadata`` holds every engine table."""

    pass


class SoftDeleteMixin:
    """Rows are hidden rather than removed.

    Agent records are soft-deleted by the UI; the schedule runner only ever
    sees live rows:
        query.where(Model.is_deleted == False)
    """

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None, index=True
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, index=True
    )

    def soft_delete(self) -> None:
        """Hide this row from live queries."""
        self.is_deleted = True
        self.deleted_at = datetime.now(timezone.utc)


class BaseModel(SoftDeleteMixin, Base):
    """Abstract base: UUID string key, timestamps and soft delete."""

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
