"""Agent record model: one row of a user-defined data model."""

from typing import Any, Dict

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class AgentRecord(BaseModel):
    """A record of a user-defined model (e.g. one Lead).

    Attributes:
        model_id: Id of the model definition inside the agent's definition
        data: Field values keyed by field name
    """

    __tablename__ = "agent_records"

    model_id: Mapped[str] = mapped_column(nullable=False, index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
