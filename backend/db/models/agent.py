"""Agent model: the workspace a schedule runs in."""

from typing import Any, Dict

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class Agent(BaseModel):
    """Agent model holding the user-defined data model and actions.

    Attributes:
        id: Unique identifier (UUID string)
        name: Agent name
        definition: JSON object ``{"models": [...], "actions": [...], "connections": [...]}``
            in the camelCase shape accepted by ``engine.models.Agent.from_dict``
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "agents"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    definition: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
