"""Loads agent definitions for the schedule engine."""

from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from db.models import Agent as AgentRow
from engine.models import Agent
from services.base import BaseService


class AgentService(BaseService[AgentRow]):
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        super().__init__(AgentRow, session_factory)

    @staticmethod
    def to_domain(row: AgentRow) -> Agent:
        definition = dict(row.definition or {})
        definition.update(id=row.id, name=row.name)
        return Agent.from_dict(definition)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        """The agent's models, actions and connections, or None if missing."""
        row = await self.get_by_id(agent_id)
        return self.to_domain(row) if row else None
