"""Database models for the schedule engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.agent import Agent
from db.models.schedule import Schedule
from db.models.schedule_step import ScheduleStep
from db.models.record import AgentRecord
from db.models.execution import Execution

__all__ = [
    "Agent",
    "Schedule",
    "ScheduleStep",
    "AgentRecord",
    "Execution",
]
