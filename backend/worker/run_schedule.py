"""Shared helper to run a schedule directly from the database.

Both an on-demand "run now" request and the recurring-schedule poller need
to drive the ScheduleRunner. This module provides a single entry point that:

1. Loads the schedule and its agent
2. Wires the SQL stores, token refresher and step registry
3. Streams the run's events to an optional callback
4. Returns a summary of what happened

Usage from a synchronous context (thread / CLI)::

    from worker.run_schedule import run_schedule_sync
    summary = run_schedule_sync(schedule_id)

Usage from an async context::

    from worker.run_schedule import run_schedule_async
    summary = await run_schedule_async(schedule_id, on_event=print)
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from db.database import get_session_factory
from engine.connection_guard import ConnectionGuard
from engine.record_runner import RecordActionRunner, emit
from engine.schedule_runner import ScheduleRunner
from engine.stores import TokenRefresher
from integrations.token_refresh import get_token_refresher
from services.agent_service import AgentService
from services.execution_service import ExecutionService
from services.record_service import RecordService
from services.schedule_service import ScheduleService
from steps.registry import StepRegistry, get_step_registry

logger = structlog.get_logger(__name__)


def _summarize(summary: Dict[str, Any], event) -> None:
    if event.type == "step_complete" and event.success:
        summary["stepsCompleted"] += 1
    elif event.type == "step_complete":
        summary["stepsFailed"] += 1
    elif event.type == "record_complete":
        summary["recordsProcessed"] += 1
        if not event.success:
            summary["recordsFailed"] += 1
    elif event.type == "complete":
        summary["status"] = "completed"
    elif event.type == "error":
        summary["status"] = "error"
        summary["error"] = event.error


async def run_schedule_async(
    schedule_id: str,
    on_event: Optional[Callable] = None,
    session_factory: Optional[async_sessionmaker] = None,
    registry: Optional[StepRegistry] = None,
    token_refresher: Optional[TokenRefresher] = None,
    timeout_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """Run one schedule end to end.

    Args:
        schedule_id: Schedule to run
        on_event: Sync or async callback receiving every stream event
        session_factory: Override for the default database sessions
        registry: Step registry (defaults to the shared one)
        token_refresher: Override for the OAuth token refresher
        timeout_seconds: Deadline for the whole run

    Returns:
        Summary dict: ``status`` is completed, error, cancelled or not_found.
    """
    session_factory = session_factory or get_session_factory()
    start = time.monotonic()
    summary: Dict[str, Any] = {
        "scheduleId": schedule_id,
        "status": "cancelled",
        "stepsCompleted": 0,
        "stepsFailed": 0,
        "recordsProcessed": 0,
        "recordsFailed": 0,
        "error": None,
        "durationMs": 0,
    }

    schedule_service = ScheduleService(session_factory)
    schedule = await schedule_service.get_schedule(schedule_id)
    if schedule is None:
        logger.warning("Schedule not found", schedule_id=schedule_id)
        summary.update(status="not_found", error=f"Schedule with ID {schedule_id} not found")
        return summary

    agent = await AgentService(session_factory).get_agent(schedule.agent_id) if schedule.agent_id else None
    if agent is None:
        logger.warning("Agent not found for schedule", schedule_id=schedule_id, agent_id=schedule.agent_id)
        summary.update(status="not_found", error=f"Agent with ID {schedule.agent_id} not found")
        return summary

    record_service = RecordService(session_factory)
    record_runner = RecordActionRunner(
        record_store=record_service,
        execution_store=ExecutionService(session_factory),
        guard=ConnectionGuard(token_refresher or get_token_refresher(), record_service),
        registry=registry or get_step_registry(),
    )
    runner = ScheduleRunner(record_service, schedule_service, record_runner)
    deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    logger.info("Running schedule", schedule_id=schedule_id, name=schedule.name, agent_id=agent.id)
    async for event in runner.run(schedule, agent, deadline=deadline):
        _summarize(summary, event)
        await emit(on_event, event)

    summary["durationMs"] = int((time.monotonic() - start) * 1000)
    logger.info(
        "Schedule run finished",
        schedule_id=schedule_id,
        status=summary["status"],
        records=summary["recordsProcessed"],
        failed=summary["recordsFailed"],
        duration_ms=summary["durationMs"],
    )
    return summary


async def run_due_schedules_async(
    limit: Optional[int] = None,
    session_factory: Optional[async_sessionmaker] = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Run every active recurring schedule whose interval has elapsed.

    Schedules run one after another; a crash in one is logged and counted
    and does not stop the others.
    """
    session_factory = session_factory or get_session_factory()
    due = await ScheduleService(session_factory).list_due(limit=limit)
    logger.info("Polling schedules", due=len(due))

    results = []
    errors = 0
    for schedule in due:
        try:
            summary = await run_schedule_async(schedule.id, session_factory=session_factory, **kwargs)
        except Exception as e:
            logger.error("Scheduled run crashed", schedule_id=schedule.id, error=str(e), exc_info=True)
            summary = {"scheduleId": schedule.id, "status": "error", "error": str(e)}
        if summary["status"] != "completed":
            errors += 1
        results.append(summary)

    return {"dispatched": len(due), "errors": errors, "results": results}


# ── Sync wrapper ────────────────────────────────────────────────

def run_schedule_sync(schedule_id: str, **kwargs: Any) -> Dict[str, Any]:
    """Run a schedule synchronously (blocks until done).

    Creates its own event loop, safe for threads.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(run_schedule_async(schedule_id, **kwargs))
    finally:
        loop.close()
        asyncio.set_event_loop(None)


async def _main(argv: list) -> int:
    import json

    from core.logging_config import setup_logging
    from db.database import close_db, init_db
    from integrations.claude_client import close_claude_client
    from integrations.image_client import close_image_client

    setup_logging()
    await init_db()
    try:
        if argv and argv[0] != "--due":
            summary = await run_schedule_async(argv[0], on_event=lambda e: print(e.to_json(), flush=True))
            print(json.dumps(summary))
            return 0 if summary["status"] == "completed" else 1
        result = await run_due_schedules_async()
        print(json.dumps(result, default=str))
        return 0 if not result["errors"] else 1
    finally:
        await close_claude_client()
        await close_image_client()
        await close_db()


def main() -> None:
    # python -m worker.run_schedule <schedule_id>   run one schedule, streaming events
    # python -m worker.run_schedule --due           run every due recurring schedule
    import sys

    sys.exit(asyncio.run(_main(sys.argv[1:])))


if __name__ == "__main__":
    main()
