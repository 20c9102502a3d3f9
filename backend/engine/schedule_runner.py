"""Schedule Runner: executes a schedule end to end as an event stream.

For each schedule step (sequentially, in ``order``): resolve the model and
action, fetch and filter records, then run the action over the matches in
batches of ``BATCH_SIZE`` concurrent record runs. Per-record failures are
reported and isolated; structural failures end only their step. Afterwards
the schedule's run bookkeeping is advanced.

Events are produced by a background task and handed to the consumer through
an ``asyncio.Queue``. Closing the stream, or calling ``cancel()``, stops
new batches and steps; record runs already in flight stop before their next
action step and finalize their execution as failed.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog

from app.config import get_settings
from core.constants import ScheduleMode, ScheduleStatus
from core.exceptions import DeadlineExceededError, StreamFatalError, StructuralError
from core.logging_config import log_context
from engine.events import (
    BatchProgressEvent,
    BatchStartEvent,
    CompleteEvent,
    EngineEvent,
    ErrorEvent,
    RecordCompleteEvent,
    RecordsFilteredEvent,
    RecordsFoundEvent,
    RecordStartEvent,
    StartEvent,
    StepCompleteEvent,
    StepStartEvent,
)
from engine.models import Action, Agent, Record, Schedule, ScheduleStep, query_to_wire
from engine.query import filter_records
from engine.record_runner import RecordActionRunner
from engine.stores import RecordStore, ScheduleStore

logger = structlog.get_logger(__name__)

_DONE = object()


@dataclass
class _StepProgress:
    total: int
    completed: int = 0


class ScheduleRunner:
    """Runs one schedule at a time and streams its progress."""

    BATCH_SIZE = 5

    def __init__(
        self,
        record_store: RecordStore,
        schedule_store: ScheduleStore,
        record_runner: RecordActionRunner,
        batch_size: Optional[int] = None,
    ):
        self.record_store = record_store
        self.schedule_store = schedule_store
        self.record_runner = record_runner
        self.batch_size = batch_size or get_settings().SCHEDULE_BATCH_SIZE or self.BATCH_SIZE
        self._cancelled = False

    def cancel(self) -> None:
        """Stop starting new batches and steps for the current run."""
        if not self._cancelled:
            logger.info("Schedule run cancellation requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def run(
        self,
        schedule: Schedule,
        agent: Agent,
        deadline: Optional[float] = None,
    ) -> AsyncIterator[EngineEvent]:
        """
        Execute ``schedule`` and yield its progress events.

        Args:
            schedule: Schedule with its steps
            agent: Workspace holding the models, actions and connections
            deadline: ``time.monotonic()`` value bounding the whole run

        A ``cancel()`` issued after this call stops the run, even before
        the stream is first iterated.
        """
        self._cancelled = False
        return self._stream(schedule, agent, deadline)

    async def _stream(
        self,
        schedule: Schedule,
        agent: Agent,
        deadline: Optional[float],
    ) -> AsyncIterator[EngineEvent]:
        queue: asyncio.Queue = asyncio.Queue()

        def emit(event: EngineEvent) -> None:
            if not self._cancelled:
                queue.put_nowait(event)

        producer = asyncio.create_task(self._produce(schedule, agent, deadline, emit))
        producer.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
        finally:
            if not producer.done():
                # Consumer went away; in-flight record runs stop at their next step
                self._cancelled = True
            await producer

    async def _produce(
        self,
        schedule: Schedule,
        agent: Agent,
        deadline: Optional[float],
        emit: Callable[[EngineEvent], None],
    ) -> None:
        start = time.monotonic()
        with log_context(schedule_id=schedule.id):
            try:
                steps = schedule.sorted_steps()
                logger.info("Schedule run started", steps=len(steps), mode=schedule.mode)
                emit(StartEvent(total_steps=len(steps), schedule_name=schedule.name or "Untitled Schedule"))

                for step_index, step in enumerate(steps):
                    if self._cancelled:
                        break
                    await self._run_step(step_index, step, schedule, agent, deadline, emit)

                if self._cancelled:
                    logger.warning("Schedule run cancelled, bookkeeping not updated")
                    return

                await self._advance_bookkeeping(schedule)
                logger.info("Schedule run completed", duration_ms=round((time.monotonic() - start) * 1000, 2))
                emit(CompleteEvent())
            except Exception as e:
                logger.error("Schedule run aborted", error=str(e), exc_info=True)
                emit(ErrorEvent(error=str(e) or type(e).__name__))

    async def _run_step(
        self,
        step_index: int,
        step: ScheduleStep,
        schedule: Schedule,
        agent: Agent,
        deadline: Optional[float],
        emit: Callable[[EngineEvent], None],
    ) -> None:
        query = query_to_wire(step.query)
        emit(StepStartEvent(
            step_index=step_index,
            step=step.order,
            model_name=step.model_name,
            action_name=step.action_name,
            query=query,
        ))

        try:
            model = agent.find_model(step.model_id)
            if model is None:
                raise StructuralError(f"Model with ID {step.model_id} not found")
            action = agent.find_action(step.action_id)
            if action is None:
                raise StructuralError(f"Action with ID {step.action_id} not found")
            all_records = [r for r in await self.record_store.find_all_by_model(model.id) if r.is_alive]
        except StreamFatalError:
            raise
        except Exception as e:
            logger.warning("Schedule step failed", step_index=step_index, error=str(e))
            emit(StepCompleteEvent(step_index=step_index, step=step.order, success=False, error=str(e)))
            return

        emit(RecordsFoundEvent(step_index=step_index, total_records=len(all_records), model_name=model.name))

        matched = filter_records(all_records, step.query)
        emit(RecordsFilteredEvent(step_index=step_index, processed_records=len(matched), query=query))

        batches = [matched[i:i + self.batch_size] for i in range(0, len(matched), self.batch_size)]
        emit(BatchStartEvent(
            step_index=step_index,
            total_records=len(matched),
            batch_size=self.batch_size,
            total_batches=len(batches),
        ))

        progress = _StepProgress(total=len(matched))
        record_results: List[Dict[str, Any]] = []
        for batch_number, batch in enumerate(batches):
            if self._cancelled:
                return
            offset = batch_number * self.batch_size
            results = await asyncio.gather(*[
                self._run_record(step_index, offset + i, record, action, schedule, agent, deadline, progress, emit)
                for i, record in enumerate(batch)
            ])
            record_results.extend(results)
            emit(BatchProgressEvent(
                step_index=step_index,
                completed=progress.completed,
                total=progress.total,
                progress=round(progress.completed / progress.total * 100),
            ))
            if deadline is not None and time.monotonic() >= deadline:
                raise DeadlineExceededError(
                    f"Schedule run deadline exceeded after batch {batch_number + 1} of step {step_index}"
                )

        failed = sum(1 for r in record_results if not r["success"])
        logger.info(
            "Schedule step completed",
            step_index=step_index,
            model=model.name,
            action=action.name,
            processed=len(matched),
            failed=failed,
        )
        emit(StepCompleteEvent(
            step_index=step_index,
            step=step.order,
            success=True,
            model_name=model.name,
            action_name=action.name,
            query=query,
            total_records=len(all_records),
            processed_records=len(matched),
            record_results=record_results,
        ))

    async def _run_record(
        self,
        step_index: int,
        record_index: int,
        record: Record,
        action: Action,
        schedule: Schedule,
        agent: Agent,
        deadline: Optional[float],
        progress: _StepProgress,
        emit: Callable[[EngineEvent], None],
    ) -> Dict[str, Any]:
        """Run one record; failures are reported, never raised."""
        emit(RecordStartEvent(
            step_index=step_index,
            record_index=record_index,
            record_id=record.id,
            total_records=progress.total,
        ))

        def forward(event: EngineEvent) -> None:
            emit(event.model_copy(update={"schedule_step_index": step_index, "record_index": record_index}))

        try:
            result = await self.record_runner.run(
                action, record, agent, on_event=forward, schedule_id=schedule.id, deadline=deadline,
                cancelled=lambda: self._cancelled,
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            progress.completed += 1
            emit(RecordCompleteEvent(
                step_index=step_index,
                record_index=record_index,
                record_id=record.id,
                success=False,
                error=error,
                completed=progress.completed,
                total=progress.total,
            ))
            return {"recordId": record.id, "success": False, "error": error}

        progress.completed += 1
        emit(RecordCompleteEvent(
            step_index=step_index,
            record_index=record_index,
            record_id=record.id,
            success=True,
            completed=progress.completed,
            total=progress.total,
        ))
        return {"recordId": record.id, "success": True, "result": result.to_dict()}

    async def _advance_bookkeeping(self, schedule: Schedule) -> None:
        """Set lastRunAt/nextRunAt; ``once`` schedules are paused."""
        now = datetime.now(timezone.utc)
        interval_hours = float(schedule.interval_hours or get_settings().DEFAULT_INTERVAL_HOURS)
        next_run_at = now + timedelta(hours=interval_hours)
        status = ScheduleStatus.PAUSED.value if schedule.mode == ScheduleMode.ONCE.value else None
        try:
            await self.schedule_store.update_last_run(schedule.id, now)
            await self.schedule_store.update(schedule.id, next_run_at=next_run_at, status=status)
        except Exception as e:
            logger.error("Failed to update schedule timestamps", error=str(e))
            return
        schedule.last_run_at = now
        schedule.next_run_at = next_run_at
        if status:
            schedule.status = status
