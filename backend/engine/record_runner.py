"""Runs one action's step pipeline against one record.

Execution lifecycle: ``pending -> running -> completed | failed``, written
to the execution store and finalized exactly once. Each step sees a
read-only snapshot of the accumulated record data and its outputs are
folded in as a delta before the next step runs.
"""

import asyncio
import inspect
import time
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from core.constants import ExecutionStatus
from core.exceptions import OAuthRequiredError, StepExecutionError
from engine.connection_guard import ConnectionGuard
from engine.events import ActionStepCompleteEvent, ActionStepStartEvent, EngineEvent
from engine.models import (
    Action,
    ActionStep,
    Agent,
    ExecutionMetrics,
    Record,
    RecordRunResult,
    StepOutput,
    StepRecord,
    TokenUsage,
)
from engine.stores import ExecutionStore, RecordStore
from steps.base_step import StepContext
from steps.registry import StepRegistry, get_step_registry

logger = structlog.get_logger(__name__)

EventCallback = Callable[[EngineEvent], Any]


async def emit(on_event: Optional[EventCallback], event: EngineEvent) -> None:
    """Deliver an event to a sync or async callback."""
    if on_event is None:
        return
    result = on_event(event)
    if inspect.isawaitable(result):
        await result


def _as_children(value: Any) -> Optional[List[Dict[str, Any]]]:
    """Child record payloads for a relationship output, or None for a scalar."""
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list) and all(isinstance(item, dict) for item in value):
        return list(value)
    return None


class RecordActionRunner:
    """Executes an action on a single record and persists the result."""

    def __init__(
        self,
        record_store: RecordStore,
        execution_store: ExecutionStore,
        guard: ConnectionGuard,
        registry: Optional[StepRegistry] = None,
    ):
        self.record_store = record_store
        self.execution_store = execution_store
        self.guard = guard
        self.registry = registry or get_step_registry()

    async def run(
        self,
        action: Action,
        record: Record,
        agent: Agent,
        on_event: Optional[EventCallback] = None,
        schedule_id: Optional[str] = None,
        deadline: Optional[float] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> RecordRunResult:
        """
        Run every step of ``action`` against ``record`` in order.

        Args:
            action: The action to run
            record: Target record (its data seeds the working copy)
            agent: Workspace with model/connection definitions
            on_event: Receives action_step_start / action_step_complete events
            schedule_id: Recorded on the execution for auditing
            deadline: ``time.monotonic()`` value bounding every step
            cancelled: Polled before each step; a true result stops the run

        Returns:
            RecordRunResult with per-step records, final data and metrics

        Raises:
            ActionConnectionError, StepExecutionError, OAuthRequiredError
        """
        log = logger.bind(record_id=record.id, action_id=action.id)
        start = time.monotonic()
        usage = TokenUsage()
        step_results: List[StepRecord] = []

        execution_id = await self.execution_store.create(
            record.id, action.id, ExecutionStatus.PENDING.value, schedule_id=schedule_id
        )
        await self.execution_store.update(execution_id, ExecutionStatus.RUNNING.value)
        log.info("Record action started", execution_id=execution_id, steps=len(action.steps))

        try:
            current: Dict[str, Any] = dict(record.data or {})
            current.update(await self.guard.ensure(action, record, agent))

            context = StepContext(action=action, agent=agent, record_id=record.id, deadline=deadline)
            for index, step in enumerate(action.steps):
                if cancelled is not None and cancelled():
                    raise StepExecutionError("Execution cancelled", step_name=step.name, step_type=step.type)
                snapshot = MappingProxyType(dict(current))
                output = await self._run_step(index, step, snapshot, context, on_event)

                usage = usage + output.usage
                delta = await self._fold(step, output, snapshot, action, agent, record.id)
                current = {**current, **delta}

                step_results.append(StepRecord(
                    step_name=step.name,
                    step_type=step.type,
                    inputs={f: snapshot.get(f) for f in step.input_fields},
                    outputs=output.outputs,
                    token_usage=output.usage,
                    executed_at=datetime.now(timezone.utc).isoformat(),
                    degraded=output.degraded,
                ))

            await self.record_store.update(record.id, current)

            elapsed_ms = int((time.monotonic() - start) * 1000)
            await self.execution_store.update(
                execution_id,
                ExecutionStatus.COMPLETED.value,
                result={
                    "stepResults": [s.to_dict() for s in step_results],
                    "finalData": current,
                    "totalTokenUsage": usage.to_dict(),
                    "executionTimeMs": elapsed_ms,
                },
                total_tokens=usage.total_tokens,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                execution_time_ms=elapsed_ms,
            )
        except asyncio.CancelledError:
            await self._finalize_failed(execution_id, "Execution cancelled", usage, start, log)
            raise
        except Exception as e:
            await self._finalize_failed(execution_id, str(e) or type(e).__name__, usage, start, log)
            raise

        result = RecordRunResult(
            record_id=record.id,
            step_results=step_results,
            final_data=current,
            metrics=ExecutionMetrics(execution_time_ms=elapsed_ms, token_usage=usage),
        )
        log.info(
            "Record action completed",
            execution_id=execution_id,
            duration_ms=elapsed_ms,
            total_tokens=usage.total_tokens,
        )
        return result

    async def _run_step(
        self,
        index: int,
        step: ActionStep,
        snapshot: Mapping[str, Any],
        context: StepContext,
        on_event: Optional[EventCallback],
    ) -> StepOutput:
        """Dispatch one step and report it. Raises on failure."""
        inputs = {f: snapshot.get(f) for f in step.input_fields}
        common = dict(
            record_id=context.record_id,
            action_step_index=index,
            action_step_name=step.name,
            action_step_type=step.type,
        )
        await emit(on_event, ActionStepStartEvent(
            **common, total_action_steps=len(context.action.steps), inputs=inputs,
        ))

        try:
            if context.deadline is not None and time.monotonic() >= context.deadline:
                raise StepExecutionError("Run deadline exceeded", step_name=step.name, step_type=step.type)
            executor = self.registry.get_executor(step.type)
            output = await executor.run(step, inputs, context)
            if output.oauth_requirement is not None:
                raise OAuthRequiredError(output.oauth_requirement, step_name=step.name)
        except Exception as e:
            await emit(on_event, ActionStepCompleteEvent(
                **common, success=False, inputs=inputs, error=str(e) or type(e).__name__,
            ))
            raise

        await emit(on_event, ActionStepCompleteEvent(
            **common,
            success=True,
            inputs=inputs,
            outputs=output.outputs,
            output_fields=list(output.outputs),
            token_usage=output.usage.to_dict(),
            degraded=output.degraded,
        ))
        return output

    async def _fold(
        self,
        step: ActionStep,
        output: StepOutput,
        snapshot: Mapping[str, Any],
        action: Action,
        agent: Agent,
        record_id: str,
    ) -> Dict[str, Any]:
        """The changes a step's outputs make to the record data.

        Only declared output fields are merged. A to-many relationship
        output holding objects creates child records and appends their ids.
        """
        delta: Dict[str, Any] = {}
        for name in step.output_fields:
            if name not in output.outputs:
                logger.warning("Output field missing from step result", step_name=step.name, field=name)
                continue
            value = output.outputs[name]

            relationship = agent.relationship_field(action.model_id, name)
            children = _as_children(value) if relationship is not None else None
            if children is None:
                delta[name] = value
                continue

            child_model = agent.find_model_by_name(relationship.references_model)
            if child_model is None:
                logger.warning(
                    "Referenced model not found, relationship output skipped",
                    field=name,
                    references_model=relationship.references_model,
                )
                continue

            parent_model = agent.find_model(action.model_id)
            back_reference = agent.back_reference_field(child_model, parent_model)
            existing = delta.get(name, snapshot.get(name))
            ids = list(existing) if isinstance(existing, list) else []
            for child_data in children:
                data = dict(child_data)
                if back_reference is not None:
                    data[back_reference.name] = record_id
                child = await self.record_store.create(child_model.id, data)
                ids.append(child.id)
                logger.info("Created related record", model=child_model.name, child_id=child.id, parent_id=record_id)
            delta[name] = ids
        return delta

    async def _finalize_failed(
        self,
        execution_id: str,
        error: str,
        usage: TokenUsage,
        start: float,
        log,
    ) -> None:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        log.error("Record action failed", execution_id=execution_id, error=error, duration_ms=elapsed_ms)
        try:
            await self.execution_store.update(
                execution_id,
                ExecutionStatus.FAILED.value,
                error=error,
                total_tokens=usage.total_tokens,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                execution_time_ms=elapsed_ms,
            )
        except Exception as e:
            log.error("Failed to finalize execution", execution_id=execution_id, error=str(e))
