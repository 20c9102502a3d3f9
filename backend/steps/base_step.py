"""
Base interface for all action step implementations.

Every step type (AI reasoning, web search, image generation, custom code)
inherits from BaseStep and implements execute(). The record runner calls
run(), which adds timing, the timeout/deadline bound and the failure policy.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from app.config import get_settings
from core.constants import FailurePolicy
from core.exceptions import StepExecutionError
from engine.models import Action, ActionStep, Agent, StepOutput
from engine.stores import (
    CodeGenerator,
    CodeSandbox,
    ImageGenerator,
    StructuredGenerator,
    WebSearchGenerator,
)

logger = structlog.get_logger(__name__)


@dataclass
class StepDependencies:
    """Backends a step may call. Unset ones resolve to the process singletons."""
    generator: Optional[StructuredGenerator] = None
    searcher: Optional[WebSearchGenerator] = None
    images: Optional[ImageGenerator] = None
    code_generator: Optional[CodeGenerator] = None
    sandbox: Optional[CodeSandbox] = None
    http_client: Optional[httpx.AsyncClient] = None


@dataclass
class StepContext:
    """What a step may look at besides its inputs."""
    action: Action
    agent: Agent
    record_id: Optional[str] = None
    deadline: Optional[float] = None  # time.monotonic() value

    def timeout_for(self, default: float) -> float:
        """The step timeout, shortened to what is left of the run deadline."""
        if self.deadline is None:
            return default
        return max(0.0, min(default, self.deadline - time.monotonic()))


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Replace ``{field}`` placeholders with input values (None -> empty)."""
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace(f"{{{key}}}", "" if value is None else str(value))
    return rendered


class BaseStep(ABC):
    """
    Abstract base class for all action step types.

    Subclasses must implement:
    - execute(step, inputs, context) -> StepOutput
    - step_type (class property)
    - display_name (class property)
    Subclasses that degrade on failure override placeholder().
    """

    step_type: str = "base"
    display_name: str = "Base Step"
    description: str = "Abstract base step"
    default_failure_policy: FailurePolicy = FailurePolicy.RAISE

    def __init__(self, deps: Optional[StepDependencies] = None):
        self.deps = deps or StepDependencies()

    @abstractmethod
    async def execute(
        self,
        step: ActionStep,
        inputs: Dict[str, Any],
        context: StepContext,
    ) -> StepOutput:
        """
        Execute the step against the given input values.

        Args:
            step: Step definition (type, fields, config)
            inputs: Values of the step's input fields from the record's current data
            context: Action, agent and deadline of the running record

        Returns:
            StepOutput with outputs keyed by field name and token usage
        """

    def placeholder(self, field_name: str, error: str) -> str:
        """Value stored in an output field when a degraded step failed."""
        return f"{self.display_name} failed for {field_name}: {error}"

    def failure_policy(self, step: ActionStep) -> FailurePolicy:
        """Per-step config wins over deployment settings, which win over the type default."""
        configured = step.config.get("failurePolicy") or get_settings().STEP_FAILURE_POLICIES.get(self.step_type)
        if configured:
            try:
                return FailurePolicy(configured)
            except ValueError:
                logger.warning("Unknown failure policy, using default", policy=configured, step_type=self.step_type)
        return self.default_failure_policy

    async def run(
        self,
        step: ActionStep,
        inputs: Dict[str, Any],
        context: StepContext,
    ) -> StepOutput:
        """
        Run the step with timing, timeout and failure policy.

        This is the main entry point called by the record runner. Raises
        StepExecutionError unless the policy is DEGRADE.
        """
        start = time.monotonic()
        timeout = context.timeout_for(get_settings().STEP_TIMEOUT_SECONDS)
        logger.info(
            "Step starting",
            step_type=self.step_type,
            step_name=step.name,
            record_id=context.record_id,
        )
        try:
            output = await asyncio.wait_for(self.execute(step, inputs, context), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"Step timed out after {round(timeout, 2)}s"
            return self._handle_failure(step, error, start)
        except StepExecutionError as e:
            return self._handle_failure(step, e.message, start, cause=e)
        except Exception as e:
            return self._handle_failure(step, str(e) or type(e).__name__, start, cause=e)

        logger.info(
            "Step completed",
            step_type=self.step_type,
            step_name=step.name,
            total_tokens=output.usage.total_tokens,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return output

    def _handle_failure(
        self,
        step: ActionStep,
        error: str,
        start: float,
        cause: Optional[BaseException] = None,
    ) -> StepOutput:
        duration_ms = round((time.monotonic() - start) * 1000, 2)
        if self.failure_policy(step) == FailurePolicy.DEGRADE:
            logger.warning(
                "Step degraded to placeholder outputs",
                step_type=self.step_type,
                step_name=step.name,
                error=error,
                duration_ms=duration_ms,
            )
            return StepOutput(
                outputs={name: self.placeholder(name, error) for name in step.output_fields},
                degraded=True,
            )

        logger.error(
            "Step failed",
            step_type=self.step_type,
            step_name=step.name,
            error=error,
            duration_ms=duration_ms,
        )
        if isinstance(cause, StepExecutionError):
            raise cause
        raise StepExecutionError(error, step_name=step.name, step_type=self.step_type) from cause

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for step configuration.

        Override in subclasses to define expected config shape.
        """
        return {"type": "object", "properties": {}}
