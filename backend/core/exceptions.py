"""Custom exceptions for the schedule execution engine.

Failure scope by class:
- ActionConnectionError, StepExecutionError: one record's action run
- StructuralError: one schedule step
- StreamFatalError: the whole schedule run
- TransientBackendError: raised by backend clients, may be degraded
  into placeholder outputs depending on the step's failure policy
"""

from typing import Any, Dict, Optional


class ScheduleEngineError(Exception):
    """Base exception for the schedule execution engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize exception with message and optional details.

        Args:
            message: Exception message
            details: Extra structured context for logs and events
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ActionConnectionError(ScheduleEngineError):
    """A required external connection is missing, malformed, or unrefreshable."""

    def __init__(self, message: str = "Connection validation failed", **details: Any):
        super().__init__(message, details)


class StepExecutionError(ScheduleEngineError):
    """An action step failed to execute."""

    def __init__(
        self,
        message: str = "Step execution failed",
        step_name: Optional[str] = None,
        step_type: Optional[str] = None,
    ):
        self.step_name = step_name
        self.step_type = step_type
        super().__init__(message, {"step_name": step_name, "step_type": step_type})


class OAuthRequiredError(StepExecutionError):
    """A custom step needs the user to authorize an OAuth provider first.

    The requirement (provider, scopes, output field) travels on the
    exception so a caller can start the authorization flow.
    """

    def __init__(self, requirement, step_name: Optional[str] = None):
        self.requirement = requirement
        super().__init__(
            f"OAuth authorization required for {requirement.provider}",
            step_name=step_name,
            step_type="custom",
        )


class StructuralError(ScheduleEngineError):
    """A schedule step references a model or action that does not exist."""

    def __init__(self, message: str = "Schedule step is invalid"):
        super().__init__(message)


class TransientBackendError(ScheduleEngineError):
    """An AI/HTTP backend call failed after its own retries."""

    def __init__(self, message: str = "Backend call failed", backend: Optional[str] = None):
        self.backend = backend
        super().__init__(message, {"backend": backend})


class StreamFatalError(ScheduleEngineError):
    """An error that aborts the whole schedule run."""

    def __init__(self, message: str = "Schedule run aborted"):
        super().__init__(message)


class DeadlineExceededError(StreamFatalError):
    """The schedule run ran past its deadline."""

    def __init__(self, message: str = "Schedule run deadline exceeded"):
        super().__init__(message)
