"""
Step Type Registry: central registry for all action step types.

Maps step type strings to executor classes and hands out executor
instances wired to a shared set of backends.
"""

from typing import Dict, Optional, Type

from core.exceptions import StepExecutionError
from steps.base_step import BaseStep, StepDependencies
from steps.implementations.ai_reasoning import AI_REASONING_STEP_TYPES
from steps.implementations.custom import CUSTOM_STEP_TYPES
from steps.implementations.image_generation import IMAGE_GENERATION_STEP_TYPES
from steps.implementations.web_search import WEB_SEARCH_STEP_TYPES


class StepRegistry:
    """Central registry for all step type implementations."""

    def __init__(self, deps: Optional[StepDependencies] = None):
        self.deps = deps or StepDependencies()
        self._steps: Dict[str, Type[BaseStep]] = {}
        self._instances: Dict[str, BaseStep] = {}
        self._register_builtin_steps()

    def _register_builtin_steps(self):
        """Register all built-in step types."""
        for step_types in (
            AI_REASONING_STEP_TYPES,
            WEB_SEARCH_STEP_TYPES,
            IMAGE_GENERATION_STEP_TYPES,
            CUSTOM_STEP_TYPES,
        ):
            for step_type, step_class in step_types.items():
                self.register(step_type, step_class)

    def register(self, step_type: str, step_class: Type[BaseStep]):
        """Register a new step type."""
        self._steps[step_type] = step_class
        self._instances.pop(step_type, None)

    def get(self, step_type: str) -> Optional[Type[BaseStep]]:
        """Get a step class by type string."""
        return self._steps.get(step_type)

    def get_executor(self, step_type: str) -> BaseStep:
        """
        Get the executor for a step type.

        Raises:
            StepExecutionError: if the type is not registered
        """
        executor = self._instances.get(step_type)
        if executor is None:
            step_class = self.get(step_type)
            if step_class is None:
                raise StepExecutionError(f"Unknown step type: {step_type}", step_type=step_type)
            executor = step_class(self.deps)
            self._instances[step_type] = executor
        return executor

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        return [
            {
                "step_type": step_type,
                "display_name": cls.display_name,
                "description": cls.description,
                "default_failure_policy": cls.default_failure_policy.value,
                "config_schema": cls.get_config_schema(),
            }
            for step_type, cls in self._steps.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._steps.keys())


# Singleton
_registry: Optional[StepRegistry] = None


def get_step_registry() -> StepRegistry:
    """Get or create the singleton step registry."""
    global _registry
    if _registry is None:
        _registry = StepRegistry()
    return _registry
