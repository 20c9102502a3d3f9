"""
Custom step: user-defined processing.

Resolution order:
1. OAuth bootstrap code (contains ``OAUTH_REQUIRED`` / ``requiresOAuth``) is
   run in the sandbox; a ``requiresOAuth`` result becomes an OAuthRequirement.
2. A deployed endpoint (``config.deployment.status == "deployed"``) is called
   over HTTP.
3. Otherwise ``config.code`` (synthesized from ``config.description`` when
   missing) runs in the sandbox.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog

from app.config import get_settings
from core.constants import OAUTH_CODE_MARKERS, StepType
from core.exceptions import StepExecutionError
from engine.models import ActionStep, OAuthRequirement, StepOutput
from integrations.claude_client import get_claude_client
from steps.base_step import BaseStep, StepContext
from steps.sandbox import get_sandbox

logger = structlog.get_logger(__name__)


def is_oauth_code(code: str) -> bool:
    return any(marker in code for marker in OAUTH_CODE_MARKERS)


def oauth_requirement_from(result: Dict[str, Any]) -> Optional[OAuthRequirement]:
    if not result.get("requiresOAuth"):
        return None
    return OAuthRequirement(
        provider=str(result.get("provider") or ""),
        scopes=tuple(result.get("scopes") or ()),
        output_field=result.get("outputField"),
        requires_existing=bool(result.get("requiresExisting")),
    )


class CustomStep(BaseStep):
    """Run user code or a deployed endpoint against the input values."""

    step_type = StepType.CUSTOM.value
    display_name = "Custom"
    description = "Run custom code or call a deployed step endpoint"

    async def execute(self, step: ActionStep, inputs: Dict[str, Any], context: StepContext) -> StepOutput:
        config = step.config
        code = config.get("customCode") or config.get("code") or ""

        if code and is_oauth_code(code):
            requirement = await self._evaluate_oauth(step, code, inputs, context)
            if requirement is not None:
                logger.info("OAuth step requires authorization", step_name=step.name, provider=requirement.provider)
                return StepOutput(oauth_requirement=requirement)

        deployment = config.get("deployment") or {}
        if deployment.get("url") and deployment.get("status") == "deployed":
            return StepOutput(outputs=await self._call_deployment(step, deployment["url"], inputs))

        if not config.get("code") and not config.get("description"):
            raise StepExecutionError(
                "Custom step requires code or description for execution",
                step_name=step.name,
                step_type=self.step_type,
            )

        try:
            code = config.get("code")
            if not code:
                code_generator = self.deps.code_generator or await get_claude_client()
                code = await code_generator.generate_code(
                    config["description"], step.name, step.input_fields, step.output_fields
                )
                logger.info("Generated code for custom step", step_name=step.name, chars=len(code))

            sandbox = self.deps.sandbox or get_sandbox()
            result = await sandbox.run(code, inputs, timeout=self._sandbox_timeout(context))
        except StepExecutionError as e:
            raise StepExecutionError(
                f"Custom step execution failed: {e.message}", step_name=step.name, step_type=self.step_type
            ) from e
        except Exception as e:
            raise StepExecutionError(
                f"Custom step execution failed: {e}", step_name=step.name, step_type=self.step_type
            ) from e

        missing = [f for f in step.output_fields if f not in result]
        if missing:
            logger.warning("Custom code did not return output fields", step_name=step.name, missing=missing)
        return StepOutput(outputs=result)

    def _sandbox_timeout(self, context: StepContext) -> float:
        return context.timeout_for(get_settings().CUSTOM_CODE_TIMEOUT_SECONDS)

    async def _evaluate_oauth(
        self,
        step: ActionStep,
        code: str,
        inputs: Dict[str, Any],
        context: StepContext,
    ) -> Optional[OAuthRequirement]:
        sandbox = self.deps.sandbox or get_sandbox()
        try:
            result = await sandbox.run(code, inputs, timeout=self._sandbox_timeout(context))
        except StepExecutionError as e:
            raise StepExecutionError(
                f"OAuth step evaluation failed: {e.message}", step_name=step.name, step_type=self.step_type
            ) from e
        return oauth_requirement_from(result)

    async def _call_deployment(self, step: ActionStep, url: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            **inputs,
            "metadata": {
                "stepName": step.name,
                "executedAt": datetime.now(timezone.utc).isoformat(),
            },
        }
        logger.info("Calling deployed step endpoint", step_name=step.name, url=url)

        if self.deps.http_client is not None:
            response = await self.deps.http_client.post(url, json=body)
        else:
            async with httpx.AsyncClient(timeout=get_settings().DEPLOYMENT_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json=body)

        if not response.is_success:
            raise StepExecutionError(
                f"API endpoint returned {response.status_code}: {response.text}",
                step_name=step.name,
                step_type=self.step_type,
            )

        try:
            reply = response.json()
        except ValueError:
            reply = None
        if not isinstance(reply, dict) or not reply.get("success"):
            raise StepExecutionError(
                "API endpoint returned invalid response format or failed",
                step_name=step.name,
                step_type=self.step_type,
            )

        results = {k: v for k, v in reply.items() if k != "success"}
        outputs: Dict[str, Any] = {}
        for name in step.output_fields:
            if name not in results:
                logger.warning("Expected output field not found in API response", step_name=step.name, field=name)
            outputs[name] = results.get(name)
        for key, value in results.items():
            outputs.setdefault(key, value)
        return outputs

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Python code defining handler(inputs)"},
                "description": {"type": "string", "description": "Used to generate code when none is given"},
                "deployment": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "status": {"type": "string", "enum": ["pending", "deployed", "failed"]},
                    },
                },
            },
        }


CUSTOM_STEP_TYPES = {
    StepType.CUSTOM.value: CustomStep,
}
