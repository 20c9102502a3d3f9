"""
AI reasoning step: prompt the language model for structured outputs.

Plain output fields are generated as strings. A to-many relationship output
field (e.g. ``posts`` on a Lead) is generated as a complete object of the
referenced model, which the record runner turns into a child record.
"""

from typing import Any, Dict, Tuple

import structlog

from core.constants import StepType
from engine.models import Action, ActionStep, Agent, ModelDefinition, StepOutput
from integrations.claude_client import get_claude_client
from steps.base_step import BaseStep, StepContext, render_template

logger = structlog.get_logger(__name__)

RELATIONSHIP_INSTRUCTION = (
    '\n\nIMPORTANT: For any relationship fields (like "posts"), you MUST generate a structured object '
    "with the actual field values, NOT a text description. For example, generate "
    '{"title": "Actual Title", "content": "Actual Content", "status": "draft"} '
    'instead of a string like "New post about...".'
)

_JSON_TYPES = {"text": "string", "number": "number", "boolean": "boolean", "date": "string"}


def _record_schema(child: ModelDefinition, parent: ModelDefinition) -> Dict[str, Any]:
    """Object schema for a child record, minus the back-reference to ``parent``."""
    properties: Dict[str, Any] = {}
    for f in child.fields:
        if f.type == "reference" and f.references_model == parent.name:
            continue
        description = f.description or f.title or f.name
        if f.type == "date":
            description = f"{description} (YYYY-MM-DD format)"
        properties[f.name] = {"type": _JSON_TYPES.get(f.type, "string"), "description": description}
    return {"type": "object", "properties": properties, "required": list(properties)}


def build_output_schema(step: ActionStep, action: Action, agent: Agent) -> Tuple[Dict[str, Any], bool]:
    """
    JSON schema for the step's output fields.

    Returns:
        (schema, has_relationships)
    """
    parent = agent.find_model(action.model_id)
    properties: Dict[str, Any] = {}
    has_relationships = False

    for name in step.output_fields:
        relationship = agent.relationship_field(action.model_id, name)
        child = agent.find_model_by_name(relationship.references_model) if relationship else None
        if relationship and child is not None:
            has_relationships = True
            schema = _record_schema(child, parent)
            schema["description"] = f"Complete {relationship.references_model} record object with all required fields."
            properties[name] = schema
        else:
            properties[name] = {"type": "string", "description": f"Generated {name} based on the input data"}

    return {"type": "object", "properties": properties, "required": list(properties)}, has_relationships


class AiReasoningStep(BaseStep):
    """Generate output field values from a prompt with the language model."""

    step_type = StepType.AI_REASONING.value
    display_name = "AI Reasoning"
    description = "Generate structured field values from a prompt template"

    async def execute(self, step: ActionStep, inputs: Dict[str, Any], context: StepContext) -> StepOutput:
        prompt = render_template(step.config.get("prompt") or "Process the input data", inputs)
        schema, has_relationships = build_output_schema(step, context.action, context.agent)
        if has_relationships:
            prompt += RELATIONSHIP_INSTRUCTION

        generator = self.deps.generator or await get_claude_client()
        result = await generator.generate_object(prompt, schema, model=step.config.get("model"))

        logger.debug("AI reasoning result", step_name=step.name, fields=list(result.object))
        return StepOutput(outputs=dict(result.object), usage=result.usage)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Prompt with {field} placeholders"},
                "model": {"type": "string", "description": "Model override"},
                "failurePolicy": {"type": "string", "enum": ["raise", "degrade"]},
            },
            "required": ["prompt"],
        }


AI_REASONING_STEP_TYPES = {
    StepType.AI_REASONING.value: AiReasoningStep,
}
