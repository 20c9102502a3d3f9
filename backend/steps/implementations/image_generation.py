"""Image generation step: render a prompt and store generated images as data URLs."""

from typing import Any, Dict, Optional

from app.config import get_settings
from core.constants import FailurePolicy, StepType
from core.exceptions import StepExecutionError
from engine.models import ActionStep, StepOutput
from integrations.image_client import get_image_client
from steps.base_step import BaseStep, StepContext, render_template

DATA_URL_PREFIX = "data:image/png;base64,"


def normalize_model_id(model: Optional[str]) -> str:
    """Map legacy and bare model names onto gateway ``provider/model`` ids."""
    model_id = model or get_settings().IMAGE_DEFAULT_MODEL
    if "openai.image" in model_id or model_id == "dall-e-3":
        return "openai/dall-e-3"
    if model_id == "grok-2-image":
        return "xai/grok-2-image"
    return model_id


class ImageGenerationStep(BaseStep):
    """Generate one or more images and write them to every output field."""

    step_type = StepType.IMAGE_GENERATION.value
    display_name = "Image Generation"
    description = "Generate images from a prompt template"
    default_failure_policy = FailurePolicy.DEGRADE

    async def execute(self, step: ActionStep, inputs: Dict[str, Any], context: StepContext) -> StepOutput:
        config = step.config
        prompt = render_template(config.get("prompt") or "", inputs)
        n = int(config.get("n") or 1)

        images = self.deps.images or get_image_client()
        encoded = await images.generate_images(
            prompt,
            normalize_model_id(config.get("model")),
            n=n,
            size=config.get("size"),
            aspect_ratio=config.get("aspectRatio"),
            seed=config.get("seed"),
        )
        if not encoded:
            raise StepExecutionError("No image generated", step_name=step.name, step_type=self.step_type)

        urls = [f"{DATA_URL_PREFIX}{b64}" for b64 in encoded]
        value = urls if n > 1 else urls[0]
        return StepOutput(outputs={name: value for name in step.output_fields})

    def placeholder(self, field_name: str, error: str) -> str:
        return f"Image generation failed: {error}"

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Prompt with {field} placeholders"},
                "model": {"type": "string", "default": "openai/dall-e-3"},
                "n": {"type": "integer", "default": 1},
                "size": {"type": "string", "description": "e.g. 1024x1024"},
                "aspectRatio": {"type": "string", "description": "e.g. 16:9"},
                "seed": {"type": "integer"},
            },
            "required": ["prompt"],
        }


IMAGE_GENERATION_STEP_TYPES = {
    StepType.IMAGE_GENERATION.value: ImageGenerationStep,
}
