"""Web search step: answer the output fields from a web-grounded model call."""

from typing import Any, Dict

from core.constants import FailurePolicy, StepType
from engine.models import ActionStep, StepOutput
from integrations.claude_client import get_claude_client
from steps.base_step import BaseStep, StepContext


def build_search_prompt(query: str, output_fields: list) -> str:
    return (
        "Perform a web search and provide current, accurate information for the following query: "
        f'"{query}"\n\nProvide results for these specific fields: {", ".join(output_fields)}'
    )


class WebSearchStep(BaseStep):
    """Search the web with the step's input values and fill the output fields."""

    step_type = StepType.WEB_SEARCH.value
    display_name = "Web Search"
    description = "Search the web and summarize results into fields"
    default_failure_policy = FailurePolicy.DEGRADE

    async def execute(self, step: ActionStep, inputs: Dict[str, Any], context: StepContext) -> StepOutput:
        query = " ".join(str(v) for v in inputs.values() if v)
        schema = {
            "type": "object",
            "properties": {
                name: {"type": "string", "description": f"Search result for {name}"}
                for name in step.output_fields
            },
            "required": list(step.output_fields),
        }

        searcher = self.deps.searcher or await get_claude_client()
        result = await searcher.search_object(build_search_prompt(query, step.output_fields), schema)
        return StepOutput(outputs=dict(result.object), usage=result.usage)

    def placeholder(self, field_name: str, error: str) -> str:
        return f"Unable to search for {field_name}. Error: {error}"


WEB_SEARCH_STEP_TYPES = {
    StepType.WEB_SEARCH.value: WebSearchStep,
}
