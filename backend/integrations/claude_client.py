"""
Claude AI Client for the step executors.

Features:
- httpx connection pooling with retry and exponential backoff
- Forced tool-use structured output (generate_object)
- Web-search-augmented structured output (search_object)
- Python handler synthesis for custom steps (generate_code)
- Smart JSON parsing for responses that wrap JSON in prose or fences
- Per-attempt request and token statistics
"""

import asyncio
import json
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from app.config import Settings, get_settings
from core.exceptions import TransientBackendError
from engine.models import TokenUsage
from engine.stores import GenerationResult

logger = structlog.get_logger(__name__)


# ─── JSON Extraction ──────────────────────────────────────────

_FENCE = re.compile(r'```(?:json|JSON)?\s*\n?(.*?)```', re.DOTALL)
_DECODER = json.JSONDecoder()


def extract_json(text: str) -> Any:
    """Extract JSON from a Claude reply that may wrap it in prose or a code fence.

    Tries the whole text and the first fenced block, then scans for the
    first object or array that decodes cleanly.

    Raises:
        ValueError: if no JSON value can be found
    """
    if not text or not text.strip():
        raise ValueError("Empty response")
    clean = text.strip()

    fenced = _FENCE.search(clean)
    for candidate in (clean, fenced.group(1).strip() if fenced else None):
        if candidate:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pass

    for opener in re.finditer(r"[{\[]", clean):
        try:
            value, _ = _DECODER.raw_decode(clean, opener.start())
        except json.JSONDecodeError:
            continue
        return value

    raise ValueError(f"Could not extract JSON from response: {clean[:200]}")


def extract_code(text: str, language: str = "python") -> str:
    """Return the first fenced code block in ``text``, or the text itself."""
    match = re.search(r'```(?:' + re.escape(language) + r')?\s*\n(.*?)```', text, re.DOTALL)
    if match:
        return match.group(1).strip()
    # Continuation of a prompt that already opened the fence
    return text.split("```")[0].strip()


# ─── Usage Tracking ───────────────────────────────────────────

def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


class ClaudeUsageStats:
    """Running totals for one client, counted per HTTP attempt."""

    def __init__(self):
        self.tokens = TokenUsage()
        self.total_requests = 0
        self.failed_requests = 0
        self.requests_by_model: Dict[str, int] = {}
        self._duration_ms = 0.0

    def record(self, model: str, duration_ms: float, usage: Optional[TokenUsage] = None) -> None:
        """Count one attempt; ``usage`` is None for a failed one."""
        self.total_requests += 1
        self._duration_ms += duration_ms
        self.requests_by_model[model] = self.requests_by_model.get(model, 0) + 1
        if usage is None:
            self.failed_requests += 1
        else:
            self.tokens = self.tokens + usage

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "requests_by_model": dict(self.requests_by_model),
            "avg_duration_ms": round(self._duration_ms / max(self.total_requests, 1), 2),
            "total_tokens": self.tokens.total_tokens,
            "input_tokens": self.tokens.input_tokens,
            "output_tokens": self.tokens.output_tokens,
        }


def _usage_from(response: Dict[str, Any]) -> TokenUsage:
    usage = response.get("usage") or {}
    return TokenUsage.from_counts(usage.get("input_tokens", 0), usage.get("output_tokens", 0))


# ─── Main Claude Client ───────────────────────────────────────

class ClaudeClient:
    """
    Claude client used by the ai_reasoning, web_search and custom steps.

    Implements the StructuredGenerator, WebSearchGenerator and CodeGenerator
    contracts of the engine.
    """

    API_BASE = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"
    STRUCTURED_TOOL = "structured_output"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.usage = ClaudeUsageStats()

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.ANTHROPIC_API_KEY)

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> bool:
        """Create the pooled HTTP client."""
        if not self.is_configured:
            logger.warning("Claude API key not configured. AI steps will fail.")
            return False

        self._client = httpx.AsyncClient(
            base_url=self.API_BASE,
            headers={
                "x-api-key": self.settings.ANTHROPIC_API_KEY,
                "anthropic-version": self.API_VERSION,
                "content-type": "application/json",
                "user-agent": f"{self.settings.APP_NAME}/{self.settings.APP_VERSION}",
            },
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(self.settings.CLAUDE_TIMEOUT),
                write=30.0,
                pool=10.0,
            ),
            limits=httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=300,
            ),
            transport=self._transport,
        )
        logger.info("Claude AI client connected", model=self.settings.CLAUDE_MODEL)
        return True

    async def disconnect(self):
        """Gracefully close connections."""
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Claude AI client disconnected")

    # ─── Core API Request ──────────────────────────────────────────

    async def _make_request(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        tools: Optional[List[Dict]] = None,
        tool_choice: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Make a request to Claude API with retry logic."""
        if not self.is_connected and not await self.connect():
            raise TransientBackendError("Claude API key not configured", backend="claude")

        settings = self.settings
        payload: Dict[str, Any] = {
            "model": model or settings.CLAUDE_MODEL,
            "max_tokens": max_tokens or settings.CLAUDE_MAX_TOKENS,
            "temperature": temperature if temperature is not None else settings.CLAUDE_TEMPERATURE,
            "messages": messages,
        }

        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools
        if tool_choice:
            payload["tool_choice"] = tool_choice

        model_name = payload["model"]
        last_error = None
        for attempt in range(settings.CLAUDE_MAX_RETRIES):
            started = time.monotonic()
            wait: Optional[float] = None
            try:
                response = await self._client.post("/messages", json=payload)
            except httpx.TimeoutException:
                last_error = "Request timed out"
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
            else:
                if response.status_code == 200:
                    data = response.json()
                    self.usage.record(model_name, _elapsed_ms(started), _usage_from(data))
                    return data
                last_error, wait = self._describe_failure(response, attempt)

            self.usage.record(model_name, _elapsed_ms(started))
            logger.warning("Claude request failed", attempt=attempt + 1, error=last_error)
            if attempt < settings.CLAUDE_MAX_RETRIES - 1:
                await asyncio.sleep(wait if wait is not None else min(2 ** attempt * settings.CLAUDE_RETRY_DELAY, 30))

        raise TransientBackendError(
            f"Claude API failed after {settings.CLAUDE_MAX_RETRIES} retries: {last_error}",
            backend="claude",
        )

    @staticmethod
    def _describe_failure(response: httpx.Response, attempt: int) -> Tuple[str, Optional[float]]:
        """Error text for a non-200 reply, and how long to wait before retrying."""
        if response.status_code == 429:
            return "Rate limited", float(response.headers.get("retry-after", 5))
        if response.status_code == 529:
            return "API overloaded", float(min(2 ** (attempt + 1), 30))
        return f"API error {response.status_code}: {response.text[:200]}", None

    def _structured_tool(self, schema: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": self.STRUCTURED_TOOL,
            "description": "Return the result as structured JSON",
            "input_schema": schema,
        }

    def _read_structured(self, response: Dict[str, Any]) -> Dict[str, Any]:
        """Pull the structured object out of a response's content blocks."""
        content_blocks = response.get("content", [])
        for block in content_blocks:
            if block.get("type") == "tool_use" and block.get("name") == self.STRUCTURED_TOOL:
                return block.get("input", {})

        # Fallback: the last text block that parses as a JSON object
        for block in reversed(content_blocks):
            if block.get("type") == "text":
                try:
                    parsed = extract_json(block["text"])
                except ValueError:
                    continue
                if isinstance(parsed, dict):
                    return parsed

        raise TransientBackendError(
            "Claude did not return structured output. "
            f"Response blocks: {[b.get('type') for b in content_blocks]}",
            backend="claude",
        )

    # ─── Engine Contracts ──────────────────────────────────────────

    async def generate_object(
        self,
        prompt: str,
        schema: Dict[str, Any],
        model: Optional[str] = None,
    ) -> GenerationResult:
        """Generate an object matching ``schema`` via forced tool use."""
        response = await self._make_request(
            messages=[{"role": "user", "content": prompt}],
            model=model,
            tools=[self._structured_tool(schema)],
            tool_choice={"type": "tool", "name": self.STRUCTURED_TOOL},
        )
        return GenerationResult(object=self._read_structured(response), usage=_usage_from(response))

    async def search_object(self, prompt: str, schema: Dict[str, Any]) -> GenerationResult:
        """Answer with web search grounding, then return an object matching ``schema``."""
        tools = [
            {
                "type": "web_search_20250305",
                "name": "web_search",
                "max_uses": self.settings.CLAUDE_WEB_SEARCH_MAX_USES,
            },
            self._structured_tool(schema),
        ]
        response = await self._make_request(
            messages=[{
                "role": "user",
                "content": f"{prompt}\n\nWhen you have the results, call the {self.STRUCTURED_TOOL} tool with them.",
            }],
            tools=tools,
            tool_choice={"type": "auto"},
        )
        return GenerationResult(object=self._read_structured(response), usage=_usage_from(response))

    async def generate_code(
        self,
        description: str,
        step_name: str,
        input_fields: List[str],
        output_fields: List[str],
    ) -> str:
        """Synthesize a self-contained Python ``handler(inputs)`` for a custom step."""
        example_out = ", ".join(f'"{f}": ...' for f in output_fields)
        prompt = f"""Generate Python code for the following custom processing step.

Step name: {step_name}
Description: {description}
Input fields: {", ".join(input_fields) or "(none)"}
Output fields: {", ".join(output_fields) or "(none)"}

Requirements:
- Define a function `handler(inputs)` taking a dict of the input fields
- Return a dict with the output fields: {{{example_out}}}
- Use only the Python standard library
- No file system access, no environment variables, no network access
- Return ONLY the code, no explanations

```python"""

        response = await self._make_request(
            messages=[{"role": "user", "content": prompt}],
            system="You are an expert Python developer. Write clean, efficient code.",
            temperature=0.2,
        )
        text = "".join(
            block.get("text", "") for block in response.get("content", []) if block.get("type") == "text"
        )
        code = extract_code(text)
        if not code:
            raise TransientBackendError("Claude returned no code", backend="claude")
        return code

    # ─── Status ────────────────────────────────────────────────────

    async def get_status(self) -> Dict[str, Any]:
        """Get current client status and usage statistics."""
        return {
            "configured": self.is_configured,
            "connected": self.is_connected,
            "model": self.settings.CLAUDE_MODEL,
            "usage": self.usage.get_stats(),
        }


# ─── Singleton ─────────────────────────────────────────────────

_claude_client: Optional[ClaudeClient] = None


async def get_claude_client() -> ClaudeClient:
    """Get or create the singleton Claude client."""
    global _claude_client
    if _claude_client is None:
        _claude_client = ClaudeClient()
        await _claude_client.connect()
    elif not _claude_client.is_connected:
        await _claude_client.connect()
    return _claude_client


async def close_claude_client() -> None:
    """Close the singleton's connections, if it was ever created."""
    global _claude_client
    if _claude_client is not None:
        await _claude_client.disconnect()
        _claude_client = None
