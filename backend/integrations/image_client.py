"""
Image generation client.

Talks to an OpenAI-compatible ``/images/generations`` endpoint (an AI gateway
routing ``provider/model`` ids) and returns base64-encoded images.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.config import Settings, get_settings
from core.exceptions import TransientBackendError

logger = structlog.get_logger(__name__)


class ImageClient:
    """Implements the engine's ImageGenerator contract."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.IMAGE_API_KEY)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.IMAGE_API_BASE,
                headers={
                    "Authorization": f"Bearer {self.settings.IMAGE_API_KEY}",
                    "content-type": "application/json",
                    "user-agent": f"{self.settings.APP_NAME}/{self.settings.APP_VERSION}",
                },
                timeout=httpx.Timeout(connect=10.0, read=float(self.settings.IMAGE_TIMEOUT), write=30.0, pool=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate_images(
        self,
        prompt: str,
        model: str,
        n: int = 1,
        size: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        seed: Optional[int] = None,
    ) -> List[str]:
        """
        Generate ``n`` images for ``prompt``.

        Returns:
            Base64-encoded image payloads (possibly fewer than ``n``)

        Raises:
            TransientBackendError: on HTTP failures or a malformed reply
        """
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "n": n,
            "response_format": "b64_json",
        }
        if size:
            payload["size"] = size
        if aspect_ratio:
            payload["aspect_ratio"] = aspect_ratio
        if seed is not None:
            payload["seed"] = seed

        try:
            response = await self._get_client().post("/images/generations", json=payload)
        except httpx.HTTPError as e:
            raise TransientBackendError(f"Image request failed: {e}", backend="image") from e

        if not response.is_success:
            logger.error("Image API error", status=response.status_code, body=response.text[:500], model=model)
            raise TransientBackendError(
                f"Image API error {response.status_code}: {response.text[:200]}",
                backend="image",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientBackendError("Image API returned invalid JSON", backend="image") from e

        images = [item["b64_json"] for item in data.get("data", []) if item.get("b64_json")]
        logger.info("Images generated", model=model, requested=n, received=len(images))
        return images


_image_client: Optional[ImageClient] = None


def get_image_client() -> ImageClient:
    """Get or create the singleton image client."""
    global _image_client
    if _image_client is None:
        _image_client = ImageClient()
    return _image_client


async def close_image_client() -> None:
    global _image_client
    if _image_client is not None:
        await _image_client.close()
        _image_client = None
