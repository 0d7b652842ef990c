"""
Educational Image Generation (Together AI / FLUX)

Wraps the Together images endpoint. Prompts are enriched with child-friendly
modifiers and dimensions are snapped to what FLUX accepts.
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from teachspark.errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

TOGETHER_IMAGES_URL = "https://api.together.xyz/v1/images/generations"
FLUX_MODEL = "black-forest-labs/FLUX.1-schnell"

MIN_DIMENSION = 256
MAX_DIMENSION = 2048
DIMENSION_STEP = 16

EDUCATIONAL_MODIFIERS = [
    "educational content",
    "child-friendly",
    "safe for children",
    "bright and engaging",
    "high quality illustration",
    "clear and detailed",
    "positive learning environment",
]

TECHNICAL_MODIFIERS = [
    "professional digital art",
    "vibrant colors",
    "sharp focus",
    "well-lit",
    "clean composition",
    "highly detailed",
]


@dataclass
class ImageGenerationResult:
    """Outcome of a single image request."""
    success: bool
    width: int
    height: int
    prompt: str
    enhanced_prompt: str = ""
    image_base64: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429

    def to_dict(self, original_width: Optional[int] = None, original_height: Optional[int] = None) -> Dict[str, Any]:
        return {
            "success": self.success,
            "image": self.image_base64,
            "error": self.error,
            "dimensions": {
                "width": self.width,
                "height": self.height,
                "originalWidth": original_width if original_width is not None else self.width,
                "originalHeight": original_height if original_height is not None else self.height,
            },
        }


def enhance_educational_prompt(prompt: str) -> str:
    """Append educational and technical modifiers to an image prompt."""
    lowered = prompt.lower()
    if any(term in lowered for term in EDUCATIONAL_MODIFIERS):
        return f"{prompt}, {', '.join(TECHNICAL_MODIFIERS[:3])}"
    modifiers = EDUCATIONAL_MODIFIERS[:3] + TECHNICAL_MODIFIERS[:2]
    return f"{prompt}, {', '.join(modifiers)}"


def snap_dimension(value: int, minimum: int = MIN_DIMENSION, maximum: int = MAX_DIMENSION) -> int:
    """Round to a multiple of 16 and clamp to the FLUX range."""
    rounded = int(round(value / DIMENSION_STEP)) * DIMENSION_STEP
    return max(minimum, min(maximum, rounded))


class TogetherImageService:
    """
    Generates images with FLUX.1-schnell through the Together REST API.

    An httpx.AsyncClient can be injected for tests; otherwise a client is
    opened per request.
    """

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0):
        self.api_key = api_key
        self.http_client = http_client
        self.timeout = timeout

    def _build_payload(self, prompt: str, width: int, height: int) -> Dict[str, Any]:
        return {
            "model": FLUX_MODEL,
            "prompt": prompt,
            "width": width,
            "height": height,
            "steps": 4,
            "n": 1,
            "response_format": "b64_json",
            "guidance_scale": 3.5,
            "seed": random.randint(0, 999999),
        }

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.http_client is not None:
            return await self.http_client.post(TOGETHER_IMAGES_URL, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(TOGETHER_IMAGES_URL, json=payload, headers=headers, timeout=self.timeout)

    async def generate(self, prompt: str, width: int = 1024, height: int = 768, enhance: bool = True) -> ImageGenerationResult:
        """
        Generate one image.

        Args:
            prompt: Image description
            width: Requested width (snapped to 256-2048, multiple of 16)
            height: Requested height (snapped to 256-2048, multiple of 16)
            enhance: Whether to add educational prompt modifiers

        Returns:
            ImageGenerationResult; HTTP failures are reported, not raised
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required")
        if not self.api_key:
            raise ConfigurationError("TOGETHER_API_KEY is not configured")

        final_width = snap_dimension(width)
        final_height = snap_dimension(height)
        enhanced_prompt = enhance_educational_prompt(prompt) if enhance else prompt

        logger.info(f"🎨 [Images] FLUX request {final_width}x{final_height}: {prompt[:60]}")
        try:
            response = await self._post(self._build_payload(enhanced_prompt, final_width, final_height))
        except httpx.HTTPError as e:
            logger.error(f"❌ [Images] FLUX request failed: {e}")
            return ImageGenerationResult(
                success=False, width=final_width, height=final_height,
                prompt=prompt, enhanced_prompt=enhanced_prompt, error=str(e),
            )

        if response.status_code != 200:
            logger.warning(f"⚠️ [Images] FLUX returned {response.status_code}")
            return ImageGenerationResult(
                success=False, width=final_width, height=final_height,
                prompt=prompt, enhanced_prompt=enhanced_prompt,
                error="Rate limit exceeded" if response.status_code == 429 else "Failed to generate image",
                status_code=response.status_code,
            )

        data = response.json()
        items = data.get("data") or []
        image = items[0].get("b64_json") if items else None
        if not image:
            return ImageGenerationResult(
                success=False, width=final_width, height=final_height,
                prompt=prompt, enhanced_prompt=enhanced_prompt,
                error="No image data in response", status_code=response.status_code,
            )

        return ImageGenerationResult(
            success=True, width=final_width, height=final_height,
            prompt=prompt, enhanced_prompt=enhanced_prompt,
            image_base64=image, status_code=response.status_code,
        )
