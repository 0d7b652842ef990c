"""
Slide Image Processor

Generated slide HTML marks where images belong with comments such as:

    <!-- IMAGE_PROMPT: "a friendly cartoon sun" WIDTH: 640 HEIGHT: 480 -->

The processor generates each image, stores it in temporary storage when a
session is available, and replaces the comment with an <img> block (or an
error placeholder when generation keeps failing).
"""

import asyncio
import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from teachspark.image_generation import ImageGenerationResult, TogetherImageService
from teachspark.temporary_images import TemporaryImageService

logger = logging.getLogger(__name__)

IMAGE_PROMPT_PATTERN = re.compile(
    r'<!--\s*IMAGE_PROMPT:\s*"([^"]+)"\s+WIDTH:\s*(\d+)\s+HEIGHT:\s*(\d+)\s*-->',
    re.IGNORECASE,
)

MIN_SLIDE_IMAGE = 256
MAX_SLIDE_IMAGE = 1536
MAX_ATTEMPTS = 3
PAUSE_BETWEEN_IMAGES = 2.0


@dataclass
class ImagePrompt:
    full_match: str
    prompt: str
    width: int
    height: int
    index: int


@dataclass
class ProcessedSlide:
    """Result of processing one slide's HTML."""
    html: str
    images_generated: int = 0
    images_failed: int = 0
    image_urls: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def extract_image_prompts(html: str) -> List[ImagePrompt]:
    """Find all IMAGE_PROMPT comments in slide HTML, in document order."""
    prompts = []
    for index, match in enumerate(IMAGE_PROMPT_PATTERN.finditer(html or "")):
        prompts.append(ImagePrompt(
            full_match=match.group(0),
            prompt=match.group(1).strip(),
            width=int(match.group(2)),
            height=int(match.group(3)),
            index=index,
        ))
    return prompts


def correct_dimensions(width: int, height: int):
    """Clamp to 256-1536 and round to a multiple of 16."""
    def fix(value: int) -> int:
        value = max(MIN_SLIDE_IMAGE, min(MAX_SLIDE_IMAGE, value))
        value = int(round(value / 16)) * 16
        return max(MIN_SLIDE_IMAGE, value)
    return fix(width), fix(height)


def build_image_block(src: str, prompt: str, width: int, height: int, storage_type: str,
                      session_id: str = "", temp_url: str = "") -> str:
    alt = html_lib.escape(prompt, quote=True)
    return (
        '<div class="image-container" style="max-width: 100%; margin: 15px auto; display: flex; '
        'justify-content: center; align-items: center; box-sizing: border-box;">'
        f'<img src="{src}" alt="{alt}" width="{width}" height="{height}" '
        'style="max-width: 100%; height: auto; border-radius: 12px; box-shadow: 0 4px 16px rgba(0,0,0,0.15); '
        'display: block; object-fit: cover;" loading="lazy" '
        f'data-prompt="{alt}" data-model="FLUX.1-schnell" data-storage-type="{storage_type}" '
        f'data-temp-url="{temp_url}" data-session-id="{session_id}" />'
        '</div>'
    )


def build_error_placeholder(prompt: str, reason: str) -> str:
    return (
        '<div class="image-placeholder image-error" style="max-width: 100%; margin: 15px auto; padding: 20px; '
        'border: 2px dashed #ccc; border-radius: 12px; text-align: center; color: #666; background: #f9f9f9;">'
        f'<div style="font-size: 2em;">🖼️</div>'
        f'<p style="margin: 8px 0 0;">{html_lib.escape(prompt)}</p>'
        f'<small style="color: #999;">{html_lib.escape(reason)}</small>'
        '</div>'
    )


class SlideImageProcessor:
    """
    Replaces IMAGE_PROMPT comments with generated images.

    Images are generated one after another with a pause in between to stay
    under the provider's rate limit.
    """

    def __init__(
        self,
        image_service: TogetherImageService,
        temp_storage: Optional[TemporaryImageService] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.image_service = image_service
        self.temp_storage = temp_storage
        self._sleep = sleep

    async def _generate_with_retry(self, prompt: ImagePrompt) -> ImageGenerationResult:
        width, height = correct_dimensions(prompt.width, prompt.height)
        last_error = "Unknown error"
        result = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                result = await self.image_service.generate(prompt.prompt, width=width, height=height)
            except Exception as e:
                last_error = str(e) or "Network error"
                result = None
            else:
                if result.success:
                    return result
                last_error = result.error or "Unknown error"

            if attempt < MAX_ATTEMPTS:
                rate_limited = result is not None and result.rate_limited
                await self._sleep(2.0 if rate_limited and attempt == 1 else 1.0)

        return ImageGenerationResult(
            success=False,
            width=width,
            height=height,
            prompt=prompt.prompt,
            error=f"Failed after {MAX_ATTEMPTS} attempts. Last error: {last_error}",
        )

    async def process_slide_html(self, html: str, session_id: Optional[str] = None,
                                 user_id: Optional[str] = None) -> ProcessedSlide:
        """
        Generate and insert every image referenced by the slide.

        Args:
            html: Slide HTML with IMAGE_PROMPT comments
            session_id: Temporary storage session (inline base64 when missing)
            user_id: Owner of the temporary files

        Returns:
            ProcessedSlide with the rewritten HTML and counters
        """
        prompts = extract_image_prompts(html)
        processed = ProcessedSlide(html=html)
        if not prompts:
            return processed

        logger.info(f"🎨 [ImageProcessor] Found {len(prompts)} image prompts")
        use_storage = self.temp_storage is not None and session_id and user_id

        for i, prompt in enumerate(prompts):
            if i > 0:
                await self._sleep(PAUSE_BETWEEN_IMAGES)

            result = await self._generate_with_retry(prompt)
            if not result.success or not result.image_base64:
                processed.images_failed += 1
                processed.errors.append(result.error or "Generation failed")
                replacement = build_error_placeholder(prompt.prompt, "Generation failed")
            elif use_storage:
                try:
                    stored = self.temp_storage.upload_temporary_image(
                        result.image_base64, session_id, user_id, i,
                        prompt=prompt.prompt, width=result.width, height=result.height,
                    )
                    replacement = build_image_block(
                        stored.temp_url, prompt.prompt, result.width, result.height,
                        "temporary", session_id=session_id, temp_url=stored.temp_url,
                    )
                    processed.image_urls.append(stored.temp_url)
                    processed.images_generated += 1
                except Exception as e:
                    logger.warning(f"⚠️ [ImageProcessor] Temporary upload failed: {e}")
                    processed.images_failed += 1
                    processed.errors.append(f"Upload failed: {e}")
                    replacement = build_error_placeholder(prompt.prompt, "No image source available")
            else:
                src = f"data:image/png;base64,{result.image_base64}"
                replacement = build_image_block(src, prompt.prompt, result.width, result.height, "base64")
                processed.images_generated += 1

            processed.html = processed.html.replace(prompt.full_match, replacement, 1)

        logger.info(
            f"✅ [ImageProcessor] {processed.images_generated} generated, {processed.images_failed} failed"
        )
        return processed
