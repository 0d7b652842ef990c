"""
Sequential Slide Generation

Generates a lesson's slides one after another, in slide-number order, with a
pause between model calls. A slide that fails is replaced by a placeholder
draft so the lesson keeps its shape; the caller sees it counted as failed.
"""

import asyncio
import html
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from teachspark.content_generation import ContentService
from teachspark.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_SLIDE_DELAY_SECONDS = 1.0

FALLBACK_SLIDE_TEMPLATE = """<div style="padding: 40px; text-align: center; background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; border-radius: 12px; min-height: 400px; display: flex; flex-direction: column; justify-content: center;">
  <h1 style="font-size: 2.5rem; margin-bottom: 20px; text-shadow: 2px 2px 4px rgba(0,0,0,0.3);">{title}</h1>
  <p style="font-size: 1.2rem; line-height: 1.6; max-width: 600px; margin: 0 auto;">{description}</p>
</div>"""

FEATURES = ["sequential-generation", "rate-limited", "stable-ordering", "progress-tracking"]


@dataclass
class SlideDescription:
    slide_number: int
    title: str
    description: str = ""
    type: str = "content"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlideDescription":
        try:
            number = int(data.get("slideNumber"))
        except (TypeError, ValueError):
            raise ValidationError("Each slide description needs a numeric slideNumber")
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError(f"Slide {number} needs a title")
        return cls(slide_number=number, title=title, description=data.get("description") or "",
                   type=data.get("type") or "content")


@dataclass
class SlideProgress:
    slide_number: int
    title: str
    status: str = "pending"
    progress: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"slideNumber": self.slide_number, "title": self.title,
                "status": self.status, "progress": self.progress}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class GeneratedSlide:
    slide_number: int
    title: str
    description: str
    type: str
    html_content: str
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {"slideNumber": self.slide_number, "title": self.title, "description": self.description,
                "type": self.type, "htmlContent": self.html_content, "status": self.status}


@dataclass
class SequentialGenerationResult:
    slides: List[GeneratedSlide] = field(default_factory=list)
    progress: List[SlideProgress] = field(default_factory=list)
    results: List[Any] = field(default_factory=list)
    generation_time_ms: int = 0

    @property
    def completed_slides(self) -> int:
        return sum(1 for p in self.progress if p.status == "completed")

    @property
    def failed_slides(self) -> int:
        return sum(1 for p in self.progress if p.status == "error")

    def statistics(self) -> Dict[str, Any]:
        return {
            "totalSlides": len(self.progress),
            "completedSlides": self.completed_slides,
            "failedSlides": self.failed_slides,
            "generationTime": self.generation_time_ms,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }


def parse_slide_descriptions(raw: Any) -> List[SlideDescription]:
    if not isinstance(raw, list):
        raise ValidationError("slideDescriptions array is required")
    if not raw:
        raise ValidationError("At least one slide description is required")
    descriptions = [SlideDescription.from_dict(item if isinstance(item, dict) else {}) for item in raw]
    return sorted(descriptions, key=lambda d: d.slide_number)


def fallback_slide_html(title: str, description: str) -> str:
    return FALLBACK_SLIDE_TEMPLATE.format(
        title=html.escape(title or "Slide Title"),
        description=html.escape(description or "This slide content will be generated. "
                                               "Please try again or provide more specific instructions."),
    )


ProgressCallback = Callable[[List[SlideProgress]], None]
SlideReadyCallback = Callable[[GeneratedSlide], Awaitable[None]]


class SequentialSlideGenerationService:
    """Generates slides in order through one ContentService."""

    def __init__(self, content_service: ContentService, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 delay_seconds: float = DEFAULT_SLIDE_DELAY_SECONDS):
        self.content_service = content_service
        self._sleep = sleep
        self.delay_seconds = delay_seconds

    async def generate_all_slides(
        self,
        descriptions: List[SlideDescription],
        topic: str,
        age: str,
        on_progress: Optional[ProgressCallback] = None,
        on_slide_ready: Optional[SlideReadyCallback] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> SequentialGenerationResult:
        """
        Generate every described slide in slide-number order.

        Args:
            descriptions: Slides to build; they are ordered by slide_number
            topic: Lesson topic
            age: Target age group
            on_progress: Called with the full progress list after every change
            on_slide_ready: Awaited with each slide, fallbacks included, as soon as it exists
            session_id: Temporary image session for generated pictures
            user_id: Owner of the temporary images

        Returns:
            SequentialGenerationResult with slides, progress and AI results
        """
        ordered = sorted(descriptions, key=lambda d: d.slide_number)
        result = SequentialGenerationResult(progress=[SlideProgress(d.slide_number, d.title) for d in ordered])
        started = time.time()
        total = len(ordered)

        def report():
            if on_progress is not None:
                on_progress(list(result.progress))

        logger.info(f"🎨 [Sequential] Generating {total} slides for '{topic}' ({age})")
        for index, (description, progress) in enumerate(zip(ordered, result.progress)):
            if index > 0 and self.delay_seconds > 0:
                await self._sleep(self.delay_seconds)

            progress.status, progress.progress = "generating", 50
            report()
            try:
                generated = await self.content_service.generate_slide_content(
                    description.title, description.description, topic, age,
                    description.slide_number, total, description.type,
                    session_id=session_id, user_id=user_id,
                )
                result.results.append(generated)
                slide = GeneratedSlide(description.slide_number, description.title, description.description,
                                       description.type, generated.text, "completed")
                progress.status = "completed"
            except Exception as e:
                logger.error(f"❌ [Sequential] Slide {description.slide_number} failed: {e}")
                slide = GeneratedSlide(description.slide_number, description.title, description.description,
                                       description.type, fallback_slide_html(description.title, description.description),
                                       "draft")
                progress.status, progress.error = "error", str(e)

            progress.progress = 100
            result.slides.append(slide)
            report()
            if on_slide_ready is not None:
                await on_slide_ready(slide)

        result.generation_time_ms = int((time.time() - started) * 1000)
        logger.info(f"✅ [Sequential] {result.completed_slides}/{total} slides generated "
                    f"({result.failed_slides} failed) in {result.generation_time_ms}ms")
        return result
