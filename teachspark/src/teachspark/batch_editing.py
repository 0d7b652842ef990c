"""
Batch Slide Editing

Two ways of applying edits across a lesson:

- BatchSlideEditingService: one instruction, applied slide by slide, with
  progress kept in memory so the client can poll it.
- OptimizedBatchEditService: a per-slide edit plan, executed concurrently
  with one AI call per slide.
"""

import asyncio
import logging
import random
import re
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from teachspark.errors import NotFoundError, ValidationError
from teachspark.slide_editing import GeminiSimpleEditService

logger = logging.getLogger(__name__)

SECONDS_PER_SLIDE_ESTIMATE = 30

SlideCallback = Callable[[Dict[str, Any], str], Awaitable[Any]]


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_batch_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"batch_{_now_ms()}_{suffix}"


def determine_affected_slides(mode: str, total_slides: Optional[int] = None,
                              slide_numbers: Optional[List[int]] = None,
                              slide_range: Optional[Dict[str, int]] = None) -> List[int]:
    """
    Resolve which slide numbers (1-based) an edit applies to.

    Args:
        mode: "all", "specific", "range" or "single"
        total_slides: Required for "all"
        slide_numbers: Required for "specific" and "single"
        slide_range: {"start": n, "end": m} for "range"
    """
    if mode == "all":
        if not total_slides:
            raise ValidationError('Total slides count required for "all" operation')
        return list(range(1, total_slides + 1))
    if mode == "specific":
        if not slide_numbers:
            raise ValidationError('Slide numbers required for "specific" operation')
        return list(slide_numbers)
    if mode == "range":
        if not slide_range:
            raise ValidationError('Slide range required for "range" operation')
        start, end = int(slide_range["start"]), int(slide_range["end"])
        if end < start:
            raise ValidationError("Slide range end must not be before start")
        return list(range(start, end + 1))
    if mode == "single":
        if not slide_numbers:
            raise ValidationError('Slide number required for "single" operation')
        return [slide_numbers[0]]
    raise ValidationError(f"Unknown affected slides mode: {mode}")


@dataclass
class BatchEditResult:
    slide_id: str
    slide_index: int
    success: bool
    editing_time_ms: int = 0
    edited_content: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slideId": self.slide_id,
            "slideIndex": self.slide_index,
            "success": self.success,
            "editingTime": self.editing_time_ms,
            "error": self.error,
        }


@dataclass
class BatchEditSession:
    batch_id: str
    user_id: str
    lesson_id: str
    instruction: str
    slide_numbers: List[int]
    topic: str = "lesson"
    age: str = "6-8 years"
    status: str = "pending"
    created_at: datetime = field(default_factory=datetime.now)
    completed_slides: List[int] = field(default_factory=list)
    failed_slides: List[int] = field(default_factory=list)
    results: List[BatchEditResult] = field(default_factory=list)
    current_slide: Optional[int] = None
    cancelled: bool = False

    @property
    def total_slides(self) -> int:
        return len(self.slide_numbers)

    @property
    def processed(self) -> int:
        return len(self.completed_slides) + len(self.failed_slides)

    def progress(self) -> Dict[str, Any]:
        remaining = 0 if self.status in ("completed", "error", "cancelled") else \
            (self.total_slides - self.processed) * SECONDS_PER_SLIDE_ESTIMATE
        return {
            "batchId": self.batch_id,
            "lessonId": self.lesson_id,
            "status": self.status,
            "completed": len(self.completed_slides),
            "failed": len(self.failed_slides),
            "total": self.total_slides,
            "currentSlide": self.current_slide,
            "completedSlides": list(self.completed_slides),
            "failedSlides": list(self.failed_slides),
            "results": [r.to_dict() for r in self.results],
            "estimatedTimeRemaining": remaining,
        }


class BatchSlideEditingService:
    """
    In-memory batch edit sessions processed sequentially.

    Every session belongs to the user who created it; lookups by any other
    user behave as if the batch did not exist.
    """

    def __init__(self):
        self.sessions: Dict[str, BatchEditSession] = {}

    def create_batch_session(self, user_id: str, lesson_id: str, instruction: str, slide_numbers: List[int],
                             topic: str = "lesson", age: str = "6-8 years") -> BatchEditSession:
        if not instruction or not instruction.strip():
            raise ValidationError("Edit instruction is required")
        if not slide_numbers:
            raise ValidationError("No slides selected for batch edit")

        session = BatchEditSession(
            batch_id=generate_batch_id(),
            user_id=user_id,
            lesson_id=lesson_id,
            instruction=instruction,
            slide_numbers=list(slide_numbers),
            topic=topic or "lesson",
            age=age or "6-8 years",
        )
        self.sessions[session.batch_id] = session
        logger.info(f"📦 [BatchEdit] Created {session.batch_id} for {session.total_slides} slides")
        return session

    def get_session(self, batch_id: str, user_id: str) -> BatchEditSession:
        session = self.sessions.get(batch_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError(f"Batch {batch_id} not found", code="BATCH_NOT_FOUND")
        return session

    def get_progress(self, batch_id: str, user_id: str) -> Dict[str, Any]:
        return self.get_session(batch_id, user_id).progress()

    def cancel(self, batch_id: str, user_id: str) -> BatchEditSession:
        """
        Stop a batch before its next slide.

        A batch that already finished keeps its final status.
        """
        session = self.get_session(batch_id, user_id)
        session.cancelled = True
        if session.status in ("pending", "editing"):
            session.status = "cancelled"
            logger.info(f"🛑 [BatchEdit] Cancelled {batch_id}")
        return session

    def record_slide_result(self, batch_id: str, user_id: str, result: BatchEditResult):
        """Attach a result produced outside run_batch (single-slide edit endpoint)."""
        session = self.get_session(batch_id, user_id)
        session.results.append(result)
        target = session.completed_slides if result.success else session.failed_slides
        target.append(result.slide_index)
        session.current_slide = result.slide_index
        if session.processed >= session.total_slides and session.status != "cancelled":
            session.status = "completed"

    async def run_batch(self, batch_id: str, user_id: str, slides: List[Dict[str, Any]],
                        edit_service: GeminiSimpleEditService,
                        on_slide_edited: Optional[SlideCallback] = None) -> BatchEditSession:
        """
        Edit the session's slides one at a time.

        Args:
            batch_id: Session to run
            user_id: Owner of the session
            slides: Lesson slides (dicts with id, slide_number, html_content)
            edit_service: Applies the instruction to one slide
            on_slide_edited: Awaited with (slide, edited_html) after each success
        """
        session = self.get_session(batch_id, user_id)
        if session.cancelled:
            return session

        by_number = {int(s.get("slide_number", i + 1)): s for i, s in enumerate(slides)}
        session.status = "editing"

        try:
            for number in session.slide_numbers:
                if session.cancelled:
                    break

                session.current_slide = number
                slide = by_number.get(number)
                started = _now_ms()

                if slide is None:
                    result = BatchEditResult(slide_id="", slide_index=number, success=False,
                                             error=f"Slide not found at position {number}")
                else:
                    try:
                        edited = await edit_service.edit_slide(
                            session.instruction, slide.get("html_content") or "", session.topic, session.age,
                        )
                        if on_slide_edited is not None:
                            await on_slide_edited(slide, edited)
                        result = BatchEditResult(
                            slide_id=str(slide.get("id", "")), slide_index=number, success=True,
                            editing_time_ms=_now_ms() - started, edited_content=edited,
                        )
                    except Exception as e:
                        logger.warning(f"⚠️ [BatchEdit] Slide {number} failed: {e}")
                        result = BatchEditResult(
                            slide_id=str(slide.get("id", "")), slide_index=number, success=False,
                            editing_time_ms=_now_ms() - started, error=str(e),
                        )

                session.results.append(result)
                (session.completed_slides if result.success else session.failed_slides).append(number)
        except Exception as e:
            logger.error(f"❌ [BatchEdit] {batch_id} aborted: {e}")
            session.status = "error"
            raise

        if not session.cancelled:
            session.status = "completed"
        logger.info(
            f"✅ [BatchEdit] {batch_id} finished: {len(session.completed_slides)} ok, {len(session.failed_slides)} failed"
        )
        return session

    def cleanup_expired(self, ttl: timedelta) -> int:
        cutoff = datetime.now() - ttl
        expired = [bid for bid, s in self.sessions.items() if s.created_at < cutoff and s.status != "editing"]
        for batch_id in expired:
            del self.sessions[batch_id]
        if expired:
            logger.info(f"🧹 [BatchEdit] Removed {len(expired)} expired sessions")
        return len(expired)


class BatchSessionReaper:
    """Background task that periodically drops expired batch sessions."""

    def __init__(self, service: BatchSlideEditingService, ttl_minutes: int = 60, interval_seconds: int = 300):
        self.service = service
        self.ttl = timedelta(minutes=ttl_minutes)
        self.interval_seconds = interval_seconds
        self.task: Optional[asyncio.Task] = None

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.service.cleanup_expired(self.ttl)

    def start(self):
        if self.task is None:
            self.task = asyncio.create_task(self._loop())

    async def stop(self):
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None


# ==================== Optimized (parallel) batch edit ====================

SLIDE_KEY_PATTERN = re.compile(r"slide-(\d+)")


def slide_number_from_key(key: str) -> int:
    match = SLIDE_KEY_PATTERN.search(key or "")
    return int(match.group(1)) if match else 1


@dataclass
class OptimizedBatchProgress:
    total: int
    completed: int = 0
    results: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @property
    def is_completed(self) -> bool:
        return self.completed >= self.total

    @property
    def estimated_time_remaining(self) -> int:
        if self.completed == 0:
            return self.total * SECONDS_PER_SLIDE_ESTIMATE
        elapsed = time.time() - self.started_at
        per_slide = elapsed / self.completed
        return int(round(per_slide * (self.total - self.completed)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "results": dict(self.results),
            "errors": dict(self.errors),
            "isCompleted": self.is_completed,
            "estimatedTimeRemaining": 0 if self.is_completed else self.estimated_time_remaining,
        }


class OptimizedBatchEditService:
    """Runs a per-slide edit plan concurrently."""

    def __init__(self, edit_service: GeminiSimpleEditService):
        self.edit_service = edit_service

    async def execute_plan(
        self,
        slides: List[Dict[str, Any]],
        edit_plan: Dict[str, str],
        topic: str = "lesson",
        age: str = "6-8 years",
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> OptimizedBatchProgress:
        """
        Apply each instruction in the plan to its slide in parallel.

        Args:
            slides: Lesson slides ordered by slide_number
            edit_plan: {"slide-1": "instruction", ...}
            on_progress: Called with the progress dict after every slide

        Returns:
            Progress with edited HTML per slide key and errors per slide key
        """
        if not edit_plan:
            raise ValidationError("Edit plan is empty")

        progress = OptimizedBatchProgress(total=len(edit_plan))
        by_number = {int(s.get("slide_number", i + 1)): s for i, s in enumerate(slides)}

        async def edit_one(key: str, instruction: str) -> str:
            number = slide_number_from_key(key)
            slide = by_number.get(number)
            try:
                if slide is None:
                    raise NotFoundError(f"Slide not found at position {number}", code="SLIDE_NOT_FOUND")
                edited = await self.edit_service.edit_slide(instruction, slide.get("html_content") or "", topic, age)
                progress.results[key] = edited
                return edited
            except Exception as e:
                progress.errors[key] = str(e)
                raise
            finally:
                progress.completed += 1
                if on_progress is not None:
                    on_progress(progress.to_dict())

        logger.info(f"🚀 [OptimizedBatch] Editing {len(edit_plan)} slides in parallel")
        await asyncio.gather(
            *(edit_one(key, instruction) for key, instruction in edit_plan.items()),
            return_exceptions=True,
        )
        logger.info(f"✅ [OptimizedBatch] {len(progress.results)} ok, {len(progress.errors)} failed")
        return progress
