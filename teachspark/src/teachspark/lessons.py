"""
Lessons and Slides Storage

Supabase-backed CRUD for the `lessons`, `slides` and `slide_images` tables.
Every user-facing call is scoped to the owning user.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from teachspark.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SLIDE_ICONS = {
    "welcome": "👋",
    "content": "📚",
    "activity": "🎯",
    "game": "🎮",
    "summary": "📝",
    "title": "📋",
    "interactive": "🎮",
}
DEFAULT_SLIDE_ICON = "📄"

DEFAULT_SLIDES = [
    {"title": "Welcome", "description": "Introduction to the lesson topic", "type": "welcome"},
    {"title": "Main Content", "description": "Presenting the new material", "type": "content"},
    {"title": "Practice Activity", "description": "Reinforcing what was learned", "type": "activity"},
    {"title": "Summary", "description": "Reviewing the key points", "type": "summary"},
]

LESSON_UPDATE_FIELDS = {
    "title", "description", "subject", "age_group", "duration", "difficulty",
    "status", "is_public", "thumbnail_url", "tags", "metadata",
}
SLIDE_UPDATE_FIELDS = {
    "title", "description", "type", "icon", "status", "html_content", "thumbnail_url", "metadata",
}


def get_slide_icon(slide_type: Optional[str]) -> str:
    return SLIDE_ICONS.get(slide_type or "", DEFAULT_SLIDE_ICON)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(result) -> Optional[Dict[str, Any]]:
    return result.data[0] if result.data else None


class LessonService:
    """Lesson and slide persistence on Supabase."""

    def __init__(self, supabase):
        self.supabase = supabase

    # ==================== Lessons ====================

    def create_lesson(self, user_id: str, data: Dict[str, Any], create_default_slides: bool = True) -> Dict[str, Any]:
        """
        Create a lesson, optionally with initial slides.

        Args:
            user_id: Owner
            data: title, description, subject, targetAge (or age_group), duration,
                difficulty, tags, slides
            create_default_slides: Add the four starter slides when no slides are given

        Returns:
            The lesson row with a `slides` list
        """
        title = (data.get("title") or "").strip()
        age_group = (data.get("targetAge") or data.get("age_group") or "").strip()
        if not title:
            raise ValidationError("Lesson title is required")
        if not age_group:
            raise ValidationError("Target age is required")

        row = {
            "user_id": user_id,
            "title": title,
            "description": (data.get("description") or "").strip(),
            "subject": (data.get("subject") or "").strip(),
            "age_group": age_group,
            "duration": data.get("duration") or 30,
            "difficulty": data.get("difficulty") or "medium",
            "status": "draft",
            "is_public": False,
            "tags": data.get("tags") or [],
            "metadata": data.get("metadata") or {},
        }
        lesson = _first(self.supabase.table('lessons').insert(row).execute())
        if lesson is None:
            raise ValidationError("Failed to create lesson")

        initial = data.get("slides") or []
        slides = []
        if initial:
            for index, slide in enumerate(initial, start=1):
                slides.append(self._insert_slide(lesson, index, {
                    "title": slide.get("title") or f"Slide {index}",
                    "description": slide.get("content") or slide.get("description") or "",
                    "type": slide.get("type") or "content",
                    "html_content": slide.get("htmlContent") or slide.get("html_content") or "",
                    "status": "ready",
                }))
        elif create_default_slides:
            for index, slide in enumerate(DEFAULT_SLIDES, start=1):
                slides.append(self._insert_slide(lesson, index, dict(slide)))

        logger.info(f"✅ [Lessons] Created lesson {lesson['id']} with {len(slides)} slides")
        lesson["slides"] = slides
        return lesson

    def get_lesson(self, lesson_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = self.supabase.table('lessons').select('*').eq('id', lesson_id)
        if user_id is not None:
            query = query.eq('user_id', user_id)
        return _first(query.limit(1).execute())

    def require_lesson(self, lesson_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        lesson = self.get_lesson(lesson_id, user_id)
        if lesson is None:
            raise NotFoundError("Lesson not found", code="LESSON_NOT_FOUND")
        return lesson

    def get_lesson_with_slides(self, lesson_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        lesson = self.get_lesson(lesson_id, user_id)
        if lesson is None:
            return None
        lesson["slides"] = self.get_slides(lesson_id)
        return lesson

    def update_lesson(self, lesson_id: str, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.require_lesson(lesson_id, user_id)
        changes = {k: v for k, v in updates.items() if k in LESSON_UPDATE_FIELDS}
        if "title" in changes and not (changes["title"] or "").strip():
            raise ValidationError("Lesson title cannot be empty")
        changes["updated_at"] = _now()

        result = self.supabase.table('lessons') \
            .update(changes) \
            .eq('id', lesson_id) \
            .eq('user_id', user_id) \
            .execute()
        return _first(result) or {}

    def delete_lesson(self, lesson_id: str, user_id: str) -> None:
        self.require_lesson(lesson_id, user_id)
        self.supabase.table('slides').delete().eq('lesson_id', lesson_id).execute()
        self.supabase.table('lessons').delete().eq('id', lesson_id).eq('user_id', user_id).execute()
        logger.info(f"🗑️ [Lessons] Deleted lesson {lesson_id}")

    # ==================== Queries ====================

    @staticmethod
    def _paginate(result, page: int, limit: int) -> Dict[str, Any]:
        total = result.count or 0
        return {
            "data": result.data or [],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if limit else 0,
        }

    @staticmethod
    def _apply_filters(query, filters: Dict[str, Any]):
        for key in ("subject", "age_group", "difficulty", "status"):
            if filters.get(key):
                query = query.eq(key, filters[key])
        if filters.get("is_public") is not None:
            query = query.eq('is_public', filters["is_public"])
        search = filters.get("search")
        if search:
            query = query.or_(f"title.ilike.%{search}%,description.ilike.%{search}%")
        return query

    def get_user_lessons(self, user_id: str, filters: Optional[Dict[str, Any]] = None,
                         page: int = 1, limit: int = 10) -> Dict[str, Any]:
        filters = filters or {}
        page = max(1, page)
        start = (page - 1) * limit

        query = self.supabase.table('lessons').select('*', count='exact').eq('user_id', user_id)
        query = self._apply_filters(query, filters)
        result = query.order('created_at', desc=True).range(start, start + limit - 1).execute()
        return self._paginate(result, page, limit)

    def get_public_lessons(self, page: int = 1, limit: int = 10,
                           filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        page = max(1, page)
        start = (page - 1) * limit
        query = self.supabase.table('lessons') \
            .select('*', count='exact') \
            .eq('is_public', True) \
            .eq('status', 'published')
        query = self._apply_filters(query, {k: v for k, v in (filters or {}).items() if k != "status"})
        result = query.order('created_at', desc=True).range(start, start + limit - 1).execute()
        return self._paginate(result, page, limit)

    def search_lessons(self, user_id: str, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        if not query or not query.strip():
            return []
        return self.get_user_lessons(user_id, {"search": query.strip()}, page=1, limit=limit)["data"]

    def get_user_stats(self, user_id: str) -> Dict[str, Any]:
        lessons = self.supabase.table('lessons') \
            .select('id, status, views, rating') \
            .eq('user_id', user_id) \
            .execute().data or []

        total_slides = 0
        if lessons:
            slides = self.supabase.table('slides') \
                .select('id') \
                .in_('lesson_id', [lesson["id"] for lesson in lessons]) \
                .execute().data or []
            total_slides = len(slides)

        ratings = [lesson.get("rating") or 0 for lesson in lessons]
        average = sum(ratings) / len(ratings) if ratings else 0
        return {
            "totalLessons": len(lessons),
            "publishedLessons": sum(1 for lesson in lessons if lesson.get("status") == "published"),
            "totalSlides": total_slides,
            "totalViews": sum(lesson.get("views") or 0 for lesson in lessons),
            "averageRating": round(average, 1),
        }

    def increment_views(self, lesson_id: str) -> None:
        self.supabase.rpc('increment_lesson_views', {'lesson_id': lesson_id}).execute()

    def duplicate_lesson(self, lesson_id: str, user_id: str) -> Dict[str, Any]:
        original = self.get_lesson_with_slides(lesson_id, user_id)
        if original is None:
            raise NotFoundError("Lesson not found", code="LESSON_NOT_FOUND")

        skip = {"id", "created_at", "updated_at", "views", "rating", "completion_rate", "slides"}
        row = {k: v for k, v in original.items() if k not in skip}
        row.update({
            "user_id": user_id,
            "title": f"{original['title']} (Copy)",
            "status": "draft",
            "is_public": False,
        })
        copy = _first(self.supabase.table('lessons').insert(row).execute())

        slides = []
        for slide in original["slides"]:
            slide_row = {k: v for k, v in slide.items()
                         if k not in {"id", "lesson_id", "created_at", "updated_at", "slide_images"}}
            slide_row["lesson_id"] = copy["id"]
            slide_row["user_id"] = user_id
            slides.append(_first(self.supabase.table('slides').insert(slide_row).execute()))

        logger.info(f"📑 [Lessons] Duplicated {lesson_id} → {copy['id']} ({len(slides)} slides)")
        copy["slides"] = slides
        return copy

    # ==================== Slides ====================

    def _insert_slide(self, lesson: Dict[str, Any], slide_number: int, data: Dict[str, Any]) -> Dict[str, Any]:
        slide_type = data.get("type") or "content"
        row = {
            "lesson_id": lesson["id"],
            "user_id": lesson.get("user_id"),
            "slide_number": slide_number,
            "title": data["title"],
            "description": data.get("description") or "",
            "type": slide_type,
            "icon": data.get("icon") or get_slide_icon(slide_type),
            "status": data.get("status") or "draft",
            "html_content": data.get("html_content") or "",
            "metadata": data.get("metadata") or {"version": 1},
        }
        return _first(self.supabase.table('slides').insert(row).execute())

    def get_slides(self, lesson_id: str) -> List[Dict[str, Any]]:
        result = self.supabase.table('slides') \
            .select('*, slide_images(*)') \
            .eq('lesson_id', lesson_id) \
            .order('slide_number') \
            .execute()
        return sorted(result.data or [], key=lambda s: s.get("slide_number") or 0)

    def _require_slide(self, lesson_id: str, slide_id: str) -> Dict[str, Any]:
        result = self.supabase.table('slides') \
            .select('*') \
            .eq('id', slide_id) \
            .eq('lesson_id', lesson_id) \
            .limit(1) \
            .execute()
        slide = _first(result)
        if slide is None:
            raise NotFoundError("Slide not found", code="SLIDE_NOT_FOUND")
        return slide

    def add_slide(self, lesson_id: str, user_id: str, data: Dict[str, Any],
                  position: Optional[int] = None) -> Dict[str, Any]:
        """
        Insert a slide at a 1-based position, shifting later slides down.

        With no position the slide is appended.
        """
        lesson = self.require_lesson(lesson_id, user_id)
        if not (data.get("title") or "").strip():
            raise ValidationError("Slide title is required")

        slides = self.get_slides(lesson_id)
        if position is None or position > len(slides):
            slide_number = len(slides) + 1
        else:
            slide_number = max(1, position)
            for slide in reversed(slides):
                if slide["slide_number"] >= slide_number:
                    self.supabase.table('slides') \
                        .update({'slide_number': slide["slide_number"] + 1}) \
                        .eq('id', slide["id"]) \
                        .execute()

        return self._insert_slide(lesson, slide_number, data)

    def update_slide(self, lesson_id: str, user_id: str, slide_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.require_lesson(lesson_id, user_id)
        slide = self._require_slide(lesson_id, slide_id)

        changes = {k: v for k, v in updates.items() if k in SLIDE_UPDATE_FIELDS}
        metadata = dict(slide.get("metadata") or {})
        metadata.update(changes.get("metadata") or {})
        metadata["version"] = int(metadata.get("version") or 1) + 1
        changes["metadata"] = metadata
        if "type" in changes and "icon" not in changes:
            changes["icon"] = get_slide_icon(changes["type"])
        changes["updated_at"] = _now()

        result = self.supabase.table('slides').update(changes).eq('id', slide_id).execute()
        return _first(result) or {**slide, **changes}

    def delete_slide(self, lesson_id: str, user_id: str, slide_id: str) -> None:
        self.require_lesson(lesson_id, user_id)
        deleted = self._require_slide(lesson_id, slide_id)
        self.supabase.table('slides').delete().eq('id', slide_id).execute()

        for slide in self.get_slides(lesson_id):
            if slide["slide_number"] > deleted["slide_number"]:
                self.supabase.table('slides') \
                    .update({'slide_number': slide["slide_number"] - 1}) \
                    .eq('id', slide["id"]) \
                    .execute()

    def reorder_slides(self, lesson_id: str, user_id: str, slide_ids: List[str]) -> List[Dict[str, Any]]:
        self.require_lesson(lesson_id, user_id)
        existing = {slide["id"] for slide in self.get_slides(lesson_id)}
        if set(slide_ids) != existing or len(slide_ids) != len(existing):
            raise ValidationError("Slide ids must match the lesson's slides exactly")

        for number, slide_id in enumerate(slide_ids, start=1):
            self.supabase.table('slides') \
                .update({'slide_number': number}) \
                .eq('id', slide_id) \
                .execute()
        return self.get_slides(lesson_id)
