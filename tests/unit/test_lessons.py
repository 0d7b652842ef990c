"""
Unit Tests for LessonService

Tests lesson and slide CRUD against the in-memory Supabase.
"""

import pytest

from teachspark.errors import NotFoundError, ValidationError
from teachspark.lessons import DEFAULT_SLIDES, LessonService, get_slide_icon


class TestLessonService:
    """Test suite for LessonService."""

    @pytest.fixture
    def service(self, supabase):
        return LessonService(supabase)

    @pytest.fixture
    def lesson(self, service, user_id):
        return service.create_lesson(user_id, {"title": "Dinosaurs", "targetAge": "6-7 years", "subject": "Science"})

    def test_create_lesson_adds_default_slides(self, lesson, user_id):
        assert lesson["title"] == "Dinosaurs"
        assert lesson["status"] == "draft"
        assert lesson["is_public"] is False
        assert [s["title"] for s in lesson["slides"]] == [s["title"] for s in DEFAULT_SLIDES]
        assert [s["slide_number"] for s in lesson["slides"]] == [1, 2, 3, 4]
        assert all(s["user_id"] == user_id for s in lesson["slides"])

    def test_create_lesson_with_given_slides(self, service, user_id):
        lesson = service.create_lesson(user_id, {
            "title": "Space",
            "targetAge": "8-9 years",
            "slides": [{"title": "Planets", "content": "Eight planets", "htmlContent": "<div>p</div>"}],
        })
        assert len(lesson["slides"]) == 1
        assert lesson["slides"][0]["html_content"] == "<div>p</div>"
        assert lesson["slides"][0]["status"] == "ready"

    def test_create_lesson_without_default_slides(self, service, user_id):
        lesson = service.create_lesson(user_id, {"title": "Space", "targetAge": "8-9 years"},
                                       create_default_slides=False)
        assert lesson["slides"] == []

    @pytest.mark.parametrize("data", [
        {"title": "", "targetAge": "6-7 years"},
        {"title": "Space", "targetAge": ""},
    ])
    def test_create_lesson_requires_title_and_age(self, service, user_id, data):
        with pytest.raises(ValidationError):
            service.create_lesson(user_id, data)

    def test_lessons_are_scoped_to_owner(self, service, lesson):
        assert service.get_lesson(lesson["id"], "someone-else") is None
        with pytest.raises(NotFoundError) as exc:
            service.require_lesson(lesson["id"], "someone-else")
        assert exc.value.code == "LESSON_NOT_FOUND"

    def test_get_lesson_with_slides_orders_slides(self, service, lesson, user_id):
        loaded = service.get_lesson_with_slides(lesson["id"], user_id)
        assert [s["slide_number"] for s in loaded["slides"]] == [1, 2, 3, 4]

    def test_update_lesson_ignores_unknown_fields(self, service, lesson, user_id):
        updated = service.update_lesson(lesson["id"], user_id, {"title": "Big Dinosaurs", "user_id": "hijack"})
        assert updated["title"] == "Big Dinosaurs"
        assert updated["user_id"] == user_id

    def test_update_lesson_rejects_blank_title(self, service, lesson, user_id):
        with pytest.raises(ValidationError):
            service.update_lesson(lesson["id"], user_id, {"title": "  "})

    def test_delete_lesson_removes_slides(self, service, supabase, lesson, user_id):
        service.delete_lesson(lesson["id"], user_id)
        assert supabase.rows("lessons") == []
        assert supabase.rows("slides") == []

    def test_get_user_lessons_paginates_and_searches(self, service, user_id):
        for i in range(5):
            service.create_lesson(user_id, {"title": f"Lesson {i}", "targetAge": "6-7 years"},
                                  create_default_slides=False)
        service.create_lesson(user_id, {"title": "Volcanoes", "targetAge": "6-7 years"},
                              create_default_slides=False)

        page = service.get_user_lessons(user_id, page=2, limit=4)
        assert page["total"] == 6
        assert page["totalPages"] == 2
        assert len(page["data"]) == 2

        found = service.search_lessons(user_id, "volcano")
        assert [l["title"] for l in found] == ["Volcanoes"]
        assert service.search_lessons(user_id, "   ") == []

    def test_public_lessons_require_published_and_public(self, service, supabase, user_id):
        supabase.seed("lessons",
                      {"user_id": user_id, "title": "A", "status": "published", "is_public": True},
                      {"user_id": user_id, "title": "B", "status": "draft", "is_public": True},
                      {"user_id": user_id, "title": "C", "status": "published", "is_public": False})
        result = service.get_public_lessons()
        assert [l["title"] for l in result["data"]] == ["A"]

    def test_user_stats(self, service, supabase, lesson, user_id):
        supabase.seed("lessons", {"user_id": user_id, "title": "P", "status": "published", "views": 7, "rating": 4})
        stats = service.get_user_stats(user_id)
        assert stats["totalLessons"] == 2
        assert stats["publishedLessons"] == 1
        assert stats["totalSlides"] == 4
        assert stats["totalViews"] == 7
        assert stats["averageRating"] == 2.0

    def test_increment_views_uses_rpc(self, service, supabase, lesson):
        service.increment_views(lesson["id"])
        assert supabase.rpc_calls == [("increment_lesson_views", {"lesson_id": lesson["id"]})]
        assert supabase.rows("lessons")[0]["views"] == 1

    def test_duplicate_lesson_copies_slides(self, service, supabase, lesson, user_id):
        copy = service.duplicate_lesson(lesson["id"], user_id)
        assert copy["title"] == "Dinosaurs (Copy)"
        assert copy["id"] != lesson["id"]
        assert len(copy["slides"]) == 4
        assert all(s["lesson_id"] == copy["id"] for s in copy["slides"])
        assert len(supabase.rows("slides")) == 8

    def test_add_slide_at_position_shifts_later_slides(self, service, lesson, user_id):
        slide = service.add_slide(lesson["id"], user_id, {"title": "Quiz", "type": "game"}, position=2)
        assert slide["slide_number"] == 2
        assert slide["icon"] == "🎮"
        numbers = {s["title"]: s["slide_number"] for s in service.get_slides(lesson["id"])}
        assert numbers == {"Welcome": 1, "Quiz": 2, "Main Content": 3, "Practice Activity": 4, "Summary": 5}

    def test_add_slide_appends_without_position(self, service, lesson, user_id):
        slide = service.add_slide(lesson["id"], user_id, {"title": "Extra"})
        assert slide["slide_number"] == 5

    def test_update_slide_bumps_version(self, service, lesson, user_id):
        slide_id = lesson["slides"][0]["id"]
        updated = service.update_slide(lesson["id"], user_id, slide_id, {"html_content": "<p>new</p>", "type": "summary"})
        assert updated["html_content"] == "<p>new</p>"
        assert updated["metadata"]["version"] == 2
        assert updated["icon"] == get_slide_icon("summary")

    def test_delete_slide_renumbers(self, service, lesson, user_id):
        service.delete_slide(lesson["id"], user_id, lesson["slides"][1]["id"])
        slides = service.get_slides(lesson["id"])
        assert [s["slide_number"] for s in slides] == [1, 2, 3]
        assert [s["title"] for s in slides] == ["Welcome", "Practice Activity", "Summary"]

    def test_delete_missing_slide(self, service, lesson, user_id):
        with pytest.raises(NotFoundError) as exc:
            service.delete_slide(lesson["id"], user_id, "missing")
        assert exc.value.code == "SLIDE_NOT_FOUND"

    def test_reorder_slides(self, service, lesson, user_id):
        ids = [s["id"] for s in lesson["slides"]]
        slides = service.reorder_slides(lesson["id"], user_id, list(reversed(ids)))
        assert [s["id"] for s in slides] == list(reversed(ids))

    def test_reorder_slides_requires_exact_ids(self, service, lesson, user_id):
        ids = [s["id"] for s in lesson["slides"]]
        with pytest.raises(ValidationError):
            service.reorder_slides(lesson["id"], user_id, ids[:-1])

    def test_unknown_slide_type_icon(self):
        assert get_slide_icon("mystery") == "📄"
        assert get_slide_icon(None) == "📄"
