"""
Unit Tests for Lesson Content Generation
"""

import json

import pytest

from conftest import FakeAIClient, FakeImageService, no_sleep
from teachspark.config import Settings
from teachspark.content_generation import (
    ClaudeContentService,
    GeminiContentService,
    LessonPlanService,
    extract_slide_titles,
    get_content_service,
    parse_json_response,
    validate_lesson_plan_request,
)
from teachspark.errors import ConfigurationError, GenerationError, ParseError, ValidationError
from teachspark.slide_image_processor import SlideImageProcessor

MARKDOWN_PLAN = """## 📚 Ocean Friends

### 📋 Lesson Plan

#### Slide 1: Welcome to the Ocean (5 minutes)
- Greeting

#### Slide 2: Who Lives in the Sea?
- Animals

#### Слайд 3: Підсумок
"""


class TestContentServices:
    """Test suite for GeminiContentService and ClaudeContentService."""

    @pytest.mark.asyncio
    async def test_lesson_plan_in_ukrainian(self):
        gemini = FakeAIClient("  # План  ")
        result = await GeminiContentService(gemini).generate_lesson_plan("Океан", "6-7", 4, language="uk")

        assert result.text == "# План"
        assert "Кількість слайдів: 4" in gemini.prompts[0]
        assert gemini.kwargs[0]["thinking_budget"] == 0

    @pytest.mark.asyncio
    async def test_slide_content_strips_fences_and_adds_images(self):
        html = '```html\n<!DOCTYPE html><html><body><!-- IMAGE_PROMPT: "a fish" WIDTH: 640 HEIGHT: 480 --></body></html>\n```'
        claude = FakeAIClient(html, model="claude-sonnet-4-20250514")
        processor = SlideImageProcessor(FakeImageService(), sleep=no_sleep)

        result = await ClaudeContentService(claude, processor).generate_slide_content(
            "Fish", "Meet the fish", "Ocean", "6-7", slide_number=2, total_slides=4)

        assert result.text.startswith("<!DOCTYPE html>")
        assert "IMAGE_PROMPT" not in result.text
        assert "<img" in result.text
        assert result.model == "claude-sonnet-4-20250514"
        assert "SLIDE 2 OF 4" in claude.prompts[0]
        assert claude.kwargs[0]["max_tokens"] == 12000

    @pytest.mark.asyncio
    async def test_edited_plan(self):
        gemini = FakeAIClient("updated plan\n")
        result = await GeminiContentService(gemini).generate_edited_plan("old plan", "Add a song", "Ocean", "6-7")
        assert result.text == "updated plan"
        assert "Add a song" in gemini.prompts[0]

    def test_provider_selection(self):
        settings = Settings(gemini_api_key="g-key", anthropic_api_key="a-key")
        assert get_content_service("Claude", settings).provider == "claude"
        assert get_content_service(None, settings).provider == "gemini"
        with pytest.raises(ValidationError):
            get_content_service("gpt", settings)

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            get_content_service("claude", Settings())


class TestLessonPlanJson:
    """Test suite for LessonPlanService."""

    def test_validate_request(self):
        request = validate_lesson_plan_request({"ageGroup": " 6-7 ", "topic": "Ocean", "slideCount": "5"})
        assert request["ageGroup"] == "6-7"
        assert request["slideCount"] == 5
        assert request["language"] == "en"

    @pytest.mark.parametrize("data", [
        {"topic": "Ocean"},
        {"ageGroup": "6-7"},
        {"ageGroup": "6-7", "topic": "Ocean", "slideCount": 21},
        {"ageGroup": "6-7", "topic": "Ocean", "slideCount": "many"},
        {"ageGroup": "6-7", "topic": "Ocean", "language": "fr"},
    ])
    def test_invalid_requests(self, data):
        with pytest.raises(ValidationError):
            validate_lesson_plan_request(data)

    def test_parse_json_response(self):
        assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
        assert parse_json_response('Sure! {"a": 2} Hope this helps') == {"a": 2}
        with pytest.raises(ParseError):
            parse_json_response("no json")

    @pytest.mark.asyncio
    async def test_generate_lesson_plan_json(self):
        plan = {"title": "Ocean", "slides": [{"title": "Hello"}, {"title": "Fish", "type": "game"}]}
        gemini = FakeAIClient(json.dumps(plan))

        result = await LessonPlanService(gemini).generate_lesson_plan_json({
            "ageGroup": "6-7", "topic": "Ocean", "slideCount": 2, "learningGoals": ["count fish", "name colours"],
        })

        slides = result["plan"]["slides"]
        assert [s["slideNumber"] for s in slides] == [1, 2]
        assert [s["type"] for s in slides] == ["content", "game"]
        assert result["usage"] == {"model": "gemini-2.5-flash", "inputTokens": 100, "outputTokens": 50}
        assert "Learning goals: count fish, name colours" in gemini.prompts[0]
        assert gemini.kwargs[0]["response_mime_type"] == "application/json"

    @pytest.mark.asyncio
    async def test_plan_without_slides(self):
        with pytest.raises(ParseError):
            await LessonPlanService(FakeAIClient('{"title": "x"}')).generate_lesson_plan_json(
                {"ageGroup": "6-7", "topic": "Ocean"})

    @pytest.mark.asyncio
    async def test_vendor_failure(self):
        with pytest.raises(GenerationError):
            await LessonPlanService(FakeAIClient(RuntimeError("timeout"))).generate_lesson_plan_json(
                {"ageGroup": "6-7", "topic": "Ocean"})

    def test_extract_slide_titles(self):
        assert extract_slide_titles(MARKDOWN_PLAN) == ["Welcome to the Ocean", "Who Lives in the Sea?", "Підсумок"]
