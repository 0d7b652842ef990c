"""
Unit Tests for Worksheet Generation

Tests JSON repair, the Gemini worksheet service and worksheet images.
"""

import json

import pytest

from conftest import FakeAIClient, FakeImageService, TINY_IMAGE_BASE64
from teachspark.errors import GenerationError, ParseError, ValidationError
from teachspark.worksheet_generation import (
    GeminiWorksheetGenerationService,
    WorksheetImageService,
    build_worksheet_prompt,
    estimate_duration,
    parse_worksheet_elements,
    repair_incomplete_json,
    split_topic_reply,
    validate_worksheet_request,
)

ELEMENTS = [
    {"type": "title-block", "properties": {"text": "Shapes", "level": "main"}},
    {"type": "instructions-box", "properties": {"text": "Complete the exercises."}},
    {"type": "fill-blank", "properties": {"items": [{"text": "A ___ has 3 sides"}, {"text": "A ___ is round"}]}},
    {"type": "multiple-choice", "properties": {}},
]


class TestJsonRepair:
    """Tests for repair_incomplete_json."""

    def test_complete_json_unchanged(self):
        text = '{"elements": []}'
        assert repair_incomplete_json(text) == text

    def test_closes_unterminated_string_and_brackets(self):
        text = '{"elements": [{"type": "title-block", "properties": {"text": "Hel'
        repaired = json.loads(repair_incomplete_json(text))
        assert repaired["elements"][0]["properties"]["text"] == "Hel"

    def test_drops_dangling_key(self):
        text = '{"elements": [{"type": "divider", "properties":'
        assert json.loads(repair_incomplete_json(text)) == {"elements": [{"type": "divider"}]}

    def test_drops_trailing_comma(self):
        text = '{"elements": [{"type": "divider"}, '
        assert json.loads(repair_incomplete_json(text)) == {"elements": [{"type": "divider"}]}

    def test_brackets_inside_strings_are_ignored(self):
        text = '{"elements": [{"type": "body-text", "properties": {"text": "use [brackets] {here}"}}'
        repaired = json.loads(repair_incomplete_json(text))
        assert repaired["elements"][0]["properties"]["text"] == "use [brackets] {here}"


class TestParsing:

    def test_parse_fenced_response(self):
        text = "```json\n" + json.dumps({"elements": ELEMENTS + [{"properties": {}}]}) + "\n```"
        assert [e["type"] for e in parse_worksheet_elements(text)] == [e["type"] for e in ELEMENTS]

    def test_missing_elements_array(self):
        with pytest.raises(ParseError):
            parse_worksheet_elements('{"pages": []}')

    def test_garbage(self):
        with pytest.raises(ParseError):
            parse_worksheet_elements("Sorry, I cannot help with that.")

    def test_estimate_duration(self):
        # 0.5 title + 0.5 instructions + 2 items * 1 + 2 fallback
        assert estimate_duration(ELEMENTS) == 5


class TestRequestValidation:

    def test_defaults(self):
        request = validate_worksheet_request({"topic": " Shapes ", "ageGroup": "6-7"})
        assert request["topic"] == "Shapes"
        assert request["duration"] == "standard"
        assert request["language"] == "en"
        assert request["includeImages"] is True

    @pytest.mark.parametrize("data", [
        {"ageGroup": "6-7"},
        {"topic": "Shapes"},
        {"topic": "Shapes", "ageGroup": "6-7", "duration": "forever"},
    ])
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            validate_worksheet_request(data)

    def test_prompt_contains_target_count(self):
        request = validate_worksheet_request({"topic": "Shapes", "ageGroup": "6-7", "duration": "quick",
                                              "includeImages": False, "exerciseTypes": ["true-false"]})
        prompt = build_worksheet_prompt(request)
        assert "YOU MUST GENERATE 8 COMPONENTS (Range: 6-10)" in prompt
        assert "Preferred Exercise Types:** true-false" in prompt
        assert "Do not include any image-placeholder components." in prompt


class TestGeminiWorksheetGenerationService:
    """Test suite for GeminiWorksheetGenerationService."""

    @pytest.mark.asyncio
    async def test_generate_paginates(self):
        gemini = FakeAIClient(json.dumps({"topic": "Shapes", "ageGroup": "8-9", "elements": ELEMENTS}))
        service = GeminiWorksheetGenerationService(gemini, sleep=self._no_sleep)

        worksheet = await service.generate({"topic": "Shapes", "ageGroup": "8-9"})

        assert len(worksheet["pages"]) == 1
        assert worksheet["pages"][0]["title"] == "Shapes Worksheet"
        metadata = worksheet["metadata"]
        assert metadata["pageCount"] == 1
        assert metadata["componentsUsed"] == ["title-block", "instructions-box", "fill-blank", "multiple-choice"]
        assert metadata["estimatedDuration"] == 5
        assert metadata["autoPaginated"] is True
        assert service.last_usage.input_tokens == 100
        assert gemini.kwargs[0]["max_output_tokens"] == 32000

    @pytest.mark.asyncio
    async def test_retries_once(self):
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)

        gemini = FakeAIClient(RuntimeError("503 UNAVAILABLE"), json.dumps({"elements": ELEMENTS}))
        service = GeminiWorksheetGenerationService(gemini, sleep=sleep)
        await service.generate({"topic": "Shapes", "ageGroup": "8-9"})
        assert sleeps == [2]
        assert len(gemini.prompts) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_two_attempts(self):
        gemini = FakeAIClient(RuntimeError("quota exceeded"))
        service = GeminiWorksheetGenerationService(gemini, sleep=self._no_sleep)
        with pytest.raises(GenerationError):
            await service.generate({"topic": "Shapes", "ageGroup": "8-9"})
        assert len(gemini.prompts) == 2

    @pytest.mark.asyncio
    async def test_topic_chat_ready(self):
        gemini = FakeAIClient("## Shapes around us\n- circles\n\nTOPIC_READY")
        service = GeminiWorksheetGenerationService(gemini)
        reply = await service.generate_topic_chat("Shapes for 6 year olds", [
            {"sender": "user", "text": "Hi"}, {"sender": "ai", "text": "Hello!"},
        ], age_group="6-7", content_mode="interactive")

        assert reply["generatedTopic"] == "## Shapes around us\n- circles"
        assert "Plan is ready!" in reply["response"]
        assert "MemoryCards" in gemini.prompts[0]
        assert "User: Hi" in gemini.prompts[0]
        assert "Assistant: Hello!" in gemini.prompts[0]

    @pytest.mark.asyncio
    async def test_topic_chat_needs_message(self):
        service = GeminiWorksheetGenerationService(FakeAIClient("x"))
        with pytest.raises(ValidationError):
            await service.generate_topic_chat("")

    def test_split_reply_without_marker(self):
        assert split_topic_reply("What age group?") == ("What age group?", None)

    @staticmethod
    async def _no_sleep(_seconds):
        return None


class TestWorksheetImageService:
    """Test suite for WorksheetImageService."""

    @pytest.fixture
    def worksheet(self):
        return {"pages": [{"elements": [
            {"type": "title-block", "properties": {"text": "Animals"}},
            {"type": "image-placeholder", "properties": {"imagePrompt": "a happy cat", "caption": "Cat",
                                                         "width": 512, "height": 384}},
            {"type": "image-placeholder", "properties": {"url": "https://example.com/dog.png"}},
        ]}]}

    @pytest.mark.asyncio
    async def test_fills_prompted_placeholders(self, worksheet):
        images = FakeImageService()
        result = await WorksheetImageService(images, sleep=self._no_sleep).generate_images(worksheet)

        assert result["success"] is True
        assert result["stats"]["totalImages"] == 1
        element = result["worksheet"]["pages"][0]["elements"][1]
        assert element["properties"]["url"] == f"data:image/png;base64,{TINY_IMAGE_BASE64}"
        assert images.requests == [("a happy cat", 512, 384)]
        assert "url" not in worksheet["pages"][0]["elements"][1]["properties"]

    @pytest.mark.asyncio
    async def test_failures_are_reported(self, worksheet):
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)

        images = FakeImageService(fail="Rate limit exceeded", status_code=429)
        result = await WorksheetImageService(images, sleep=sleep).generate_images(worksheet)

        assert result["success"] is False
        assert result["stats"]["failed"] == 1
        assert result["errors"] == ["Failed to generate: Cat"]
        assert len(images.requests) == 3
        assert sleeps == [1, 2]

    @staticmethod
    async def _no_sleep(_seconds):
        return None
