"""
Unit Tests for lesson chat commands
"""

import json

import pytest

from conftest import FakeAIClient
from teachspark.ai_clients import GEMINI_COMPRESSION_MODEL, GEMINI_CONTENT_MODEL
from teachspark.errors import ParseError, ValidationError
from teachspark.slide_commands import (
    SlideCommand,
    SlideCommandService,
    actions_to_slide_updates,
    build_lesson_context,
    calculate_confidence,
    parse_chat_response,
    parse_command_response,
)

LESSON = {
    "id": "lesson-1",
    "title": "Ocean Friends",
    "age_group": "6-7",
    "subject": "Science",
    "duration": 30,
    "slides": [
        {"id": "s1", "title": "Welcome", "type": "welcome", "status": "ready", "slide_number": 1},
        {"id": "s2", "title": "Fish", "type": "content", "status": "ready", "slide_number": 2},
    ],
}

COMMAND_JSON = json.dumps({"type": "improve_slide", "slideNumber": 2, "instruction": "improve the fish slide",
                           "targetElement": None})
CHAT_JSON = json.dumps({
    "message": "Made the fish slide brighter",
    "actions": [{"type": "update_slide", "slideId": "s2",
                 "changes": {"title": "Bright Fish", "content": "<div>fish</div>"}, "reason": "colour"}],
    "updatedSlides": [],
    "suggestions": ["Add a quiz"],
})


class TestCommandParsing:

    def test_parses_json_inside_prose(self):
        command = parse_command_response(f"Sure! {COMMAND_JSON} hope that helps", "Improve slide 2")
        assert command.type == "improve_slide"
        assert command.slide_number == 2
        assert command.instruction == "improve the fish slide"
        assert command.context == "Improve slide 2"

    def test_unknown_type_becomes_general(self):
        command = parse_command_response('{"type": "dance", "slideNumber": "two"}', "dance")
        assert command.type == "general"
        assert command.slide_number is None
        assert command.instruction == "dance"

    def test_no_json_is_a_parse_error(self):
        with pytest.raises(ParseError):
            parse_command_response("I could not understand", "hm")

    @pytest.mark.parametrize("command,message,expected", [
        (SlideCommand("improve_slide", "improve it", "Improve slide 2", slide_number=2), "Improve slide 2", 0.9),
        (SlideCommand("edit_slide", "bigger", "x", target_element="elephant"), "Make the elephant bigger", 0.8),
        (SlideCommand("general", "hi", "hi"), "hi", 0.2),
    ])
    def test_confidence(self, command, message, expected):
        assert calculate_confidence(command, message) == expected


class TestChatResponse:

    def test_structured_reply(self):
        response = parse_chat_response(f"```json\n{CHAT_JSON}\n```")
        assert response["message"] == "Made the fish slide brighter"
        assert response["actions"][0]["slideId"] == "s2"
        assert response["suggestions"] == ["Add a quiz"]

    def test_plain_text_reply(self):
        assert parse_chat_response("Nice lesson!") == {
            "message": "Nice lesson!", "actions": [], "updatedSlides": [], "suggestions": [],
        }

    def test_actions_to_slide_updates(self):
        actions = json.loads(CHAT_JSON)["actions"] + [
            {"type": "update_slide", "slideId": "missing", "changes": {"title": "x"}},
            {"type": "delete_slide", "slideId": "s1"},
            {"type": "update_slide", "slideId": "s1", "changes": {}},
        ]
        assert actions_to_slide_updates(actions, LESSON["slides"]) == [
            ("s2", {"title": "Bright Fish", "html_content": "<div>fish</div>"}),
        ]

    def test_lesson_context(self):
        context = build_lesson_context(LESSON, LESSON["slides"][1])
        assert 'CURRENT LESSON: "Ocean Friends"' in context
        assert "2. Fish (ID: s2, content) - ready" in context
        assert "SELECTED SLIDE: Fish (ID: s2)" in context
        assert build_lesson_context(None, None) == "Lesson not created yet"


class TestSlideCommandService:
    """Test suite for SlideCommandService."""

    @pytest.mark.asyncio
    async def test_process_command(self):
        gemini = FakeAIClient(COMMAND_JSON, CHAT_JSON)
        service = SlideCommandService(gemini)

        result = await service.process_command("Improve slide 2", LESSON, selected_slide_id="s2")

        assert result["command"]["type"] == "improve_slide"
        assert result["confidence"] == 0.9
        assert result["response"]["actions"][0]["changes"]["title"] == "Bright Fish"
        assert [k["model"] for k in gemini.kwargs] == [GEMINI_COMPRESSION_MODEL, GEMINI_CONTENT_MODEL]
        assert 'Current slide context: "Fish" (slide 2' in gemini.prompts[0]
        assert "- Type: improve_slide" in gemini.prompts[1]
        assert len(service.usage) == 2

    @pytest.mark.asyncio
    async def test_empty_message(self):
        with pytest.raises(ValidationError):
            await SlideCommandService(FakeAIClient(COMMAND_JSON)).process_command("  ", LESSON)
