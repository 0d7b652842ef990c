"""
Lesson Chat Commands

Turns a teacher's chat message about a lesson ("improve slide 2", "make the
elephant bigger") into a structured command, then asks Gemini for a reply
with concrete slide actions:

    {"message": ..., "actions": [...], "updatedSlides": [...], "suggestions": [...]}

A reply that is not JSON is passed through as the message with no actions.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from teachspark.ai_clients import GEMINI_COMPRESSION_MODEL, GEMINI_CONTENT_MODEL, GeminiClient, clean_code_fences
from teachspark.errors import ParseError, ValidationError

logger = logging.getLogger(__name__)

COMMAND_TYPES = ("edit_slide", "improve_slide", "create_slide", "delete_slide", "reorder_slides", "general")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

SLIDE_SYSTEM_PROMPT = """You are a teacher's assistant who works with lesson slides in PowerPoint style.

YOUR JOB:
1. Understand natural commands about slides ("improve slide 2", "make the elephant bigger")
2. Generate changes for specific slides
3. Create new slides on request
4. Maintain integrity of the entire lesson

RESPONSE FORMAT:
{
  "message": "Friendly explanation of what you did",
  "actions": [
    {
      "type": "update_slide",
      "slideId": "slide id from the lesson",
      "changes": {
        "title": "New title",
        "description": "New description",
        "content": "Updated HTML content"
      },
      "reason": "Explanation why this change is needed"
    }
  ],
  "updatedSlides": [],
  "suggestions": ["Additional improvement ideas"]
}

PRINCIPLES:
- Preserve lesson style and theme
- Make changes exactly as instructed
- Suggest improvements but don't impose
- Think about children and their perception"""


@dataclass
class SlideCommand:
    type: str
    instruction: str
    context: str
    slide_number: Optional[int] = None
    slide_id: Optional[str] = None
    target_element: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "slideNumber": self.slide_number,
            "slideId": self.slide_id,
            "instruction": self.instruction,
            "context": self.context,
            "targetElement": self.target_element,
        }


def build_command_parsing_prompt(message: str, current_slide: Optional[Dict[str, Any]] = None) -> str:
    if current_slide:
        slide_context = (f'Current slide context: "{current_slide.get("title")}" '
                         f'(slide {current_slide.get("slide_number")}, type: {current_slide.get("type")})')
    else:
        slide_context = "No current slide context"

    return f"""You analyze teacher commands about educational slides.

REQUIREMENTS:
- Analyze the semantic meaning of the command
- Support any input language
- Keep the instruction in the same language as the user

SLIDE COMMAND TYPES:
1. edit_slide - edit existing slide content
2. improve_slide - enhance/improve slide quality
3. create_slide - create new slide
4. delete_slide - delete slide
5. reorder_slides - change slide order
6. general - general command not specific to slides

{slide_context}

RESPONSE FORMAT (JSON only):
{{
  "type": "edit_slide",
  "slideNumber": 1,
  "slideId": null,
  "instruction": "interpreted instruction",
  "context": "original message",
  "targetElement": "specific element to target or null"
}}

EXAMPLES:
- "Improve slide 2" → {{"type": "improve_slide", "slideNumber": 2, "instruction": "improve the slide"}}
- "Make the elephant bigger" → {{"type": "edit_slide", "targetElement": "elephant", "instruction": "make the elephant bigger"}}
- "Create a new slide about space" → {{"type": "create_slide", "instruction": "create a slide about space"}}

Analyze this command: "{message}"

Return only valid JSON response:"""


def parse_command_response(text: str, message: str) -> SlideCommand:
    """Extract the command JSON from the model reply, defaulting missing fields from the message."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ParseError("No JSON found in command parsing response", details=(text or "")[:200])
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        raise ParseError("Invalid JSON in command parsing response", details=match.group(0)[:200])

    command_type = parsed.get("type")
    if command_type not in COMMAND_TYPES:
        command_type = "general"
    slide_number = parsed.get("slideNumber")
    return SlideCommand(
        type=command_type,
        instruction=parsed.get("instruction") or message,
        context=parsed.get("context") or message,
        slide_number=slide_number if isinstance(slide_number, int) and slide_number > 0 else None,
        slide_id=parsed.get("slideId") or None,
        target_element=parsed.get("targetElement") or None,
    )


def calculate_confidence(command: SlideCommand, message: str) -> float:
    confidence = 0.5
    if command.type != "general":
        confidence += 0.2
    if command.slide_number:
        confidence += 0.2
    if command.target_element:
        confidence += 0.1
    if len(message.strip()) < 5:
        confidence -= 0.2
    if command.instruction == message:
        confidence -= 0.1
    return round(max(0.1, min(1.0, confidence)), 2)


def build_lesson_context(lesson: Optional[Dict[str, Any]], selected_slide: Optional[Dict[str, Any]]) -> str:
    if not lesson:
        return "Lesson not created yet"

    slides = "\n".join(
        f"{i}. {s.get('title')} (ID: {s.get('id')}, {s.get('type')}) - {s.get('status')}"
        for i, s in enumerate(lesson.get("slides") or [], start=1)
    )
    selected = f"{selected_slide.get('title')} (ID: {selected_slide.get('id')})" if selected_slide else "Not selected"
    return f"""CURRENT LESSON: "{lesson.get('title')}"
Target audience: {lesson.get('age_group')}
Subject: {lesson.get('subject')}
Duration: {lesson.get('duration')} mins

SLIDES IN THE LESSON:
{slides}

SELECTED SLIDE: {selected}"""


def parse_chat_response(text: str) -> Dict[str, Any]:
    """Structured chat reply, or the raw text as the message when it is not JSON."""
    cleaned = clean_code_fences(text)
    parsed = None
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(cleaned)
        if match:
            try:
                parsed = json.loads(match.group(0))
            except json.JSONDecodeError:
                parsed = None

    if not isinstance(parsed, dict):
        return {"message": text.strip(), "actions": [], "updatedSlides": [], "suggestions": []}
    return {
        "message": parsed.get("message") or "",
        "actions": [a for a in parsed.get("actions") or [] if isinstance(a, dict)],
        "updatedSlides": parsed.get("updatedSlides") or [],
        "suggestions": [str(s) for s in parsed.get("suggestions") or []],
    }


def actions_to_slide_updates(actions: List[Dict[str, Any]],
                             slides: List[Dict[str, Any]]) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Map `update_slide` actions onto column updates for slides of the lesson.

    Actions naming an unknown slide, or carrying no usable changes, are skipped.
    """
    known = {s["id"] for s in slides}
    updates = []
    for action in actions:
        if action.get("type") != "update_slide" or action.get("slideId") not in known:
            continue
        changes = action.get("changes") or {}
        columns = {}
        if changes.get("title"):
            columns["title"] = changes["title"]
        if changes.get("description"):
            columns["description"] = changes["description"]
        if changes.get("content"):
            columns["html_content"] = clean_code_fences(changes["content"])
        if columns:
            updates.append((action["slideId"], columns))
    return updates


class SlideCommandService:
    """Chat commands against a lesson, backed by Gemini."""

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini
        self.usage = []

    async def parse_command(self, message: str, current_slide: Optional[Dict[str, Any]] = None):
        """
        Parse a chat message into a SlideCommand.

        Returns:
            (command, confidence)
        """
        prompt = build_command_parsing_prompt(message, current_slide)
        result = await self.gemini.generate(prompt, model=GEMINI_COMPRESSION_MODEL, temperature=0.3)
        self.usage.append(result)
        command = parse_command_response(result.text, message)
        return command, calculate_confidence(command, message)

    async def process_command(self, message: str, lesson: Optional[Dict[str, Any]] = None,
                              selected_slide_id: Optional[str] = None) -> Dict[str, Any]:
        if not message or not message.strip():
            raise ValidationError("Message is required")

        slides = (lesson or {}).get("slides") or []
        selected = next((s for s in slides if s.get("id") == selected_slide_id), None)
        command, confidence = await self.parse_command(message, selected)
        logger.info(f"💬 [SlideChat] {command.type} (slide {command.slide_number or '-'}, confidence {confidence})")

        prompt = f"""{SLIDE_SYSTEM_PROMPT}

USER COMMAND: "{message}"

RECOGNIZED COMMAND:
- Type: {command.type}
- Slide: {command.slide_number or 'not specified'}
- Instruction: {command.instruction}

LESSON CONTEXT:
{build_lesson_context(lesson, selected)}

Process the command and provide a response in JSON format."""

        result = await self.gemini.generate(prompt, model=GEMINI_CONTENT_MODEL, temperature=0.7, thinking_budget=0)
        self.usage.append(result)
        return {
            "command": command.to_dict(),
            "confidence": confidence,
            "response": parse_chat_response(result.text),
        }
