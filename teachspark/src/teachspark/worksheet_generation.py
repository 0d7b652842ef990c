"""
Worksheet Generation

Gemini generates a worksheet as one linear list of components. The list is
checked against the age-based component range and paginated into A4 pages.
Also hosts the conversational topic helper and worksheet image generation.
"""

import asyncio
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from teachspark.age_content import (
    DURATIONS,
    format_for_prompt,
    get_component_range,
    validate_component_count,
)
from teachspark.ai_clients import GEMINI_CONTENT_MODEL, AIResult, GeminiClient, clean_code_fences
from teachspark.errors import GenerationError, ParseError, TeachSparkError, ValidationError
from teachspark.image_generation import TogetherImageService
from teachspark.pagination import A4, ContentPaginationService
from teachspark.worksheet_parser import describe_components

logger = logging.getLogger(__name__)

DURATION_GUIDANCE = {
    "quick": "10-15 minutes",
    "standard": "20-30 minutes",
    "extended": "40-50 minutes",
}

TOPIC_READY_MARKER = "TOPIC_READY"
TOPIC_READY_FOOTER = (
    "\n\n---\n\n✅ **Plan is ready!** This detailed plan will be used to generate your worksheet. "
    "Click \"Use This Plan\" to continue."
)

# Minutes a student spends per component, or per item for list exercises
DURATION_PER_COMPONENT = {
    "title-block": 0.5,
    "body-text": 1,
    "instructions-box": 0.5,
    "image-placeholder": 0.5,
    "word-bank": 2,
}
DURATION_PER_ITEM = {
    "fill-blank": (1, 2),
    "multiple-choice": (0.75, 2),
    "true-false": (0.5, 1.5),
    "short-answer": (2, 4),
    "match-pairs": (1.5, 3),
}

_TRAILING_KEY = re.compile(r',?\s*"[^"\\]*"\s*:\s*$')
_TRAILING_COMMA = re.compile(r",\s*$")


# ==================== JSON Repair ====================

def repair_incomplete_json(text: str) -> str:
    """
    Close a JSON document that the model cut off mid-way.

    Closes an unterminated string, drops a dangling key or trailing comma and
    appends the missing brackets and braces in nesting order. Complete JSON
    is returned unchanged.
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()

    if not in_string and not stack:
        return text

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'

    repaired = repaired.rstrip()
    repaired = _TRAILING_KEY.sub("", repaired)
    repaired = _TRAILING_COMMA.sub("", repaired)
    return repaired + "".join(reversed(stack))


def parse_worksheet_elements(text: str) -> List[Dict[str, Any]]:
    """Parse `{topic, ageGroup, elements: [...]}` from model output."""
    cleaned = clean_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            parsed = json.loads(repair_incomplete_json(cleaned))
            logger.warning("⚠️ [Worksheet] Response JSON was truncated and has been repaired")
        except json.JSONDecodeError as e:
            raise ParseError(f"Failed to parse Gemini response: {e}", details=cleaned[-200:])

    if not isinstance(parsed, dict) or not isinstance(parsed.get("elements"), list):
        raise ParseError('Invalid response: missing "elements" array')

    return [el for el in parsed["elements"] if isinstance(el, dict) and el.get("type")]


def estimate_duration(elements: List[Dict[str, Any]]) -> int:
    minutes = 0.0
    for element in elements:
        element_type = element.get("type")
        if element_type in DURATION_PER_ITEM:
            per_item, fallback = DURATION_PER_ITEM[element_type]
            items = (element.get("properties") or {}).get("items") or []
            minutes += len(items) * per_item if items else fallback
        else:
            minutes += DURATION_PER_COMPONENT.get(element_type, 0.5)
    return math.ceil(minutes)


def components_used(elements: List[Dict[str, Any]]) -> List[str]:
    seen: List[str] = []
    for element in elements:
        if element["type"] not in seen:
            seen.append(element["type"])
    return seen


# ==================== Prompts ====================

def build_worksheet_prompt(request: Dict[str, Any]) -> str:
    topic = request["topic"]
    age_group = request["ageGroup"]
    duration = request["duration"]
    include_images = request["includeImages"]
    exercise_types = request.get("exerciseTypes") or []
    amount = get_component_range(age_group, duration)

    if exercise_types:
        exercise_line = (
            f"- **Preferred Exercise Types:** {', '.join(exercise_types)} "
            "(prioritize these, but you can include others if beneficial)"
        )
    else:
        exercise_line = "- **Exercise Types:** Use any appropriate types based on topic and age"
    extra = request.get("additionalInstructions")
    extra_line = f"\n- **Additional Instructions:** {extra}" if extra else ""

    if include_images:
        image_rule = (
            'When using image-placeholder, ALWAYS provide "imagePrompt" instead of "url". The imagePrompt '
            "should be a detailed, child-friendly description for AI image generation."
        )
    else:
        image_rule = "Do not include any image-placeholder components."

    return f"""You are an expert educational content creator specializing in worksheet generation for children.

# TASK
Generate a complete educational worksheet about "{topic}" for age group {age_group}.
**Generate ALL content as a SINGLE list of components. Do NOT organize into pages.**

# GENERATION PARAMETERS
- **Topic:** {topic}
- **Age Group:** {age_group} years old
- **Difficulty:** {request["difficulty"]}
- **Language:** {request["language"]}
- **Duration:** {duration} - {DURATION_GUIDANCE[duration]}
- **Include Images:** {"Yes" if include_images else "No"}
{exercise_line}{extra_line}

# EDUCATIONAL GUIDELINES FOR AGE {age_group}
{format_for_prompt(age_group, duration)}

# COMPONENT LIBRARY
{describe_components()}

# CONTENT STRUCTURE RULES
1. Begin with a title-block (level: "main")
2. Add an instructions-box after the title
3. Flow: Explanation → Examples → Exercises → Review
4. Use dividers between major sections and place images near related content

## TARGET COMPONENT COUNT
**YOU MUST GENERATE {amount.target_count} COMPONENTS (Range: {amount.min_count}-{amount.max_count})**
- 1 Main Title
- 1-2 Instructions
- {math.ceil(amount.target_count * 0.3)} Text/Explanation Blocks
- {math.ceil(amount.target_count * 0.5)} Exercise Components
- {math.ceil(amount.target_count * 0.1)} Helper Elements
- {math.ceil(amount.target_count * 0.1) if include_images else 0} Images

# RESPONSE FORMAT
Respond with ONLY valid JSON:
{{
  "topic": "{topic}",
  "ageGroup": "{age_group}",
  "elements": [
    {{"type": "title-block", "properties": {{"text": "Main Title", "level": "main", "align": "center"}}}},
    {{"type": "instructions-box", "properties": {{"text": "Complete the exercises below.", "type": "general"}}}}
  ]
}}

# CRITICAL RULES
1. Valid JSON only, no markdown
2. Every component must have "type" and "properties"
3. Only use types from the component library
4. All user-facing text in {request["language"]}, technical fields in English
5. Images: {image_rule}

Now generate the worksheet as pure JSON:"""


PDF_COMPONENTS = """PDF Worksheet Components:
- **title-block**: Main titles and section headers
- **body-text**: Explanatory text and descriptions
- **instructions-box**: Clear instructions for activities
- **fill-blank**: Fill in the blank exercises
- **multiple-choice**: Multiple choice questions (A, B, C, D)
- **true-false**: True/False questions
- **short-answer**: Open-ended questions
- **match-pairs**: Match items from two columns
- **tip-box**: Helpful tips and hints
- **warning-box**: Important notes or warnings
- **image-placeholder**: Educational images and illustrations
- **bullet-list** / **numbered-list**: Lists
- **table**: Tables for organizing information
- **divider**: Visual separators between sections"""

INTERACTIVE_COMPONENTS = """Interactive Components (for digital worksheets):
- **TapImage**, **SimpleDragAndDrop**, **SimpleCounter**, **MemoryCards**, **SortingGame**
- **ColorMatcher**, **EmotionRecognizer**, **PatternBuilder**, **ShapeTracer**, **SimplePuzzle**
- **SequenceBuilder**, **CauseEffectGame**, **SoundMatcher**, **VoiceRecorder**, **RewardCollector**"""


def build_topic_chat_prompt(message: str, history: List[Dict[str, Any]], age_group: str,
                            content_mode: str) -> str:
    conversation = "\n\n".join(
        f"{'User' if msg.get('sender') == 'user' else 'Assistant'}: {msg.get('text', '')}"
        for msg in history
    )
    components = PDF_COMPONENTS
    if content_mode == "interactive":
        components = f"{PDF_COMPONENTS}\n\n{INTERACTIVE_COMPONENTS}"
    mode_label = "PDF (printable)" if content_mode == "pdf" else "Interactive (digital)"

    return f"""You are an educational content specialist helping teachers create worksheet topics.

CONTEXT:
- Age Group: {age_group}
- Content Mode: {mode_label}

YOUR ROLE:
1. Ask clarifying questions about what the teacher wants to teach
2. Understand the learning objectives and skills to practice
3. Consider age-appropriateness and content mode
4. Generate a detailed, specific topic description

AVAILABLE COMPONENTS:
{components}

CONVERSATION GUIDELINES:
- Be friendly and helpful, use Markdown formatting
- Ask follow-up questions to understand their needs better
- The final plan must include: Main Topic/Title, Learning Objectives, Components to Use,
  Activity Flow and Age-Appropriate Details

TOPIC GENERATION FORMAT:
When you're ready to provide the final plan:
1. Present the COMPLETE DETAILED PLAN
2. On a new line at the very end, add: "{TOPIC_READY_MARKER}"

Previous conversation:
{conversation}

User's message: {message}

Respond naturally and helpfully. If you have enough information, generate the topic."""


def split_topic_reply(text: str):
    """Return (display_text, generated_topic) for a topic-chat reply."""
    if TOPIC_READY_MARKER not in text:
        return text, None
    plan = text.split(TOPIC_READY_MARKER)[0].strip()
    return f"{plan}{TOPIC_READY_FOOTER}", plan


# ==================== Services ====================

def validate_worksheet_request(data: Dict[str, Any]) -> Dict[str, Any]:
    topic = (data.get("topic") or "").strip()
    age_group = (data.get("ageGroup") or "").strip()
    if not topic:
        raise ValidationError("Topic is required")
    if not age_group:
        raise ValidationError("Age group is required")

    duration = data.get("duration") or "standard"
    if duration not in DURATIONS:
        raise ValidationError(f"Invalid duration: {duration}")

    return {
        "topic": topic,
        "ageGroup": age_group,
        "duration": duration,
        "language": data.get("language") or "en",
        "difficulty": data.get("difficulty") or "medium",
        "additionalInstructions": data.get("additionalInstructions") or "",
        "includeImages": data.get("includeImages", True) is not False,
        "exerciseTypes": data.get("exerciseTypes") or [],
    }


class GeminiWorksheetGenerationService:
    """Generates paginated worksheets with Gemini."""

    MAX_ATTEMPTS = 2

    def __init__(self, gemini: GeminiClient,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.gemini = gemini
        self._sleep = sleep
        self.last_usage: Optional[AIResult] = None

    async def _call_gemini(self, prompt: str) -> AIResult:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return await self.gemini.generate(
                    prompt,
                    model=GEMINI_CONTENT_MODEL,
                    temperature=0.7,
                    max_output_tokens=32000,
                    top_p=0.9,
                    top_k=40,
                )
            except Exception as e:
                last_error = e
                logger.warning(f"⚠️ [Worksheet] Gemini attempt {attempt} failed: {e}")
                if attempt < self.MAX_ATTEMPTS:
                    await self._sleep(2 ** attempt)
        raise GenerationError(f"Worksheet generation failed: {last_error}")

    async def generate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generate a worksheet.

        Args:
            data: Request with topic, ageGroup, duration, language, difficulty,
                additionalInstructions and includeImages

        Returns:
            dict with pages and metadata
        """
        request = validate_worksheet_request(data)
        logger.info(
            f"📝 [Worksheet] Generating '{request['topic']}' "
            f"({request['ageGroup']}, {request['duration']})"
        )

        result = await self._call_gemini(build_worksheet_prompt(request))
        self.last_usage = result
        elements = parse_worksheet_elements(result.text)

        check = validate_component_count(request["ageGroup"], request["duration"], len(elements))
        if not check["valid"]:
            logger.warning(f"⚠️ [Worksheet] {check['reason']} (suggested: {check['suggestion']})")

        paginator = ContentPaginationService(A4, age_range=request["ageGroup"])
        pagination = paginator.paginate(elements, page_title=f"{request['topic']} Worksheet")

        return {
            "pages": pagination.pages,
            "metadata": {
                "topic": request["topic"],
                "ageGroup": request["ageGroup"],
                "difficulty": request["difficulty"],
                "language": request["language"],
                "pageCount": pagination.total_pages,
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "componentsUsed": components_used(elements),
                "estimatedDuration": estimate_duration(elements),
                "autoPaginated": True,
            },
        }

    async def generate_topic_chat(self, message: str, conversation_history: Optional[List[Dict[str, Any]]] = None,
                                  age_group: str = "", content_mode: str = "pdf") -> Dict[str, Any]:
        """One turn of the topic-planning conversation."""
        if not message or not isinstance(message, str):
            raise ValidationError("Message is required")

        prompt = build_topic_chat_prompt(message, conversation_history or [], age_group, content_mode)
        try:
            result = await self.gemini.generate(
                prompt,
                model=GEMINI_CONTENT_MODEL,
                temperature=0.8,
                max_output_tokens=4096,
                top_p=0.9,
                top_k=40,
            )
        except TeachSparkError:
            raise
        except Exception as e:
            raise GenerationError(f"Failed to generate topic: {e}")

        self.last_usage = result
        response, generated_topic = split_topic_reply(result.text)
        return {"response": response, "generatedTopic": generated_topic}


class WorksheetImageService:
    """Fills image-placeholder elements that carry an imagePrompt."""

    MAX_ATTEMPTS = 3

    def __init__(self, image_service: TogetherImageService,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.image_service = image_service
        self._sleep = sleep

    async def _generate_url(self, prompt: str, width: int, height: int) -> str:
        last_error = "Unknown error"
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                result = await self.image_service.generate(prompt, width=width, height=height)
                if result.success and result.image_base64:
                    return f"data:image/png;base64,{result.image_base64}"
                last_error = result.error or last_error
            except ValidationError:
                raise
            except Exception as e:
                last_error = str(e)
            if attempt < self.MAX_ATTEMPTS:
                await self._sleep(attempt)
        raise GenerationError(f"Failed after {self.MAX_ATTEMPTS} attempts: {last_error}")

    async def generate_images(self, worksheet: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generate images for every page element of type image-placeholder.

        Returns:
            dict with success, worksheet (copy with urls filled), stats and errors
        """
        started = datetime.now(timezone.utc)
        errors: List[str] = []
        generated = failed = total = 0
        pages = []

        for page in worksheet.get("pages") or []:
            elements = []
            for element in page.get("elements") or []:
                props = element.get("properties") or {}
                if element.get("type") != "image-placeholder" or not props.get("imagePrompt"):
                    elements.append(element)
                    continue

                total += 1
                try:
                    url = await self._generate_url(
                        props["imagePrompt"], int(props.get("width") or 400), int(props.get("height") or 300)
                    )
                except GenerationError as e:
                    failed += 1
                    errors.append(f"Failed to generate: {props.get('caption') or 'image'}")
                    logger.warning(f"⚠️ [WorksheetImages] {e.message}")
                    elements.append(element)
                else:
                    generated += 1
                    elements.append({**element, "properties": {**props, "url": url}})
            pages.append({**page, "elements": elements})

        duration_ms = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
        logger.info(f"🖼️ [WorksheetImages] {generated}/{total} generated, {failed} failed")
        return {
            "success": failed == 0,
            "worksheet": {**worksheet, "pages": pages},
            "stats": {"totalImages": total, "generated": generated, "failed": failed, "duration": duration_ms},
            "errors": errors,
        }
