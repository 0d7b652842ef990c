"""
Lesson Content Generation

Prompt builders and services that turn topic/age parameters into lesson plans
and HTML slides. Gemini and Claude implement the same ContentService
interface; LessonPlanService asks Gemini for a structured JSON plan.
"""

import json
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional

from teachspark.ai_clients import (
    AIResult,
    ClaudeClient,
    GeminiClient,
    clean_code_fences,
)
from teachspark.config import Settings, get_settings
from teachspark.errors import GenerationError, ParseError, TeachSparkError, ValidationError
from teachspark.slide_image_processor import SlideImageProcessor

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "uk")
MIN_SLIDES = 1
MAX_SLIDES = 20
DEFAULT_SLIDE_COUNT = 6


# ==================== Prompt Builders ====================

def build_lesson_plan_prompt(topic: str, age_group: str, slide_count: int,
                             language: str = "en", additional_info: Optional[str] = None) -> str:
    extra = f"\n- Additional information: {additional_info}" if additional_info else ""
    if language == "uk":
        return f"""Ви - експерт з розробки освітніх програм для дітей. Створіть детальний та захоплюючий план уроку.

ВХІДНІ ДАНІ:
- Тема: {topic}
- Вік дітей: {age_group}
- Кількість слайдів: {slide_count}
- Мова: українська{extra}

ВИМОГИ ДО ПЛАНУ:
1. Урок має бути інтерактивним та цікавим для дітей цього віку
2. Включати різні типи активностей (навчання, гра, практика)
3. Враховувати вікові особливості розвитку
4. Кожен слайд має мету, зміст та інтерактивні елементи

Створіть план у форматі Markdown з детальними описами кожного слайду."""

    return f"""You are an expert in developing educational programs for children. Create a detailed and engaging lesson plan.

INPUT DATA:
- Topic: {topic}
- Children's age: {age_group}
- Number of slides: {slide_count}
- Language: English{extra}

LESSON PLAN REQUIREMENTS:
1. Create an engaging title
2. Clear learning objectives
3. Age-appropriate content structure
4. Interactive elements and activities
5. Assessment methods
6. Required materials

STRUCTURE:
## 📚 [Lesson Title]

**Target Audience:** {age_group}
**Duration:** 30-45 minutes

### 🎯 Learning Objectives
- [Objective 1]

### 📋 Lesson Plan

#### Slide 1: Introduction (5 minutes)
- [Content description]
- [Interactive element]

[Continue until slide {slide_count}]

### 🎮 Interactive Activities
### 📊 Assessment
### 📚 Required Materials
### 💡 Recommendations

Create a complete, detailed lesson plan that is engaging and educational for the specified age group."""


def build_slide_prompt(title: str, description: str, topic: str, age_group: str,
                       slide_number: int, total_slides: int, slide_type: str) -> str:
    return f"""You are an expert at building interactive HTML slides for children.

TASK: Create a complete HTML slide for children aged {age_group}.

SLIDE {slide_number} OF {total_slides} ({slide_type})
Title: {title}
Description:
{description}

LESSON TOPIC: {topic}

TECHNICAL REQUIREMENTS:
1. A full HTML document starting with <!DOCTYPE html> and ending with </html>
2. All styles in a <style> section or inline, all JavaScript in a <script> section
3. 4:3 layout (around 800x600px), large readable fonts, bright friendly colours
4. At least 2-3 interactive elements (buttons, animations, simple games)
5. No external libraries

IMAGES:
Where an illustration helps, insert a comment in exactly this form:
<!-- IMAGE_PROMPT: "short English description of the picture" WIDTH: 640 HEIGHT: 480 -->
Use at most 2 images per slide.

Return only the HTML code without explanations."""


def build_edit_plan_prompt(original_plan: str, comments: str, topic: str, age_group: str,
                           language: str = "en") -> str:
    language_note = "Ukrainian" if language == "uk" else "English"
    return f"""You are an expert in pedagogy and children's educational materials.

TASK: Update the existing lesson plan according to the teacher's requests.

CURRENT PLAN:
{original_plan}

REQUESTED CHANGES:
{comments}

CONTEXT:
- Lesson topic: {topic}
- Children's age: {age_group}
- Language: {language_note}

INSTRUCTIONS:
1. Apply the requested modifications while keeping the structure and quality
2. Keep the plan pedagogically sound and age-appropriate
3. If a change conflicts with good teaching practice, propose an alternative

Return the updated plan in the same Markdown format as the original."""


def build_lesson_plan_json_prompt(topic: str, age_group: str, slide_count: int,
                                  language: str, context: str) -> str:
    return f"""Create a lesson plan for children as JSON.

Topic: {topic}
Age group: {age_group}
Number of slides: {slide_count}
Language of all text values: {"Ukrainian" if language == "uk" else "English"}
{context}

Return ONLY valid JSON with this shape:
{{
  "title": "string",
  "targetAudience": "string",
  "duration": "string",
  "objectives": ["string"],
  "slides": [
    {{
      "slideNumber": 1,
      "type": "welcome | content | activity | game | summary",
      "title": "string",
      "goal": "string",
      "content": "string",
      "duration": "string",
      "interactive": ["string"]
    }}
  ]
}}
The "slides" array must contain exactly {slide_count} items."""


# ==================== Content Services ====================

class ContentService:
    """Common interface for lesson plan and slide generation."""

    provider = "base"

    def __init__(self, image_processor: Optional[SlideImageProcessor] = None):
        self.image_processor = image_processor

    async def _complete(self, prompt: str) -> AIResult:
        raise NotImplementedError

    async def generate_lesson_plan(self, topic: str, age_group: str, slide_count: int = DEFAULT_SLIDE_COUNT,
                                   language: str = "en", additional_info: Optional[str] = None) -> AIResult:
        prompt = build_lesson_plan_prompt(topic, age_group, slide_count, language, additional_info)
        logger.info(f"📋 [{self.provider}] Generating lesson plan: {topic} ({age_group}, {language})")
        result = await self._complete(prompt)
        return replace(result, text=result.text.strip())

    async def generate_slide_content(self, title: str, description: str, topic: str, age_group: str,
                                     slide_number: int = 1, total_slides: int = 1, slide_type: str = "content",
                                     session_id: Optional[str] = None, user_id: Optional[str] = None) -> AIResult:
        prompt = build_slide_prompt(title, description, topic, age_group, slide_number, total_slides, slide_type)
        logger.info(f"🎨 [{self.provider}] Generating slide {slide_number}/{total_slides}: {title}")
        result = await self._complete(prompt)
        html = clean_code_fences(result.text)

        if self.image_processor is not None:
            processed = await self.image_processor.process_slide_html(html, session_id=session_id, user_id=user_id)
            html = processed.html

        return replace(result, text=html)

    async def generate_edited_plan(self, original_plan: str, comments: str, topic: str, age_group: str,
                                   language: str = "en") -> AIResult:
        prompt = build_edit_plan_prompt(original_plan, comments, topic, age_group, language)
        logger.info(f"✏️ [{self.provider}] Editing lesson plan for {topic}")
        result = await self._complete(prompt)
        return replace(result, text=result.text.strip())


class GeminiContentService(ContentService):
    provider = "gemini"

    def __init__(self, gemini: GeminiClient, image_processor: Optional[SlideImageProcessor] = None):
        super().__init__(image_processor)
        self.gemini = gemini

    async def _complete(self, prompt: str) -> AIResult:
        return await self.gemini.generate(prompt, temperature=0.7, thinking_budget=0)


class ClaudeContentService(ContentService):
    provider = "claude"

    def __init__(self, claude: ClaudeClient, image_processor: Optional[SlideImageProcessor] = None):
        super().__init__(image_processor)
        self.claude = claude

    async def _complete(self, prompt: str) -> AIResult:
        return await self.claude.generate(prompt, max_tokens=12000, temperature=0.7)


CONTENT_PROVIDERS = ("gemini", "claude")


def get_content_service(provider: str = "gemini", settings: Optional[Settings] = None,
                        image_processor: Optional[SlideImageProcessor] = None) -> ContentService:
    """Build the content service for a provider name ("gemini" or "claude")."""
    settings = settings or get_settings()
    provider = (provider or "gemini").lower()
    if provider == "claude":
        return ClaudeContentService(ClaudeClient(settings.anthropic_api_key), image_processor)
    if provider == "gemini":
        return GeminiContentService(GeminiClient(settings.gemini_api_key), image_processor)
    raise ValidationError(f"Unknown content provider: {provider}")


# ==================== JSON Lesson Plan ====================

def parse_json_response(text: str) -> Any:
    """Parse model output as JSON, tolerating code fences and surrounding prose."""
    cleaned = clean_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}") + 1
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end])
            except json.JSONDecodeError:
                pass
    raise ParseError("Failed to parse JSON from AI response", details=cleaned[:200])


def validate_lesson_plan_request(data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise and validate a JSON lesson plan request."""
    age_group = (data.get("ageGroup") or "").strip()
    topic = (data.get("topic") or "").strip()
    if not age_group:
        raise ValidationError("Age group is required")
    if not topic:
        raise ValidationError("Topic is required")

    slide_count = data.get("slideCount", DEFAULT_SLIDE_COUNT)
    try:
        slide_count = int(slide_count)
    except (TypeError, ValueError):
        raise ValidationError("Slide count must be a number")
    if slide_count < MIN_SLIDES or slide_count > MAX_SLIDES:
        raise ValidationError(f"Slide count must be between {MIN_SLIDES} and {MAX_SLIDES}")

    language = data.get("language") or "en"
    if language not in SUPPORTED_LANGUAGES:
        raise ValidationError(f"Unsupported language: {language}")

    return {
        "ageGroup": age_group,
        "topic": topic,
        "slideCount": slide_count,
        "language": language,
        "additionalInfo": data.get("additionalInfo"),
        "learningGoals": data.get("learningGoals") or [],
    }


class LessonPlanService:
    """Generates a structured lesson plan as JSON."""

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini

    @staticmethod
    def build_context(request: Dict[str, Any]) -> str:
        lines = []
        if request.get("additionalInfo"):
            lines.append(f"Additional information: {request['additionalInfo']}")
        goals: List[str] = request.get("learningGoals") or []
        if goals:
            lines.append(f"Learning goals: {', '.join(goals)}")
        return "\n".join(lines)

    async def generate_lesson_plan_json(self, data: Dict[str, Any]) -> Dict[str, Any]:
        request = validate_lesson_plan_request(data)
        prompt = build_lesson_plan_json_prompt(
            request["topic"], request["ageGroup"], request["slideCount"],
            request["language"], self.build_context(request),
        )

        try:
            result = await self.gemini.generate(prompt, temperature=0.7, thinking_budget=0,
                                                response_mime_type="application/json")
        except TeachSparkError:
            raise
        except Exception as e:
            raise GenerationError(f"Lesson plan generation failed: {e}")

        plan = parse_json_response(result.text)
        if not isinstance(plan, dict) or not isinstance(plan.get("slides"), list):
            raise ParseError("Lesson plan JSON has no slides array")

        for index, slide in enumerate(plan["slides"], start=1):
            slide.setdefault("slideNumber", index)
            slide.setdefault("type", "content")

        logger.info(f"✅ [LessonPlan] Generated plan with {len(plan['slides'])} slides")
        return {
            "plan": plan,
            "usage": {
                "model": result.model,
                "inputTokens": result.input_tokens,
                "outputTokens": result.output_tokens,
            },
        }


def extract_slide_titles(markdown_plan: str) -> List[str]:
    """Pull "Slide N: Title" headings out of a markdown plan."""
    pattern = re.compile(r"^#+\s*(?:Slide|Слайд)\s*\d+\s*[:.-]\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
    return [re.sub(r"\s*\(.*?\)\s*$", "", m.group(1)) for m in pattern.finditer(markdown_plan or "")]
