"""
Slide Editing Services

GeminiSimpleEditService applies a free-text instruction to a slide's HTML.
GeminiSlideEditingService applies a list of teacher comments and returns a
structured JSON result describing the changes.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from teachspark.ai_clients import GEMINI_CONTENT_MODEL, GeminiClient, clean_code_fences
from teachspark.errors import GenerationError, ParseError, ValidationError
from teachspark.slide_image_processor import SlideImageProcessor

logger = logging.getLogger(__name__)

BASE64_IMAGE_PATTERN = re.compile(r'src="data:image/[^;]+;base64,[^"]+"')

IMPROVEMENT_INSTRUCTIONS = {
    "visual": "Improve the design: make it brighter, add colours and visual effects",
    "interactive": "Add interactivity: buttons, animations, game elements",
    "content": "Improve the content: make the text clearer and more engaging for children",
    "accessibility": "Improve accessibility: larger font, stronger contrast, clearer navigation",
}

ELEMENT_INSTRUCTIONS = {
    "quiz": "Add a mini quiz with 2-3 questions about the topic",
    "game": "Add a simple game or interactive activity",
    "animation": "Add CSS animations to draw attention",
    "video": "Add a video placeholder with a play button",
    "interactive_button": "Add interactive buttons with hover effects",
}

RETRYABLE_MARKERS = ("overloaded", "503", "UNAVAILABLE", "quota")


# ==================== HTML Helpers ====================

def extract_base64_images(html: str) -> Tuple[str, List[Tuple[str, str]]]:
    """Swap inline base64 image sources for short placeholders."""
    extracted: List[Tuple[str, str]] = []

    def _swap(match):
        placeholder = f"[BASE64_IMAGE_{len(extracted)}]"
        extracted.append((placeholder, match.group(0)))
        return f'src="{placeholder}"'

    return BASE64_IMAGE_PATTERN.sub(_swap, html), extracted


def restore_base64_images(html: str, extracted: List[Tuple[str, str]]) -> str:
    for placeholder, original in extracted:
        html = html.replace(f'src="{placeholder}"', original, 1)
    return html


def compress_html(html: str) -> str:
    """Shrink HTML to save prompt tokens."""
    compressed = re.sub(r"\s+", " ", html)
    compressed = re.sub(r">\s+<", "><", compressed)
    compressed = re.sub(r"<!--.*?-->", "", compressed)
    return compressed.strip()


def get_slide_stats(html: str) -> Dict[str, Any]:
    text = re.sub(r"<[^>]*>", "", html).strip()
    return {
        "length": len(html),
        "hasImages": "<img" in html or "data:image" in html,
        "hasInteractivity": "onclick" in html or "addEventListener" in html,
        "hasAnimations": "@keyframes" in html or "animation:" in html,
        "textLength": len(text),
    }


def analyze_changes(old_html: str, new_html: str, instruction: str) -> Dict[str, Any]:
    """Describe what differs between two versions of a slide."""
    changes = []

    if abs(len(old_html) - len(new_html)) > 100:
        changes.append(f"Content size changed: {len(old_html)} → {len(new_html)} characters")

    old_elements = len(re.findall(r"<[^/][^>]*>", old_html))
    new_elements = len(re.findall(r"<[^/][^>]*>", new_html))
    if new_elements > old_elements:
        changes.append(f"Added {new_elements - old_elements} new elements")
    elif new_elements < old_elements:
        changes.append(f"Removed {old_elements - new_elements} elements")

    old_style = re.search(r"<style[^>]*>([\s\S]*?)</style>", old_html)
    new_style = re.search(r"<style[^>]*>([\s\S]*?)</style>", new_html)
    if old_style and new_style and old_style.group(1) != new_style.group(1):
        changes.append("Updated CSS styles")

    if ("<script" in old_html) != ("<script" in new_html) or ("onclick" in old_html) != ("onclick" in new_html):
        changes.append("Changed JavaScript behaviour")

    if len(re.findall(r"color:\s*[^;]+", old_html)) != len(re.findall(r"color:\s*[^;]+", new_html)):
        changes.append("Changed colour scheme")

    summary = f"Applied {len(changes)} kinds of change: {instruction}" if changes else "Slide updated according to the instruction"
    return {"summary": summary, "detectedChanges": changes, "changeCount": len(changes)}


# ==================== Simple Edit ====================

def build_simple_edit_prompt(html: str, instruction: str, topic: str, age: str) -> str:
    return f"""You are an expert in editing HTML slides for children. Receive an HTML slide and instruction, make precise changes.

**LESSON:** {topic} (age {age})

**CURRENT HTML SLIDE:**
{html}

**EDIT INSTRUCTION:**
{instruction}

**REQUIREMENTS:**
1. Make ONLY the requested changes
2. Preserve all existing functionality
3. Maintain responsive design
4. Keep child-friendly style
5. Keep every src="[BASE64_IMAGE_n]" placeholder exactly as it is

**RESPONSE:**
Provide ONLY the updated HTML code, without any explanations or comments.

**UPDATED HTML:**"""


class GeminiSimpleEditService:
    """Edits a slide's HTML from a single instruction."""

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini

    async def edit_slide(self, instruction: str, slide_content: str, topic: str = "lesson",
                         age: str = "6-8 years") -> str:
        """
        Apply an instruction to slide HTML.

        Base64 images are swapped out before the call and restored afterwards
        so they never reach the model.
        """
        if not instruction or not instruction.strip():
            raise ValidationError("Instruction is required")
        if not slide_content:
            raise ValidationError("Slide content is required")

        cleaned, images = extract_base64_images(slide_content)
        prompt = build_simple_edit_prompt(compress_html(cleaned), instruction, topic, age)

        result = await self.gemini.generate(prompt, model=GEMINI_CONTENT_MODEL, temperature=0.7, thinking_budget=0)
        edited = clean_code_fences(result.text)
        if not edited:
            raise GenerationError("No content in Gemini response")

        logger.info(f"✏️ [SimpleEdit] Edited slide ({len(slide_content)} → {len(edited)} chars, {len(images)} images kept)")
        return restore_base64_images(edited, images)

    async def improve_slide(self, slide_content: str, improvement_type: str, topic: str, age: str) -> str:
        if improvement_type not in IMPROVEMENT_INSTRUCTIONS:
            raise ValidationError(f"Unknown improvement type: {improvement_type}")
        return await self.edit_slide(IMPROVEMENT_INSTRUCTIONS[improvement_type], slide_content, topic, age)

    async def change_theme(self, slide_content: str, theme: str, topic: str, age: str) -> str:
        instruction = f"Change the design theme to: {theme}. Adapt colours, styles and decoration to this theme."
        return await self.edit_slide(instruction, slide_content, topic, age)

    async def add_element(self, slide_content: str, element_type: str, topic: str, age: str) -> str:
        if element_type not in ELEMENT_INSTRUCTIONS:
            raise ValidationError(f"Unknown element type: {element_type}")
        return await self.edit_slide(ELEMENT_INSTRUCTIONS[element_type], slide_content, topic, age)


# ==================== Comment-Driven Edit ====================

@dataclass
class SlideComment:
    comment: str
    section_type: str = "general"
    priority: str = "medium"


@dataclass
class SlideEditingResult:
    slide_id: str
    edited_title: str
    edited_content: str
    edited_html: str
    changes: List[Dict[str, Any]] = field(default_factory=list)
    improvement_areas: List[str] = field(default_factory=list)
    images_generated: int = 0
    image_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "editedSlide": {
                "id": self.slide_id,
                "title": self.edited_title,
                "content": self.edited_content,
                "htmlContent": self.edited_html,
            },
            "slideChanges": {
                "slideId": self.slide_id,
                "changes": self.changes,
                "summary": {
                    "totalChanges": len(self.changes),
                    "affectedSections": sorted({c.get("section", "general") for c in self.changes}),
                    "improvementAreas": self.improvement_areas,
                },
                "imageProcessing": {
                    "imagesGenerated": self.images_generated,
                    "processingErrors": self.image_errors,
                },
            },
        }


def build_comment_edit_prompt(slide: Dict[str, Any], comments: List[SlideComment], age_group: str, topic: str) -> str:
    comments_text = "\n".join(
        f"• {c.section_type.upper()} ({c.priority} priority): {c.comment}" for c in comments
    )
    return f"""You are an expert educational content editor. Edit this slide based on user feedback and return the COMPLETE result.

**SLIDE TO EDIT:**
Title: "{slide.get('title', '')}"
Content: {slide.get('content') or 'No text content'}

**USER FEEDBACK:**
{comments_text}

**CONTEXT:** Age: {age_group}, Topic: {topic}

**CURRENT HTML (EDIT THIS COMPLETELY):**
{slide.get('htmlContent') or slide.get('html_content') or 'No HTML content'}

**IMAGE INTEGRATION:**
New images can be added with comments in this EXACT format (descriptions in English):
<!-- IMAGE_PROMPT: "description of image" WIDTH: 400 HEIGHT: 400 -->

**RETURN FORMAT - PURE JSON ONLY (NO MARKDOWN):**
{{
  "editedTitle": "new title",
  "editedContent": "new content",
  "editedHtmlContent": "COMPLETE HTML - start with <!DOCTYPE html> and end with </html>",
  "changes": [{{"section": "general", "shortDescription": "what changed", "detailedDescription": "detailed explanation"}}],
  "improvementAreas": ["what was improved"]
}}

Apply ALL feedback, keep it age-appropriate for {age_group}, and do NOT truncate the HTML."""


def is_retryable_error(error: Exception) -> bool:
    message = str(error)
    return any(marker in message for marker in RETRYABLE_MARKERS)


class GeminiSlideEditingService:
    """Edits a slide from teacher comments with retry on transient Gemini errors."""

    MAX_RETRIES = 3

    def __init__(
        self,
        gemini: GeminiClient,
        image_processor: Optional[SlideImageProcessor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gemini = gemini
        self.image_processor = image_processor
        self._sleep = sleep

    async def _call_with_retry(self, prompt: str) -> str:
        retry_count = 0
        while True:
            try:
                result = await self.gemini.generate(
                    prompt, model=GEMINI_CONTENT_MODEL, temperature=0.3,
                    max_output_tokens=65536, top_p=0.9, top_k=50,
                )
                return result.text.strip()
            except Exception as e:
                if is_retryable_error(e) and retry_count < self.MAX_RETRIES:
                    delay = 2 ** retry_count
                    logger.warning(f"⚠️ [SlideEditing] Gemini busy, retrying in {delay}s ({retry_count + 1}/{self.MAX_RETRIES})")
                    await self._sleep(delay)
                    retry_count += 1
                    continue
                raise

    @staticmethod
    def parse_response(text: str) -> Dict[str, Any]:
        cleaned = clean_code_fences(text)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            start, end = cleaned.find("{"), cleaned.rfind("}") + 1
            try:
                parsed = json.loads(cleaned[start:end]) if start != -1 and end > start else None
            except json.JSONDecodeError:
                parsed = None
        if not isinstance(parsed, dict):
            raise ParseError("Could not parse slide editing response as JSON", details=cleaned[:300])

        html = parsed.get("editedHtmlContent") or ""
        if not html.strip():
            raise GenerationError("Gemini returned no HTML content for the slide")
        if "</html>" not in html:
            raise GenerationError("Edited HTML is truncated (missing </html>)")
        return parsed

    async def edit_slide_from_comments(self, slide: Dict[str, Any], comments: List[SlideComment],
                                       age_group: str, topic: str, session_id: Optional[str] = None,
                                       user_id: Optional[str] = None) -> SlideEditingResult:
        if not comments:
            raise ValidationError("At least one comment is required")

        prompt = build_comment_edit_prompt(slide, comments, age_group, topic)
        parsed = self.parse_response(await self._call_with_retry(prompt))

        result = SlideEditingResult(
            slide_id=str(slide.get("id", "")),
            edited_title=parsed.get("editedTitle") or slide.get("title", ""),
            edited_content=parsed.get("editedContent") or slide.get("content", ""),
            edited_html=parsed["editedHtmlContent"],
            changes=parsed.get("changes") or [],
            improvement_areas=parsed.get("improvementAreas") or [],
        )

        if self.image_processor is not None:
            processed = await self.image_processor.process_slide_html(result.edited_html, session_id, user_id)
            result.edited_html = processed.html
            result.images_generated = processed.images_generated
            result.image_errors = processed.errors

        logger.info(f"✅ [SlideEditing] Slide {result.slide_id}: {len(result.changes)} changes applied")
        return result
