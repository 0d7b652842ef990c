"""
Worksheet Content Pagination

Distributes a linear list of generated worksheet elements across pages.
Elements are atomic: one that does not fit moves whole to the next page.
Structural elements (titles, dividers, instructions) are never left alone at
the bottom of a page.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from teachspark.age_content import get_size_multiplier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageConfig:
    width: int
    height: int
    padding_top: int = 40
    padding_right: int = 40
    padding_bottom: int = 40
    padding_left: int = 40

    @property
    def content_height(self) -> int:
        return self.height - self.padding_top - self.padding_bottom

    @property
    def content_width(self) -> int:
        return self.width - self.padding_left - self.padding_right


# 96 DPI
A4 = PageConfig(width=794, height=1123)
LETTER = PageConfig(width=816, height=1056)
SLIDE = PageConfig(width=1920, height=1080, padding_top=60, padding_right=60,
                   padding_bottom=60, padding_left=60)

PAGE_CONFIGS = {"A4": A4, "LETTER": LETTER, "SLIDE": SLIDE}

INTER_ELEMENT_SPACING = 40
PAGE_BOTTOM_MARGIN = 50

SAFETY_BUFFERS = {
    "fill-blank": 1.15,
    "multiple-choice": 1.12,
    "title-block": 1.20,
    "instructions-box": 1.15,
    "divider": 1.10,
    "default": 1.12,
}

BASE_HEIGHTS = {
    "title-block": 80,
    "subtitle-block": 60,
    "paragraph-block": 100,
    "text-block": 80,
    "body-text": 80,
    "fill-blank": 120,
    "multiple-choice": 150,
    "match-pairs": 180,
    "true-false": 100,
    "short-answer": 120,
    "word-bank": 140,
    "instructions-box": 100,
    "tip-box": 80,
    "warning-box": 80,
    "image-block": 200,
    "image-with-caption": 220,
    "image-placeholder": 200,
    "box": 150,
    "divider": 20,
    "spacer": 40,
    "default": 100,
}

STRUCTURAL_TYPES = {"title-block", "divider", "instructions-box"}
CONTENT_TYPES = {
    "body-text", "paragraph-block", "text-block", "tip-box", "warning-box",
    "bullet-list", "numbered-list", "image-placeholder", "image-block", "image-with-caption",
}
EXERCISE_TYPES = {
    "fill-blank", "multiple-choice", "true-false", "short-answer",
    "match-pairs", "word-bank", "table",
}


@dataclass
class PaginationResult:
    pages: List[Dict[str, Any]]
    total_pages: int
    elements_per_page: List[int] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pages": self.pages,
            "totalPages": self.total_pages,
            "elementsPerPage": self.elements_per_page,
            "overflowElements": len(self.warnings),
            "overflowWarnings": self.warnings,
        }


def _text_length(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value)
    if isinstance(value, (dict, list)):
        return len(json.dumps(value, ensure_ascii=False))
    return len(str(value))


def _option_text(option: Any) -> str:
    if not option:
        return ""
    if isinstance(option, dict):
        for key in ("text", "label", "value", "content"):
            if option.get(key):
                return str(option[key])
        return ""
    return str(option)


def content_length(element: Dict[str, Any]) -> int:
    props = element.get("properties") or {}
    length = sum(_text_length(props.get(key)) for key in
                 ("text", "content", "question", "instruction", "description"))

    options = props.get("options")
    if isinstance(options, list):
        length += sum(len(_option_text(opt)) for opt in options)

    items = props.get("items")
    if isinstance(items, list):
        for item in items:
            if isinstance(item, dict):
                length += sum(_text_length(item.get(key)) for key in ("text", "question", "answer"))
    return length


class ContentPaginationService:
    """Greedy page filler with orphan prevention."""

    def __init__(self, page_config: PageConfig = A4, age_range: Optional[str] = None,
                 content_mode: str = "pdf"):
        self.page_config = page_config
        self.age_range = age_range
        self.content_mode = content_mode

    @property
    def available_height(self) -> int:
        return self.page_config.content_height - PAGE_BOTTOM_MARGIN

    def _size_multiplier(self) -> float:
        return get_size_multiplier(self.age_range) if self.age_range else 1.0

    def estimate_element_height(self, element: Dict[str, Any]) -> float:
        element_type = element.get("type", "")
        props = element.get("properties") or {}
        items = props.get("items") if isinstance(props.get("items"), list) else []

        if element_type == "fill-blank":
            height = 80 + len(items) * 50
            word_bank = props.get("wordBank")
            if isinstance(word_bank, list) and word_bank:
                height += 40 + math.ceil(len(word_bank) / 4) * 40
            return height * self._size_multiplier()

        if element_type == "multiple-choice":
            return (60 + len(items) * 80) * self._size_multiplier()

        base = BASE_HEIGHTS.get(element_type, BASE_HEIGHTS["default"]) * self._size_multiplier()
        return base * max(1, math.ceil(content_length(element) / 200))

    def buffered_height(self, element: Dict[str, Any]) -> int:
        buffer = SAFETY_BUFFERS.get(element.get("type"), SAFETY_BUFFERS["default"])
        return math.ceil(self.estimate_element_height(element) * buffer)

    @staticmethod
    def is_structural(element: Dict[str, Any]) -> bool:
        return element.get("type") in STRUCTURAL_TYPES

    @staticmethod
    def is_content(element: Dict[str, Any]) -> bool:
        element_type = element.get("type")
        return element_type in CONTENT_TYPES or element_type in EXERCISE_TYPES

    def _stack_height(self, elements: List[Dict[str, Any]]) -> int:
        if not elements:
            return 0
        heights = [self.buffered_height(el) for el in elements]
        return sum(heights) + INTER_ELEMENT_SPACING * (len(heights) - 1)

    def _split_trailing_orphans(self, page: List[Dict[str, Any]]):
        """Return (kept, orphans) where orphans are structural elements at the end of the page."""
        if not page:
            return [], []
        last = page[-1]
        if last.get("type") == "title-block" and len(page) > 1 and page[-2].get("type") == "divider":
            return page[:-2], page[-2:]
        if self.is_structural(last):
            return page[:-1], [last]
        return page, []

    def _make_page(self, elements: List[Dict[str, Any]], number: int, title: Optional[str]) -> Dict[str, Any]:
        return {
            "pageNumber": number,
            "title": title or f"Page {number}",
            "elements": elements,
            "pageType": self.content_mode,
        }

    def paginate(self, elements: List[Dict[str, Any]], page_title: Optional[str] = None) -> PaginationResult:
        """
        Distribute elements across pages.

        Args:
            elements: Generated elements in reading order
            page_title: Title for every page (defaults to "Page N")

        Returns:
            PaginationResult with pages and overflow warnings
        """
        available = self.available_height
        pages: List[Dict[str, Any]] = []
        current: List[Dict[str, Any]] = []

        def flush():
            nonlocal current
            kept, orphans = self._split_trailing_orphans(current)
            if kept:
                pages.append(self._make_page(kept, len(pages) + 1, page_title))
            current = orphans

        for i, element in enumerate(elements):
            height = self.buffered_height(element)
            used = self._stack_height(current)
            spacing = INTER_ELEMENT_SPACING if current else 0

            if used + spacing + height > available and current:
                flush()
                used = self._stack_height(current)
                spacing = INTER_ELEMENT_SPACING if current else 0

            next_element = elements[i + 1] if i + 1 < len(elements) else None
            if (
                current
                and next_element is not None
                and self.is_structural(element)
                and self.is_content(next_element)
            ):
                space_left = available - (used + spacing + height) - INTER_ELEMENT_SPACING
                if space_left < self.buffered_height(next_element):
                    flush()

            current.append(element)

        if current:
            kept, orphans = self._split_trailing_orphans(current)
            if kept:
                pages.append(self._make_page(kept, len(pages) + 1, page_title))
            if orphans:
                pages.append(self._make_page(orphans, len(pages) + 1, page_title))

        warnings = self._post_validate(pages, available)
        logger.info(f"📄 [Pagination] {len(elements)} elements → {len(pages)} pages")
        return PaginationResult(
            pages=pages,
            total_pages=len(pages),
            elements_per_page=[len(p["elements"]) for p in pages],
            warnings=warnings,
        )

    def _post_validate(self, pages: List[Dict[str, Any]], available: int) -> List[Dict[str, Any]]:
        warnings = []
        for page in pages:
            page_height = self._stack_height(page["elements"])
            if page_height > available:
                warnings.append({
                    "element": f"page-{page['pageNumber']}",
                    "expectedHeight": page_height,
                    "availableHeight": available,
                    "overflow": page_height - available,
                    "pageNumber": page["pageNumber"],
                })
                logger.warning(
                    f"⚠️ [Pagination] Page {page['pageNumber']} overflows by {page_height - available}px"
                )
        return warnings
