"""
Worksheet Parser

Converts paginated, AI-generated worksheet elements into canvas elements the
editor can render: ids, sizes, stacked positions and every schema property
filled in.
"""

import logging
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from teachspark.pagination import A4, INTER_ELEMENT_SPACING

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PropertySchema:
    type: str
    required: bool = False
    default: Any = None
    description: str = ""


P = PropertySchema

COMPONENT_SCHEMAS: Dict[str, Dict[str, PropertySchema]] = {
    "title-block": {
        "text": P("string", True, description="The title text content"),
        "level": P("enum", default="main", description="main | section | exercise"),
        "align": P("enum", default="center", description="left | center | right"),
        "color": P("string", default="#1F2937"),
    },
    "body-text": {
        "text": P("string", True, description="Paragraph text"),
        "variant": P("enum", default="paragraph"),
    },
    "instructions-box": {
        "text": P("string", True, description="What the student should do"),
        "type": P("enum", default="general"),
        "title": P("string", default="Instructions"),
    },
    "fill-blank": {
        "items": P("array", True, description='[{number, text: "She ______ (go) to school.", hint}]'),
        "wordBank": P("array", description="Optional list of answer words"),
    },
    "multiple-choice": {
        "items": P("array", True, description="[{number, question, options: [{letter, text}], correctAnswer}]"),
    },
    "true-false": {
        "items": P("array", True, description="[{number, statement, correctAnswer}]"),
    },
    "short-answer": {
        "items": P("array", True, description="[{number, question, lines}]"),
    },
    "match-pairs": {
        "items": P("array", True, description="[{number, left, right}]"),
    },
    "tip-box": {
        "text": P("string", True),
        "type": P("enum", default="study"),
        "title": P("string", default="Tip"),
    },
    "warning-box": {
        "text": P("string", True),
        "type": P("enum", default="grammar"),
        "title": P("string", default="Warning"),
    },
    "image-placeholder": {
        "imagePrompt": P("string", description="Prompt for AI image generation"),
        "url": P("string"),
        "caption": P("string"),
        "width": P("number", default=400),
        "height": P("number", default=300),
        "align": P("enum", default="center"),
    },
    "divider": {
        "style": P("enum", default="solid"),
        "thickness": P("number", default=1),
        "color": P("string", default="#D1D5DB"),
        "spacing": P("enum", default="medium"),
    },
    "bullet-list": {
        "items": P("array", True, description="[{id, text}]"),
        "style": P("enum", default="dot"),
    },
    "numbered-list": {
        "items": P("array", True, description="[{id, text}]"),
        "style": P("enum", default="decimal"),
    },
    "table": {
        "headers": P("array", True),
        "rows": P("array", True),
        "hasHeaders": P("boolean", default=True),
        "borderStyle": P("enum", default="all"),
    },
}

DEFAULT_HEIGHTS = {
    "title-block": 60,
    "body-text": 80,
    "instructions-box": 100,
    "fill-blank": 150,
    "multiple-choice": 200,
    "true-false": 150,
    "short-answer": 180,
    "tip-box": 90,
    "warning-box": 90,
    "image-placeholder": 300,
    "divider": 20,
    "bullet-list": 100,
    "numbered-list": 100,
    "table": 150,
}
DEFAULT_HEIGHT = 50


def get_schema(component_type: str) -> Optional[Dict[str, PropertySchema]]:
    return COMPONENT_SCHEMAS.get(component_type)


def describe_components() -> str:
    """Component catalogue for generation prompts."""
    lines = []
    for component_type, props in COMPONENT_SCHEMAS.items():
        fields = []
        for name, schema in props.items():
            marker = " (required)" if schema.required else ""
            hint = f": {schema.description}" if schema.description else ""
            fields.append(f"    - {name} [{schema.type}]{marker}{hint}")
        lines.append(f"- {component_type}\n" + "\n".join(fields))
    return "\n".join(lines)


def create_placeholder(prop_type: str, name: str) -> Any:
    placeholders = {"string": f"[{name}]", "number": 0, "boolean": False, "array": [], "object": {}}
    return placeholders.get(prop_type)


def _random_suffix(length: int = 7) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


class WorksheetParser:
    """Builds canvas pages from generated pages."""

    def __init__(self, page_width: int = A4.width):
        self.page_width = page_width

    def fill_properties(self, component_type: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        schema = get_schema(component_type)
        if schema is None:
            return dict(properties)

        filled: Dict[str, Any] = {}
        for name, prop in schema.items():
            value = properties.get(name)
            if value is not None:
                filled[name] = value
            elif prop.default is not None:
                filled[name] = prop.default
            elif prop.required:
                filled[name] = create_placeholder(prop.type, name)
                logger.warning(f"⚠️ [Parser] Missing required property '{name}' for {component_type}")

        for name, value in properties.items():
            if name not in filled:
                filled[name] = value
        return filled

    def default_size(self, component_type: str) -> Dict[str, int]:
        return {"width": self.page_width, "height": DEFAULT_HEIGHTS.get(component_type, DEFAULT_HEIGHT)}

    def parse_element(self, element: Dict[str, Any], element_index: int, page_index: int, y: int) -> Dict[str, Any]:
        component_type = element.get("type", "")
        if get_schema(component_type) is None:
            logger.warning(f"⚠️ [Parser] Unknown component type: {component_type}")
        ms = int(time.time() * 1000)
        return {
            "id": f"element-{page_index}-{element_index}-{ms}-{_random_suffix()}",
            "type": component_type,
            "position": {"x": 0, "y": y},
            "size": self.default_size(component_type),
            "properties": self.fill_properties(component_type, element.get("properties") or {}),
            "zIndex": element_index,
            "locked": False,
            "visible": True,
        }

    def parse_page(self, page: Dict[str, Any], page_index: int) -> Dict[str, Any]:
        elements = []
        y = 0
        for element_index, element in enumerate(page.get("elements") or []):
            parsed = self.parse_element(element, element_index, page_index, y)
            elements.append(parsed)
            y += parsed["size"]["height"] + INTER_ELEMENT_SPACING

        number = page.get("pageNumber", page_index + 1)
        return {
            "pageNumber": number,
            "title": page.get("title") or f"Page {number}",
            "pageId": f"page-{page_index}-{int(time.time() * 1000)}-{_random_suffix()}",
            "background": page.get("background"),
            "elements": elements,
            "pageType": page.get("pageType") or "pdf",
            "ageGroup": page.get("ageGroup"),
        }

    def parse_worksheet(self, worksheet: Dict[str, Any]) -> Dict[str, Any]:
        pages = [self.parse_page(page, i) for i, page in enumerate(worksheet.get("pages") or [])]
        total = sum(len(p["elements"]) for p in pages)
        logger.info(f"🧩 [Parser] Parsed {len(pages)} pages, {total} elements")
        return {"pages": pages, "metadata": worksheet.get("metadata") or {}}

    @staticmethod
    def validate_worksheet(parsed: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check a parsed worksheet for structural problems.

        Returns:
            dict with isValid, errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []
        pages = parsed.get("pages") or []

        if not pages:
            errors.append("No pages found in worksheet")
            return {"isValid": False, "errors": errors, "warnings": warnings}

        for page_number, page in enumerate(pages, start=1):
            if not (page.get("title") or "").strip():
                warnings.append(f"Page {page_number}: Missing title")

            elements = page.get("elements") or []
            if not elements:
                errors.append(f"Page {page_number}: No elements found")
                continue

            if elements[0].get("type") != "title-block":
                warnings.append(
                    f"Page {page_number}: First element should be title-block, found {elements[0].get('type')}"
                )

            for element_number, element in enumerate(elements, start=1):
                where = f"Page {page_number}, Element {element_number}"
                for required in ("id", "type", "properties"):
                    if not element.get(required) and element.get(required) != {}:
                        errors.append(f"{where}: Missing {required}")
                if element.get("type") and get_schema(element["type"]) is None:
                    warnings.append(f"{where}: Unknown component type \"{element['type']}\"")

        return {"isValid": not errors, "errors": errors, "warnings": warnings}
