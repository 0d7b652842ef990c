"""
Age-Based Content Amounts

How much worksheet content fits an age group and lesson duration. Younger
children process fewer components per minute and get larger components.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DURATIONS = ("quick", "standard", "extended")

DURATION_MINUTES: Dict[str, float] = {
    "quick": 12.5,
    "standard": 25,
    "extended": 45,
}


@dataclass
class AgeGroupConfig:
    age_range: str
    label: str
    components_per_minute: float
    attention_span_minutes: int
    preferred_exercise_types: List[str]
    avoid_exercise_types: List[str] = field(default_factory=list)
    visual_importance: str = "medium"
    requires_images: bool = False
    max_text_length: int = 400
    instruction_style: str = ""
    size_multiplier: float = 1.0


@dataclass
class ContentAmount:
    target_count: int
    min_count: int
    max_count: int
    explanation: str

    def to_dict(self) -> Dict:
        return {
            "targetCount": self.target_count,
            "minCount": self.min_count,
            "maxCount": self.max_count,
            "explanation": self.explanation,
        }


_ADULT_TYPES = ["short-answer", "multiple-choice", "fill-blank", "word-bank"]

AGE_CONFIGS: Dict[str, AgeGroupConfig] = {
    cfg.age_range: cfg
    for cfg in [
        AgeGroupConfig(
            "3-5", "Preschool (3-5 years)", 0.4, 10,
            ["match-pairs", "true-false", "image-placeholder"],
            ["short-answer", "word-bank"],
            visual_importance="critical", requires_images=True, max_text_length=100,
            instruction_style="Very simple, 1-2 words per instruction", size_multiplier=1.5,
        ),
        AgeGroupConfig(
            "6-7", "Early Elementary (6-7 years)", 0.6, 15,
            ["fill-blank", "match-pairs", "true-false", "multiple-choice"],
            ["short-answer"],
            visual_importance="high", requires_images=True, max_text_length=150,
            instruction_style="Simple sentences, clear and direct", size_multiplier=1.3,
        ),
        AgeGroupConfig(
            "8-9", "Elementary (8-9 years)", 0.8, 20,
            ["fill-blank", "multiple-choice", "true-false", "match-pairs", "word-bank"],
            visual_importance="high", max_text_length=250,
            instruction_style="Clear sentences with some complexity", size_multiplier=1.1,
        ),
        AgeGroupConfig(
            "10-12", "Upper Elementary (10-12 years)", 1.0, 25,
            ["fill-blank", "multiple-choice", "short-answer", "word-bank", "match-pairs"],
            visual_importance="medium", max_text_length=400,
            instruction_style="Standard instructions with detail", size_multiplier=1.0,
        ),
        AgeGroupConfig(
            "13-15", "Middle School (13-15 years)", 1.2, 30,
            ["short-answer", "multiple-choice", "fill-blank", "word-bank"],
            ["match-pairs"],
            visual_importance="medium", max_text_length=600,
            instruction_style="Detailed instructions, academic language", size_multiplier=0.9,
        ),
        AgeGroupConfig(
            "16-18", "High School (16-18 years)", 1.5, 40,
            ["short-answer", "multiple-choice", "fill-blank"],
            ["match-pairs", "true-false"],
            visual_importance="low", max_text_length=800,
            instruction_style="Academic, detailed, complex", size_multiplier=0.8,
        ),
        AgeGroupConfig(
            "19-25", "Young Adults (19-25 years)", 1.8, 45,
            list(_ADULT_TYPES), ["match-pairs", "true-false"],
            visual_importance="low", max_text_length=1000,
            instruction_style="Professional, concise, direct", size_multiplier=0.75,
        ),
        AgeGroupConfig(
            "26-35", "Adults (26-35 years)", 2.0, 50,
            list(_ADULT_TYPES), ["match-pairs", "true-false"],
            visual_importance="low", max_text_length=1200,
            instruction_style="Professional, efficient, business-like", size_multiplier=0.7,
        ),
        AgeGroupConfig(
            "36-50", "Mature Adults (36-50 years)", 1.8, 55,
            list(_ADULT_TYPES), ["match-pairs", "true-false"],
            visual_importance="low", max_text_length=1200,
            instruction_style="Professional, detailed, comprehensive", size_multiplier=0.75,
        ),
        AgeGroupConfig(
            "50+", "Senior Adults (50+ years)", 1.5, 50,
            list(_ADULT_TYPES), ["match-pairs"],
            visual_importance="medium", max_text_length=1000,
            instruction_style="Clear, well-structured, patient", size_multiplier=0.85,
        ),
    ]
}

DEFAULT_AMOUNTS: Dict[str, ContentAmount] = {
    "quick": ContentAmount(6, 5, 8, "Standard quick lesson content"),
    "standard": ContentAmount(12, 10, 15, "Standard lesson content"),
    "extended": ContentAmount(20, 18, 25, "Extended lesson content"),
}


def normalize_age_group(age_group: Optional[str]) -> str:
    """Accept "8-9 years" style labels as well as bare ranges."""
    if not age_group:
        return ""
    return age_group.strip().split(" ")[0]


def get_config(age_group: str) -> Optional[AgeGroupConfig]:
    return AGE_CONFIGS.get(normalize_age_group(age_group))


def get_all_age_groups() -> List[str]:
    return list(AGE_CONFIGS.keys())


def get_size_multiplier(age_group: str) -> float:
    config = get_config(age_group)
    return config.size_multiplier if config else 1.0


def _round(value: float) -> int:
    # half-up, matching how the UI rounds counts
    return int(value + 0.5)


def get_component_range(age_group: str, duration: str) -> ContentAmount:
    """
    Calculate the component count for an age group and duration.

    The target is bounded by both the lesson duration and the attention span,
    with a +/-20% acceptable range (never fewer than 3).
    """
    if duration not in DURATION_MINUTES:
        duration = "standard"
    config = get_config(age_group)
    if config is None:
        return DEFAULT_AMOUNTS[duration]

    minutes = DURATION_MINUTES[duration]
    by_attention = config.attention_span_minutes * config.components_per_minute
    by_duration = minutes * config.components_per_minute
    target = _round(min(by_attention, by_duration))
    min_count = max(3, _round(target * 0.8))
    max_count = _round(target * 1.2)

    minutes_per_component = _round(1 / config.components_per_minute)
    explanation = (
        f"For {config.label}, we recommend {target} components. "
        f"At this age, children process about {config.components_per_minute} components per minute "
        f"(~{minutes_per_component} min per component). For a {duration} lesson ({minutes:g} min), "
        f"this provides engaging content without overwhelming."
    )
    return ContentAmount(target, min_count, max_count, explanation)


def validate_component_count(age_group: str, duration: str, actual_count: int) -> Dict:
    amount = get_component_range(age_group, duration)

    if amount.min_count <= actual_count <= amount.max_count:
        reason = (
            f"Component count ({actual_count}) is within appropriate range "
            f"({amount.min_count}-{amount.max_count})"
        )
        return {"valid": True, "reason": reason, "suggestion": amount.target_count}

    if actual_count < amount.min_count:
        reason = f"Too few components ({actual_count}). Children need more content for meaningful learning."
    else:
        reason = f"Too many components ({actual_count}). This may overwhelm children at this age."
    return {"valid": False, "reason": reason, "suggestion": amount.target_count}


def format_for_prompt(age_group: str, duration: str) -> str:
    """Age guidance block appended to worksheet generation prompts."""
    config = get_config(age_group)
    if config is None:
        return ""

    amount = get_component_range(age_group, duration)
    preferred = "\n".join(f"  - {t}" for t in config.preferred_exercise_types)
    avoid = ""
    if config.avoid_exercise_types:
        avoid_lines = "\n".join(f"  - {t}" for t in config.avoid_exercise_types)
        avoid = f"\n❌ **Avoid These Types:**\n{avoid_lines}\n"
    images = "YES (critical for engagement)" if config.requires_images else "NO (use when helpful)"

    return f"""
**AGE-SPECIFIC CONTENT REQUIREMENTS FOR {config.label}:**

📊 **Content Amount:**
- Target Components: {amount.target_count}
- Acceptable Range: {amount.min_count}-{amount.max_count}
- Reason: {amount.explanation}

⏱️ **Pacing:**
- Processing Speed: {config.components_per_minute} components/minute
- Time per Component: ~{_round(1 / config.components_per_minute)} minutes
- Attention Span: {config.attention_span_minutes} minutes

✅ **Preferred Exercise Types:**
{preferred}
{avoid}
📝 **Text Guidelines:**
- Max Text Length: {config.max_text_length} characters per component
- Instruction Style: {config.instruction_style}

🎨 **Visual Requirements:**
- Visual Importance: {config.visual_importance}
- Images Required: {images}
"""


def get_duration_labels(age_group: str) -> Dict[str, str]:
    quick = get_component_range(age_group, "quick").target_count
    standard = get_component_range(age_group, "standard").target_count
    extended = get_component_range(age_group, "extended").target_count
    return {
        "quick": f"Quick (10-15 min, ~{quick} components)",
        "standard": f"Standard (20-30 min, ~{standard} components)",
        "extended": f"Extended (40-50 min, ~{extended} components)",
    }
