"""
Conversation Context Compression

Long generation chats are compressed with a cheap Gemini model before being
sent back as context. The most recent messages are kept verbatim.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from teachspark.ai_clients import GEMINI_COMPRESSION_MODEL, GeminiClient
from teachspark.errors import GenerationError, ValidationError

logger = logging.getLogger(__name__)

MESSAGE_SEPARATOR = " | "
COMPRESSION_THRESHOLD = 4000

# Gemini Flash Lite pricing, USD per 1M tokens
INPUT_PRICE_PER_1M = 0.075
OUTPUT_PRICE_PER_1M = 0.30


@dataclass
class CompressionOptions:
    target_tokens: int = 1500
    semantic_cleaning: bool = True
    preserve_recent: bool = True
    recent_messages_count: int = 3

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CompressionOptions":
        data = data or {}
        return cls(
            target_tokens=int(data.get("targetTokens", 1500)),
            semantic_cleaning=bool(data.get("semanticCleaning", True)),
            preserve_recent=bool(data.get("preserveRecent", True)),
            recent_messages_count=int(data.get("recentMessagesCount", 3)),
        )


ADAPTIVE_LEVELS = [
    (6000, CompressionOptions(target_tokens=3500, recent_messages_count=5)),
    (10000, CompressionOptions(target_tokens=2500, recent_messages_count=3)),
]
AGGRESSIVE_LEVEL = CompressionOptions(target_tokens=1500, recent_messages_count=2)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def should_compress(context: str, max_tokens: int = COMPRESSION_THRESHOLD) -> bool:
    return estimate_tokens(context) > max_tokens


def calculate_cost(original_length: int, compressed_length: int) -> str:
    input_cost = math.ceil(original_length / 4) / 1_000_000 * INPUT_PRICE_PER_1M
    output_cost = math.ceil(compressed_length / 4) / 1_000_000 * OUTPUT_PRICE_PER_1M
    return f"${input_cost + output_cost:.6f}"


def calculate_metrics(original: str, compressed: str) -> Dict[str, Any]:
    original_length = len(original)
    compressed_length = len(compressed)
    ratio = compressed_length / original_length if original_length else 1.0
    saved = (original_length - compressed_length) / original_length * 100 if original_length else 0.0
    return {
        "originalLength": original_length,
        "compressedLength": compressed_length,
        "compressionRatio": f"{ratio:.3f}",
        "spaceSaved": f"{saved:.1f}",
        "estimatedTokens": estimate_tokens(compressed),
        "cost": calculate_cost(original_length, compressed_length),
    }


def separate_recent_context(context: str, recent_count: int) -> Tuple[str, str]:
    """Split off the last `recent_count` messages, which stay uncompressed."""
    parts = context.split(MESSAGE_SEPARATOR)
    if len(parts) <= recent_count:
        return context, ""
    return MESSAGE_SEPARATOR.join(parts[:-recent_count]), MESSAGE_SEPARATOR.join(parts[-recent_count:])


def build_compression_prompt(context: str, target_tokens: int, semantic_cleaning: bool) -> str:
    prompt = f"""You are an expert context compressor. Your task is to compress conversation context while preserving ALL important information.

ORIGINAL CONTEXT:
{context}

COMPRESSION REQUIREMENTS:
- Target length: {target_tokens} tokens (approximately {target_tokens * 4} characters)
- Preserve ALL key information: lesson topics, user age, questions, answers, progress
- Maintain conversation flow and context understanding
- Keep user preferences and learning state"""

    if semantic_cleaning:
        prompt += """
- Remove redundant phrases and filler words
- Combine similar information
- Use concise language while keeping meaning
- Remove repetitive confirmations ("okay", "I understand", "sure")
- Shorten verbose explanations while keeping core content"""

    prompt += """

OUTPUT FORMAT:
Provide a compressed version that reads naturally and contains all essential information. DO NOT use bullet points or structured format - write as flowing conversation context.

EXAMPLE COMPRESSION:
Instead of: "The user said that they are interested in learning about dinosaurs. I responded that dinosaurs are fascinating creatures. The user then asked about T-Rex specifically."
Write: "User interested in dinosaurs, asked about T-Rex."

COMPRESSED CONTEXT:"""
    return prompt


class ContextCompressionService:
    """Compresses conversation context through Gemini Flash Lite."""

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini

    async def _compress_text(self, context: str, target_tokens: int, semantic_cleaning: bool) -> str:
        prompt = build_compression_prompt(context, target_tokens, semantic_cleaning)
        result = await self.gemini.generate(
            prompt,
            model=GEMINI_COMPRESSION_MODEL,
            temperature=0.1,
            max_output_tokens=target_tokens + 200,
            thinking_budget=0,
        )
        return result.text.strip()

    async def compress(self, context: str, options: Optional[CompressionOptions] = None) -> Dict[str, Any]:
        """
        Compress a " | "-separated conversation context.

        Returns:
            dict with compressed text and metrics
        """
        if not context:
            raise ValidationError("Context is required")
        options = options or CompressionOptions()

        if options.preserve_recent:
            older, recent = separate_recent_context(context, options.recent_messages_count)
        else:
            older, recent = context, ""

        try:
            compressed = await self._compress_text(older, options.target_tokens, options.semantic_cleaning)
        except ValidationError:
            raise
        except Exception as e:
            raise GenerationError(f"Context compression failed: {e}")

        final = f"{compressed}{MESSAGE_SEPARATOR}RECENT: {recent}" if recent else compressed
        metrics = calculate_metrics(context, final)
        logger.info(
            f"🗜️ [Compression] {metrics['originalLength']} → {metrics['compressedLength']} chars "
            f"(ratio {metrics['compressionRatio']}, cost {metrics['cost']})"
        )
        return {"compressed": final, "metrics": metrics}

    async def adaptive_compression(self, context: str) -> Dict[str, Any]:
        """Pick compression strength from the context size."""
        tokens = estimate_tokens(context)
        if tokens <= COMPRESSION_THRESHOLD:
            return {"compressed": context, "metrics": calculate_metrics(context, context), "level": 0}

        for level, (limit, options) in enumerate(ADAPTIVE_LEVELS, start=1):
            if tokens <= limit:
                result = await self.compress(context, options)
                result["level"] = level
                return result

        result = await self.compress(context, AGGRESSIVE_LEVEL)
        result["level"] = len(ADAPTIVE_LEVELS) + 1
        return result
