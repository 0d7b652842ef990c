"""
AI Vendor Clients

Thin async wrappers around the Gemini and Claude SDKs. Both return an AIResult
so callers can record token usage next to the generated text.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from anthropic import AsyncAnthropic
from google import genai

from teachspark.errors import ConfigurationError, GenerationError

logger = logging.getLogger(__name__)

GEMINI_CONTENT_MODEL = "gemini-2.5-flash"
GEMINI_COMPRESSION_MODEL = "gemini-2.5-flash-lite-preview-06-17"
CLAUDE_CONTENT_MODEL = "claude-sonnet-4-20250514"

_FENCE_START = re.compile(r"^\s*```[a-zA-Z]*\s*\n?")
_FENCE_END = re.compile(r"\n?\s*```\s*$")


@dataclass
class AIResult:
    """Text returned by a model plus its token usage."""
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def clean_code_fences(text: str) -> str:
    """Strip a leading ```lang fence and a trailing ``` fence."""
    if not text:
        return ""
    cleaned = _FENCE_START.sub("", text, count=1)
    cleaned = _FENCE_END.sub("", cleaned, count=1)
    return cleaned.strip()


class GeminiClient:
    """Async Gemini client built on google-genai."""

    def __init__(self, api_key: Optional[str] = None, client: Any = None):
        if client is None:
            if not api_key:
                raise ConfigurationError("GEMINI_API_KEY is not configured")
            client = genai.Client(api_key=api_key)
        self.client = client

    async def generate(
        self,
        prompt: str,
        model: str = GEMINI_CONTENT_MODEL,
        temperature: float = 0.7,
        max_output_tokens: Optional[int] = None,
        thinking_budget: Optional[int] = None,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        response_mime_type: Optional[str] = None,
    ) -> AIResult:
        config: Dict[str, Any] = {"temperature": temperature}
        if max_output_tokens is not None:
            config["max_output_tokens"] = max_output_tokens
        if thinking_budget is not None:
            config["thinking_config"] = {"thinking_budget": thinking_budget}
        if top_p is not None:
            config["top_p"] = top_p
        if top_k is not None:
            config["top_k"] = top_k
        if response_mime_type:
            config["response_mime_type"] = response_mime_type

        logger.debug(f"🤖 [Gemini] Calling {model} (prompt: {len(prompt)} chars)")
        response = await self.client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=config,
        )

        text = response.text
        if not text:
            raise GenerationError("Empty response from Gemini API")

        usage = getattr(response, "usage_metadata", None)
        return AIResult(
            text=text,
            model=model,
            input_tokens=(getattr(usage, "prompt_token_count", 0) or 0) if usage else 0,
            output_tokens=(getattr(usage, "candidates_token_count", 0) or 0) if usage else 0,
        )


class ClaudeClient:
    """Async Claude client built on the anthropic SDK."""

    def __init__(self, api_key: Optional[str] = None, client: Any = None):
        if client is None:
            if not api_key:
                raise ConfigurationError("ANTHROPIC_API_KEY is not configured")
            client = AsyncAnthropic(api_key=api_key)
        self.client = client

    async def generate(
        self,
        prompt: str,
        model: str = CLAUDE_CONTENT_MODEL,
        max_tokens: int = 12000,
        temperature: float = 0.7,
        system: Optional[str] = None,
    ) -> AIResult:
        kwargs: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        logger.debug(f"🤖 [Claude] Calling {model} (prompt: {len(prompt)} chars)")
        response = await self.client.messages.create(**kwargs)

        text = "".join(
            block.text for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        if not text:
            raise GenerationError("Empty response from Claude API")

        usage = getattr(response, "usage", None)
        return AIResult(
            text=text,
            model=model,
            input_tokens=getattr(usage, "input_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "output_tokens", 0) if usage else 0,
        )
