"""
Unit Tests for ContextCompressionService
"""

import pytest

from conftest import FakeAIClient
from teachspark.context_compression import (
    CompressionOptions,
    ContextCompressionService,
    calculate_metrics,
    estimate_tokens,
    separate_recent_context,
    should_compress,
)
from teachspark.errors import GenerationError, ValidationError


class TestHelpers:

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("") == 0

    def test_should_compress_threshold(self):
        assert should_compress("x" * 16000) is False
        assert should_compress("x" * 16001) is True

    def test_separate_recent_context(self):
        assert separate_recent_context("a | b | c | d", 2) == ("a | b", "c | d")
        assert separate_recent_context("a | b", 3) == ("a | b", "")

    def test_metrics(self):
        metrics = calculate_metrics("x" * 1000, "x" * 250)
        assert metrics["compressionRatio"] == "0.250"
        assert metrics["spaceSaved"] == "75.0"
        assert metrics["estimatedTokens"] == 63
        assert metrics["cost"].startswith("$")

    def test_options_from_dict(self):
        options = CompressionOptions.from_dict({"targetTokens": 800, "preserveRecent": False})
        assert options.target_tokens == 800
        assert options.preserve_recent is False
        assert options.recent_messages_count == 3


class TestContextCompressionService:
    """Test suite for ContextCompressionService."""

    @pytest.mark.asyncio
    async def test_keeps_recent_messages(self):
        gemini = FakeAIClient("  Teacher planning a dinosaur lesson for age 7.  ")
        context = " | ".join(f"message {i}" for i in range(6))

        result = await ContextCompressionService(gemini).compress(context)

        assert result["compressed"] == "Teacher planning a dinosaur lesson for age 7. | RECENT: message 3 | message 4 | message 5"
        assert "message 2" in gemini.prompts[0]
        assert "message 3" not in gemini.prompts[0]
        assert gemini.kwargs[0]["max_output_tokens"] == 1700

    @pytest.mark.asyncio
    async def test_without_recent(self):
        gemini = FakeAIClient("short")
        result = await ContextCompressionService(gemini).compress(
            "a | b | c | d", CompressionOptions(preserve_recent=False, semantic_cleaning=False))
        assert result["compressed"] == "short"
        assert "Remove redundant phrases" not in gemini.prompts[0]

    @pytest.mark.asyncio
    async def test_errors(self):
        with pytest.raises(ValidationError):
            await ContextCompressionService(FakeAIClient("x")).compress("")
        with pytest.raises(GenerationError):
            await ContextCompressionService(FakeAIClient(RuntimeError("down"))).compress("a | b")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size,level,target", [
        (20000, 1, 3500),
        (36000, 2, 2500),
        (60000, 3, 1500),
    ])
    async def test_adaptive_levels(self, size, level, target):
        gemini = FakeAIClient("compressed")
        result = await ContextCompressionService(gemini).adaptive_compression("x" * size)
        assert result["level"] == level
        assert gemini.kwargs[0]["max_output_tokens"] == target + 200

    @pytest.mark.asyncio
    async def test_small_context_untouched(self):
        gemini = FakeAIClient("unused")
        result = await ContextCompressionService(gemini).adaptive_compression("short context")
        assert result["compressed"] == "short context"
        assert result["level"] == 0
        assert gemini.prompts == []
