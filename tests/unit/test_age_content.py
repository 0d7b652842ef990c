"""
Unit Tests for Age-Based Content Amounts
"""

import pytest

from teachspark.age_content import (
    DEFAULT_AMOUNTS,
    format_for_prompt,
    get_all_age_groups,
    get_component_range,
    get_duration_labels,
    get_size_multiplier,
    normalize_age_group,
    validate_component_count,
)


class TestComponentRange:
    """Tests for get_component_range."""

    def test_early_elementary_quick(self):
        amount = get_component_range("6-7", "quick")
        assert (amount.target_count, amount.min_count, amount.max_count) == (8, 6, 10)

    def test_attention_span_caps_target(self):
        # 15 min attention at 0.6/min caps a 25 min lesson at 9 components
        amount = get_component_range("6-7", "standard")
        assert (amount.target_count, amount.min_count, amount.max_count) == (9, 7, 11)

    def test_minimum_is_at_least_three(self):
        amount = get_component_range("3-5", "standard")
        assert amount.target_count == 4
        assert amount.min_count == 3
        assert amount.max_count == 5

    def test_labels_with_years_suffix(self):
        assert get_component_range("6-7 years", "quick") == get_component_range("6-7", "quick")
        assert normalize_age_group(" 10-12 years ") == "10-12"
        assert normalize_age_group(None) == ""

    def test_unknown_age_group_uses_defaults(self):
        assert get_component_range("99-100", "extended") == DEFAULT_AMOUNTS["extended"]

    def test_unknown_duration_falls_back_to_standard(self):
        assert get_component_range("8-9", "marathon") == get_component_range("8-9", "standard")

    def test_explanation_mentions_label(self):
        assert "Early Elementary (6-7 years)" in get_component_range("6-7", "quick").explanation

    def test_to_dict(self):
        assert set(get_component_range("8-9", "quick").to_dict()) == {
            "targetCount", "minCount", "maxCount", "explanation",
        }


class TestValidation:
    """Tests for validate_component_count."""

    @pytest.mark.parametrize("count,valid", [(5, False), (6, True), (10, True), (11, False)])
    def test_range_bounds(self, count, valid):
        result = validate_component_count("6-7", "quick", count)
        assert result["valid"] is valid
        assert result["suggestion"] == 8

    def test_too_many_reason(self):
        assert "Too many" in validate_component_count("6-7", "quick", 30)["reason"]


class TestHelpers:
    """Tests for the remaining helpers."""

    def test_size_multiplier(self):
        assert get_size_multiplier("3-5") == 1.5
        assert get_size_multiplier("unknown") == 1.0

    def test_all_age_groups_in_order(self):
        groups = get_all_age_groups()
        assert groups[0] == "3-5"
        assert groups[-1] == "50+"
        assert len(groups) == 10

    def test_prompt_block(self):
        block = format_for_prompt("3-5", "quick")
        assert "Preschool (3-5 years)" in block
        assert "Avoid These Types" in block
        assert "YES (critical for engagement)" in block
        assert format_for_prompt("unknown", "quick") == ""

    def test_prompt_block_without_avoid_list(self):
        assert "Avoid These Types" not in format_for_prompt("8-9", "standard")

    def test_duration_labels(self):
        labels = get_duration_labels("6-7")
        assert labels["quick"] == "Quick (10-15 min, ~8 components)"
        assert labels["standard"] == "Standard (20-30 min, ~9 components)"
