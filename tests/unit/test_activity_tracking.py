"""
Unit Tests for Activity and Token Tracking
"""

import pytest

from teachspark.activity_tracking import ActivityTracker, TokenTracker, summarize_token_rows
from teachspark.ai_clients import AIResult


class TestActivityTracker:
    """Test suite for ActivityTracker."""

    @pytest.fixture
    def tracker(self, supabase):
        return ActivityTracker(supabase)

    def test_track_lesson_created(self, tracker, supabase, user_id):
        row_id = tracker.track_lesson_created(user_id, "lesson-1", "Dinosaurs", "6-7 years", "Science", 30)
        row = supabase.rows("activity_log")[0]
        assert row_id == row["id"]
        assert row["action"] == "lesson_created"
        assert row["entity_type"] == "lesson"
        assert row["metadata"]["ageGroup"] == "6-7 years"

    def test_track_without_user_is_skipped(self, tracker, supabase):
        assert tracker.track_action(None, "lesson_created") is None
        assert supabase.rows("activity_log") == []

    def test_tracking_failure_is_swallowed(self, tracker, supabase, user_id):
        supabase.failing_tables.add("activity_log")
        assert tracker.track_worksheet_created(user_id, None, "pdf", "6-7 years", "Shapes") is None

    def test_user_activity_newest_first(self, tracker, supabase, user_id):
        supabase.seed("activity_log",
                      {"user_id": user_id, "action": "a", "created_at": "2025-01-01T00:00:00+00:00"},
                      {"user_id": user_id, "action": "b", "created_at": "2025-02-01T00:00:00+00:00"},
                      {"user_id": "other", "action": "c", "created_at": "2025-03-01T00:00:00+00:00"})
        assert [row["action"] for row in tracker.get_user_activity(user_id)] == ["b", "a"]


class TestTokenTracker:
    """Test suite for TokenTracker."""

    @pytest.fixture
    def tracker(self, supabase):
        supabase.seed("ai_model_pricing", {"model_name": "gemini-2.5-flash", "is_active": True,
                                           "input_price_per_1m": 0.3, "output_price_per_1m": 2.5,
                                           "valid_from": "2025-01-01T00:00:00+00:00"})
        return TokenTracker(supabase)

    def test_usage_is_priced(self, tracker, user_id):
        row = tracker.track_token_usage(user_id, "lesson-plan", "gemini-2.5-flash", 1_000_000, 200_000)
        assert row["input_cost"] == pytest.approx(0.3)
        assert row["output_cost"] == pytest.approx(0.5)

    def test_unknown_model_costs_nothing(self, tracker, user_id):
        row = tracker.track_token_usage(user_id, "slides", "mystery-model", 10, 10)
        assert row["input_cost"] == 0
        assert row["output_cost"] == 0

    def test_track_result(self, tracker, supabase, user_id):
        tracker.track_result(user_id, "worksheet", AIResult(text="x", model="gemini-2.5-flash",
                                                           input_tokens=5, output_tokens=7))
        assert supabase.rows("token_usage")[0]["output_tokens"] == 7
        assert tracker.track_result(None, "worksheet", None) is None

    def test_failure_returns_none(self, tracker, supabase, user_id):
        supabase.failing_tables.add("token_usage")
        assert tracker.track_token_usage(user_id, "slides", "gemini-2.5-flash", 1, 1) is None

    def test_stats_and_breakdown(self, tracker, supabase, user_id):
        supabase.seed("token_usage",
                      {"user_id": user_id, "service_name": "slides", "input_tokens": 10, "output_tokens": 5,
                       "input_cost": 0.1, "output_cost": 0.2},
                      {"user_id": user_id, "service_name": "worksheet", "total_tokens": 100, "total_cost": 1.0},
                      {"user_id": "other", "service_name": "slides", "total_tokens": 1, "total_cost": 0.01})

        stats = tracker.get_user_token_stats(user_id)
        assert stats["totalTokens"] == 115
        assert stats["totalCost"] == pytest.approx(1.3)

        breakdown = tracker.get_user_token_breakdown(user_id)
        assert breakdown["slides"]["totalTokens"] == 15
        assert tracker.get_platform_token_stats()["totalTokens"] == 116

    def test_summarize_empty(self):
        assert summarize_token_rows([]) == {"totalTokens": 0, "totalCost": 0}
