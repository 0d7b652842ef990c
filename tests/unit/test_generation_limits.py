"""
Unit Tests for GenerationLimitService

Tests free and pro quotas, monthly resets and the error mapping.
"""

from datetime import datetime, timedelta, timezone

import pytest

from teachspark.errors import GenerationLimitError, NotFoundError, TeachSparkError
from teachspark.generation_limits import (
    FREE_GENERATION_LIMIT,
    PRO_GENERATION_LIMIT,
    GenerationLimitService,
    is_subscription_active,
    needs_monthly_reset,
)


def _iso(dt):
    return dt.isoformat()


class TestSubscriptionRules:
    """Tests for the pure helper functions."""

    def test_free_plan_is_not_active(self):
        assert is_subscription_active({"subscription_type": "free"}) is False

    def test_pro_without_expiry_is_active(self):
        assert is_subscription_active({"subscription_type": "pro"}) is True

    def test_expired_pro_is_not_active(self):
        now = datetime(2025, 3, 10, tzinfo=timezone.utc)
        profile = {"subscription_type": "professional", "subscription_expires_at": "2025-03-01T00:00:00Z"}
        assert is_subscription_active(profile, now) is False

    def test_monthly_reset_when_month_changes(self):
        now = datetime(2025, 3, 1, 0, 5, tzinfo=timezone.utc)
        assert needs_monthly_reset({"last_generation_reset": "2025-02-28T23:59:00+00:00"}, now) is True
        assert needs_monthly_reset({"last_generation_reset": "2025-03-01T00:01:00+00:00"}, now) is False
        assert needs_monthly_reset({}, now) is True


class TestGenerationLimitService:
    """Test suite for GenerationLimitService."""

    @pytest.fixture
    def service(self, supabase):
        return GenerationLimitService(supabase)

    def _profile(self, supabase, user_id, **fields):
        supabase.seed("user_profiles", {"id": user_id, "subscription_type": "free", "generation_count": 0, **fields})

    def test_free_user_under_limit(self, service, supabase, user_id):
        self._profile(supabase, user_id, generation_count=1)
        result = service.check_generation_limit(user_id)
        assert result.allowed is True
        assert result.limit == FREE_GENERATION_LIMIT
        assert result.remaining == FREE_GENERATION_LIMIT - 1
        assert result.is_pro is False

    def test_free_user_at_limit(self, service, supabase, user_id):
        self._profile(supabase, user_id, generation_count=FREE_GENERATION_LIMIT)
        result = service.check_generation_limit(user_id)
        assert result.allowed is False
        assert result.status == 403
        assert "Upgrade to Pro" in result.error

    def test_missing_profile(self, service, user_id):
        result = service.check_generation_limit(user_id)
        assert result.allowed is False
        assert result.status == 404

    def test_database_error(self, service, supabase, user_id):
        supabase.failing_tables.add("user_profiles")
        result = service.check_generation_limit(user_id)
        assert result.status == 500
        assert result.allowed is False

    def test_pro_user_monthly_reset(self, service, supabase, user_id):
        last_month = datetime.now(timezone.utc) - timedelta(days=40)
        self._profile(supabase, user_id, subscription_type="pro", generation_count=PRO_GENERATION_LIMIT,
                      last_generation_reset=_iso(last_month),
                      subscription_expires_at=_iso(datetime.now(timezone.utc) + timedelta(days=5)))
        result = service.check_generation_limit(user_id)
        assert result.allowed is True
        assert result.current == 0
        assert result.limit == PRO_GENERATION_LIMIT
        assert supabase.rows("user_profiles")[0]["generation_count"] == 0

    def test_pro_user_at_monthly_limit(self, service, supabase, user_id):
        self._profile(supabase, user_id, subscription_type="pro", generation_count=PRO_GENERATION_LIMIT,
                      last_generation_reset=_iso(datetime.now(timezone.utc)))
        result = service.check_generation_limit(user_id)
        assert result.allowed is False
        assert "monthly limit" in result.error

    def test_enforce_raises_domain_errors(self, service, supabase, user_id):
        with pytest.raises(NotFoundError):
            service.enforce(user_id)

        self._profile(supabase, user_id, generation_count=FREE_GENERATION_LIMIT)
        with pytest.raises(GenerationLimitError) as exc:
            service.enforce(user_id)
        assert exc.value.status_code == 403
        assert exc.value.details["remaining"] == 0

    def test_enforce_database_error(self, service, supabase, user_id):
        supabase.failing_tables.add("user_profiles")
        with pytest.raises(TeachSparkError) as exc:
            service.enforce(user_id)
        assert exc.value.status_code == 500

    def test_increment_uses_rpc(self, service, supabase, user_id):
        self._profile(supabase, user_id)
        service.increment_generation_count(user_id)
        assert supabase.rpc_calls == [("increment_generation_count", {"user_id": user_id})]
        assert supabase.rows("user_profiles")[0]["generation_count"] == 1

    def test_usage_summary(self, service, supabase, user_id):
        self._profile(supabase, user_id, generation_count=2)
        usage = service.get_generation_usage(user_id)
        assert usage == {"current": 2, "limit": FREE_GENERATION_LIMIT, "remaining": 1,
                         "isPro": False, "lastReset": None}

    def test_result_to_dict_uses_camel_case(self, service, supabase, user_id):
        self._profile(supabase, user_id)
        data = service.check_generation_limit(user_id).to_dict()
        assert set(data) == {"allowed", "limit", "current", "remaining", "isPro",
                             "subscriptionActive", "resetDate", "error"}
