"""
Generation Limits

Server-side quota for AI lesson generation:

- Free users: 3 generations in total, never reset
- Pro users: 20 generations per calendar month
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from teachspark.errors import GenerationLimitError, NotFoundError, TeachSparkError

logger = logging.getLogger(__name__)

FREE_GENERATION_LIMIT = 3
PRO_GENERATION_LIMIT = 20
PRO_SUBSCRIPTION_TYPES = ("pro", "professional")

PROFILE_COLUMNS = "generation_count, subscription_type, subscription_expires_at, last_generation_reset"


@dataclass
class GenerationLimitResult:
    allowed: bool
    limit: int = 0
    current: int = 0
    remaining: int = 0
    is_pro: bool = False
    subscription_active: bool = False
    reset_date: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "allowed": data["allowed"],
            "limit": data["limit"],
            "current": data["current"],
            "remaining": data["remaining"],
            "isPro": data["is_pro"],
            "subscriptionActive": data["subscription_active"],
            "resetDate": data["reset_date"],
            "error": data["error"],
        }


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_subscription_active(profile: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Pro plan that has no expiry or has not expired yet."""
    now = now or datetime.now(timezone.utc)
    if profile.get("subscription_type") not in PRO_SUBSCRIPTION_TYPES:
        return False
    expires_at = _parse_timestamp(profile.get("subscription_expires_at"))
    return expires_at is None or expires_at > now


def needs_monthly_reset(profile: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    last_reset = _parse_timestamp(profile.get("last_generation_reset"))
    return last_reset is None or (last_reset.year, last_reset.month) < (now.year, now.month)


class GenerationLimitService:
    """Checks and increments per-user generation counters in `user_profiles`."""

    def __init__(self, supabase):
        self.supabase = supabase

    def _load_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table('user_profiles') \
            .select(PROFILE_COLUMNS) \
            .eq('id', user_id) \
            .limit(1) \
            .execute()
        return result.data[0] if result.data else None

    def _reset_monthly_count(self, user_id: str, profile: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        self.supabase.table('user_profiles') \
            .update({'generation_count': 0, 'last_generation_reset': now}) \
            .eq('id', user_id) \
            .execute()
        logger.info(f"🔄 [Limits] Monthly generation count reset for user {user_id[:8]}...")
        return {**profile, "generation_count": 0, "last_generation_reset": now}

    def check_generation_limit(self, user_id: str) -> GenerationLimitResult:
        """
        Decide whether the user may run another generation.

        Returns:
            GenerationLimitResult; `allowed` is False with a status of 404
            (no profile), 403 (limit reached) or 500 (database error)
        """
        try:
            profile = self._load_profile(user_id)
        except Exception as e:
            logger.error(f"❌ [Limits] Failed to load profile: {e}")
            return GenerationLimitResult(
                allowed=False, status=500,
                error="Internal server error while checking generation limit",
            )

        if profile is None:
            return GenerationLimitResult(allowed=False, status=404, error="User profile not found")

        active = is_subscription_active(profile)
        if active and needs_monthly_reset(profile):
            profile = self._reset_monthly_count(user_id, profile)

        limit = PRO_GENERATION_LIMIT if active else FREE_GENERATION_LIMIT
        current = profile.get("generation_count") or 0
        reset_date = profile.get("last_generation_reset")

        if current >= limit:
            if active:
                error = (f"You've reached your monthly limit of {limit} lessons. "
                         "Your limit will reset at the beginning of next month.")
            else:
                error = (f"You've reached the free limit of {limit} lessons. "
                         f"Upgrade to Pro for {PRO_GENERATION_LIMIT} lessons per month.")
            return GenerationLimitResult(
                allowed=False, status=403, error=error, limit=limit, current=current,
                remaining=0, is_pro=active, subscription_active=active, reset_date=reset_date,
            )

        return GenerationLimitResult(
            allowed=True, limit=limit, current=current, remaining=max(0, limit - current),
            is_pro=active, subscription_active=active, reset_date=reset_date,
        )

    def enforce(self, user_id: str) -> GenerationLimitResult:
        """Raise when the user may not generate."""
        result = self.check_generation_limit(user_id)
        if result.allowed:
            return result
        if result.status == 404:
            raise NotFoundError(result.error)
        if result.status == 403:
            raise GenerationLimitError(result.error, details=result.to_dict())
        raise TeachSparkError(result.error, status_code=result.status)

    def increment_generation_count(self, user_id: str) -> None:
        self.supabase.rpc('increment_generation_count', {'user_id': user_id}).execute()
        logger.info(f"➕ [Limits] Generation counted for user {user_id[:8]}...")

    def get_generation_usage(self, user_id: str) -> Dict[str, Any]:
        profile = self._load_profile(user_id)
        if profile is None:
            raise NotFoundError("Profile not found")

        active = is_subscription_active(profile)
        limit = PRO_GENERATION_LIMIT if active else FREE_GENERATION_LIMIT
        current = profile.get("generation_count") or 0
        if active and needs_monthly_reset(profile):
            current = 0
        return {
            "current": current,
            "limit": limit,
            "remaining": max(0, limit - current),
            "isPro": active,
            "lastReset": profile.get("last_generation_reset"),
        }
