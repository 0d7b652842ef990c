"""
Activity and Token Tracking

Writes user actions to `activity_log` and AI usage to `token_usage`.
Tracking failures are logged and never interrupt the request that caused them.
"""

import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ActivityTracker:
    """Records user actions for the admin activity views."""

    def __init__(self, supabase):
        self.supabase = supabase

    def track_action(
        self,
        user_id: str,
        action: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """
        Insert one activity_log row.

        Returns:
            The new row id, or None when the insert failed
        """
        if not user_id:
            return None
        row = {
            "user_id": user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "metadata": metadata or {},
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        try:
            result = self.supabase.table('activity_log').insert(row).execute()
        except Exception as e:
            logger.error(f"❌ [Activity] Failed to track {action}: {e}")
            return None
        return result.data[0].get("id") if result.data else None

    def track_lesson_created(self, user_id: str, lesson_id: str, title: str, age_group: str,
                             subject: str = "", duration: Optional[int] = None) -> Optional[str]:
        return self.track_action(user_id, "lesson_created", "lesson", lesson_id, {
            "title": title, "ageGroup": age_group, "subject": subject, "duration": duration,
        })

    def track_slide_generated(self, user_id: str, slide_id: str, lesson_id: str, slide_type: str,
                              title: str, slide_number: int) -> Optional[str]:
        return self.track_action(user_id, "slide_generated", "slide", slide_id, {
            "lessonId": lesson_id, "type": slide_type, "title": title, "slideNumber": slide_number,
        })

    def track_worksheet_created(self, user_id: str, worksheet_id: str, worksheet_type: str,
                                age_group: str, title: str) -> Optional[str]:
        return self.track_action(user_id, "worksheet_created", "worksheet", worksheet_id, {
            "type": worksheet_type, "ageGroup": age_group, "title": title,
        })

    def track_ai_request(self, user_id: str, service_name: str, model: str,
                         metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.track_action(user_id, "ai_request_completed", metadata={
            "service": service_name, "model": model, **(metadata or {}),
        })

    def track_payment(self, user_id: str, payment_id: str, succeeded: bool,
                      metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        action = "payment_succeeded" if succeeded else "payment_failed"
        return self.track_action(user_id, action, "payment", payment_id, metadata)

    def track_subscription_change(self, user_id: str, previous_type: Optional[str], new_type: str,
                                  metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.track_action(user_id, "subscription_started", "subscription", metadata={
            "from": previous_type, "to": new_type, **(metadata or {}),
        })

    def get_user_activity(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        result = self.supabase.table('activity_log') \
            .select('*') \
            .eq('user_id', user_id) \
            .order('created_at', desc=True) \
            .limit(limit) \
            .execute()
        return result.data or []


def _row_tokens(row: Dict[str, Any]) -> int:
    if row.get("total_tokens") is not None:
        return row["total_tokens"]
    return (row.get("input_tokens") or 0) + (row.get("output_tokens") or 0)


def _row_cost(row: Dict[str, Any]) -> float:
    if row.get("total_cost") is not None:
        return float(row["total_cost"])
    return float(row.get("input_cost") or 0) + float(row.get("output_cost") or 0)


def summarize_token_rows(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "totalTokens": sum(_row_tokens(row) for row in rows),
        "totalCost": sum(_row_cost(row) for row in rows),
    }


class TokenTracker:
    """Records AI token usage priced from `ai_model_pricing`."""

    def __init__(self, supabase):
        self.supabase = supabase

    def _get_pricing(self, model: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table('ai_model_pricing') \
            .select('input_price_per_1m, output_price_per_1m') \
            .eq('model_name', model) \
            .eq('is_active', True) \
            .order('valid_from', desc=True) \
            .limit(1) \
            .execute()
        return result.data[0] if result.data else None

    def track_token_usage(
        self,
        user_id: str,
        service_name: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Price and store one AI call. Unknown models are stored at zero cost.

        Returns:
            The inserted row, or None when tracking failed
        """
        if not user_id:
            return None
        try:
            pricing = self._get_pricing(model)
            input_cost = output_cost = 0.0
            if pricing:
                input_cost = input_tokens / 1_000_000 * float(pricing["input_price_per_1m"])
                output_cost = output_tokens / 1_000_000 * float(pricing["output_price_per_1m"])
            else:
                logger.warning(f"⚠️ [Tokens] No active pricing for {model}, cost recorded as 0")

            row = {
                "user_id": user_id,
                "service_name": service_name,
                "model": model,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "input_cost": input_cost,
                "output_cost": output_cost,
                "request_metadata": metadata or {},
            }
            result = self.supabase.table('token_usage').insert(row).execute()
        except Exception as e:
            logger.error(f"❌ [Tokens] Failed to track usage for {service_name}: {e}")
            return None

        logger.info(
            f"💰 [Tokens] {service_name}: {input_tokens + output_tokens} tokens, "
            f"${input_cost + output_cost:.6f}"
        )
        return result.data[0] if result.data else row

    def track_result(self, user_id: Optional[str], service_name: str, result,
                     metadata: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Track an AIResult."""
        if not user_id or result is None:
            return None
        return self.track_token_usage(user_id, service_name, result.model,
                                      result.input_tokens, result.output_tokens, metadata)

    def get_user_token_stats(self, user_id: str) -> Dict[str, Any]:
        rows = self.supabase.table('token_usage').select('*').eq('user_id', user_id).execute().data or []
        return summarize_token_rows(rows)

    def get_user_token_breakdown(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        rows = self.supabase.table('token_usage').select('*').eq('user_id', user_id).execute().data or []
        by_service: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            by_service.setdefault(row.get("service_name") or "unknown", []).append(row)
        return {service: summarize_token_rows(items) for service, items in by_service.items()}

    def get_platform_token_stats(self) -> Dict[str, Any]:
        rows = self.supabase.table('token_usage').select('*').execute().data or []
        return summarize_token_rows(rows)
