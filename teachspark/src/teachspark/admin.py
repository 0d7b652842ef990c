"""
Admin Panel Service

Backs the /api/admin routes: user management, activity log views,
engagement and revenue metrics, and lesson moderation.

All reads use the service-role client so RLS does not hide other users' rows.
"""

import logging
import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from teachspark.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "super_admin")
LESSON_STATUSES = ("draft", "published", "archived")
AI_ACTIONS = ("ai_request_completed",)
USER_UPDATE_FIELDS = ("full_name", "role", "subscription_type", "subscription_expires_at", "blocked")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _ratio(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 3) if denominator else 0.0


def _growth(current: float, previous: float) -> float:
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 1)


def _attr(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a gotrue model or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _count_by(rows: Iterable[Dict[str, Any]], key: str) -> Dict[str, int]:
    return dict(Counter(row.get(key) for row in rows if row.get(key)))


class AdminService:
    """Admin queries over users, activity, payments and lessons."""

    def __init__(self, supabase):
        self.supabase = supabase

    # ==================== Users ====================

    def _admin_roles(self) -> Dict[str, str]:
        result = self.supabase.table('admin_users').select('user_id, role').execute()
        return {row["user_id"]: row["role"] for row in result.data or []}

    def _content_counts(self, user_ids: List[str]) -> Dict[str, Dict[str, int]]:
        counts = {user_id: {"lessons": 0, "slides": 0, "worksheets": 0} for user_id in user_ids}
        if not user_ids:
            return counts
        for table in ("lessons", "slides", "worksheets"):
            result = self.supabase.table(table) \
                .select('user_id') \
                .in_('user_id', user_ids) \
                .execute()
            for row in result.data or []:
                if row.get("user_id") in counts:
                    counts[row["user_id"]][table] += 1
        return counts

    def _last_activity(self, user_ids: List[str]) -> Dict[str, str]:
        if not user_ids:
            return {}
        result = self.supabase.table('activity_log') \
            .select('user_id, created_at') \
            .in_('user_id', user_ids) \
            .order('created_at', desc=True) \
            .execute()
        last: Dict[str, str] = {}
        for row in result.data or []:
            last.setdefault(row["user_id"], row["created_at"])
        return last

    def list_users(self, search: Optional[str] = None, role: Optional[str] = None,
                   limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        """
        List auth users with their admin role and content counts.

        Args:
            search: Case-insensitive match on email or full name
            role: "all", "user" (non-admins) or an admin role
            limit: Page size
            offset: Row offset; converted to a 1-based page

        Returns:
            dict with data, total, page, limit, total_pages
        """
        limit = max(1, limit)
        page = offset // limit + 1
        users = self.supabase.auth.admin.list_users(page=page, per_page=limit) or []
        roles = self._admin_roles()

        items = []
        for user in users:
            user_id = _attr(user, "id")
            metadata = _attr(user, "user_metadata") or {}
            admin_role = roles.get(user_id)
            items.append({
                "id": user_id,
                "email": _attr(user, "email"),
                "full_name": metadata.get("full_name"),
                "created_at": str(_attr(user, "created_at") or "") or None,
                "last_sign_in_at": str(_attr(user, "last_sign_in_at") or "") or None,
                "is_admin": admin_role is not None,
                "admin_role": admin_role,
                "subscription_status": "free",
                "subscription_plan": None,
            })

        if search:
            needle = search.lower()
            items = [u for u in items
                     if needle in (u["email"] or "").lower() or needle in (u["full_name"] or "").lower()]
        if role and role != "all":
            if role == "user":
                items = [u for u in items if not u["is_admin"]]
            else:
                items = [u for u in items if u["admin_role"] == role]

        user_ids = [u["id"] for u in items]
        counts = self._content_counts(user_ids)
        last_activity = self._last_activity(user_ids)
        for item in items:
            item["lessons_count"] = counts[item["id"]]["lessons"]
            item["slides_count"] = counts[item["id"]]["slides"]
            item["worksheets_count"] = counts[item["id"]]["worksheets"]
            item["last_activity_at"] = last_activity.get(item["id"])

        total = len(items)
        return {
            "data": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        }

    def _require_profile(self, user_id: str) -> Dict[str, Any]:
        result = self.supabase.table('user_profiles') \
            .select('*') \
            .eq('id', user_id) \
            .limit(1) \
            .execute()
        if not result.data:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return result.data[0]

    def get_user_stats(self, user_id: str) -> Dict[str, int]:
        return {
            "lessons": self._count('lessons', user_id=user_id),
            "slides": self._count('slides', user_id=user_id),
            "worksheets": self._count('worksheets', user_id=user_id),
            "activities": self._count('activity_log', user_id=user_id),
        }

    def get_user_detail(self, user_id: str) -> Dict[str, Any]:
        profile = self._require_profile(user_id)
        roles = self._admin_roles()

        activities = self.supabase.table('activity_log') \
            .select('*') \
            .eq('user_id', user_id) \
            .order('created_at', desc=True) \
            .limit(20) \
            .execute().data or []

        payments = self.supabase.table('activity_log') \
            .select('metadata') \
            .eq('user_id', user_id) \
            .eq('action', 'payment_succeeded') \
            .execute().data or []
        total_paid = sum(float((row.get("metadata") or {}).get("amount") or 0) for row in payments)

        return {
            **profile,
            "is_admin": user_id in roles,
            "admin_role": roles.get(user_id),
            "stats": self.get_user_stats(user_id),
            "recent_activities": activities,
            "total_paid": total_paid,
        }

    def update_user(self, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        fields = {k: v for k, v in updates.items() if k in USER_UPDATE_FIELDS}
        if not fields:
            raise ValidationError("No updatable fields provided")
        self._require_profile(user_id)
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        result = self.supabase.table('user_profiles').update(fields).eq('id', user_id).execute()
        logger.info(f"👤 [Admin] Updated user {user_id[:8]}...: {', '.join(sorted(fields))}")
        return result.data[0] if result.data else fields

    def toggle_user_block(self, user_id: str, block: bool, admin_id: Optional[str] = None) -> Dict[str, Any]:
        self._require_profile(user_id)
        self.supabase.table('user_profiles') \
            .update({'blocked': block, 'updated_at': datetime.now(timezone.utc).isoformat()}) \
            .eq('id', user_id) \
            .execute()
        self.supabase.table('activity_log').insert({
            "user_id": admin_id,
            "action": "user_blocked" if block else "user_unblocked",
            "entity_type": "user",
            "entity_id": user_id,
            "metadata": {},
        }).execute()
        logger.info(f"🚫 [Admin] User {user_id[:8]}... {'blocked' if block else 'unblocked'}")
        return {"id": user_id, "blocked": block}

    def update_generation_limit(self, user_id: str, new_limit: int) -> Dict[str, Any]:
        if new_limit is None or new_limit < 0:
            raise ValidationError("Generation limit must be a non-negative number")
        row = {
            "user_id": user_id,
            "total": new_limit,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        result = self.supabase.table('generation_limits').upsert(row, on_conflict='user_id').execute()
        logger.info(f"🎚️ [Admin] Generation limit for {user_id[:8]}... set to {new_limit}")
        return result.data[0] if result.data else row

    # ==================== Activity ====================

    def _user_directory(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        result = self.supabase.table('user_profiles') \
            .select('id, email, full_name') \
            .in_('id', ids) \
            .execute()
        return {row["id"]: row for row in result.data or []}

    def get_activity_logs(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Page through activity_log, newest first.

        Args:
            filters: user_id, action, entity_type, date_from, date_to, limit, offset

        Returns:
            dict with data (rows enriched with user_email, user_name), total, page, limit, total_pages
        """
        filters = filters or {}
        limit = int(filters.get("limit") or 50)
        offset = int(filters.get("offset") or 0)

        query = self.supabase.table('activity_log').select('*', count='exact')
        for column in ("user_id", "action", "entity_type"):
            if filters.get(column):
                query = query.eq(column, filters[column])
        if filters.get("date_from"):
            query = query.gte('created_at', filters["date_from"])
        if filters.get("date_to"):
            query = query.lte('created_at', filters["date_to"])
        result = query.order('created_at', desc=True).range(offset, offset + limit - 1).execute()

        rows = result.data or []
        directory = self._user_directory(row.get("user_id") for row in rows)
        data = []
        for row in rows:
            profile = directory.get(row.get("user_id")) or {}
            data.append({**row, "user_email": profile.get("email"), "user_name": profile.get("full_name")})

        total = result.count or 0
        return {
            "data": data,
            "total": total,
            "page": offset // limit + 1,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        }

    def get_activity_stats(self, days: int = 30, now: Optional[datetime] = None) -> Dict[str, int]:
        """Activity counts per action over the last `days` days."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        rows = self.supabase.table('activity_log') \
            .select('action') \
            .gte('created_at', since.isoformat()) \
            .execute().data or []
        return _count_by(rows, "action")

    def get_activity_timeline(self, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        since = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        rows = self.supabase.table('activity_log') \
            .select('created_at') \
            .gte('created_at', since.isoformat()) \
            .execute().data or []
        per_day = Counter(_parse_timestamp(row["created_at"]).date().isoformat() for row in rows)
        return [{"date": day, "count": per_day[day]} for day in sorted(per_day)]

    def get_most_active_users(self, limit: int = 10, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        since = (now or datetime.now(timezone.utc)) - timedelta(days=7)
        rows = self.supabase.table('activity_log') \
            .select('user_id') \
            .gte('created_at', since.isoformat()) \
            .execute().data or []
        counts = Counter(row["user_id"] for row in rows if row.get("user_id"))
        return [{"user_id": uid, "activity_count": n} for uid, n in counts.most_common(limit)]

    def cleanup_old_logs(self, days_to_keep: int = 90, now: Optional[datetime] = None) -> int:
        """Delete activity older than `days_to_keep` days. Returns rows deleted."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days_to_keep)
        result = self.supabase.table('activity_log') \
            .delete() \
            .lt('created_at', cutoff.isoformat()) \
            .execute()
        deleted = len(result.data or [])
        logger.info(f"🧹 [Admin] Removed {deleted} activity rows older than {days_to_keep} days")
        return deleted

    # ==================== Metrics ====================

    def _count(self, table: str, since: Optional[datetime] = None, **filters) -> int:
        query = self.supabase.table(table).select('id', count='exact')
        for column, value in filters.items():
            query = query.eq(column, value)
        if since is not None:
            query = query.gte('created_at', since.isoformat())
        return query.execute().count or 0

    def get_engagement_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        DAU/WAU/MAU from distinct activity_log users, with stickiness ratios and trends.

        Returns:
            dict with dau, wau, mau, dau_wau_ratio, wau_mau_ratio, and
            daily_trend (30 days), weekly_trend (12 weeks), monthly_trend (6 months)
            as lists of {date, value}
        """
        now = now or datetime.now(timezone.utc)
        today = _start_of_day(now)
        horizon = today - timedelta(days=183)
        rows = self.supabase.table('activity_log') \
            .select('user_id, created_at') \
            .gte('created_at', horizon.isoformat()) \
            .execute().data or []
        events = [(row["user_id"], _parse_timestamp(row["created_at"]))
                  for row in rows if row.get("user_id") and row.get("created_at")]

        def active_between(start: datetime, end: Optional[datetime] = None) -> int:
            return len({uid for uid, at in events if at >= start and (end is None or at < end)})

        dau = active_between(today)
        wau = active_between(today - timedelta(days=7))
        mau = active_between(today - timedelta(days=30))

        daily_trend = []
        for i in range(29, -1, -1):
            day = today - timedelta(days=i)
            daily_trend.append({"date": day.date().isoformat(),
                                "value": active_between(day, day + timedelta(days=1))})

        weekly_trend = []
        for i in range(11, -1, -1):
            start = today - timedelta(days=7 * (i + 1))
            weekly_trend.append({"date": start.date().isoformat(),
                                 "value": active_between(start, start + timedelta(days=7))})

        monthly_trend = []
        month_start = today.replace(day=1)
        starts = []
        for _ in range(6):
            starts.append(month_start)
            month_start = (month_start - timedelta(days=1)).replace(day=1)
        for start in reversed(starts):
            end = (start + timedelta(days=32)).replace(day=1)
            monthly_trend.append({"date": start.date().isoformat(), "value": active_between(start, end)})

        return {
            "dau": dau,
            "wau": wau,
            "mau": mau,
            "dau_wau_ratio": _ratio(dau, wau),
            "wau_mau_ratio": _ratio(wau, mau),
            "daily_trend": daily_trend,
            "weekly_trend": weekly_trend,
            "monthly_trend": monthly_trend,
        }

    def get_revenue_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Revenue from completed payments.

        MRR is the last 30 days of revenue; growth compares it with the
        30 days before that and drives the projections.
        """
        now = now or datetime.now(timezone.utc)
        today = _start_of_day(now)
        days_30 = now - timedelta(days=30)
        days_60 = now - timedelta(days=60)
        days_7 = now - timedelta(days=7)

        rows = self.supabase.table('payments') \
            .select('amount, plan_type, created_at') \
            .eq('status', 'completed') \
            .gte('created_at', days_60.isoformat()) \
            .execute().data or []
        payments = [(float(row.get("amount") or 0), row.get("plan_type"), _parse_timestamp(row["created_at"]))
                    for row in rows if row.get("created_at")]

        def revenue_since(start: datetime, end: Optional[datetime] = None) -> float:
            return sum(amount for amount, _, at in payments if at >= start and (end is None or at < end))

        total_30d = revenue_since(days_30)
        total_7d = revenue_since(days_7)
        revenue_today = revenue_since(today)
        previous_30d = revenue_since(days_60, days_30)

        by_plan: Dict[str, float] = {}
        for amount, plan, at in payments:
            if at >= days_30:
                name = (plan or "unknown").capitalize()
                by_plan[name] = by_plan.get(name, 0.0) + amount

        mrr = total_30d
        growth = _growth(total_30d, previous_30d)
        projected_mrr = mrr * (1 + growth / 100)
        return {
            "mrr": round(mrr, 2),
            "arr": round(mrr * 12, 2),
            "total_revenue_30d": round(total_30d, 2),
            "total_revenue_7d": round(total_7d, 2),
            "revenue_today": round(revenue_today, 2),
            "mrr_growth_rate": growth,
            "revenue_growth_rate_30d": growth,
            "revenue_by_plan": [{"plan": plan, "revenue": round(value, 2)}
                                for plan, value in sorted(by_plan.items())],
            "projected_mrr": round(projected_mrr, 2),
            "projected_arr": round(projected_mrr * 12, 2),
        }

    def get_dashboard_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        today = _start_of_day(now)
        days_7 = today - timedelta(days=7)
        days_30 = today - timedelta(days=30)

        token_rows = self.supabase.table('token_usage') \
            .select('input_tokens, output_tokens, input_cost, output_cost, created_at') \
            .gte('created_at', days_30.isoformat()) \
            .execute().data or []

        def ai_requests(since: datetime) -> int:
            result = self.supabase.table('activity_log') \
                .select('id', count='exact') \
                .in_('action', list(AI_ACTIONS)) \
                .gte('created_at', since.isoformat()) \
                .execute()
            return result.count or 0

        revenue = self.get_revenue_metrics(now)
        return {
            "total_users": self._count('user_profiles'),
            "new_registrations_today": self._count('user_profiles', since=today),
            "new_registrations_7d": self._count('user_profiles', since=days_7),
            "new_registrations_30d": self._count('user_profiles', since=days_30),
            "total_lessons": self._count('lessons'),
            "lessons_created_today": self._count('lessons', since=today),
            "lessons_created_7d": self._count('lessons', since=days_7),
            "total_slides": self._count('slides'),
            "slides_generated_today": self._count('slides', since=today),
            "total_worksheets": self._count('worksheets'),
            "worksheets_created_7d": self._count('worksheets', since=days_7),
            "ai_requests_today": ai_requests(today),
            "ai_requests_7d": ai_requests(days_7),
            "ai_tokens_30d": sum((r.get("input_tokens") or 0) + (r.get("output_tokens") or 0) for r in token_rows),
            "ai_cost_30d": round(sum(float(r.get("input_cost") or 0) + float(r.get("output_cost") or 0)
                                     for r in token_rows), 4),
            "mrr": revenue["mrr"],
            "total_revenue_30d": revenue["total_revenue_30d"],
            "active_subscriptions": self._count('user_profiles', subscription_type='professional'),
        }

    # ==================== Lessons ====================

    def list_lessons(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        filters = filters or {}
        limit = int(filters.get("limit") or 20)
        offset = int(filters.get("offset") or 0)
        sort_by = filters.get("sort_by") or "created_at"
        descending = (filters.get("sort_order") or "desc") != "asc"

        query = self.supabase.table('lessons').select('*', count='exact')
        search = filters.get("search")
        if search:
            query = query.or_(f"title.ilike.%{search}%,description.ilike.%{search}%,subject.ilike.%{search}%")
        for column in ("user_id", "subject", "age_group"):
            if filters.get(column):
                query = query.eq(column, filters[column])
        for column in ("status", "difficulty"):
            if filters.get(column) and filters[column] != "all":
                query = query.eq(column, filters[column])
        if isinstance(filters.get("is_public"), bool):
            query = query.eq('is_public', filters["is_public"])
        if filters.get("date_from"):
            query = query.gte('created_at', filters["date_from"])
        if filters.get("date_to"):
            query = query.lte('created_at', filters["date_to"])
        result = query.order(sort_by, desc=descending).range(offset, offset + limit - 1).execute()

        rows = result.data or []
        directory = self._user_directory(row.get("user_id") for row in rows)
        lesson_ids = [row["id"] for row in rows]
        slide_counts: Counter = Counter()
        if lesson_ids:
            slides = self.supabase.table('slides').select('lesson_id').in_('lesson_id', lesson_ids).execute()
            slide_counts = Counter(row["lesson_id"] for row in slides.data or [])

        data = []
        for row in rows:
            profile = directory.get(row.get("user_id")) or {}
            data.append({
                **row,
                "tags": row.get("tags") or [],
                "views": row.get("views") or 0,
                "user_email": profile.get("email"),
                "user_full_name": profile.get("full_name"),
                "slides_count": slide_counts.get(row["id"], 0),
            })

        total = result.count or 0
        return {
            "data": data,
            "total": total,
            "page": offset // limit + 1,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        }

    def _set_lesson_status(self, lesson_id: str, status: str) -> Dict[str, Any]:
        result = self.supabase.table('lessons') \
            .update({'status': status, 'updated_at': datetime.now(timezone.utc).isoformat()}) \
            .eq('id', lesson_id) \
            .execute()
        if not result.data:
            raise NotFoundError("Lesson not found", code="LESSON_NOT_FOUND")
        logger.info(f"📚 [Admin] Lesson {lesson_id} → {status}")
        return result.data[0]

    def archive_lesson(self, lesson_id: str) -> Dict[str, Any]:
        return self._set_lesson_status(lesson_id, "archived")

    def publish_lesson(self, lesson_id: str) -> Dict[str, Any]:
        return self._set_lesson_status(lesson_id, "published")

    def delete_lesson(self, lesson_id: str) -> None:
        result = self.supabase.table('lessons').delete().eq('id', lesson_id).execute()
        if not result.data:
            raise NotFoundError("Lesson not found", code="LESSON_NOT_FOUND")
        logger.info(f"🗑️ [Admin] Deleted lesson {lesson_id}")

    def bulk_delete_lessons(self, lesson_ids: List[str]) -> int:
        if not lesson_ids:
            raise ValidationError("No lesson ids provided")
        result = self.supabase.table('lessons').delete().in_('id', lesson_ids).execute()
        deleted = len(result.data or [])
        logger.info(f"🗑️ [Admin] Bulk deleted {deleted} lessons")
        return deleted

    def get_lessons_stats(self) -> Dict[str, Any]:
        rows = self.supabase.table('lessons') \
            .select('status, subject, age_group, views') \
            .execute().data or []
        by_status = {status: 0 for status in LESSON_STATUSES}
        by_status.update(_count_by(rows, "status"))
        subjects = Counter(row.get("subject") for row in rows if row.get("subject"))
        ages = Counter(row.get("age_group") for row in rows if row.get("age_group"))
        return {
            "total_lessons": len(rows),
            "published_lessons": by_status["published"],
            "draft_lessons": by_status["draft"],
            "archived_lessons": by_status["archived"],
            "total_views": sum(row.get("views") or 0 for row in rows),
            "most_popular_subjects": [{"subject": s, "count": n} for s, n in subjects.most_common(5)],
            "most_popular_age_groups": [{"age_group": a, "count": n} for a, n in ages.most_common(5)],
            "lessons_by_status": [{"status": s, "count": n} for s, n in by_status.items()],
        }
