"""
Shared fixtures: an in-memory Supabase stand-in and scripted AI clients.

The fake covers the subset of the supabase-py query builder the services use.
Column lists passed to select() are ignored and timestamps compare as ISO strings.
"""

import copy
import os
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.join(project_root, "teachspark", "src"))
sys.path.insert(0, os.path.join(project_root, "backend"))

from teachspark.ai_clients import AIResult  # noqa: E402
from teachspark.image_generation import ImageGenerationResult  # noqa: E402


# ==================== Supabase ====================

@dataclass
class FakeResponse:
    data: Any
    count: Optional[int] = None


class FakeQuery:
    """Chainable query against one table of a FakeSupabase."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.count_mode: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orders: List = []
        self.limit_value: Optional[int] = None
        self.range_value = None

    # ---- actions ----

    def select(self, columns: str = "*", count: Optional[str] = None):
        self.action = "select"
        self.count_mode = count
        return self

    def insert(self, payload):
        self.action, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.action, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict: Optional[str] = None):
        self.action, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self):
        self.action = "delete"
        return self

    # ---- filters ----

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) >= str(value))
        return self

    def gt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) > str(value))
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) <= str(value))
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and str(row[column]) < str(value))
        return self

    def or_(self, expression: str):
        clauses = []
        for clause in expression.split(","):
            column, operator, pattern = clause.split(".", 2)
            assert operator == "ilike", f"unsupported operator {operator}"
            clauses.append((column, pattern.strip("%").lower()))
        self.filters.append(
            lambda row: any(needle in str(row.get(column) or "").lower() for column, needle in clauses)
        )
        return self

    def order(self, column, desc: bool = False):
        self.orders.append((column, desc))
        return self

    def limit(self, value: int):
        self.limit_value = value
        return self

    def range(self, start: int, end: int):
        self.range_value = (start, end)
        return self

    # ---- execution ----

    def _matches(self, row) -> bool:
        return all(f(row) for f in self.filters)

    def _new_row(self, values: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(values)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        return row

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table_name, self.action, self.payload))
        if self.table_name in self.db.failing_tables:
            raise RuntimeError(f"database unavailable: {self.table_name}")
        rows = self.db.tables.setdefault(self.table_name, [])

        if self.action == "insert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            created = [self._new_row(values) for values in payload]
            rows.extend(created)
            return FakeResponse(copy.deepcopy(created))

        if self.action == "upsert":
            key = self.on_conflict or "id"
            existing = next((r for r in rows if key in self.payload and r.get(key) == self.payload[key]), None)
            if existing is not None:
                existing.update(copy.deepcopy(self.payload))
                return FakeResponse([copy.deepcopy(existing)])
            created = self._new_row(self.payload)
            rows.append(created)
            return FakeResponse([copy.deepcopy(created)])

        matched = [row for row in rows if self._matches(row)]

        if self.action == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(matched))

        if self.action == "delete":
            self.db.tables[self.table_name] = [row for row in rows if not self._matches(row)]
            return FakeResponse(copy.deepcopy(matched))

        for column, desc in reversed(self.orders):
            matched.sort(key=lambda row: (row.get(column) is None, row.get(column) or 0), reverse=desc)
        total = len(matched)
        if self.range_value is not None:
            start, end = self.range_value
            matched = matched[start:end + 1]
        if self.limit_value is not None:
            matched = matched[:self.limit_value]
        return FakeResponse(copy.deepcopy(matched), count=total if self.count_mode else None)


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self.db, self.name, self.params = db, name, params

    def execute(self) -> FakeResponse:
        self.db.rpc_calls.append((self.name, self.params))
        if self.name == "increment_generation_count":
            for row in self.db.tables.get("user_profiles", []):
                if row["id"] == self.params["user_id"]:
                    row["generation_count"] = (row.get("generation_count") or 0) + 1
                    return FakeResponse(row["generation_count"])
        if self.name == "increment_lesson_views":
            for row in self.db.tables.get("lessons", []):
                if row["id"] == self.params["lesson_id"]:
                    row["views"] = (row.get("views") or 0) + 1
                    return FakeResponse(row["views"])
        return FakeResponse(None)


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str):
        self.storage, self.name = storage, name
        self.files = storage.buckets.setdefault(name, {})

    def upload(self, path, data, options=None):
        self.files[path] = data
        return {"path": path}

    def download(self, path):
        if path not in self.files:
            raise RuntimeError(f"Object not found: {path}")
        return self.files[path]

    def remove(self, paths):
        removed = [p for p in paths if self.files.pop(p, None) is not None]
        return [{"name": p} for p in removed]

    def list(self, folder, options=None):
        options = options or {}
        prefix = folder.rstrip("/") + "/"
        names = [{"name": p[len(prefix):]} for p in sorted(self.files)
                 if p.startswith(prefix) and "/" not in p[len(prefix):]]
        offset = options.get("offset", 0)
        return names[offset:offset + options.get("limit", 100)]

    def get_public_url(self, path):
        return f"https://test.supabase.co/storage/v1/object/public/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.buckets: Dict[str, Dict[str, bytes]] = {}

    def from_(self, name: str) -> FakeBucket:
        return FakeBucket(self, name)


@dataclass
class FakeAuthUser:
    id: str
    email: str
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None


class FakeAuthAdmin:
    def __init__(self):
        self.users: List[FakeAuthUser] = []

    def list_users(self, page: int = 1, per_page: int = 50):
        start = (page - 1) * per_page
        return self.users[start:start + per_page]


class FakeAuth:
    def __init__(self):
        self.admin = FakeAuthAdmin()
        self.tokens: Dict[str, FakeAuthUser] = {}

    def get_user(self, token):
        user = self.tokens.get(token)
        return type("UserResponse", (), {"user": user})()


class FakeSupabase:
    """In-memory replacement for supabase.Client."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List = []
        self.rpc_calls: List = []
        self.failing_tables = set()
        self.storage = FakeStorage()
        self.auth = FakeAuth()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> FakeRpc:
        return FakeRpc(self, name, params or {})

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        created = []
        for values in rows:
            row = dict(values)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
            self.tables.setdefault(table, []).append(row)
            created.append(row)
        return created

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])


# ==================== AI clients ====================

class FakeAIClient:
    """
    Scripted stand-in for GeminiClient and ClaudeClient.

    Each queued reply is a string, an exception to raise, or a callable taking
    the prompt. The last reply repeats once the queue runs out.
    """

    def __init__(self, *replies, model: str = "gemini-2.5-flash", input_tokens: int = 100, output_tokens: int = 50):
        self.replies = list(replies)
        self.model = model
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.prompts: List[str] = []
        self.kwargs: List[Dict[str, Any]] = []

    async def generate(self, prompt: str, **kwargs) -> AIResult:
        self.prompts.append(prompt)
        self.kwargs.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        return AIResult(text=reply, model=kwargs.get("model", self.model),
                        input_tokens=self.input_tokens, output_tokens=self.output_tokens)


class FakeImageService:
    """Returns a tiny base64 image, or an error result when `fail` is set."""

    def __init__(self, fail: Optional[str] = None, status_code: Optional[int] = None):
        self.fail = fail
        self.status_code = status_code
        self.requests: List = []

    async def generate(self, prompt: str, width: int = 1024, height: int = 768, enhance: bool = True):
        self.requests.append((prompt, width, height))
        if self.fail:
            return ImageGenerationResult(success=False, width=width, height=height, prompt=prompt,
                                         error=self.fail, status_code=self.status_code)
        return ImageGenerationResult(success=True, width=width, height=height, prompt=prompt,
                                     enhanced_prompt=prompt, image_base64=TINY_IMAGE_BASE64)


TINY_IMAGE_BASE64 = "aGVsbG8="


async def no_sleep(_seconds):
    return None


# ==================== Fixtures ====================

@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def user_id():
    return "11111111-2222-3333-4444-555555555555"
