"""Shared fixtures: an in-memory Supabase stand-in and an authenticated API client."""

import copy
import re
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

import scripts.lib.supabase_client as supabase_client
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.sales.meddpicc_service import scoring_service

ORG_ID = "org-1"
OTHER_ORG_ID = "org-2"

USERS = [
    {"id": "user-rep", "email": "rep@peak.test", "full_name": "Riley Rep", "role": "rep", "organization_id": ORG_ID},
    {"id": "user-rep2", "email": "rep2@peak.test", "full_name": "Sam Second", "role": "rep", "organization_id": ORG_ID},
    {"id": "user-mgr", "email": "mgr@peak.test", "full_name": "Morgan Manager", "role": "manager", "organization_id": ORG_ID},
    {"id": "user-admin", "email": "admin@peak.test", "full_name": "Alex Admin", "role": "admin", "organization_id": ORG_ID},
    {"id": "user-other", "email": "other@else.test", "full_name": "Olly Other", "role": "admin", "organization_id": OTHER_ORG_ID},
]

TOKENS = {f"token-{u['id'].split('-', 1)[1]}": u["id"] for u in USERS}


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


def _compare(value, other):
    """Order a stored value against a filter value (numbers numerically)."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value), float(other)
    return str(value), str(other)


def _like(pattern: str) -> re.Pattern:
    """LIKE pattern as a regex: % and _ are wildcards, backslash escapes."""
    regex = []
    chars = iter(pattern)
    for char in chars:
        if char == "\\":
            regex.append(re.escape(next(chars, "\\")))
        elif char == "%":
            regex.append(".*")
        elif char == "_":
            regex.append(".")
        else:
            regex.append(re.escape(char))
    return re.compile("^" + "".join(regex) + "$", re.IGNORECASE | re.DOTALL)


def _match(row: dict, column: str, op: str, value) -> bool:
    current = row.get(column)
    if op == "eq":
        if isinstance(value, str) and not isinstance(current, str) and current is not None:
            return str(current).lower() == value.lower()
        return current == value
    if op == "neq":
        return current != value
    if op == "is":
        return current is None if value in (None, "null") else current is value
    if op == "in":
        return current in value
    if op == "ilike":
        return current is not None and bool(_like(value).match(str(current)))
    if current is None:
        return False
    left, right = _compare(current, value)
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    if op == "lte":
        return left <= right
    raise ValueError(f"Unsupported operator {op}")


def _parse_or(expression: str) -> list[tuple[str, str, str]]:
    conditions = []
    for part in expression.split(","):
        column, op, value = part.split(".", 2)
        conditions.append((column, op, value))
    return conditions


class FakeQuery:
    """Chainable subset of the postgrest query builder used by the app."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.action = "select"
        self.payload = None
        self.filters = []
        self.ordering = []
        self.offset = 0
        self.max_rows = None
        self.want_count = False
        self.on_conflict = None
        self._negate = False

    # ─── actions ───

    def select(self, columns="*", count=None):
        self.action = "select"
        self.want_count = count == "exact"
        return self

    def insert(self, rows):
        self.action, self.payload = "insert", rows
        return self

    def update(self, values):
        self.action, self.payload = "update", values
        return self

    def delete(self):
        self.action = "delete"
        return self

    def upsert(self, rows, on_conflict=None):
        self.action, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    # ─── filters ───

    def _add(self, column, op, value):
        negate, self._negate = self._negate, False
        self.filters.append(lambda row: _match(row, column, op, value) != negate)
        return self

    def eq(self, column, value):
        return self._add(column, "eq", value)

    def neq(self, column, value):
        return self._add(column, "neq", value)

    def gt(self, column, value):
        return self._add(column, "gt", value)

    def gte(self, column, value):
        return self._add(column, "gte", value)

    def lt(self, column, value):
        return self._add(column, "lt", value)

    def lte(self, column, value):
        return self._add(column, "lte", value)

    def ilike(self, column, pattern):
        return self._add(column, "ilike", pattern)

    def in_(self, column, values):
        return self._add(column, "in", list(values))

    def is_(self, column, value):
        return self._add(column, "is", value)

    @property
    def not_(self):
        self._negate = True
        return self

    def or_(self, expression):
        conditions = _parse_or(expression)
        self.filters.append(
            lambda row: any(_match(row, c, op, v) for c, op, v in conditions)
        )
        return self

    # ─── modifiers ───

    def order(self, column, desc=False):
        self.ordering.append((column, desc))
        return self

    def range(self, start, end):
        self.offset = start
        self.max_rows = end - start + 1
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    # ─── execution ───

    def _matching(self):
        rows = self.db.tables.setdefault(self.table_name, [])
        return [row for row in rows if all(f(row) for f in self.filters)]

    def execute(self):
        self.db.calls.append((self.table_name, self.action))
        if self.table_name in self.db.failing_tables:
            raise RuntimeError(f"{self.table_name} unavailable")

        if self.action == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResponse([copy.deepcopy(self.db.add(self.table_name, r)) for r in rows])

        if self.action == "upsert":
            keys = (self.on_conflict or "id").split(",")
            saved = []
            for row in self.payload if isinstance(self.payload, list) else [self.payload]:
                existing = next(
                    (r for r in self.db.tables.setdefault(self.table_name, [])
                     if all(r.get(k) == row.get(k) for k in keys)),
                    None,
                )
                if existing:
                    existing.update(copy.deepcopy(row))
                    saved.append(copy.deepcopy(existing))
                else:
                    saved.append(copy.deepcopy(self.db.add(self.table_name, row)))
            return FakeResponse(saved)

        matched = self._matching()

        if self.action == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return FakeResponse(copy.deepcopy(matched))

        if self.action == "delete":
            table = self.db.tables[self.table_name]
            self.db.tables[self.table_name] = [r for r in table if r not in matched]
            return FakeResponse(copy.deepcopy(matched))

        total = len(matched)
        for column, desc in reversed(self.ordering):
            matched.sort(
                key=lambda r: (r.get(column) is None, _compare(r.get(column), 0)[0] if r.get(column) is not None else 0),
                reverse=desc,
            )
        if self.max_rows is not None:
            matched = matched[self.offset:self.offset + self.max_rows]
        return FakeResponse(copy.deepcopy(matched), total if self.want_count else None)


class FakeAuth:
    def __init__(self, db):
        self.db = db

    def get_user(self, token):
        user_id = self.db.tokens.get(token)
        if not user_id:
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=user_id))


class FakeSupabase:
    """In-memory tables behind the same calls the app makes on the real client."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.tokens = dict(TOKENS)
        self.calls = []
        self.failing_tables = set()
        self.auth = FakeAuth(self)

    def table(self, name):
        return FakeQuery(self, name)

    def add(self, table, row):
        now = datetime.now(timezone.utc).isoformat()
        stored = {"created_at": now, "updated_at": now, **copy.deepcopy(row)}
        stored.setdefault("id", str(uuid.uuid4()))
        self.tables.setdefault(table, []).append(stored)
        return stored

    def rows(self, table):
        return self.tables.get(table, [])


INTEGRATION_ENV = (
    "MONDAY_API_TOKEN",
    "SHAREPOINT_TENANT_ID", "SHAREPOINT_CLIENT_ID", "SHAREPOINT_CLIENT_SECRET", "SHAREPOINT_SITE_ID",
    "SLACK_BOT_TOKEN", "SLACK_DEFAULT_CHANNEL", "DEFAULT_INTEGRATION_ORG_ID",
    "MEDDPICC_CONFIG_PATH",
)


@pytest.fixture(autouse=True)
def no_integration_env(monkeypatch):
    """Integration clients fall back to env credentials; keep a developer .env out of tests."""
    for key in INTEGRATION_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeSupabase()
    for user in USERS:
        db.add("users", user)
    monkeypatch.setattr(supabase_client, "_client", db)
    scoring_service.clear_cache()
    scoring_service.set_broadcast_callback(None)
    CircuitBreaker.reset_all()
    yield db
    scoring_service.clear_cache()


@pytest.fixture
def api(fake_db):
    from fastapi.testclient import TestClient

    from dashboard.api.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def seed_opportunity(fake_db):
    def _seed(**fields):
        row = {
            "name": "Acme - Opportunity",
            "organization_id": ORG_ID,
            "peak_stage": "prospecting",
            "status": "open",
            "deal_value": 10000,
            "probability": 20,
            "assigned_to": "user-rep",
            "created_by": "user-rep",
            "meddpicc_score": None,
            **fields,
        }
        return fake_db.add("opportunities", row)

    return _seed


@pytest.fixture
def seed_lead(fake_db):
    def _seed(**fields):
        row = {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@analytical.test",
            "company_name": "Analytical Engines",
            "status": "qualified",
            "source": "referral",
            "organization_id": ORG_ID,
            "assigned_to": "user-rep",
            "created_by": "user-rep",
            **fields,
        }
        return fake_db.add("leads", row)

    return _seed
