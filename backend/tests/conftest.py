"""
Pytest configuration and shared test helpers for backend tests.

Tests run against an in-memory stand-in for the Motor database that
understands the subset of MongoDB the backend uses (filters, update
operators, projections, sorts, unique indexes). It is installed on the
global `database` object for every test, so no test can reach a real
server.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import copy
import re
import sys
import uuid
from pathlib import Path

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from database import database
from migrations import _core_indexes
from services.entitlements import entitlement_service
from utils.rate_limiter import rate_limiter

TEST_PASSWORD = "senha1234"

_MISSING = object()


# ============================================================================
# In-memory Motor stand-in
# ============================================================================

def _get(doc, path):
    value = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _set(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset(doc, path):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def _equals(value, expected):
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value, op, arg):
    if value is _MISSING or value is None or arg is None:
        return False
    try:
        if op == "$lt":
            return value < arg
        if op == "$lte":
            return value <= arg
        if op == "$gt":
            return value > arg
        return value >= arg
    except TypeError:
        return False


def _is_operator_dict(cond):
    return isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond)


def _match_value(value, cond):
    if not _is_operator_dict(cond):
        return _equals(value, cond)
    for op, arg in cond.items():
        if op == "$options":
            continue
        if op == "$ne":
            ok = not _equals(value, arg)
        elif op == "$in":
            ok = any(_equals(value, a) for a in arg)
        elif op == "$nin":
            ok = not any(_equals(value, a) for a in arg)
        elif op == "$exists":
            ok = (value is not _MISSING) == bool(arg)
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            ok = _compare(value, op, arg)
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
            ok = isinstance(value, str) and re.search(arg, value, flags) is not None
        elif op == "$type":
            ok = arg == "string" and isinstance(value, str)
        else:
            raise NotImplementedError(f"Unsupported query operator {op}")
        if not ok:
            return False
    return True


def _operand(doc, arg):
    if isinstance(arg, str) and arg.startswith("$"):
        value = _get(doc, arg[1:])
        return None if value is _MISSING else value
    return arg


def _match_expr(doc, expr):
    """Aggregation comparisons between fields, as used inside $expr."""
    for op, args in expr.items():
        left, right = (_operand(doc, a) for a in args)
        if op == "$eq":
            ok = left == right
        elif op == "$ne":
            ok = left != right
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            ok = _compare(left, op, right)
        else:
            raise NotImplementedError(f"Unsupported expression operator {op}")
        if not ok:
            return False
    return True


def matches(doc, filter):
    for key, cond in (filter or {}).items():
        if key == "$or":
            if not any(matches(doc, f) for f in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, f) for f in cond):
                return False
        elif key == "$expr":
            if not _match_expr(doc, cond):
                return False
        elif not _match_value(_get(doc, key), cond):
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    includes = [k for k, v in projection.items() if v and k != "_id"]
    if includes:
        out = {k: doc[k] for k in includes if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    for key, keep in projection.items():
        if not keep:
            doc.pop(key, None)
    return doc


def _sort_key(value):
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def _sorted(docs, spec):
    for key, direction in reversed(spec):
        docs = sorted(docs, key=lambda d: _sort_key(_get(d, key)), reverse=direction < 0)
    return docs


def _sort_spec(key_or_list, direction=None):
    if isinstance(key_or_list, str):
        return [(key_or_list, direction or 1)]
    return list(key_or_list)


class FakeResult:
    def __init__(self, matched_count=0, modified_count=0, deleted_count=0, upserted_id=None, inserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.deleted_count = deleted_count
        self.upserted_id = upserted_id
        self.inserted_id = inserted_id


class FakeCursor:
    def __init__(self, docs, projection=None):
        self._docs = docs
        self._projection = projection
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        self._docs = _sorted(self._docs, _sort_spec(key_or_list, direction))
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _window(self):
        docs = self._docs[self._skip:]
        docs = docs[:self._limit] if self._limit else docs
        return [_project(d, self._projection) for d in docs]

    async def to_list(self, length=None):
        docs = self._window()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._window())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []
        # Tests may set this to an exception instance raised by the next insert_many
        self.fail_next_insert_many = None

    # -- indexes -----------------------------------------------------------
    async def create_index(self, keys, unique=False, sparse=False, partialFilterExpression=None, **kwargs):
        fields = [keys] if isinstance(keys, str) else [k for k, _ in keys]
        self.indexes.append({
            "fields": fields, "unique": unique, "sparse": sparse, "partial": partialFilterExpression,
        })
        return "_".join(fields)

    def _check_unique(self, candidate, ignore=None):
        for index in self.indexes:
            if not index["unique"]:
                continue
            if index["partial"] and not matches(candidate, index["partial"]):
                continue
            key = tuple(_get(candidate, f) for f in index["fields"])
            if index["sparse"] and all(v is _MISSING for v in key):
                continue
            key = tuple(None if v is _MISSING else v for v in key)
            for other in self.docs:
                if other is ignore:
                    continue
                if index["partial"] and not matches(other, index["partial"]):
                    continue
                other_key = tuple(None if _get(other, f) is _MISSING else _get(other, f) for f in index["fields"])
                if other_key == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {'_'.join(index['fields'])}",
                        11000,
                    )

    # -- reads -------------------------------------------------------------
    def _matching(self, filter):
        return [d for d in self.docs if matches(d, filter)]

    async def find_one(self, filter=None, projection=None, sort=None, **kwargs):
        docs = self._matching(filter)
        if sort:
            docs = _sorted(docs, _sort_spec(sort))
        return _project(docs[0], projection) if docs else None

    def find(self, filter=None, projection=None, sort=None, **kwargs):
        cursor = FakeCursor(self._matching(filter), projection)
        if sort:
            cursor.sort(sort)
        return cursor

    async def count_documents(self, filter=None, **kwargs):
        return len(self._matching(filter))

    # -- writes ------------------------------------------------------------
    async def insert_one(self, document, **kwargs):
        document.setdefault("_id", ObjectId())
        stored = copy.deepcopy(document)
        self._check_unique(stored)
        self.docs.append(stored)
        return FakeResult(inserted_id=document["_id"])

    async def insert_many(self, documents, **kwargs):
        if self.fail_next_insert_many is not None:
            error, self.fail_next_insert_many = self.fail_next_insert_many, None
            raise error
        for document in documents:
            await self.insert_one(document)
        return FakeResult()

    def _apply(self, doc, update, inserting=False):
        for op, fields in update.items():
            for path, value in fields.items():
                current = _get(doc, path)
                if op == "$set":
                    _set(doc, path, copy.deepcopy(value))
                elif op == "$setOnInsert":
                    if inserting:
                        _set(doc, path, copy.deepcopy(value))
                elif op == "$unset":
                    _unset(doc, path)
                elif op == "$inc":
                    _set(doc, path, (0 if current is _MISSING else current) + value)
                elif op == "$push":
                    _set(doc, path, (list(current) if current is not _MISSING else []) + [value])
                elif op == "$addToSet":
                    items = list(current) if current is not _MISSING else []
                    if value not in items:
                        items.append(value)
                    _set(doc, path, items)
                elif op == "$pull":
                    if current is not _MISSING:
                        _set(doc, path, [v for v in current if v != value])
                else:
                    raise NotImplementedError(f"Unsupported update operator {op}")

    def _update_in_place(self, doc, update):
        updated = copy.deepcopy(doc)
        self._apply(updated, update)
        self._check_unique(updated, ignore=doc)
        changed = updated != doc
        doc.clear()
        doc.update(updated)
        return changed

    async def update_one(self, filter, update, upsert=False, **kwargs):
        docs = self._matching(filter)
        if docs:
            changed = self._update_in_place(docs[0], update)
            return FakeResult(matched_count=1, modified_count=int(changed))
        if not upsert:
            return FakeResult()
        new_doc = {k: copy.deepcopy(v) for k, v in filter.items()
                   if not k.startswith("$") and not _is_operator_dict(v)}
        self._apply(new_doc, update, inserting=True)
        new_doc["_id"] = ObjectId()
        self._check_unique(new_doc)
        self.docs.append(new_doc)
        return FakeResult(upserted_id=new_doc["_id"])

    async def update_many(self, filter, update, **kwargs):
        docs = self._matching(filter)
        modified = sum(int(self._update_in_place(d, update)) for d in docs)
        return FakeResult(matched_count=len(docs), modified_count=modified)

    async def delete_one(self, filter, **kwargs):
        docs = self._matching(filter)
        if docs:
            self.docs.remove(docs[0])
        return FakeResult(deleted_count=len(docs[:1]))

    async def delete_many(self, filter, **kwargs):
        docs = self._matching(filter)
        self.docs = [d for d in self.docs if d not in docs]
        return FakeResult(deleted_count=len(docs))


def run_now(coro):
    """Drive a coroutine that never suspends (everything here is in-memory) to completion."""
    try:
        coro.send(None)
    except StopIteration as stop:
        return stop.value
    raise RuntimeError("coroutine suspended")


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, name, *args, **kwargs):
        return {"ok": 1}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def new_fake_db():
    """Factory for an empty in-memory database (no indexes)."""
    return FakeDatabase


@pytest.fixture(autouse=True)
def fake_db(monkeypatch):
    """In-memory database with the production indexes, installed for every test."""
    db = FakeDatabase()
    run_now(_core_indexes(db))
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture(autouse=True)
def reset_process_state():
    rate_limiter.reset()
    entitlement_service.cache.clear()
    entitlement_service._changed_at.clear()
    yield
    rate_limiter.reset()
    entitlement_service.cache.clear()
    entitlement_service._changed_at.clear()


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def register(client):
    """Register a tenant through the API and return its id, token and auth headers."""
    def _register(email=None, name="Loja Teste"):
        email = email or f"loja_{uuid.uuid4().hex[:8]}@example.com"
        response = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": TEST_PASSWORD},
        )
        assert response.status_code == 201, response.text
        data = response.json()
        return {
            "tenant_id": data["user"]["tenant_id"],
            "email": email,
            "token": data["access_token"],
            "headers": {"Authorization": f"Bearer {data['access_token']}"},
            "user": data["user"],
        }
    return _register


@pytest.fixture
def set_billing(fake_db):
    """Overwrite a tenant's stored billing fields and drop cached snapshots."""
    def _set_billing(tenant_id, **fields):
        tenant = next(t for t in fake_db.tenants.docs if t["tenant_id"] == tenant_id)
        tenant.update(fields)
        entitlement_service.invalidate(tenant_id)
        return tenant
    return _set_billing
