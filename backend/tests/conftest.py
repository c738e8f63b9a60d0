"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from pymongo.errors import DuplicateKeyError

from fastapi.testclient import TestClient
from server import app


def _matches(doc, query):
    for key, cond in query.items():
        value = doc.get(key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, operand in cond.items():
                if op == "$ne" and value == operand:
                    return False
                if op == "$in" and value not in operand:
                    return False
        elif value != cond:
            return False
    return True


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Just enough of a Motor collection for the billing and retention services."""

    def __init__(self, name, unique_key=None):
        self.name = name
        self.unique_key = unique_key
        self.docs = []
        self.writes = []  # (operation, args) for every mutating call

    async def find_one(self, query, projection=None, sort=None, **kw):
        matches = [d for d in self.docs if _matches(d, query)]
        for key, direction in reversed(sort or []):
            matches.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return copy.deepcopy(matches[0]) if matches else None

    def find(self, query=None, projection=None, **kw):
        return _Cursor([copy.deepcopy(d) for d in self.docs if _matches(d, query or {})])

    async def insert_one(self, doc, session=None):
        self.writes.append(("insert_one", doc))
        if self.unique_key and any(d.get(self.unique_key) == doc.get(self.unique_key) for d in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key {self.unique_key}", 11000)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc.get(self.unique_key))

    async def update_one(self, query, update, upsert=False, session=None):
        self.writes.append(("update_one", query, update))
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
            doc.update(copy.deepcopy(update.get("$set", {})))
            self.docs.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc.get(self.unique_key))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_many(self, query, session=None):
        self.writes.append(("delete_many", query))
        keep = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return SimpleNamespace(deleted_count=deleted)

    async def bulk_write(self, operations, ordered=True, session=None):
        self.writes.append(("bulk_write", operations))
        staged = copy.deepcopy(self.docs)
        modified = 0
        for op in operations:
            for doc in staged:
                if _matches(doc, op._filter):
                    doc.update(copy.deepcopy(op._doc.get("$set", {})))
                    modified += 1
                    break
        self.docs = staged
        return SimpleNamespace(modified_count=modified)


class FakeDatabase:
    UNIQUE_KEYS = {
        "payment_sessions": "session_id",
        "subscriptions": "subscription_id",
        "users": "user_id",
        "profiles": "profile_id",
        "provider_events": "event_id",
        "audit_logs": "audit_id",
    }

    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name, self.UNIQUE_KEYS.get(name))
        return self._collections[name]

    def __getitem__(self, name):
        return getattr(self, name)

    def writes(self, exclude=("audit_logs",)):
        """Mutating calls across collections (audit entries excluded by default)."""
        return [
            (name, *w)
            for name, coll in self._collections.items()
            if name not in exclude
            for w in coll.writes
        ]


@pytest.fixture
def fake_db():
    """In-memory store patched in place of MongoDB; transactions are no-ops."""
    from database import database

    db = FakeDatabase()

    @asynccontextmanager
    async def _transaction():
        yield None

    with patch.object(database, "get_db", return_value=db), \
         patch.object(database, "transaction", _transaction):
        yield db


@pytest.fixture
def provider():
    """Stripe provider client double."""
    mock = MagicMock()
    mock.create_seat_checkout_session = AsyncMock(return_value={"id": "cs_test_new"})
    mock.create_parent_checkout_session = AsyncMock(return_value={"id": "cs_test_parent"})
    mock.retrieve_checkout_session = AsyncMock()
    mock.retrieve_subscription = AsyncMock()
    mock.cancel_at_period_end = AsyncMock()
    mock.construct_event = MagicMock()
    return mock


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests.

    Entering the client runs the lifespan, which builds the provider client;
    MongoDB and the scheduler are skipped because PYTEST_RUNNING is set.
    """
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
