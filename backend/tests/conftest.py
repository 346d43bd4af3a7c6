"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
import sys
import uuid
from pathlib import Path

# Skip MongoDB connection on startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PERSONA_WEBHOOK_SECRET", "persona_test_secret")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from unittest.mock import MagicMock, patch
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from fastapi.testclient import TestClient


# ---------------------------------------------------------------------------
# In-memory Mongo-like store
# ---------------------------------------------------------------------------

UNIQUE_KEYS = {
    "profiles": [("user_id",), ("referral_code",)],
    "equity_transactions": [("transaction_id",)],
    "webhook_events": [("vendor", "event_id")],
}


def _matches(doc, query):
    for key, expected in query.items():
        actual = doc.get(key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, value in expected.items():
                if op == "$ne" and actual == value:
                    return False
                if op == "$in" and actual not in value:
                    return False
                if op == "$exists" and (key in doc) != bool(value):
                    return False
            continue
        # Mongo: {field: None} matches a missing field or an explicit null
        if actual != expected:
            return False
    return True


def _project(doc, projection):
    result = copy.deepcopy(doc)
    if projection and projection.get("_id") == 0:
        result.pop("_id", None)
    return result


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is not None, d.get(key)), reverse=direction == -1)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]

    def __aiter__(self):
        self._iter = iter(self._docs)
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

    def _check_unique(self, candidate, ignore=None):
        for fields in UNIQUE_KEYS.get(self.name, []):
            values = tuple(candidate.get(f) for f in fields)
            if all(v is None for v in values):
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if tuple(other.get(f) for f in fields) == values:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {fields}")

    def _apply(self, doc, update, inserting=False):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        for key, value in update.get("$inc", {}).items():
            doc[key] = (doc.get(key) or 0) + value
        for key in update.get("$unset", {}):
            doc.pop(key, None)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)

    async def find_one(self, query=None, projection=None, **kwargs):
        for doc in self.docs:
            if _matches(doc, query or {}):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kwargs):
        return _Cursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def count_documents(self, query=None, **kwargs):
        return len([d for d in self.docs if _matches(d, query or {})])

    async def insert_one(self, doc, **kwargs):
        self._check_unique(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(copy.deepcopy(doc))
        return MagicMock(inserted_id=doc["_id"])

    async def update_one(self, query, update, upsert=False, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                candidate = copy.deepcopy(doc)
                self._apply(candidate, update)
                self._check_unique(candidate, ignore=doc)
                changed = candidate != doc
                doc.clear()
                doc.update(candidate)
                return MagicMock(matched_count=1, modified_count=1 if changed else 0, upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            self._apply(doc, update, inserting=True)
            await self.insert_one(doc)
            return MagicMock(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        return MagicMock(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(self, query, update, projection=None,
                                  return_document=ReturnDocument.BEFORE, upsert=False, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                before = _project(doc, projection)
                self._apply(doc, update)
                if return_document == ReturnDocument.AFTER:
                    return _project(doc, projection)
                return before
        return None

    def watch(self, *args, **kwargs):
        raise OperationFailure("The $changeStream stage is only supported on replica sets")


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name):
        return getattr(self, name)


@pytest.fixture
def fake_db():
    """Fresh in-memory database patched in as database.get_db() for every module."""
    from database import database
    db = FakeDatabase()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def client(fake_db):
    """Return a TestClient for the main FastAPI app (server:app) backed by the in-memory store."""
    from server import app
    return TestClient(app)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(user_id, email=None):
    from auth import create_access_token
    claims = {"sub": user_id}
    if email:
        claims["email"] = email
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


def make_profile(user_id, **overrides):
    """Profile document as stored by profile creation, with overrides."""
    from models import UserProfile
    fields = {"user_id": user_id, "referral_code": f"REF{user_id[-5:].upper():0>5}", "kyc_reference_id": user_id}
    fields.update({k: v for k, v in overrides.items() if k in UserProfile.model_fields})
    profile = UserProfile(**fields).model_dump()
    for key in ("kyc_status", "selected_subscription_tier"):
        if hasattr(profile.get(key), "value"):
            profile[key] = profile[key].value
    profile.update(overrides)
    return profile
