"""
Pytest configuration and shared test helpers for backend tests.

Billing tests run against an in-memory stand-in for the motor database
(`store` fixture) and patched Stripe SDK calls; nothing talks to MongoDB or
Stripe.
"""
import copy
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from pymongo.errors import DuplicateKeyError

from config import BillingSettings
from database import database

_MISSING = object()


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = copy.deepcopy(value)


def _unset_path(doc, path):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def _matches(doc, query):
    for path, condition in query.items():
        value = _get_path(doc, path)
        if isinstance(condition, dict) and "$exists" in condition:
            if (value is not _MISSING) != bool(condition["$exists"]):
                return False
        elif condition is None:
            if value is not _MISSING and value is not None:
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    for key, keep in projection.items():
        if not keep:
            doc.pop(key, None)
    return doc


class FakeCollection:
    """Just enough of a motor collection for the billing services."""

    def __init__(self, unique=()):
        self.docs = []
        self.unique = unique

    async def find_one(self, query, projection=None, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    async def insert_one(self, doc, **kwargs):
        for key in self.unique:
            if any(_get_path(existing, key) == _get_path(doc, key) for existing in self.docs):
                raise DuplicateKeyError(f"E11000 duplicate key error dup key: {key}")
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=str(uuid.uuid4()))

    async def update_one(self, query, update, upsert=False, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                for path, value in update.get("$set", {}).items():
                    _set_path(doc, path, value)
                for path in update.get("$unset", {}):
                    _unset_path(doc, path)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc))
        return SimpleNamespace(matched_count=0, modified_count=0)


class InMemoryDatabase:
    def __init__(self):
        self.users = FakeCollection(unique=("user_id", "email"))
        self.stripe_events = FakeCollection(unique=("event_id",))
        self.audit_logs = FakeCollection()

    def user(self, user_id):
        return next((d for d in self.users.docs if d["user_id"] == user_id), None)

    def event(self, event_id):
        return next((d for d in self.stripe_events.docs if d["event_id"] == event_id), None)

    def audit_actions(self):
        return [d["action"] for d in self.audit_logs.docs]


@pytest.fixture
def store():
    """In-memory database patched in for every module that calls database.get_db()."""
    db = InMemoryDatabase()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def settings():
    return BillingSettings(
        stripe_secret_key="sk_test_123",
        monthly_price_id="price_monthly",
        yearly_price_id="price_yearly",
        webhook_secret="whsec_billing",
        connect_webhook_secret="whsec_connect",
        frontend_url="app.example.com",
        stripe_timeout_seconds=2,
    )


def make_user(store, user_id="user-1", tier="free", subscription=None, payout_account=None, features=None, **extra):
    """Insert a user document shaped like the ones signup and the webhooks write."""
    from services.entitlements import resolve_features

    doc = {
        "user_id": user_id,
        "email": f"{user_id}@example.com",
        "name": "Test User",
        "password_hash": "x",
        "plan": {"tier": tier, "seats": 1},
        "features": list(features) if features is not None else list(resolve_features(tier)),
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        **extra,
    }
    if subscription is not None:
        doc["subscription"] = subscription
    if payout_account is not None:
        doc["payout_account"] = payout_account
    store.users.docs.append(doc)
    return doc


@pytest.fixture
def add_user(store):
    def _add(**kwargs):
        return make_user(store, **kwargs)
    return _add


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    from fastapi.testclient import TestClient
    from server import app

    return TestClient(app, raise_server_exceptions=False)
