"""
tests/conftest.py -- Shared test fixtures for Tokenward.

This module provides:
  - stores: isolated in-memory user/token repositories per test
  - make_user: factory that writes a user with a real bcrypt hash
  - api_client: TestClient with a patched lifespan, real dispatcher, mock mailer

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API fixture because TestClient runs sync route handlers in a thread
pool, and the dispatcher runs mail tasks on its own threads. Plain :memory:
DBs are per-connection and would present a blank schema to each thread.

BCRYPT_COST and LIMITER_ENABLED must be set before any core/auth/api import:
the limiter reads settings at import time, and cost 4 keeps bcrypt fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set before any core/auth/api import so get_settings() sees them.
os.environ["BCRYPT_COST"] = "4"
os.environ["LIMITER_ENABLED"] = "false"
os.environ.setdefault("ENV", "development")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.passwords import hash_password
from auth.store import AuthStores, open_stores
from core.worker import TaskDispatcher

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _shared_memory_url() -> str:
    """Return a fresh named shared-memory SQLite URL so tests never share state."""
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def stores() -> Generator[AuthStores, None, None]:
    s = open_stores(_shared_memory_url())
    yield s
    s.close()


@pytest.fixture
def make_user(stores: AuthStores):
    """Return a factory that inserts a user and returns it (with id set)."""

    def _make(
        email: str = "ada@example.com",
        password: str = "pa55word!",
        activated: bool = True,
        name: str = "Ada Lovelace",
        user_id: int | None = None,
    ) -> User:
        user = User(
            name=name,
            email=email,
            hashed_password=hash_password(password),
            activated=activated,
            id=user_id,
        )
        stores.users.insert(user)
        return user

    return _make


def _patch_lifespan(stores: AuthStores, dispatcher: TaskDispatcher, mailer: MagicMock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores, a real dispatcher, and a mock mailer into
    app.state so routes run for real but never open an SMTP connection.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.stores = stores
        app.state.dispatcher = dispatcher
        app.state.mailer = mailer
        yield
        dispatcher.drain(timeout=5)
        dispatcher.close()

    return test_lifespan


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def api_client(stores: AuthStores) -> Generator[tuple[TestClient, AuthStores, MagicMock], None, None]:
    """Yield (client, stores, mailer) for API integration tests.

    Background mail runs on a real TaskDispatcher; call
    client.app.state.dispatcher.drain() before asserting on mailer calls.
    """
    mailer = MagicMock()
    dispatcher = TaskDispatcher(max_workers=2)
    app.router.lifespan_context = _patch_lifespan(stores, dispatcher, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, stores, mailer
