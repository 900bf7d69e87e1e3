"""
tests/conftest.py -- Shared test fixtures for tenantauth tests.

This module provides:
  - settings: explicit Settings with low bcrypt cost and fixed secrets
  - store / sessions / orgs / invites: managers over a fresh in-memory DB
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: TestClient against the real app with an isolated DB

Design: Unit fixtures use plain sqlite:///:memory: (one thread, one
connection). The API fixture uses a named shared-memory SQLite URI
(file:name?mode=memory&cache=shared&uri=true) because TestClient runs sync
route handlers in a thread pool; plain :memory: would give each worker
thread a blank schema.

Environment variables must be set before any api/auth/core import so the
cached get_settings() singleton picks them up: DEBUG auto-generates the JWT
secrets, the low hash cost keeps bcrypt fast, and the test client's Host
header must be allowed.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("TOKEN_HASH_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_state
from auth.invites import InvitationManager
from auth.orgs import OrgAccessController
from auth.sessions import SessionManager
from auth.store import CredentialStore
from core.config import Settings


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debug=True,
        jwt_access_secret="a" * 32 + "-access",
        jwt_refresh_secret="r" * 32 + "-refresh",
        password_hash_rounds=4,
        token_hash_rounds=4,
    )


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def sessions(store: CredentialStore, settings: Settings) -> SessionManager:
    return SessionManager(store, settings)


@pytest.fixture
def orgs(store: CredentialStore) -> OrgAccessController:
    return OrgAccessController(store)


@pytest.fixture
def invites(
    store: CredentialStore, sessions: SessionManager, orgs: OrgAccessController, settings: Settings
) -> InvitationManager:
    return InvitationManager(store, sessions, orgs, settings)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store (and managers built on it) into
    app.state so TestClient routes never touch the on-disk database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_state(app, store)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient for the real FastAPI app over an isolated DB.

    The DB name includes the test module name so modules do not share state.
    The rate limiter's counters are reset on teardown.
    """
    db_name = request.module.__name__.replace(".", "_")
    store = CredentialStore(f"sqlite:///file:test_{db_name}?mode=memory&cache=shared&uri=true")
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    limiter.reset()
    store.close()
