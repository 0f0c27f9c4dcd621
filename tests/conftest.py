"""
tests/conftest.py -- Shared test fixtures for IdentityHub tests.

This module provides:
  - _make_test_stores(): isolated in-memory DBs for the user store and state ledger
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient with a seeded user and session JWT
  - user_store / ledger: fresh stores for unit tests
  - fake_response: factory for mocked requests.Response objects
  - clock: a settable clock for ledger / lifecycle / handshake tests

Handlers run in TestClient's worker threads, and every thread opens its own
SQLite connection. A plain :memory: URL would give each connection an empty
database, so the stores use named shared-memory URIs
(file:<name>?mode=memory&cache=shared&uri=true), one name per test or module.

get_settings() is cached on first use, so DEBUG (throwaway SECRET_KEY) must be
in the environment before anything imports core.config.
ALLOWED_HOSTS must include "testserver", the Host header TestClient sends.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set env before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.ledger import OAuthStateLedger
from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password, issue_session_token
from core.config import get_settings
from tracker.client import JiraClient

TEST_EMAIL = "admin@example.com"
TEST_PASSWORD = "testpass123"


class FakeClock:
    """Settable epoch-seconds clock. Call it like time.time."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _db_url(name: str) -> str:
    return f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_suffix: str, clock=None) -> tuple[UserStore, OAuthStateLedger]:
    """Create an isolated named shared-memory DB holding both stores' tables.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', a uuid).
    """
    url = _db_url(db_suffix)
    user_store = UserStore(db_url=url)
    ledger = OAuthStateLedger(db_url=url, clock=clock) if clock else OAuthStateLedger(db_url=url)
    return user_store, ledger


def _make_jira_client() -> JiraClient:
    """JiraClient whose HTTP session is a MagicMock -- no real network calls."""
    return JiraClient(get_settings(), session=MagicMock())


def _patch_lifespan(user_store: UserStore, ledger: OAuthStateLedger, jira_client: JiraClient):
    """Lifespan that wires the given stores instead of opening the real ones.

    The purge loop is replaced by an idle task so shutdown still has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, user_store, ledger, jira_client)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def make_fake_response(status_code: int = 200, payload=None) -> MagicMock:
    """Build a MagicMock shaped like requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.json.return_value = payload
    resp.content = b"{}" if payload is not None else b""
    resp.text = "" if payload is None else str(payload)
    return resp


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_db_url(f"users_{uuid.uuid4().hex}"))
    yield store
    store.close()


@pytest.fixture
def ledger(clock: FakeClock) -> Generator[OAuthStateLedger, None, None]:
    led = OAuthStateLedger(db_url=_db_url(f"ledger_{uuid.uuid4().hex}"), ttl_seconds=300, clock=clock)
    yield led
    led.close()


@pytest.fixture
def fake_response():
    return make_fake_response


# ---------------------------------------------------------------------------
# Module-scoped: one app start-up per test module
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id): the real app on throwaway stores.

    Routes, middleware and exception handlers are the production ones. The
    Jira HTTP session is a MagicMock reachable at
    client.app.state.jira_client.session.
    """
    user_store, ledger = _make_test_stores(f"api_{uuid.uuid4().hex}")

    uid = user_store.create_user(
        User(name="Test Admin", email=TEST_EMAIL, hashed_password=hash_password(TEST_PASSWORD))
    )
    token = issue_session_token(user_store.get_by_id(uid), expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(user_store, ledger, _make_jira_client())
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    ledger.close()
    user_store.close()
