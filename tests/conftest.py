"""
tests/conftest.py -- Shared fixtures for Master Auth unit and integration tests.

This module provides:
  - make_store(): isolated named shared-memory SQLite UserStore
  - RecordingTransport / RecordingMailer: email doubles that keep what was sent
  - store, tokens, mailer, auth_service: unit-level fixtures
  - app_client: TestClient over the assembled app (API + client routes) with a
    patched lifespan wiring test doubles into app.state
  - helpers: wait_for_mail(), token_from_mail(), make_user()

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

The environment must be prepared before any project import so get_settings()
generates secrets (DEBUG), issues cookies over http (SECURE_COOKIES), accepts
the TestClient host (ALLOWED_HOSTS) and does not throttle (RATE_LIMIT_ENABLED).
"""

from __future__ import annotations

import os

# CRITICAL: set before any project import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("EMAIL_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("CLIENT_URL", "http://client.test")

import re
import threading
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from asgi import app
from api.main import init_app_state, settings
from auth.models import User
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenService, hash_password
from web.routes import init_client_state

TEST_ROUNDS = 4


# ---------------------------------------------------------------------------
# Store and email doubles
# ---------------------------------------------------------------------------


def make_store(name: str = "") -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    suffix = name or uuid.uuid4().hex
    return UserStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")


class RecordingTransport:
    """MailTransport double. Fails the first `fail_times` sends, then records."""

    def __init__(self, fail_times: int = 0, raises: bool = False) -> None:
        self.fail_times = fail_times
        self.raises = raises
        self.attempts = 0
        self.sent: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def send(self, to: str, subject: str, html: str) -> bool:
        with self._lock:
            self.attempts += 1
            if self.attempts <= self.fail_times:
                if self.raises:
                    raise ConnectionError("relay down")
                return False
            self.sent.append((to, subject, html))
            return True


class RecordingMailer:
    """EmailDispatcher double for service-level tests: keeps queued jobs."""

    def __init__(self) -> None:
        self.jobs = []

    def enqueue(self, job) -> None:
        self.jobs.append(job)


def token_from_mail(html: str) -> str:
    match = re.search(r"token=([A-Za-z0-9_\-\.]+)", html)
    assert match, "no token link in email body"
    return match.group(1)


def wait_for_mail(transport: RecordingTransport, count: int, timeout: float = 5.0) -> list[tuple[str, str, str]]:
    """Block until the background email workers delivered `count` messages."""
    deadline = time.monotonic() + timeout
    while len(transport.sent) < count:
        if time.monotonic() > deadline:
            raise AssertionError(f"expected {count} emails, got {len(transport.sent)}")
        time.sleep(0.01)
    return transport.sent


def make_user(store: UserStore, email: str, password: str = "pw123456", role: str = "user", verified: bool = True) -> int:
    return store.create_user(
        User(
            email=email,
            name=email.split("@", 1)[0],
            role=role,
            hashed_password=hash_password(password, TEST_ROUNDS),
            is_verified=datetime.now(timezone.utc).isoformat() if verified else None,
        )
    )


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(
        access_secret="a" * 32,
        refresh_secret="r" * 32,
        action_secret="x" * 32,
    )


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def auth_service(store: UserStore, tokens: TokenService, mailer: RecordingMailer) -> AuthService:
    return AuthService(store, tokens, mailer, "http://client.test", bcrypt_rounds=TEST_ROUNDS)


# ---------------------------------------------------------------------------
# Application fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, transport: RecordingTransport, oauth: MagicMock):
    """Return a lifespan that wires test doubles into app.state.

    The client routes reach the backend through httpx.ASGITransport, so the
    Request Gateway exercises real HTTP semantics without a network socket.
    """

    @asynccontextmanager
    async def test_lifespan(app_):
        init_app_state(app_, settings, store, transport=transport, oauth=oauth)
        await app_.state.email_queue.start()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app_)) as http_client:
            init_client_state(app_, settings, http_client)
            yield
        await app_.state.email_queue.stop()

    return test_lifespan


@pytest.fixture
def app_client() -> Generator[tuple[TestClient, UserStore, RecordingTransport], None, None]:
    """Yield (client, store, transport) around a fresh database.

    follow_redirects=False: tests assert on redirect locations.
    """
    store = make_store()
    transport = RecordingTransport()
    app.router.lifespan_context = _patch_lifespan(store, transport, MagicMock())

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store, transport

    store.close()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
