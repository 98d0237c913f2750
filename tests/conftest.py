"""
tests/conftest.py -- Shared test fixtures for StepGuard.

This module provides:
  - FrozenClock: a Clock whose time only moves when a test says so
  - RecordingNotifier: a Notifier that keeps every message instead of sending it
  - settings / store / service: a fully wired AuthService on an isolated DB
  - enrolled_user: a registered user with an enabled TOTP enrollment
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Tokens are verified by python-jose against the real wall clock, so
FrozenClock starts at the real current time. Moving it forward expires
challenges in the store while their envelopes stay cryptographically valid,
which is exactly the window the expiry checks guard.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates the signing keys in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate signing keys in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.errors import AuthError, ErrorKind
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings
from notify.mailer import NotificationKind

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FrozenClock:
    """Clock that stands still until advance() is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@dataclass
class SentMessage:
    kind: NotificationKind
    recipient: str
    variables: dict


@dataclass
class RecordingNotifier:
    """Collects notifications. Set fail=True to simulate a delivery outage."""

    sent: list[SentMessage] = field(default_factory=list)
    fail: bool = False

    def send(self, kind: NotificationKind, recipient: str, variables: dict) -> None:
        if self.fail:
            raise AuthError(ErrorKind.INTERNAL, "An unexpected error occurred.", OSError("smtp down"))
        self.sent.append(SentMessage(kind, recipient, dict(variables)))

    def of_kind(self, kind: NotificationKind) -> list[SentMessage]:
        return [m for m in self.sent if m.kind is kind]

    def last_reset_token(self) -> str:
        """Envelope token carried by the most recent reset link."""
        link = self.of_kind(NotificationKind.RESET_REQUEST)[-1].variables["reset_link"]
        return parse_qs(urlparse(link).query)["token"][0]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "test_auth") -> str:
    """Unique named shared-memory SQLite URL so tests never see each other's rows."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "database_url": memory_db_url(),
        "access_token_secret": "access-" + "a" * 40,
        "refresh_token_secret": "refresh-" + "b" * 40,
        "envelope_token_secret": "envelope-" + "c" * 40,
        "bcrypt_rounds": 4,
        "frontend_url": "http://frontend.test",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- a fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(settings: Settings) -> Generator[AuthStore, None, None]:
    store = AuthStore(settings.database_url)
    yield store
    store.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(settings: Settings, store: AuthStore, notifier: RecordingNotifier, clock: FrozenClock) -> AuthService:
    return AuthService.build(settings, store, notifier, clock=clock)


@dataclass
class EnrolledUser:
    id: int
    email: str
    password: str
    secret: str
    recovery_codes: list[str]


@pytest.fixture
def enrolled_user(service: AuthService) -> EnrolledUser:
    """A registered user with TOTP enabled."""
    user = service.register("totp@example.com", "correct horse")
    enrollment = service.enable_two_factor(user.email)
    return EnrolledUser(
        id=user.id,
        email=user.email,
        password="correct horse",
        secret=enrollment.secret,
        recovery_codes=enrollment.recovery_codes,
    )


# ---------------------------------------------------------------------------
# Lifespan patching for HTTP tests
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test collaborators into app.state so TestClient routes
    see an isolated test DB. The sweep_task is a long-sleeping coroutine that
    keeps asyncio happy (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.auth_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    service: AuthService
    notifier: RecordingNotifier
    clock: FrozenClock


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for HTTP integration tests.

    One TestClient per test module for speed. The database is shared across
    the module's tests, so each test registers its own email address.
    """
    settings = make_settings(database_url=memory_db_url("test_api"))
    store = AuthStore(settings.database_url)
    notifier = RecordingNotifier()
    clock = FrozenClock()
    service = AuthService.build(settings, store, notifier, clock=clock)

    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, service=service, notifier=notifier, clock=clock)

    store.close()


# ---------------------------------------------------------------------------
# File-backed database for multi-threaded tests
#
# Shared-cache memory databases use table-level locks and raise "database
# table is locked" under concurrent writers. A real file in WAL mode waits on
# the busy timeout instead, like production does.
# ---------------------------------------------------------------------------


@pytest.fixture
def file_service(tmp_path, notifier: RecordingNotifier, clock: FrozenClock) -> Generator[AuthService, None, None]:
    settings = make_settings(database_url=f"sqlite:///{tmp_path / 'auth.db'}")
    store = AuthStore(settings.database_url)
    yield AuthService.build(settings, store, notifier, clock=clock)
    store.close()
