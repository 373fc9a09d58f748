"""
tests/conftest.py -- Shared test fixtures for smer-auth unit and integration tests.

This module provides:
  - RecordingMailer: in-memory Mailer that keeps every link it was asked to send
  - db / one_time / accounts / registry / codec / service: unit fixtures on a
    private in-memory SQLite database per test
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient + the service and mailer behind it, per test module

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API fixture because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit fixtures run in one thread, so :memory: is enough.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any api/auth/core
import: get_settings() is cached on first call and api/main.py reads it at
import time to configure middleware.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.errors import MailError
from auth.one_time import OneTimeTokenManager
from auth.refresh import RefreshTokenRegistry
from auth.service import AuthenticationService, build_service
from auth.store import AccountStore, Database
from auth.tokens import TokenCodec
from core.config import get_settings

# Rate limits would make signin tests order-dependent; test_api_rate_limit.py
# enables them for its own module.
limiter.enabled = False

TEST_SECRET = "unit-test-signing-key-0123456789abcdef"
TEST_PASSWORD = "correct horse battery"


# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    kind: str
    to: str
    link: str


@dataclass
class RecordingMailer:
    """Mailer double. Set fail=True to make every send raise MailError."""

    sent: list[SentMail] = field(default_factory=list)
    fail: bool = False

    def send_activation(self, to_email: str, name: str, link: str) -> None:
        if self.fail:
            raise MailError()
        self.sent.append(SentMail("activation", to_email, link))

    def send_password_reset(self, to_email: str, link: str) -> None:
        if self.fail:
            raise MailError()
        self.sent.append(SentMail("password_reset", to_email, link))

    def last_token(self, kind: str, to: str | None = None) -> str:
        """Return the token at the end of the most recent matching link."""
        for mail in reversed(self.sent):
            if mail.kind == kind and (to is None or mail.to == to):
                return re.split(r"[/=]", mail.link)[-1]
        raise AssertionError(f"no {kind} mail sent to {to or 'anyone'}")


# ---------------------------------------------------------------------------
# Unit fixtures -- fresh in-memory database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database("sqlite:///:memory:")
    yield database
    database.close()


@pytest.fixture
def one_time(db: Database) -> OneTimeTokenManager:
    return OneTimeTokenManager(db, ttl=timedelta(minutes=10))


@pytest.fixture
def accounts(db: Database, one_time: OneTimeTokenManager) -> AccountStore:
    return AccountStore(db, one_time, bcrypt_rounds=4)


@pytest.fixture
def registry(db: Database) -> RefreshTokenRegistry:
    return RefreshTokenRegistry(db)


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TEST_SECRET, algorithm="HS512", issuer="smer-auth")


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def service(
    db: Database,
    accounts: AccountStore,
    codec: TokenCodec,
    one_time: OneTimeTokenManager,
    registry: RefreshTokenRegistry,
    mailer: RecordingMailer,
) -> AuthenticationService:
    return AuthenticationService(
        db=db,
        accounts=accounts,
        codec=codec,
        one_time=one_time,
        refresh=registry,
        mailer=mailer,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=30),
        activation_url="http://api.test/api/v1/auth/activate/{token}",
        reset_url="http://app.test/change-password/{token}",
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database, service: AuthenticationService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.request_timeout = 30.0
        app.state.db = db
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthenticationService, RecordingMailer], None, None]:
    """Yield (client, service, mailer) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    """
    db = Database(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    recording = RecordingMailer()
    auth_service = build_service(get_settings(), db=db, mailer=recording)

    app.router.lifespan_context = _patch_lifespan(db, auth_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, auth_service, recording

    db.close()


def register_and_activate(
    client: TestClient,
    mailer: RecordingMailer,
    email: str,
    password: str = TEST_PASSWORD,
) -> int:
    """Sign up through the API and follow the mailed activation link."""
    resp = client.post("/api/v1/auth/signup", json={"email": email, "password": password, "name": "Test"})
    assert resp.status_code == 201, resp.text
    token = mailer.last_token("activation", email)
    assert client.get(f"/api/v1/auth/activate/{token}").status_code == 200
    return resp.json()["id"]


def signin(client: TestClient, email: str, password: str = TEST_PASSWORD) -> dict:
    resp = client.post("/api/v1/auth/signin", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
