"""
tests/test_api_rate_limit.py -- Per-IP limits on the credential endpoints.

The limiter is switched off for every other test module (see conftest.py);
this module turns it back on with empty counters and switches it off again
when done.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from auth.service import AuthenticationService
from conftest import RecordingMailer
from core.config import get_settings

ApiClient = tuple[TestClient, AuthenticationService, RecordingMailer]


@pytest.fixture
def rate_limited() -> Generator[int, None, None]:
    """Enable the limiter and yield the number of requests allowed per window."""
    limiter.reset()
    limiter.enabled = True
    try:
        yield int(get_settings().login_rate_limit.split("/")[0])
    finally:
        limiter.enabled = False
        limiter.reset()


def test_signin_is_limited_per_ip(api_client: ApiClient, rate_limited: int) -> None:
    client, _, _ = api_client
    body = {"email": "brute@x.com", "password": "guess-guess"}
    statuses = [client.post("/api/v1/auth/signin", json=body).status_code for _ in range(rate_limited)]
    assert statuses == [401] * rate_limited

    resp = client.post("/api/v1/auth/signin", json=body)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["retry-after"]) > 0


def test_password_reset_is_limited(api_client: ApiClient, rate_limited: int) -> None:
    client, _, _ = api_client
    for _ in range(rate_limited):
        client.post("/api/v1/auth/password-reset", json={"email": "nobody@x.com"})
    resp = client.post("/api/v1/auth/password-reset", json={"email": "nobody@x.com"})
    assert resp.status_code == 429


def test_limits_are_per_route(api_client: ApiClient, rate_limited: int) -> None:
    client, _, _ = api_client
    for _ in range(rate_limited + 1):
        client.post("/api/v1/auth/signin", json={"email": "brute@x.com", "password": "guess-guess"})
    resp = client.post("/api/v1/auth/signup", json={"email": "fresh@x.com", "password": "Secret123"})
    assert resp.status_code == 201
