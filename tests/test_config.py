"""Unit tests for core/config.py -- Settings validation.

Settings() is constructed directly (not via get_settings()) so each test
sees only the environment it sets through monkeypatch.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

GOOD_KEY = "k" * 32


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("SECRET_KEY", "PREVIOUS_SECRET_KEYS", "JWT_ALGORITHM", "ACCESS_TOKEN_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)


def test_debug_generates_secret_key(monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    settings = Settings(_env_file=None)
    assert len(settings.secret_key) >= 32


def test_production_requires_secret_key(monkeypatch):
    monkeypatch.setenv("DEBUG", "false")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_short_secret_key_rejected(monkeypatch):
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("SECRET_KEY", "too-short")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_short_previous_key_rejected(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
    monkeypatch.setenv("PREVIOUS_SECRET_KEYS", '["short"]')
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_verification_keys_current_first(monkeypatch):
    old = "o" * 32
    monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
    monkeypatch.setenv("PREVIOUS_SECRET_KEYS", f'["{old}"]')
    settings = Settings(_env_file=None)
    assert settings.verification_keys == [GOOD_KEY, old]


def test_non_hmac_algorithm_rejected(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
    monkeypatch.setenv("JWT_ALGORITHM", "none")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_non_positive_ttl_rejected(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_defaults(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
    settings = Settings(_env_file=None)
    assert settings.jwt_algorithm == "HS512"
    assert settings.access_token_ttl_seconds == 900
    assert settings.one_time_token_ttl_seconds == 600
