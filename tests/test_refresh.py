"""Unit tests for auth/refresh.py -- the live refresh token registry.

Covers:
- rotate makes the new token the only live one
- compare-and-swap: rotating from a superseded token fails and changes nothing
- two threads rotating from the same token: exactly one wins
- revoke
- only digests are stored
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import select

from auth.errors import TokenNotFound
from auth.refresh import RefreshTokenRegistry
from auth.store import Database, refresh_tokens
from auth.tokens import digest_token


class TestRotate:
    def test_first_rotation_registers_token(self, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        assert registry.is_active("tok-a") == 1

    def test_rotation_supersedes_previous(self, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        registry.rotate(1, "tok-b")
        assert registry.is_active("tok-b") == 1
        with pytest.raises(TokenNotFound):
            registry.is_active("tok-a")

    def test_accounts_are_independent(self, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        registry.rotate(2, "tok-b")
        assert registry.is_active("tok-a") == 1
        assert registry.is_active("tok-b") == 2

    def test_swap_from_live_token(self, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        registry.rotate(1, "tok-b", previous="tok-a")
        assert registry.is_active("tok-b") == 1

    def test_swap_from_superseded_token_changes_nothing(self, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        registry.rotate(1, "tok-b", previous="tok-a")
        with pytest.raises(TokenNotFound):
            registry.rotate(1, "tok-c", previous="tok-a")
        assert registry.is_active("tok-b") == 1
        with pytest.raises(TokenNotFound):
            registry.is_active("tok-c")

    def test_only_digest_is_stored(self, db: Database, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        with db.connect("test.refresh") as conn:
            stored = conn.execute(select(refresh_tokens.c.token)).scalar()
        assert stored == digest_token("tok-a")


class TestRevoke:
    def test_revoke(self, registry: RefreshTokenRegistry) -> None:
        registry.rotate(1, "tok-a")
        assert registry.revoke(1) is True
        with pytest.raises(TokenNotFound):
            registry.is_active("tok-a")

    def test_revoke_without_token(self, registry: RefreshTokenRegistry) -> None:
        assert registry.revoke(1) is False


class TestConcurrentRotation:
    def test_only_one_of_two_racing_refreshes_wins(self, tmp_path) -> None:
        """File-backed DB so the two threads hold real, separate connections."""
        db = Database(f"sqlite:///{tmp_path / 'race.db'}")
        registry = RefreshTokenRegistry(db)
        registry.rotate(1, "tok-a")

        barrier = threading.Barrier(2)
        outcomes: dict[str, str] = {}

        def _refresh(new_token: str) -> None:
            barrier.wait()
            try:
                registry.rotate(1, new_token, previous="tok-a")
                outcomes[new_token] = "ok"
            except TokenNotFound:
                outcomes[new_token] = "rejected"

        threads = [threading.Thread(target=_refresh, args=(t,)) for t in ("tok-b", "tok-c")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes.values()) == ["ok", "rejected"]
        winner = next(t for t, outcome in outcomes.items() if outcome == "ok")
        loser = next(t for t, outcome in outcomes.items() if outcome == "rejected")
        assert registry.is_active(winner) == 1
        with pytest.raises(TokenNotFound):
            registry.is_active(loser)
        db.close()
