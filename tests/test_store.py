"""Unit tests for auth/store.py -- Database transaction boundary and AccountStore.

Covers:
- create() stores a hashed credential, lowercases the email, issues an
  activation token in the same transaction
- duplicate email (any case) raises DuplicateEmail and leaves one row
- verify_credentials() distinguishes only verified vs unverified
- update() accepts display fields only
- deactivate() is Active -> Deactivated only and drops pending one-time tokens
- expired deadlines abandon the transaction
- mask_email() redaction
"""

from __future__ import annotations

import logging
import time

import pytest
from sqlalchemy import func, select

from auth.context import RequestContext
from auth.errors import DuplicateEmail, InvalidCredentials, NotFound, PersistenceError, TokenNotFound, ValidationError
from auth.models import AccountState, SignupProfile, TokenPurpose
from auth.one_time import OneTimeTokenManager
from auth.store import AccountStore, Database, accounts as accounts_table, mask_email, one_time_tokens


def _profile(email: str = "alice@example.com", password: str = "Secret123") -> SignupProfile:
    return SignupProfile(email=email, password=password, username="alice", name="Alice")


def _count(db: Database, table) -> int:
    with db.connect("test.count") as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


class TestCreate:
    def test_create_returns_id_and_activation_token(self, accounts: AccountStore) -> None:
        account_id, token = accounts.create(_profile())
        assert account_id > 0
        assert token

        account = accounts.get_by_id(account_id)
        assert account.email == "alice@example.com"
        assert account.state is AccountState.UNVERIFIED
        assert account.password_hash != "Secret123"
        assert account.created_at == account.updated_at

    def test_email_is_normalized(self, accounts: AccountStore) -> None:
        account_id, _ = accounts.create(_profile(email="  Alice@Example.COM "))
        assert accounts.get_by_email("alice@example.com").id == account_id

    def test_pre_verified_account_has_no_token(self, db: Database, accounts: AccountStore) -> None:
        account_id, token = accounts.create(_profile(), pre_verified=True)
        assert token is None
        assert accounts.get_by_id(account_id).state is AccountState.ACTIVE
        assert _count(db, one_time_tokens) == 0

    def test_duplicate_email_any_case(self, db: Database, accounts: AccountStore) -> None:
        accounts.create(_profile())
        with pytest.raises(DuplicateEmail):
            accounts.create(_profile(email="ALICE@example.com"))
        assert _count(db, accounts_table) == 1
        assert _count(db, one_time_tokens) == 1

    def test_failed_token_issue_rolls_back_account(self, db: Database) -> None:
        class BrokenManager(OneTimeTokenManager):
            def issue(self, *args, **kwargs):
                raise PersistenceError("one_time_tokens.issue")

        store = AccountStore(db, BrokenManager(db), bcrypt_rounds=4)
        with pytest.raises(PersistenceError):
            store.create(_profile())
        assert _count(db, accounts_table) == 0


class TestVerifyCredentials:
    def test_unverified_account(self, accounts: AccountStore) -> None:
        account_id, _ = accounts.create(_profile())
        assert accounts.verify_credentials("alice@example.com", "Secret123") == (account_id, False)

    def test_verified_account(self, accounts: AccountStore) -> None:
        account_id, _ = accounts.create(_profile(), pre_verified=True)
        assert accounts.verify_credentials("ALICE@example.com", "Secret123") == (account_id, True)

    def test_wrong_password(self, accounts: AccountStore) -> None:
        accounts.create(_profile(), pre_verified=True)
        with pytest.raises(InvalidCredentials):
            accounts.verify_credentials("alice@example.com", "Secret124")

    def test_unknown_email(self, accounts: AccountStore) -> None:
        with pytest.raises(InvalidCredentials):
            accounts.verify_credentials("nobody@example.com", "Secret123")

    def test_deactivated_account_looks_like_bad_credentials(self, accounts: AccountStore, caplog) -> None:
        account_id, _ = accounts.create(_profile(), pre_verified=True)
        accounts.deactivate(account_id)
        caplog.set_level(logging.INFO, logger="smerauth.auth.store")
        with pytest.raises(InvalidCredentials):
            accounts.verify_credentials("alice@example.com", "Secret123")
        assert f"deactivated account {account_id}" in caplog.text


class TestUpdateAndDeactivate:
    def test_update_display_fields(self, accounts: AccountStore) -> None:
        account_id, _ = accounts.create(_profile(), pre_verified=True)
        updated = accounts.update(account_id, {"surname": "Smith", "avatar_id": 12})
        assert updated.surname == "Smith"
        assert updated.avatar_id == 12
        assert updated.name == "Alice"

    def test_update_rejects_protected_fields(self, accounts: AccountStore) -> None:
        account_id, _ = accounts.create(_profile(), pre_verified=True)
        with pytest.raises(ValidationError):
            accounts.update(account_id, {"email": "evil@example.com"})
        assert accounts.get_by_id(account_id).email == "alice@example.com"

    def test_update_unknown_account(self, accounts: AccountStore) -> None:
        with pytest.raises(NotFound):
            accounts.update(999, {"name": "Ghost"})

    def test_deactivate_drops_pending_tokens(
        self, db: Database, accounts: AccountStore, one_time: OneTimeTokenManager
    ) -> None:
        account_id, _ = accounts.create(_profile(), pre_verified=True)
        reset = one_time.issue(account_id, TokenPurpose.PASSWORD_RESET)
        accounts.deactivate(account_id)
        assert accounts.get_by_id(account_id).state is AccountState.DEACTIVATED
        assert _count(db, one_time_tokens) == 0
        with pytest.raises(TokenNotFound):
            one_time.consume(reset, TokenPurpose.PASSWORD_RESET)

    def test_deactivate_unverified_account_is_refused(
        self, accounts: AccountStore, one_time: OneTimeTokenManager
    ) -> None:
        account_id, activation = accounts.create(_profile())
        with pytest.raises(ValidationError):
            accounts.deactivate(account_id)
        assert one_time.consume(activation, TokenPurpose.ACTIVATE) == account_id

    def test_deactivate_twice_is_refused(self, accounts: AccountStore) -> None:
        account_id, _ = accounts.create(_profile(), pre_verified=True)
        accounts.deactivate(account_id)
        with pytest.raises(ValidationError):
            accounts.deactivate(account_id)
        assert accounts.get_by_id(account_id).state is AccountState.DEACTIVATED

    def test_deactivate_unknown_account(self, accounts: AccountStore) -> None:
        with pytest.raises(NotFound):
            accounts.deactivate(999)


class TestDeadline:
    def test_expired_deadline_abandons_before_begin(self, db: Database, accounts: AccountStore) -> None:
        expired = RequestContext(deadline=time.monotonic() - 1)
        with pytest.raises(PersistenceError):
            accounts.create(_profile(), ctx=expired)
        assert _count(db, accounts_table) == 0

    def test_deadline_passing_mid_transaction_rolls_back(self, db: Database) -> None:
        ctx = RequestContext.with_timeout(0.05)
        with pytest.raises(PersistenceError):
            with db.transaction("test.slow", ctx) as conn:
                conn.execute(
                    accounts_table.insert().values(
                        email="slow@example.com",
                        password_hash="x",
                        created_at="t",
                        updated_at="t",
                    )
                )
                time.sleep(0.1)
        assert _count(db, accounts_table) == 0

    def test_no_deadline_never_expires(self) -> None:
        assert not RequestContext().expired()
        assert not RequestContext.with_timeout(None).expired()


class TestMaskEmail:
    def test_mask(self) -> None:
        assert mask_email("alice@example.com") == "al***@example.com"

    def test_mask_without_at(self) -> None:
        assert mask_email("garbage") == "***"
