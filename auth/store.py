"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. Database owns the engine and the
transaction boundary; AccountStore is the repository for accounts;
_row_to_account is the mapper. OneTimeTokenManager (auth/one_time.py) and
RefreshTokenRegistry (auth/refresh.py) are the repositories for the token
tables defined here. Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are masked and token values never appear in log lines.

Atomicity:
  Database.transaction() wraps engine.begin(): everything executed on the
  yielded connection commits together or not at all. Repository methods
  accept an optional `conn` so the service can compose several writes
  (e.g. consume token + set password + revoke sessions) into one unit.
  They never open a nested transaction on their own when given one.

Error translation:
  SQLAlchemyError is logged with the operation name and re-raised as
  PersistenceError. AuthError subclasses raised inside a transaction pass
  through unchanged (after rollback).

DB path: auth/smerauth.db by default (any SQLAlchemy URL works).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    false,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.context import RequestContext
from auth.errors import AuthError, DuplicateEmail, InvalidCredentials, NotFound, PersistenceError, ValidationError
from auth.models import PROFILE_FIELDS, Account, SignupProfile, TokenPurpose
from auth.tokens import hash_password, verify_password

if TYPE_CHECKING:
    from auth.one_time import OneTimeTokenManager

logger = logging.getLogger("smerauth.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False, server_default=""),
    Column("name", String(255), nullable=False, server_default=""),
    Column("surname", String(255), nullable=False, server_default=""),
    Column("patronymic", String(255), nullable=False, server_default=""),
    Column("password_hash", Text, nullable=False),
    Column("is_verified", Boolean, nullable=False, server_default=false()),
    Column("is_active", Boolean, nullable=False, server_default=false()),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("avatar_id", Integer),  # file storage is a separate collaborator
)

one_time_tokens = Table(
    "one_time_tokens",
    metadata,
    Column("token", String(64), primary_key=True),  # SHA-256 hex of the mailed value
    Column("owner_id", Integer, nullable=False, index=True),
    Column("purpose", String(20), nullable=False),  # TokenPurpose value
    Column("expires_at", DateTime(timezone=True), nullable=False),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    # UNIQUE owner_id enforces the single-live-refresh-token invariant in SQL.
    Column("owner_id", Integer, primary_key=True, autoincrement=False),
    Column("token", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("issued_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mask_email(email: str) -> str:
    """Redact an email for log lines: 'alice@x.com' -> 'al***@x.com'."""
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _check_deadline(ctx: RequestContext | None, operation: str) -> None:
    if ctx is not None and ctx.expired():
        logger.warning("Deadline exceeded before %s; abandoning", operation)
        raise PersistenceError(operation, "Request deadline exceeded.")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """Engine owner and transaction boundary shared by the auth repositories.

    Usage:
        db = Database(get_settings().database_url)       # SQLite default
        db = Database("postgresql://user:pw@host/db")    # PostgreSQL
        with db.transaction("refresh_tokens.rotate") as conn:
            ...
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in a thread pool; the same pooled connection
            # may be used from different threads over its lifetime.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(
        self,
        operation: str,
        ctx: RequestContext | None = None,
        conn: Connection | None = None,
    ) -> Iterator[Connection]:
        """Yield a connection inside BEGIN ... COMMIT.

        Rolls back on any exception. The deadline is checked before BEGIN and
        again just before COMMIT.

        If conn is given the caller already owns a transaction: it is yielded
        as-is and the caller decides when to commit.
        """
        if conn is not None:
            yield conn
            return
        _check_deadline(ctx, operation)
        try:
            with self.engine.begin() as conn:
                yield conn
                _check_deadline(ctx, operation)
        except AuthError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Store failure during %s: %s", operation, exc.__class__.__name__)
            raise PersistenceError(operation) from exc

    @contextmanager
    def connect(self, operation: str, ctx: RequestContext | None = None) -> Iterator[Connection]:
        """Yield a connection for reads. Default isolation, no explicit commit."""
        _check_deadline(ctx, operation)
        try:
            with self.engine.connect() as conn:
                yield conn
        except AuthError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Store failure during %s: %s", operation, exc.__class__.__name__)
            raise PersistenceError(operation) from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records and credential checks.

    Usage:
        store = AccountStore(db, one_time)
        account_id, activation = store.create(SignupProfile(email="a@x.com", password="Secret123"))
        account_id, verified = store.verify_credentials("a@x.com", "Secret123")
    """

    def __init__(self, db: Database, one_time: OneTimeTokenManager, bcrypt_rounds: int = 12) -> None:
        self._db = db
        self._one_time = one_time
        self.bcrypt_rounds = bcrypt_rounds
        # Timing equalization dummy hash [C1]. Same cost as real hashes so an
        # unknown email costs exactly as much as a wrong password.
        self._dummy_hash = hash_password("smerauth_timing_dummy", rounds=bcrypt_rounds)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        profile: SignupProfile,
        pre_verified: bool = False,
        ctx: RequestContext | None = None,
    ) -> tuple[int, str | None]:
        """Insert an account and, unless pre-verified, its activation token.

        Both rows commit together. Returns (account_id, activation_token);
        the token is None for pre-verified accounts.

        Raises DuplicateEmail if the email is taken -- either seen by the
        pre-check or by the UNIQUE constraint when two signups race.
        """
        email = normalize_email(profile.email)
        password_hash = hash_password(profile.password, rounds=self.bcrypt_rounds)
        now = now_iso()
        try:
            with self._db.transaction("accounts.create", ctx) as conn:
                taken = conn.execute(select(accounts.c.id).where(accounts.c.email == email)).first()
                if taken is not None:
                    raise DuplicateEmail()
                result = conn.execute(
                    accounts.insert().values(
                        email=email,
                        username=profile.username,
                        name=profile.name,
                        surname=profile.surname,
                        patronymic=profile.patronymic,
                        password_hash=password_hash,
                        is_verified=pre_verified,
                        is_active=pre_verified,
                        created_at=now,
                        updated_at=now,
                    )
                )
                account_id = result.inserted_primary_key[0]
                activation = None
                if not pre_verified:
                    activation = self._one_time.issue(account_id, TokenPurpose.ACTIVATE, conn=conn)
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise DuplicateEmail() from exc
            raise
        logger.info("Created account %d for %s (pre_verified=%s)", account_id, mask_email(email), pre_verified)
        return account_id, activation

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def verify_credentials(self, email: str, password: str, ctx: RequestContext | None = None) -> tuple[int, bool]:
        """Check email + password with timing equalization [C1].

        Always runs bcrypt whether or not the email exists:
        - Unknown email: bcrypt runs against the dummy hash (same cost)
        - Wrong password: bcrypt runs against the real hash (same cost)

        Returns (account_id, verified). Raises InvalidCredentials for unknown
        email, wrong password, and deactivated accounts alike.
        """
        account = self._find_by_email(email, ctx)
        if account is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            verify_password(password, self._dummy_hash)
            raise InvalidCredentials()
        if not verify_password(password, account.password_hash):
            raise InvalidCredentials()
        if account.is_verified and not account.is_active:
            logger.info("Signin with correct password refused for deactivated account %d", account.id)
            raise InvalidCredentials()
        return account.id, account.is_verified

    def get_by_id(self, account_id: int, ctx: RequestContext | None = None) -> Account:
        """Look up an account by primary key. Raises NotFound."""
        with self._db.connect("accounts.get_by_id", ctx) as conn:
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        if row is None:
            raise NotFound()
        return _row_to_account(row)

    def get_by_email(self, email: str, ctx: RequestContext | None = None) -> Account:
        """Look up an account by email (case-insensitive). Raises NotFound."""
        account = self._find_by_email(email, ctx)
        if account is None:
            raise NotFound()
        return account

    def _find_by_email(self, email: str, ctx: RequestContext | None) -> Account | None:
        with self._db.connect("accounts.get_by_email", ctx) as conn:
            row = conn.execute(accounts.select().where(accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update(self, account_id: int, patch: dict, ctx: RequestContext | None = None) -> Account:
        """Update display fields on an existing account.

        Accepted fields: username, name, surname, patronymic, avatar_id.
        Anything else (email, password_hash, flags) raises ValidationError
        rather than being silently ignored -- fail-fast.

        Returns the updated Account. Raises NotFound if account_id is unknown.
        """
        unknown = set(patch) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}.")
        with self._db.transaction("accounts.update", ctx) as conn:
            if patch:
                result = conn.execute(
                    accounts.update().where(accounts.c.id == account_id).values(**patch, updated_at=now_iso())
                )
                if result.rowcount == 0:
                    raise NotFound()
            row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
        if row is None:
            raise NotFound()
        return _row_to_account(row)

    def mark_verified(self, conn: Connection, account_id: int) -> None:
        """Set verified+active. Runs on the caller's transaction (activation)."""
        result = conn.execute(
            accounts.update()
            .where(accounts.c.id == account_id)
            .values(is_verified=True, is_active=True, updated_at=now_iso())
        )
        if result.rowcount == 0:
            raise NotFound()

    def set_password(self, conn: Connection, account_id: int, password_hash: str) -> None:
        """Store a new credential hash. Runs on the caller's transaction."""
        result = conn.execute(
            accounts.update()
            .where(accounts.c.id == account_id)
            .values(password_hash=password_hash, updated_at=now_iso())
        )
        if result.rowcount == 0:
            raise NotFound()

    def deactivate(
        self,
        account_id: int,
        ctx: RequestContext | None = None,
        conn: Connection | None = None,
    ) -> None:
        """Active -> Deactivated: set active=false and drop pending one-time tokens.

        Only an ACTIVE account can be deactivated. An unverified account
        already has active=false, so the flag alone could not tell the two
        apart; it raises ValidationError and keeps its activation link.
        The service revokes the refresh token on the same transaction.
        """
        with self._db.transaction("accounts.deactivate", ctx, conn) as conn:
            result = conn.execute(
                accounts.update()
                .where(
                    accounts.c.id == account_id,
                    accounts.c.is_verified.is_(True),
                    accounts.c.is_active.is_(True),
                )
                .values(is_active=False, updated_at=now_iso())
            )
            if result.rowcount == 0:
                row = conn.execute(accounts.select().where(accounts.c.id == account_id)).fetchone()
                if row is None:
                    raise NotFound()
                raise ValidationError(
                    f"Account is {_row_to_account(row).state.value}; only an active account can be deactivated."
                )
            self._one_time.revoke_all(account_id, conn=conn)
        logger.info("Deactivated account %d", account_id)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        username=row.username,
        name=row.name,
        surname=row.surname,
        patronymic=row.patronymic,
        password_hash=row.password_hash,
        is_verified=bool(row.is_verified),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
        avatar_id=row.avatar_id,
    )
