"""
auth/one_time.py -- Single-use activation and password-reset tokens.

Pattern: Repository over the one_time_tokens table (schema in auth/store.py).

Invariants:
  - At most one unconsumed token per (owner, purpose). issue() deletes the
    previous ones and inserts the new one in one transaction.
  - A token is consumed at most once. consume() takes the row with
    DELETE ... RETURNING, so two concurrent redemptions of the same value
    cannot both see it.
  - An expired token is deleted when presented, then rejected. The deletion
    commits even though the call fails, so a stale value cannot be retried.
  - A token presented for the wrong purpose is treated as absent and left
    untouched.

Values are 256-bit random strings mailed to the user. Only their SHA-256
digest is stored.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.engine import Connection

from auth.context import RequestContext
from auth.errors import TokenExpired, TokenNotFound
from auth.models import OneTimeToken, TokenPurpose
from auth.store import Database, one_time_tokens
from auth.tokens import digest_token, generate_opaque_token

logger = logging.getLogger("smerauth.auth.one_time")

_DEFAULT_TTL = timedelta(minutes=10)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands DateTime columns back naive; the stored value is UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class OneTimeTokenManager:
    """Issues and consumes ACTIVATE / PASSWORD_RESET tokens.

    Usage:
        manager = OneTimeTokenManager(db, ttl=timedelta(minutes=10))
        token = manager.issue(account_id, TokenPurpose.ACTIVATE)
        owner_id = manager.consume(token, TokenPurpose.ACTIVATE)
    """

    def __init__(self, db: Database, ttl: timedelta = _DEFAULT_TTL) -> None:
        self._db = db
        self.ttl = ttl

    def issue(
        self,
        account_id: int,
        purpose: TokenPurpose,
        ttl: timedelta | None = None,
        ctx: RequestContext | None = None,
        conn: Connection | None = None,
    ) -> str:
        """Replace any pending token for (account_id, purpose) and return the new value."""
        raw = generate_opaque_token()
        expires_at = _utcnow() + (ttl if ttl is not None else self.ttl)
        with self._db.transaction("one_time_tokens.issue", ctx, conn) as conn:
            conn.execute(
                one_time_tokens.delete().where(
                    (one_time_tokens.c.owner_id == account_id) & (one_time_tokens.c.purpose == purpose.value)
                )
            )
            conn.execute(
                one_time_tokens.insert().values(
                    token=digest_token(raw),
                    owner_id=account_id,
                    purpose=purpose.value,
                    expires_at=expires_at,
                )
            )
        logger.info("Issued %s token for account %d", purpose.value, account_id)
        return raw

    def consume(
        self,
        token: str,
        purpose: TokenPurpose,
        ctx: RequestContext | None = None,
        on_success: Callable[[Connection, int], None] | None = None,
    ) -> int:
        """Redeem a token and return its owner's account id.

        on_success(conn, owner_id) runs inside the same transaction as the
        deletion, only for a live token. If it raises, the deletion is rolled
        back and the token stays redeemable.

        Raises:
            TokenNotFound: unknown value, already consumed, or wrong purpose.
            TokenExpired:  the token existed but its expiry has passed.
        """
        now = _utcnow()
        with self._db.transaction("one_time_tokens.consume", ctx) as conn:
            taken = self._take(conn, token, purpose)
            if taken is not None and not taken.is_expired(now) and on_success is not None:
                on_success(conn, taken.owner_id)

        if taken is None:
            logger.info("Rejected unknown %s token", purpose.value)
            raise TokenNotFound()
        if taken.is_expired(now):
            logger.info("Rejected expired %s token for account %d", purpose.value, taken.owner_id)
            raise TokenExpired()
        return taken.owner_id

    def _take(self, conn: Connection, token: str, purpose: TokenPurpose) -> OneTimeToken | None:
        token_hash = digest_token(token)
        row = conn.execute(
            one_time_tokens.delete()
            .where((one_time_tokens.c.token == token_hash) & (one_time_tokens.c.purpose == purpose.value))
            .returning(one_time_tokens.c.owner_id, one_time_tokens.c.expires_at)
        ).first()
        if row is None:
            return None
        return OneTimeToken(
            token_hash=token_hash,
            owner_id=row.owner_id,
            purpose=purpose,
            expires_at=_as_utc(row.expires_at),
        )

    def revoke_all(
        self,
        account_id: int,
        ctx: RequestContext | None = None,
        conn: Connection | None = None,
    ) -> int:
        """Delete every pending token of an account. Returns rows removed."""
        with self._db.transaction("one_time_tokens.revoke_all", ctx, conn) as conn:
            result = conn.execute(one_time_tokens.delete().where(one_time_tokens.c.owner_id == account_id))
        return result.rowcount

    def purge_expired(self, ctx: RequestContext | None = None) -> int:
        """Delete all expired tokens (periodic cleanup). Returns rows removed."""
        with self._db.transaction("one_time_tokens.purge_expired", ctx) as conn:
            result = conn.execute(one_time_tokens.delete().where(one_time_tokens.c.expires_at < _utcnow()))
        if result.rowcount:
            logger.info("Purged %d expired one-time tokens", result.rowcount)
        return result.rowcount
