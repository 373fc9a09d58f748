"""
auth/refresh.py -- Server-side registry of the live refresh token per account.

Pattern: Repository over the refresh_tokens table (schema in auth/store.py).

A refresh token is honoured only while it is the registered one for its
account. rotate() deletes the account's row and inserts the new one in a
single transaction, so after a successful rotation exactly one token is
valid. If the transaction fails it is rolled back: the previous token stays
valid and the caller gets a retryable PersistenceError, never a state with
zero live tokens. owner_id is also UNIQUE in SQL.

Only SHA-256 digests of the tokens are stored.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.engine import Connection

from auth.context import RequestContext
from auth.errors import TokenNotFound
from auth.store import Database, now_iso, refresh_tokens
from auth.tokens import digest_token

logger = logging.getLogger("smerauth.auth.refresh")


class RefreshTokenRegistry:
    """Usage:
    registry = RefreshTokenRegistry(db)
    registry.rotate(account_id, refresh_token)
    account_id = registry.is_active(refresh_token)   # or TokenNotFound
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def rotate(
        self,
        account_id: int,
        new_token: str,
        previous: str | None = None,
        ctx: RequestContext | None = None,
        conn: Connection | None = None,
    ) -> None:
        """Make new_token the only valid refresh token for account_id.

        With previous set (the refresh flow) the swap only happens if previous
        is still the registered token; otherwise TokenNotFound and nothing
        changes. Two clients racing with the same refresh token therefore
        cannot both get a new one.
        """
        with self._db.transaction("refresh_tokens.rotate", ctx, conn) as conn:
            stale = refresh_tokens.delete().where(refresh_tokens.c.owner_id == account_id)
            if previous is not None:
                stale = stale.where(refresh_tokens.c.token == digest_token(previous))
            result = conn.execute(stale)
            if previous is not None and result.rowcount == 0:
                raise TokenNotFound()
            conn.execute(
                refresh_tokens.insert().values(
                    owner_id=account_id,
                    token=digest_token(new_token),
                    issued_at=now_iso(),
                )
            )
        logger.debug("Rotated refresh token for account %d", account_id)

    def is_active(self, token: str, ctx: RequestContext | None = None) -> int:
        """Return the owner of token if it is the currently registered one.

        Raises TokenNotFound for never-issued and superseded tokens alike.
        """
        with self._db.connect("refresh_tokens.is_active", ctx) as conn:
            owner_id = conn.execute(
                select(refresh_tokens.c.owner_id).where(refresh_tokens.c.token == digest_token(token))
            ).scalar()
        if owner_id is None:
            raise TokenNotFound()
        return owner_id

    def revoke(
        self,
        account_id: int,
        ctx: RequestContext | None = None,
        conn: Connection | None = None,
    ) -> bool:
        """Forget the account's refresh token. Returns True if one was registered."""
        with self._db.transaction("refresh_tokens.revoke", ctx, conn) as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.owner_id == account_id))
        if result.rowcount:
            logger.info("Revoked refresh token for account %d", account_id)
        return result.rowcount > 0
