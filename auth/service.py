"""
auth/service.py -- Account lifecycle orchestration.

States: Unregistered -> Unverified -> Active -> Deactivated.

  signup                  Unregistered -> Unverified   (activation mail)
  activate                Unverified   -> Active       (consumes ACTIVATE token)
  signin / refresh        Active only                  (token pair + rotation)
  request_password_reset  Active only                  (reset mail)
  change_password         Active                       (consumes PASSWORD_RESET token)
  deactivate              Active       -> Deactivated  (terminal)

The service owns no durable state. It validates input, composes the
repositories into transactions where several writes must land together, and
calls the mailer only after the core write has committed.

Session revocation:
  - change_password revokes the account's refresh token in the same
    transaction as the password update (a reset ends every session).
  - deactivate revokes the refresh token and pending one-time tokens.
  - refresh rotates with compare-and-swap on the presented token.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.engine import Connection

from auth.context import RequestContext
from auth.errors import (
    InvalidCredentials,
    MailError,
    NotFound,
    NotVerified,
    TokenError,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from auth.mailer import Mailer, build_mailer
from auth.models import (
    PROFILE_FIELDS,
    AccessClaims,
    Account,
    AccountState,
    RefreshClaims,
    SignupProfile,
    TokenPair,
    TokenPurpose,
)
from auth.one_time import OneTimeTokenManager
from auth.refresh import RefreshTokenRegistry
from auth.store import AccountStore, Database, mask_email
from auth.tokens import MAX_PASSWORD_BYTES, TokenCodec, hash_password

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("smerauth.auth.service")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MIN_PASSWORD_LENGTH = 8
_MAX_FIELD_LENGTH = 255


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def validate_password(password: str) -> None:
    if len(password) < _MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.", field="password")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.", field="password")


def validate_profile(profile: SignupProfile) -> SignupProfile:
    """Return a normalized copy of profile or raise ValidationError."""
    email = profile.email.strip().lower()
    if len(email) > _MAX_FIELD_LENGTH or not _EMAIL_RE.match(email):
        raise ValidationError("A valid email address is required.", field="email")
    validate_password(profile.password)
    for field in ("username", "name", "surname", "patronymic"):
        if len(getattr(profile, field)) > _MAX_FIELD_LENGTH:
            raise ValidationError(f"{field} must be at most {_MAX_FIELD_LENGTH} characters.", field=field)
    return replace(profile, email=email)


def _validate_patch(patch: dict) -> dict:
    unknown = set(patch) - PROFILE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}.")
    for field, value in patch.items():
        if field == "avatar_id":
            if value is not None and not isinstance(value, int):
                raise ValidationError("avatar_id must be an integer or null.", field=field)
        elif not isinstance(value, str) or len(value) > _MAX_FIELD_LENGTH:
            raise ValidationError(f"{field} must be a string of at most {_MAX_FIELD_LENGTH} characters.", field=field)
    return patch


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthenticationService:
    """Entry point for every account-lifecycle operation.

    Every method accepts an optional RequestContext carrying the request
    deadline; it is forwarded to each store call.
    """

    def __init__(
        self,
        db: Database,
        accounts: AccountStore,
        codec: TokenCodec,
        one_time: OneTimeTokenManager,
        refresh: RefreshTokenRegistry,
        mailer: Mailer,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        activation_url: str = "http://localhost:8000/api/v1/auth/activate/{token}",
        reset_url: str = "http://localhost:3000/change-password/{token}",
    ) -> None:
        self._db = db
        self._accounts = accounts
        self.codec = codec
        self._one_time = one_time
        self._refresh = refresh
        self._mailer = mailer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._activation_url = activation_url
        self._reset_url = reset_url

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def signup(self, profile: SignupProfile, ctx: RequestContext | None = None) -> int:
        """Create an unverified account and mail its activation link.

        Raises ValidationError, DuplicateEmail, PersistenceError, or MailError.
        On MailError the account is already committed and its activation
        token stays valid.
        """
        profile = validate_profile(profile)
        account_id, activation = self._accounts.create(profile, ctx=ctx)
        link = self._activation_url.format(token=activation)
        try:
            self._mailer.send_activation(profile.email, profile.name, link)
        except MailError:
            logger.error("Activation mail for account %d failed; account kept", account_id)
            raise
        return account_id

    def provision_account(self, profile: SignupProfile, ctx: RequestContext | None = None) -> int:
        """Create an already verified, active account. No mail is sent."""
        profile = validate_profile(profile)
        account_id, _ = self._accounts.create(profile, pre_verified=True, ctx=ctx)
        return account_id

    def activate(self, token: str, ctx: RequestContext | None = None) -> int:
        """Consume an ACTIVATE token and mark its owner verified and active.

        Raises TokenNotFound (unknown or already used) or TokenExpired.
        """

        def _mark(conn: Connection, owner_id: int) -> None:
            self._accounts.mark_verified(conn, owner_id)

        account_id = self._one_time.consume(token, TokenPurpose.ACTIVATE, ctx=ctx, on_success=_mark)
        logger.info("Activated account %d", account_id)
        return account_id

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def signin(self, email: str, password: str, ctx: RequestContext | None = None) -> TokenPair:
        """Verify credentials and return a fresh access/refresh pair.

        Raises InvalidCredentials or NotVerified (the latter only after the
        password matched).
        """
        try:
            account_id, verified = self._accounts.verify_credentials(email, password, ctx=ctx)
        except InvalidCredentials:
            logger.info("Failed signin for %s", mask_email(email))
            raise
        if not verified:
            logger.info("Signin for unverified account %d refused", account_id)
            raise NotVerified()
        pair = self._issue_pair(account_id, email.strip().lower(), ctx=ctx)
        logger.info("Signin for account %d", account_id)
        return pair

    def refresh(self, refresh_token: str, ctx: RequestContext | None = None) -> TokenPair:
        """Exchange the live refresh token for a new pair and rotate.

        A correctly signed token that has been superseded by a later rotation
        is rejected: the registry decides, not the signature.

        Raises TokenExpired for an elapsed token and TokenNotFound for
        everything else.
        """
        try:
            claims = self.codec.verify(refresh_token)
        except TokenExpired:
            raise
        except TokenError as exc:
            raise TokenNotFound() from exc
        if not isinstance(claims, RefreshClaims):
            raise TokenNotFound()

        account_id = self._refresh.is_active(refresh_token, ctx=ctx)
        if account_id != claims.account_id:
            raise TokenNotFound()
        try:
            account = self._accounts.get_by_id(account_id, ctx=ctx)
        except NotFound as exc:
            raise TokenNotFound() from exc
        if account.state is not AccountState.ACTIVE:
            raise TokenNotFound()
        return self._issue_pair(account.id, account.email, previous=refresh_token, ctx=ctx)

    def sign_out(self, account_id: int, ctx: RequestContext | None = None) -> None:
        """Revoke the account's refresh token. Access tokens expire on their own."""
        self._refresh.revoke(account_id, ctx=ctx)

    def _issue_pair(
        self,
        account_id: int,
        email: str,
        previous: str | None = None,
        ctx: RequestContext | None = None,
    ) -> TokenPair:
        access = self.codec.issue(AccessClaims(account_id=account_id, email=email), self.access_ttl)
        refresh = self.codec.issue(RefreshClaims(account_id=account_id, access_token=access), self.refresh_ttl)
        self._refresh.rotate(account_id, refresh, previous=previous, ctx=ctx)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, ctx: RequestContext | None = None) -> None:
        """Issue a PASSWORD_RESET token and mail the reset link.

        Raises InvalidCredentials (unknown or deactivated account),
        NotVerified, PersistenceError, or MailError. Whether the first two
        reach the client is the API layer's decision.
        """
        try:
            account = self._accounts.get_by_email(email, ctx=ctx)
        except NotFound as exc:
            logger.info("Password reset requested for unknown email %s", mask_email(email))
            raise InvalidCredentials() from exc
        if account.state is AccountState.UNVERIFIED:
            raise NotVerified()
        if account.state is AccountState.DEACTIVATED:
            raise InvalidCredentials()

        token = self._one_time.issue(account.id, TokenPurpose.PASSWORD_RESET, ctx=ctx)
        self._mailer.send_password_reset(account.email, self._reset_url.format(token=token))
        logger.info("Password reset issued for account %d", account.id)

    def change_password(self, token: str, new_password: str, ctx: RequestContext | None = None) -> int:
        """Consume a PASSWORD_RESET token and store the new password.

        The password update, the token deletion and the refresh-token
        revocation commit together. Returns the account id.
        """
        validate_password(new_password)
        password_hash = hash_password(new_password, rounds=self._accounts.bcrypt_rounds)

        def _apply(conn: Connection, owner_id: int) -> None:
            self._accounts.set_password(conn, owner_id, password_hash)
            self._refresh.revoke(owner_id, conn=conn)

        account_id = self._one_time.consume(token, TokenPurpose.PASSWORD_RESET, ctx=ctx, on_success=_apply)
        logger.info("Password changed for account %d; sessions revoked", account_id)
        return account_id

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_account(self, account_id: int, ctx: RequestContext | None = None) -> Account:
        return self._accounts.get_by_id(account_id, ctx=ctx)

    def update_profile(self, account_id: int, patch: dict, ctx: RequestContext | None = None) -> Account:
        return self._accounts.update(account_id, _validate_patch(patch), ctx=ctx)

    def deactivate(self, account_id: int, ctx: RequestContext | None = None) -> None:
        """Active -> Deactivated. Revokes the refresh token in the same transaction."""
        with self._db.transaction("auth.deactivate", ctx) as conn:
            self._accounts.deactivate(account_id, conn=conn)
            self._refresh.revoke(account_id, conn=conn)

    def purge_expired_tokens(self) -> int:
        return self._one_time.purge_expired()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_service(
    settings: Settings,
    db: Database | None = None,
    mailer: Mailer | None = None,
) -> AuthenticationService:
    """Wire the repositories, codec and mailer from Settings.

    db and mailer can be injected (tests, CLI); otherwise they are built from
    settings.database_url and the SMTP settings.
    """
    db = db or Database(settings.database_url)
    one_time = OneTimeTokenManager(db, ttl=timedelta(seconds=settings.one_time_token_ttl_seconds))
    return AuthenticationService(
        db=db,
        accounts=AccountStore(db, one_time, bcrypt_rounds=settings.bcrypt_rounds),
        codec=TokenCodec.from_settings(settings),
        one_time=one_time,
        refresh=RefreshTokenRegistry(db),
        mailer=mailer or build_mailer(settings),
        access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        activation_url=settings.public_base_url.rstrip("/") + "/api/v1/auth/activate/{token}",
        reset_url=settings.frontend_url.rstrip("/") + "/change-password/{token}",
    )
