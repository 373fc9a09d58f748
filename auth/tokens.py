"""
auth/tokens.py -- JWT codec, password hashing, and opaque token utilities.

Security design decisions:
  JWT: python-jose with one HMAC algorithm for the whole system (HS512 by
       default). TokenCodec is constructed with the signing key, the
       verification keys (current + previous, for rotation) and the issuer,
       so nothing here reads a module-level secret. verify() raises one of
       three distinct errors instead of returning None, because callers react
       differently: TokenExpired -> refresh, anything else -> re-login.

  Algorithm pinning: the header is inspected before verification and any
       alg other than the configured one (including "none") is rejected as
       TokenInvalidSignature. jose would refuse it too; checking first keeps
       the error kind precise.

  Passwords: bcrypt, used directly. The cost factor makes brute force
       expensive. AccountStore keeps a dummy hash of the same cost for timing
       equalization when the email is unknown [C1].

  Opaque tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. Stores
       keep only SHA-256(token); a leaked table cannot be replayed. A fast
       hash is fine here -- the input is random, not a low-entropy password.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenInvalidSignature, TokenMalformed
from auth.models import AccessClaims, BearerClaims, RefreshClaims

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("smerauth.auth.tokens")

# bcrypt silently ignores bytes past 72; the service rejects longer passwords.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. Any error (corrupt hash,
    over-long input) counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# ---------------------------------------------------------------------------
# Opaque one-time tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a new unguessable token value (43 URL-safe characters)."""
    return secrets.token_urlsafe(32)


def digest_token(raw: str) -> str:
    """Return the SHA-256 hex digest stored in place of a token value."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------

_REQUIRED_CLAIMS = ("sub", "exp", "typ", "jti")


class TokenCodec:
    """Signs and verifies access and refresh bearer tokens.

    Usage:
        codec = TokenCodec.from_settings(get_settings())
        token = codec.issue(AccessClaims(account_id=1, email="a@x.com"), timedelta(minutes=15))
        claims = codec.verify(token)   # AccessClaims, or raises a TokenError
    """

    def __init__(
        self,
        signing_key: str,
        algorithm: str = "HS512",
        issuer: str = "smer-auth",
        verification_keys: list[str] | None = None,
    ) -> None:
        if not signing_key:
            raise ValueError("TokenCodec requires a signing key.")
        self._signing_key = signing_key
        self._verification_keys = verification_keys or [signing_key]
        self.algorithm = algorithm
        self.issuer = issuer

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCodec:
        return cls(
            signing_key=settings.secret_key,
            algorithm=settings.jwt_algorithm,
            issuer=settings.token_issuer,
            verification_keys=settings.verification_keys,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, claims: BearerClaims, ttl: timedelta) -> str:
        """Encode claims with exp = now + ttl and sign with the current key."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(claims.account_id),
            "typ": claims.kind,
            "iss": self.issuer,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_hex(16),
        }
        if isinstance(claims, AccessClaims):
            payload["email"] = claims.email
        else:
            payload["lnk"] = claims.access_token
        return jwt.encode(payload, self._signing_key, algorithm=self.algorithm)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str) -> BearerClaims:
        """Decode and verify a token.

        Raises:
            TokenMalformed:        not a JWT, or claims missing / ill-typed.
            TokenInvalidSignature: wrong alg, bad signature, foreign issuer.
            TokenExpired:          signature fine, exp elapsed.
        """
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformed() from exc

        if header.get("alg") != self.algorithm:
            logger.warning("Rejected token with unexpected alg %r", header.get("alg"))
            raise TokenInvalidSignature()

        payload = self._decode_with_any_key(token)
        return self._to_claims(payload)

    def _decode_with_any_key(self, token: str) -> dict:
        last_error: JWTError | None = None
        for key in self._verification_keys:
            try:
                return jwt.decode(
                    token,
                    key,
                    algorithms=[self.algorithm],
                    issuer=self.issuer,
                    options={"require_exp": True, "verify_aud": False},
                )
            except ExpiredSignatureError as exc:
                # jose checks the signature before exp, so this key signed it.
                raise TokenExpired() from exc
            except JWTError as exc:
                last_error = exc
        raise TokenInvalidSignature() from last_error

    def _to_claims(self, payload: dict) -> BearerClaims:
        if any(name not in payload for name in _REQUIRED_CLAIMS):
            raise TokenMalformed("Token is missing required claims.")
        try:
            account_id = int(payload["sub"])
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError) as exc:
            raise TokenMalformed("Token claims have the wrong type.") from exc

        kind = payload["typ"]
        if kind == AccessClaims.kind and isinstance(payload.get("email"), str):
            return AccessClaims(
                account_id=account_id,
                email=payload["email"],
                issuer=payload.get("iss", ""),
                expires_at=expires_at,
                token_id=str(payload["jti"]),
            )
        if kind == RefreshClaims.kind and isinstance(payload.get("lnk"), str):
            return RefreshClaims(
                account_id=account_id,
                access_token=payload["lnk"],
                issuer=payload.get("iss", ""),
                expires_at=expires_at,
                token_id=str(payload["jti"]),
            )
        raise TokenMalformed("Unknown token type.")
