"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure that crosses the core boundary is one of these classes. Raw
SQLAlchemy / jose / smtplib exceptions are logged where they happen and then
translated (chained with `raise ... from exc`) so callers never see them.

Each error carries a machine-readable code, a client-safe message and the
HTTP status the API layer should use. The API maps them 1:1 onto the
ErrorResponse envelope; nothing in auth/ knows about FastAPI.

Enumeration note: InvalidCredentials is deliberately generic -- unknown
email, wrong password and deactivated account are indistinguishable.
NotVerified is the one intentional exception so the client can tell the user
to check their inbox.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by the auth core."""

    code = "auth_error"
    message = "Authentication error."
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(AuthError):
    code = "validation_error"
    message = "Request validation failed."
    status_code = 422

    def __init__(self, message: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    message = "An account with that email already exists."
    status_code = 409


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class NotVerified(AuthError):
    code = "not_verified"
    message = "Account is not activated. Check your inbox for the activation link."
    status_code = 401


class NotFound(AuthError):
    code = "not_found"
    message = "Account not found."
    status_code = 404


# ---------------------------------------------------------------------------
# Token errors -- distinct kinds so callers can react differently
# (e.g. silently refresh on TokenExpired, force re-login on the others).
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    code = "token_error"
    message = "Token rejected."
    status_code = 401


class TokenMalformed(TokenError):
    code = "token_malformed"
    message = "Token could not be parsed."


class TokenInvalidSignature(TokenError):
    code = "token_invalid"
    message = "Token signature is invalid."


class TokenExpired(TokenError):
    code = "token_expired"
    message = "Token has expired."


class TokenNotFound(TokenError):
    code = "token_not_found"
    message = "Token is not valid."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class PersistenceError(AuthError):
    """Store failure. The transaction was rolled back; retrying is safe."""

    code = "persistence_error"
    message = "The account store is unavailable. Try again."
    status_code = 503

    def __init__(self, operation: str, message: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.operation = operation
        self.retryable = retryable


class MailError(AuthError):
    """Mail delivery failed. The core write that preceded it stays committed."""

    code = "mail_error"
    message = "The email could not be delivered."
    status_code = 502
