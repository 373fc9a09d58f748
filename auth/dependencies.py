"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Only one auth method exists: an access token in the
Authorization: Bearer <token> header, signed by the service's TokenCodec.

get_request_context()   -- every route; deadline only, no identity.
require_bearer()        -- verifies the access token and binds the account id.
get_current_account()   -- require_bearer() + loads the account, must be ACTIVE.

Both the context and the claims are stored on request.state so later
dependencies and the route see the same objects.

Every failure is HTTP 401 with WWW-Authenticate: Bearer and a code naming
the failure kind (token_malformed, token_invalid, token_expired, ...).

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request

from auth.context import RequestContext
from auth.errors import NotFound, TokenError, TokenMalformed
from auth.models import AccessClaims, Account, AccountState
from auth.service import AuthenticationService

logger = logging.getLogger("smerauth.auth.dependencies")

_BEARER_PREFIX = "bearer "


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


def get_request_context(request: Request) -> RequestContext:
    """Return the per-request context, creating it on first use.

    The deadline comes from app.state.request_timeout (seconds, None = no
    deadline), set in the lifespan from Settings.request_timeout_seconds.
    """
    ctx = getattr(request.state, "auth_context", None)
    if ctx is None:
        ctx = RequestContext.with_timeout(getattr(request.app.state, "request_timeout", None))
        request.state.auth_context = ctx
    return ctx


def require_bearer(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
) -> RequestContext:
    """Verify the bearer access token and return a context bound to its owner.

    Refresh tokens are rejected here even when correctly signed: they are
    only accepted by POST /auth/refresh.
    """
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith(_BEARER_PREFIX):
        raise _unauthorized("unauthorized", "Authentication required.")
    token = header[len(_BEARER_PREFIX):].strip()
    if not token:
        raise _unauthorized(TokenMalformed.code, TokenMalformed.message)

    try:
        claims = service.codec.verify(token)
    except TokenError as exc:
        logger.info("Bearer rejected on %s: %s", request.url.path, exc.code)
        raise _unauthorized(exc.code, exc.message) from exc
    if not isinstance(claims, AccessClaims):
        raise _unauthorized("token_wrong_type", "An access token is required.")

    ctx = ctx.for_account(claims.account_id)
    request.state.auth_context = ctx
    request.state.claims = claims
    return ctx


def get_current_account(
    ctx: RequestContext = Depends(require_bearer),
    service: AuthenticationService = Depends(get_service),
) -> Account:
    """Require an authenticated ACTIVE account.

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(account: Account = Depends(get_current_account)): ...

    A valid access token whose account was deactivated after issue is
    refused here; access tokens are not tracked server-side.
    """
    try:
        account = service.get_account(ctx.account_id, ctx)
    except NotFound as exc:
        raise _unauthorized("unauthorized", "Authentication required.") from exc
    if account.state is not AccountState.ACTIVE:
        raise _unauthorized("account_inactive", "Account is not active.")
    return account
