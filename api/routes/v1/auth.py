"""
api/routes/v1/auth.py -- Account lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/signup              -- create unverified account; mails activation link
  GET  /api/v1/auth/activate/{token}    -- consume activation token
  POST /api/v1/auth/signin              -- email + password -> token pair
  POST /api/v1/auth/refresh             -- rotate refresh token -> new token pair
  POST /api/v1/auth/password-reset      -- mail a password reset link
  POST /api/v1/auth/change-password     -- consume reset token, set new password
  POST /api/v1/auth/signout             -- revoke refresh token (requires auth)
  GET  /api/v1/auth/info                -- current account (requires auth)

Handlers are plain `def`: every service call blocks on the database (and
bcrypt), so FastAPI runs them in its thread pool.

Errors: handlers let AuthError propagate; api/main.py maps it onto the
ErrorResponse envelope with the error's own status code.

Security:
  [H2] signin, signup and password-reset are rate-limited per IP.
  [C1] timing equalization lives in AccountStore.verify_credentials.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    ChangePasswordRequest,
    MessageResponse,
    PasswordResetRequest,
    RefreshRequest,
    SigninRequest,
    SignupRequest,
    SignupResponse,
    TokenPairResponse,
)
from auth.context import RequestContext
from auth.dependencies import get_current_account, get_request_context, get_service, require_bearer
from auth.errors import InvalidCredentials, NotVerified
from auth.models import Account, SignupProfile
from auth.service import AuthenticationService

# Auth policy:
# - signup, activate, signin, refresh, password-reset, change-password: public
# - signout, info: requires a bearer access token
router = APIRouter()


def _token_response(body: TokenPairResponse) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=SignupResponse, status_code=201)
@limiter.limit(login_rate_limit)  # [H2]
def signup(
    request: Request,
    body: SignupRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
) -> SignupResponse:
    """Register a new account. It stays unverified until the mailed link is opened.

    A mail failure answers 502, but the account exists: a later signin says
    not_verified and the link in any delivered mail still works.
    """
    profile = SignupProfile(
        email=body.email,
        password=body.password,
        username=body.username,
        name=body.name,
        surname=body.surname,
        patronymic=body.patronymic,
    )
    account_id = service.signup(profile, ctx)
    return SignupResponse(id=account_id)


@router.get("/auth/activate/{token}", response_model=MessageResponse)
def activate(
    request: Request,
    token: str,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
):
    """Consume an activation token from the mailed link.

    When ACTIVATION_REDIRECT_URL is configured the browser is sent there
    (307) instead of getting a JSON body.
    """
    service.activate(token, ctx)
    redirect_url = request.app.state.settings.activation_redirect_url
    if redirect_url:
        return RedirectResponse(redirect_url, status_code=307)
    return MessageResponse(message="Account activated.")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/signin", response_model=TokenPairResponse)
@limiter.limit(login_rate_limit)  # [H2] brute-force mitigation
def signin(
    request: Request,
    body: SigninRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh pair.

    Unknown email, wrong password and deactivated account all answer the same
    invalid_credentials. Only a correct password on an unverified account
    answers not_verified.
    """
    pair = service.signin(body.email, body.password, ctx)
    return _token_response(TokenPairResponse.from_pair(pair))


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(
    request: Request,
    body: RefreshRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
) -> JSONResponse:
    """Exchange the current refresh token for a new pair. The old one stops working."""
    pair = service.refresh(body.refresh_token, ctx)
    return _token_response(TokenPairResponse.from_pair(pair))


@router.post("/auth/signout", status_code=204)
def signout(
    ctx: RequestContext = Depends(require_bearer),
    service: AuthenticationService = Depends(get_service),
) -> Response:
    """Revoke the caller's refresh token. The access token expires on its own."""
    service.sign_out(ctx.account_id, ctx)
    return Response(status_code=204)


@router.get("/auth/info", response_model=AccountResponse)
def info(account: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the account behind the bearer token."""
    return AccountResponse.from_account(account)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset", response_model=MessageResponse, status_code=202)
@limiter.limit(login_rate_limit)  # [H2]
def password_reset(
    request: Request,
    body: PasswordResetRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
) -> MessageResponse:
    """Mail a password reset link to a verified, active account.

    With CONCEAL_UNKNOWN_RESET_EMAIL set, unknown and unverified emails
    answer 202 like a known one so the endpoint cannot be used to probe for
    accounts.
    """
    try:
        service.request_password_reset(body.email, ctx)
    except (InvalidCredentials, NotVerified):
        if not request.app.state.settings.conceal_unknown_reset_email:
            raise
    return MessageResponse(message="If the account exists, a reset link has been sent.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthenticationService = Depends(get_service),
) -> MessageResponse:
    """Set a new password with a reset token. Existing sessions are revoked."""
    service.change_password(body.token, body.password, ctx)
    return MessageResponse(message="Password changed.")
