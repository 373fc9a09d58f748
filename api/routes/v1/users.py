"""
api/routes/v1/users.py -- Self-service profile endpoints.

Routes:
  GET    /api/v1/users   -- own profile
  PATCH  /api/v1/users   -- update own display fields (username, names, avatar_id)
  DELETE /api/v1/users   -- deactivate own account (terminal)

There is no admin surface: every route acts on the account behind the bearer
token, so there is no id in the path to tamper with.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.models import AccountResponse, ProfilePatch
from auth.context import RequestContext
from auth.dependencies import get_current_account, get_service, require_bearer
from auth.models import Account
from auth.service import AuthenticationService

# All routes on this router require an authenticated ACTIVE account.
router = APIRouter(dependencies=[Depends(get_current_account)])


@router.get("/users", response_model=AccountResponse)
def get_profile(account: Account = Depends(get_current_account)) -> AccountResponse:
    return AccountResponse.from_account(account)


@router.patch("/users", response_model=AccountResponse)
def update_profile(
    body: ProfilePatch,
    ctx: RequestContext = Depends(require_bearer),
    service: AuthenticationService = Depends(get_service),
) -> AccountResponse:
    """Apply the fields present in the body; absent fields are left unchanged."""
    patch = body.model_dump(exclude_unset=True)
    account = service.update_profile(ctx.account_id, patch, ctx)
    return AccountResponse.from_account(account)


@router.delete("/users", status_code=204)
def deactivate(
    ctx: RequestContext = Depends(require_bearer),
    service: AuthenticationService = Depends(get_service),
) -> Response:
    """Deactivate the caller's account and revoke its refresh token.

    The current access token keeps a valid signature until it expires, but
    every bearer route refuses it because the account is no longer active.
    """
    service.deactivate(ctx.account_id, ctx)
    return Response(status_code=204)
