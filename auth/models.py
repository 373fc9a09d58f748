"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Dataclasses own
domain shape; stores and the service do the work. The API layer has its own
Pydantic models in api/models.py and maps between the two.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union


class TokenPurpose(str, Enum):
    ACTIVATE = "ACTIVATE"
    PASSWORD_RESET = "PASSWORD_RESET"


class AccountState(str, Enum):
    """Lifecycle state derived from the verified/active flags.

    Unregistered has no row, so it never appears here.
    """

    UNVERIFIED = "unverified"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


@dataclass
class Account:
    """An end-user identity.

    password_hash is a bcrypt hash (salt embedded). It is never returned by
    the API and never logged.

    avatar_id references an uploaded file owned by a separate storage
    collaborator; the auth core only carries the id.
    """

    email: str
    password_hash: str
    id: int | None = None
    username: str = ""
    name: str = ""
    surname: str = ""
    patronymic: str = ""
    is_verified: bool = False
    is_active: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    avatar_id: int | None = None

    @property
    def state(self) -> AccountState:
        if not self.is_verified:
            return AccountState.UNVERIFIED
        return AccountState.ACTIVE if self.is_active else AccountState.DEACTIVATED


@dataclass
class SignupProfile:
    """Input to signup. password is plaintext and only lives for the request."""

    email: str
    password: str
    username: str = ""
    name: str = ""
    surname: str = ""
    patronymic: str = ""


# Fields AccountStore.update() may touch. Email and password_hash are not here.
PROFILE_FIELDS = frozenset({"username", "name", "surname", "patronymic", "avatar_id"})


@dataclass
class OneTimeToken:
    """A persisted activation / password-reset token.

    token_hash is SHA-256 of the value mailed to the user; the raw value is
    never stored.
    """

    token_hash: str
    owner_id: int
    purpose: TokenPurpose
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ---------------------------------------------------------------------------
# Bearer claims -- tagged variant. The "typ" claim selects the class on decode.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessClaims:
    account_id: int
    email: str
    issuer: str = ""
    expires_at: datetime | None = None  # set by TokenCodec
    token_id: str = ""  # jti, set by TokenCodec

    kind = "access"


@dataclass(frozen=True)
class RefreshClaims:
    """Refresh token claims.

    access_token is the access token minted alongside this refresh token. It
    is an audit link only; the registry, not this claim, decides validity.
    """

    account_id: int
    access_token: str
    issuer: str = ""
    expires_at: datetime | None = None
    token_id: str = ""

    kind = "refresh"


BearerClaims = Union[AccessClaims, RefreshClaims]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
