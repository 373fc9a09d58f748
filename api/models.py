"""
API request and response models for the smer-auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field lengths are checked here for a fast 422; the service re-validates
everything because the CLI reaches it without going through HTTP.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, TokenPair

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Email and display fields are trimmed; password is stored exactly as sent.
    """

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=72)
    username: str = Field(default="", max_length=255)
    name: str = Field(default="", max_length=255)
    surname: str = Field(default="", max_length=255)
    patronymic: str = Field(default="", max_length=255)

    @field_validator("email", "username", "name", "surname", "patronymic", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class SigninRequest(BaseModel):
    """Request body for POST /api/v1/auth/signin.

    No length rules on password: a wrong password must look the same as any
    other failed signin, not as a 422.
    """

    email: str = Field(max_length=255)
    password: str = Field(max_length=1024)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh. Also accepts {"token": ...}."""

    refresh_token: str = Field(
        min_length=1,
        max_length=4096,
        validation_alias=AliasChoices("refresh_token", "token"),
    )


class PasswordResetRequest(BaseModel):
    email: str = Field(max_length=255)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password.

    The reset token is also accepted as "hash", the name the web client posts.
    """

    token: str = Field(min_length=1, max_length=128, validation_alias=AliasChoices("token", "hash"))
    password: str = Field(min_length=8, max_length=72)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/users.

    extra="forbid" rejects email, password and flag fields with a 422 instead
    of silently ignoring them.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    surname: Optional[str] = Field(default=None, max_length=255)
    patronymic: Optional[str] = Field(default=None, max_length=255)
    avatar_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    """Response for signin and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class AccountResponse(BaseModel):
    """Public view of an account. password_hash is never part of it."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    name: str
    surname: str
    patronymic: str
    is_verified: bool
    is_active: bool
    avatar_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Build an AccountResponse from a domain Account (Factory Method)."""
        return cls(
            id=account.id,
            email=account.email,
            username=account.username,
            name=account.name,
            surname=account.surname,
            patronymic=account.patronymic,
            is_verified=account.is_verified,
            is_active=account.is_active,
            avatar_id=account.avatar_id,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class SignupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    message: str = "Account created. Check your inbox for the activation link."


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
