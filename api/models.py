"""
API request and response models for the authentication REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field constraints here are a first, cheap filter. The authoritative format
rules (username charset, email, phone, password policy) live in
auth/service.py and surface as ValidationError with the same 422 envelope.
"""

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

from auth.models import Account, AccountStatus, AuthResult, Gender, Role, TokenPair

# Identifiers and display fields are trimmed. Passwords are never touched:
# the exact string the user typed is what gets hashed and later compared.
StrippedStr = Annotated[str, StringConstraints(strip_whitespace=True)]

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: StrippedStr = Field(min_length=3, max_length=50)
    password: str = Field(min_length=1, max_length=255)
    confirm_password: Optional[str] = Field(default=None, max_length=255)
    email: Optional[StrippedStr] = Field(default=None, max_length=100)
    phone: Optional[StrippedStr] = Field(default=None, max_length=20)
    nickname: Optional[StrippedStr] = Field(default=None, max_length=50)

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("confirm_password does not match password")
        return self


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. account is a username, email or phone."""

    account: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ValidateTokenRequest(BaseModel):
    token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    account: str = Field(min_length=1, max_length=100)
    verification_code: str = Field(min_length=1, max_length=32)
    new_password: str = Field(min_length=1, max_length=255)


class MiniProgramUserInfo(BaseModel):
    """Profile data the mini-app client forwards. gender: 1 male, 2 female, 0 unknown."""

    model_config = ConfigDict(populate_by_name=True)

    nickname: Optional[str] = Field(default=None, alias="nickName", max_length=100)
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl", max_length=1000)
    gender: Optional[int] = None


class MiniProgramLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1, max_length=256)
    user_info: Optional[MiniProgramUserInfo] = Field(default=None, alias="userInfo")


class ProfileUpdate(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Omitted fields stay unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    nickname: Optional[str] = Field(default=None, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=1000)
    gender: Optional[Gender] = None
    email: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)


class StatusUpdate(BaseModel):
    status: AccountStatus


class RoleUpdate(BaseModel):
    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an Account. Never includes the password hash or lockout counters."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str]
    phone: Optional[str]
    nickname: Optional[str]
    avatar: Optional[str]
    gender: Gender
    role: Role
    status: AccountStatus
    last_login_at: Optional[str]
    created_at: Optional[str]
    deleted_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            phone=account.phone,
            nickname=account.nickname,
            avatar=account.avatar,
            gender=account.gender,
            role=account.role,
            status=account.status,
            last_login_at=account.last_login_at.isoformat() if account.last_login_at else None,
            created_at=account.created_at.isoformat() if account.created_at else None,
            deleted_at=account.deleted_at.isoformat() if account.deleted_at else None,
        )


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(access_token=pair.access_token, refresh_token=pair.refresh_token, expires_in=pair.expires_in)


class AuthResponse(TokenResponse):
    """Response for register / login / mini-app login."""

    account: AccountResponse
    session_key: Optional[str] = None

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResponse":
        return cls(
            account=AccountResponse.from_account(result.account),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
            session_key=result.session_secret,
        )


class ValidateTokenResponse(BaseModel):
    valid: bool
    account: AccountResponse
    claims: dict[str, Any]


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Structured error payload used in all non-2xx API responses."""

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope: {"error": {...}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
