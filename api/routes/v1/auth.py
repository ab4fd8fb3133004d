"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register            -- create account; returns token pair
  POST /api/v1/auth/login               -- password login; returns token pair
  POST /api/v1/auth/refresh             -- rotate a refresh token into a new pair
  POST /api/v1/auth/logout              -- record logout (requires auth)
  GET  /api/v1/auth/me                  -- current account (requires auth)
  POST /api/v1/auth/change-password     -- requires auth + current password
  POST /api/v1/auth/reset-password      -- code already verified upstream
  POST /api/v1/auth/validate-token      -- verify an access token
  POST /api/v1/auth/miniprogram/login   -- mini-app code exchange login

Security:
  [H2] login, register and reset-password are rate-limited per client address.
  [C1] Timing equalization lives in AuthService.login() -- never inline lookups.
  Unknown account and wrong password return the same 401 body on /login so the
       endpoint cannot be used to enumerate accounts.
  [M5] Cache-Control: no-store on every response that carries tokens.

Every other failure is a typed AuthError and is rendered by the handler in
api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    AccountResponse,
    AuthResponse,
    ChangePasswordRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    MessageResponse,
    MiniProgramLoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from auth.dependencies import get_auth_service, get_current_account
from auth.errors import AccountNotFound, InvalidCredentials
from auth.models import Account, ProfileHints, Registration
from auth.service import AuthService

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh, /auth/reset-password,
#        /auth/validate-token, /auth/miniprogram/login: public
# - POST /auth/logout, /auth/change-password, GET /auth/me: bearer token
router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account. Conflicts report username before email before phone."""
    service: AuthService = get_auth_service(request)
    result = service.register(
        Registration(
            username=body.username,
            password=body.password,
            email=body.email,
            phone=body.phone,
            nickname=body.nickname,
        ),
        ip=_client_ip(request),
    )
    return _no_store(AuthResponse.from_result(result).model_dump(mode="json"), status_code=201)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username/email/phone and password.

    AccountNotFound and InvalidCredentials produce the same response so a
    caller cannot tell which factor was wrong. Locked and inactive accounts
    get their own codes -- those states are only reachable for existing
    accounts after the password check is timing-equalized.
    """
    service: AuthService = get_auth_service(request)
    try:
        result = service.login(body.account, body.password, ip=_client_ip(request))
    except (AccountNotFound, InvalidCredentials):
        error = InvalidCredentials()
        return _no_store(
            ErrorResponse(error=ErrorDetail(code=error.code, message=error.message)).model_dump(),
            status_code=error.status_code,
        )
    return _no_store(AuthResponse.from_result(result).model_dump(mode="json"))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a brand-new access + refresh pair."""
    service: AuthService = get_auth_service(request)
    pair = service.refresh(body.refresh_token)
    return _no_store(TokenResponse.from_pair(pair).model_dump())


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password. The verification code is validated by the caller's code service."""
    service: AuthService = get_auth_service(request)
    service.reset_password(body.account, body.verification_code, body.new_password)
    return MessageResponse(message="Password reset.")


@router.post("/auth/validate-token", response_model=ValidateTokenResponse)
def validate_token(request: Request, body: ValidateTokenRequest) -> ValidateTokenResponse:
    service: AuthService = get_auth_service(request)
    account, claims = service.validate_token(body.token)
    return ValidateTokenResponse(valid=True, account=AccountResponse.from_account(account), claims=claims)


@router.post("/auth/miniprogram/login", response_model=AuthResponse)
def miniprogram_login(request: Request, body: MiniProgramLoginRequest) -> JSONResponse:
    """Log in with a mini-app login code; creates the account on first sight."""
    service: AuthService = get_auth_service(request)
    hints = None
    if body.user_info is not None:
        hints = ProfileHints(
            nickname=body.user_info.nickname,
            avatar=body.user_info.avatar_url,
            gender=body.user_info.gender,
        )
    result = service.external_login(body.code, hints, ip=_client_ip(request))
    return _no_store(AuthResponse.from_result(result).model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(current: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the currently authenticated account."""
    return AccountResponse.from_account(current)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current: Account = Depends(get_current_account)) -> MessageResponse:
    """Record the logout. Issued tokens stay valid until they expire; clients discard them."""
    get_auth_service(request).logout(current.id, ip=_client_ip(request))
    return MessageResponse(message="Logged out.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current: Account = Depends(get_current_account),
) -> MessageResponse:
    get_auth_service(request).change_password(current.id, body.old_password, body.new_password)
    return MessageResponse(message="Password changed.")
