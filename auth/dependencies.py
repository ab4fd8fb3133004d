"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens are read from the "Authorization: Bearer <token>" header and
verified by AuthService.validate_token(), which also re-checks that the
account is still active.

get_current_account() raises HTTP 401 when no token is sent; any typed
AuthError from verification propagates to the AuthError exception handler
in api/main.py.
require_roles() builds a dependency enforcing the role hierarchy.

Layer rule: auth/dependencies.py may import from fastapi (for Depends /
HTTPException / Request) because it is part of the FastAPI dependency
injection system. No imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import Account, Role
from auth.roles import require_role
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_account(request: Request) -> Account:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Access token is required."},
        )
    account, _claims = get_auth_service(request).validate_token(token)
    return account


def require_roles(*roles: Role) -> Callable[..., Account]:
    """Dependency factory: the caller must reach the weakest of roles.

        @router.patch("/users/{id}/status")
        def route(account: Account = Depends(require_roles(Role.ADMIN))): ...
    """

    def dependency(account: Account = Depends(get_current_account)) -> Account:
        require_role(account, roles)
        return account

    return dependency


require_admin = require_roles(Role.ADMIN)
