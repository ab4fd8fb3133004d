"""
api/routes/v1/users.py -- Account administration endpoints.

Routes:
  GET    /api/v1/users/{account_id}          -- owner or admin+
  PATCH  /api/v1/users/{account_id}          -- owner or admin+; profile fields
  PATCH  /api/v1/users/{account_id}/status   -- admin+
  PATCH  /api/v1/users/{account_id}/role     -- admin+; super_admin to grant super_admin
  DELETE /api/v1/users/{account_id}          -- admin+; soft delete
  POST   /api/v1/users/{account_id}/restore  -- admin+

[M4] Admins cannot change their own status or role, nor delete themselves.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AccountResponse, ProfileUpdate, RoleUpdate, StatusUpdate
from auth.dependencies import get_auth_service, get_current_account, require_admin
from auth.models import Account, Role
from auth.roles import require_ownership, require_role

router = APIRouter()


def _reject_self(current: Account, account_id: int, action: str) -> None:
    if current.id == account_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_modification", "message": f"Cannot {action} your own account."},
        )


@router.get("/users/{account_id}", response_model=AccountResponse)
def get_user(
    request: Request,
    account_id: int,
    current: Account = Depends(get_current_account),
) -> AccountResponse:
    require_ownership(current, account_id)
    return AccountResponse.from_account(get_auth_service(request).get_account(account_id))


@router.patch("/users/{account_id}", response_model=AccountResponse)
def update_user(
    request: Request,
    account_id: int,
    body: ProfileUpdate,
    current: Account = Depends(get_current_account),
) -> AccountResponse:
    """Update profile fields. Omitted fields are left alone."""
    require_ownership(current, account_id)
    account = get_auth_service(request).update_profile(
        account_id,
        nickname=body.nickname,
        avatar=body.avatar,
        gender=body.gender,
        email=body.email,
        phone=body.phone,
    )
    return AccountResponse.from_account(account)


@router.patch("/users/{account_id}/status", response_model=AccountResponse)
def update_user_status(
    request: Request,
    account_id: int,
    body: StatusUpdate,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    _reject_self(current, account_id, "change the status of")
    account = get_auth_service(request).update_status(account_id, body.status)
    return AccountResponse.from_account(account)


@router.patch("/users/{account_id}/role", response_model=AccountResponse)
def update_user_role(
    request: Request,
    account_id: int,
    body: RoleUpdate,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    """Change an account's role.

    Granting super_admin, or touching an account that already holds it,
    requires the caller to be super_admin.
    """
    _reject_self(current, account_id, "change the role of")
    service = get_auth_service(request)
    target = service.get_account(account_id)
    if Role.SUPER_ADMIN in (body.role, target.role):
        require_role(current, [Role.SUPER_ADMIN])
    return AccountResponse.from_account(service.update_role(account_id, body.role))


@router.delete("/users/{account_id}", response_model=AccountResponse)
def delete_user(
    request: Request,
    account_id: int,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    _reject_self(current, account_id, "delete")
    return AccountResponse.from_account(get_auth_service(request).delete_account(account_id))


@router.post("/users/{account_id}/restore", response_model=AccountResponse)
def restore_user(
    request: Request,
    account_id: int,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    return AccountResponse.from_account(get_auth_service(request).restore_account(account_id))
