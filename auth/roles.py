"""
auth/roles.py -- Role hierarchy and permission decisions.

The hierarchy is a closed enumeration (auth.models.Role) plus a static level
table. Higher level means more privilege. Decisions are pure functions over an
already-authenticated identity; the require_* variants raise the typed
failures for callers that want an exception instead of a bool.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from types import MappingProxyType

from auth.errors import InsufficientRole, OwnershipDenied
from auth.models import Account, Role

logger = logging.getLogger("scaffold.auth.security")

ROLE_LEVELS: MappingProxyType[Role, int] = MappingProxyType(
    {
        Role.GUEST: 0,
        Role.USER: 10,
        Role.MODERATOR: 20,
        Role.ADMIN: 30,
        Role.SUPER_ADMIN: 99,
    }
)


def role_level(role: Role | str) -> int:
    """Level of role. Raises ValueError for a name outside the enumeration."""
    return ROLE_LEVELS[Role(role)]


def authorize(account_role: Role | str, allowed_roles: Iterable[Role | str]) -> bool:
    """True iff account_role reaches the weakest role in allowed_roles.

    Satisfying any one listed role is enough, and the order is total, so this
    is a single threshold check. An empty allowed set grants nothing.
    """
    levels = [role_level(r) for r in allowed_roles]
    if not levels:
        return False
    return role_level(account_role) >= min(levels)


def authorize_ownership(requester: Account, resource_owner_id: int) -> bool:
    """True for admin-or-above, or when requester owns the resource."""
    if role_level(requester.role) >= ROLE_LEVELS[Role.ADMIN]:
        return True
    return requester.id is not None and requester.id == resource_owner_id


def require_role(account: Account, allowed_roles: Iterable[Role | str]) -> None:
    allowed = list(allowed_roles)
    if not authorize(account.role, allowed):
        logger.warning(
            "insufficient_role account_id=%s role=%s required=%s",
            account.id,
            account.role.value,
            [Role(r).value for r in allowed],
        )
        raise InsufficientRole()


def require_ownership(account: Account, resource_owner_id: int) -> None:
    if not authorize_ownership(account, resource_owner_id):
        logger.warning("ownership_denied account_id=%s resource_owner_id=%s", account.id, resource_owner_id)
        raise OwnershipDenied()
