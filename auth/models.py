"""
auth/models.py -- Domain dataclasses and enumerations for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial
predicates). Stores and services do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    GUEST = "guest"
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"
    PENDING = "pending"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNKNOWN = "unknown"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class Account:
    """The persisted identity record.

    password_hash is None for accounts created through the mini-app exchange;
    external_id / external_union_id are None for local-only accounts. Both may
    be present once a local account is linked.

    failed_attempts / locked_until hold the lockout state (see auth/lockout.py).
    version is bumped by the store on every write and is the optimistic
    concurrency token passed back into AccountRepository.update().
    """

    username: str
    id: int | None = None
    email: str | None = None
    phone: str | None = None
    password_hash: str | None = None
    nickname: str | None = None
    avatar: str | None = None
    gender: Gender = Gender.UNKNOWN
    role: Role = Role.USER
    status: AccountStatus = AccountStatus.ACTIVE
    external_id: str | None = None
    external_union_id: str | None = None
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE and self.deleted_at is None


@dataclass(frozen=True)
class Registration:
    """Input for AuthService.register()."""

    username: str
    password: str
    email: str | None = None
    phone: str | None = None
    nickname: str | None = None


@dataclass(frozen=True)
class ProfileHints:
    """Optional profile data supplied by the mini-app client on login.

    gender follows the provider convention: 1 = male, 2 = female, anything
    else = unknown.
    """

    nickname: str | None = None
    avatar: str | None = None
    gender: int | None = None


@dataclass(frozen=True)
class ExternalIdentity:
    """Result of a successful identity-provider code exchange."""

    external_id: str
    external_union_id: str | None
    session_secret: str | None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds


@dataclass(frozen=True)
class AuthResult:
    """Success payload for register / login / external login."""

    account: Account
    tokens: TokenPair
    session_secret: str | None = None  # only set by external login
