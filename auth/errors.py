"""
auth/errors.py -- Closed failure taxonomy for the authentication core.

Every business failure is one of the AuthError subclasses below. Callers
branch on the class (or on the stable `code` string) rather than on message
text. `status_code` is a hint for the HTTP layer only; nothing inside auth/
depends on it.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    """Base class for every typed failure surfaced by the auth core."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message

    @property
    def detail(self) -> dict | None:
        """Structured extra fields for the error envelope (None when there are none)."""
        return None


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 422

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason

    @property
    def detail(self) -> dict:
        return {"field": self.field, "reason": self.reason}


class EncodingError(AuthError):
    """The password hashing primitive rejected its input (e.g. NUL byte)."""

    code = "encoding_error"
    status_code = 422
    message = "Password could not be encoded."


class DuplicateField(AuthError):
    """A uniqueness constraint was violated. `field` names the first conflict."""

    code = "duplicate_field"
    status_code = 409

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already exists.")
        self.field = field

    @property
    def detail(self) -> dict:
        return {"field": self.field}


class AccountNotFound(AuthError):
    code = "account_not_found"
    status_code = 404
    message = "Account not found."


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 403
    message = "Account is not active."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account is temporarily locked. Try again later."

    def __init__(self, locked_until: datetime | None = None) -> None:
        super().__init__()
        self.locked_until = locked_until

    @property
    def detail(self) -> dict | None:
        if self.locked_until is None:
            return None
        return {"locked_until": self.locked_until.isoformat()}


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid account or password."


class TokenExpired(AuthError):
    code = "token_expired"
    status_code = 401
    message = "Token has expired."


class TokenInvalid(AuthError):
    code = "token_invalid"
    status_code = 401
    message = "Invalid token."


class InsufficientRole(AuthError):
    code = "insufficient_role"
    status_code = 403
    message = "Insufficient permissions."


class OwnershipDenied(AuthError):
    code = "ownership_denied"
    status_code = 403
    message = "Access denied: not the resource owner."


class ExchangeFailed(AuthError):
    """The identity provider answered with an error code."""

    code = "exchange_failed"
    status_code = 502

    def __init__(self, provider_code: int | str | None, provider_message: str | None) -> None:
        super().__init__(f"Identity provider rejected the login code: {provider_message or 'unknown error'}")
        self.provider_code = provider_code
        self.provider_message = provider_message

    @property
    def detail(self) -> dict:
        return {"provider_code": self.provider_code, "provider_message": self.provider_message}


class ExchangeUnavailable(AuthError):
    code = "exchange_unavailable"
    status_code = 503
    message = "Identity provider is unreachable."


class NotConfigured(AuthError):
    code = "not_configured"
    status_code = 503
    message = "Identity provider credentials are not configured."


class RepositoryUnavailable(AuthError):
    code = "repository_unavailable"
    status_code = 503
    message = "Account storage is unavailable."


class StaleAccount(Exception):
    """Optimistic-concurrency conflict: the row changed since it was read.

    Not an AuthError -- it never reaches callers. AuthService reloads the
    account and recomputes the transition.
    """

    def __init__(self, account_id: int, expected_version: int) -> None:
        super().__init__(f"Account {account_id} changed since version {expected_version}")
        self.account_id = account_id
        self.expected_version = expected_version
