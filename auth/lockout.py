"""
auth/lockout.py -- Per-account failed-attempt counter and timed lock.

States:
  Unlocked -- locked_until is None or not in the future.
  Locked   -- locked_until is strictly in the future.

LockoutPolicy is a pure transition function: it reads an Account snapshot and
returns the field updates to persist. It never writes. AuthService applies
the updates through AccountRepository.update(..., expected_version=...) so
two concurrent failures against the same account cannot both write the same
post-increment value (see the compare-and-swap loop in auth/service.py).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from auth.models import Account

if TYPE_CHECKING:
    from core.config import Settings


class LockoutPolicy:
    def __init__(
        self,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        enabled: bool = True,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> LockoutPolicy:
        return cls(
            max_attempts=settings.lockout_max_attempts,
            lockout_duration=timedelta(seconds=settings.lockout_duration_seconds),
            enabled=settings.lockout_enabled,
        )

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.locked_until is not None and account.locked_until > now

    def on_success(self, account: Account, now: datetime, ip: str | None = None) -> dict[str, Any]:
        """Updates for a login with correct credentials."""
        return {
            "failed_attempts": 0,
            "locked_until": None,
            "last_login_at": now,
            "last_login_ip": ip,
        }

    def on_failure(self, account: Account, now: datetime) -> dict[str, Any]:
        """Updates for a login with wrong credentials while Unlocked.

        An expired lock starts a new window: the stale lock is cleared and this
        failure counts as the first one.
        """
        if self.is_locked(account, now):
            # Locked accounts are rejected before credentials are checked.
            return {}
        if account.locked_until is not None:
            return {"failed_attempts": 1, "locked_until": None}

        attempts = account.failed_attempts + 1
        updates: dict[str, Any] = {"failed_attempts": attempts}
        if self.enabled and attempts >= self.max_attempts:
            updates["locked_until"] = now + self.lockout_duration
        return updates

    def on_reset(self) -> dict[str, Any]:
        """Updates applied by a password reset: clear the counter and any lock."""
        return {"failed_attempts": 0, "locked_until": None}
