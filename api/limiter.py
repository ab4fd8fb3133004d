"""
api/limiter.py -- Shared slowapi rate limiter instance.

Per-client-address throttling for the credential endpoints (login, register,
reset-password). This is deliberately separate from per-account lockout
state in auth/lockout.py: the limiter slows down one client hammering many
accounts, lockout protects one account from many clients.

The in-memory storage expires each counter when its window ends, so the key
space stays bounded by the number of clients seen in one window.

Using a single shared instance ensures all routes share the same counter
store. api/main.py attaches it to app.state for SlowAPIMiddleware.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    """Limit string for credential endpoints, read at request time from settings."""
    return get_settings().login_rate_limit
