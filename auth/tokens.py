"""
auth/tokens.py -- Signed bearer tokens (access + refresh).

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       account_id, username, role, typ, jti plus the registered claims iss,
       aud, iat and exp.

  typ: access and refresh tokens share one encoding. The typ claim lets
       verify() refuse a refresh token presented where an access token is
       expected (and the reverse).

  jti: a random 128-bit id. Two tokens issued for the same account within the
       same second would otherwise be byte-identical; rotation must always
       hand out a new string.

  verify() raises TokenExpired / TokenInvalid. Nothing here touches storage.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.models import Account, TokenKind, TokenPair

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("scaffold.auth.tokens")

_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("account_id", "username", "role", "typ", "iss", "aud", "iat", "exp")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Issues and verifies signed bearer tokens. Holds configuration only, no state.

    Usage:
        codec = TokenCodec(secret_key, issuer="backend-api-scaffold", audience="scaffold-client")
        token = codec.issue_access({"account_id": 1, "username": "alice", "role": "user"})
        claims = codec.verify(token)
    """

    def __init__(
        self,
        secret_key: str,
        issuer: str,
        audience: str,
        access_lifetime: timedelta = timedelta(days=7),
        refresh_lifetime: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> TokenCodec:
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_lifetime=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_lifetime=timedelta(seconds=settings.refresh_token_expire_seconds),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access(self, claims: dict[str, Any]) -> str:
        return self._encode(claims, TokenKind.ACCESS, self.access_lifetime)

    def issue_refresh(self, claims: dict[str, Any]) -> str:
        return self._encode(claims, TokenKind.REFRESH, self.refresh_lifetime)

    def issue_pair(self, account: Account) -> TokenPair:
        """Issue a brand-new access + refresh pair for account."""
        claims = account_claims(account)
        return TokenPair(
            access_token=self.issue_access(claims),
            refresh_token=self.issue_refresh(claims),
            expires_in=int(self.access_lifetime.total_seconds()),
        )

    def _encode(self, claims: dict[str, Any], kind: TokenKind, lifetime: timedelta) -> str:
        now = self._clock()
        payload = dict(claims)
        payload.update(
            {
                "typ": kind.value,
                "jti": secrets.token_hex(16),
                "iss": self.issuer,
                "aud": self.audience,
                "iat": now,
                "exp": now + lifetime,
            }
        )
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, kind: TokenKind | None = TokenKind.ACCESS) -> dict[str, Any]:
        """Decode and verify token, returning its claims.

        Raises TokenExpired when exp has passed, TokenInvalid for a bad
        signature, issuer, audience, missing claims, or a kind mismatch.
        Pass kind=None to accept either kind. Expiry is judged against the
        codec's clock, not the wall clock.
        """
        if not token:
            raise TokenInvalid("Token is empty.")
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise TokenInvalid() from exc

        missing = [name for name in _REQUIRED_CLAIMS if name not in claims]
        if missing:
            raise TokenInvalid(f"Token is missing claims: {', '.join(missing)}")
        exp = claims["exp"]
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalid("Token exp claim is not a timestamp.")
        if exp <= self._clock().timestamp():
            raise TokenExpired()
        if kind is not None and claims["typ"] != kind.value:
            raise TokenInvalid(f"Expected a {kind.value} token.")
        return claims


def account_claims(account: Account) -> dict[str, Any]:
    """The identity claims carried by every token issued for account."""
    return {
        "account_id": account.id,
        "username": account.username,
        "role": account.role.value,
    }
