"""Unit tests for auth/tokens.py -- TokenCodec.

Covers:
- issued tokens verify and carry account_id / username / role / typ / jti
- issue_pair() returns access + refresh with expires_in from the access lifetime
- two pairs issued at the same instant differ (jti)
- kind mismatch is rejected in both directions; kind=None accepts either
- wrong secret, wrong audience, wrong issuer and garbage strings -> TokenInvalid
- expired tokens -> TokenExpired, judged by the codec clock
- tokens missing required claims -> TokenInvalid
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.models import Account, Role, TokenKind
from auth.tokens import TokenCodec, account_claims

SECRET = "unit-test-secret-key-at-least-32-characters"


def _codec(**overrides) -> TokenCodec:
    kwargs = dict(secret_key=SECRET, issuer="backend-api-scaffold", audience="scaffold-client")
    kwargs.update(overrides)
    return TokenCodec(**kwargs)


def _account() -> Account:
    return Account(username="alice", id=7, role=Role.MODERATOR)


class TestIssue:
    def test_access_token_round_trip(self):
        codec = _codec()
        claims = codec.verify(codec.issue_access(account_claims(_account())))
        assert claims["account_id"] == 7
        assert claims["username"] == "alice"
        assert claims["role"] == "moderator"
        assert claims["typ"] == "access"
        assert len(claims["jti"]) == 32

    def test_issue_pair(self):
        codec = _codec(access_lifetime=timedelta(hours=2))
        pair = codec.issue_pair(_account())
        assert pair.expires_in == 7200
        assert codec.verify(pair.access_token)["typ"] == "access"
        assert codec.verify(pair.refresh_token, TokenKind.REFRESH)["typ"] == "refresh"

    def test_pairs_issued_in_same_instant_differ(self):
        fixed = datetime.now(timezone.utc)
        codec = _codec(clock=lambda: fixed)
        first = codec.issue_pair(_account())
        second = codec.issue_pair(_account())
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_refresh_lives_longer_than_access(self):
        codec = _codec()
        pair = codec.issue_pair(_account())
        access = codec.verify(pair.access_token)
        refresh = codec.verify(pair.refresh_token, TokenKind.REFRESH)
        assert refresh["exp"] > access["exp"]


class TestVerify:
    def test_refresh_token_rejected_as_access(self):
        codec = _codec()
        pair = codec.issue_pair(_account())
        with pytest.raises(TokenInvalid):
            codec.verify(pair.refresh_token, TokenKind.ACCESS)

    def test_access_token_rejected_as_refresh(self):
        codec = _codec()
        pair = codec.issue_pair(_account())
        with pytest.raises(TokenInvalid):
            codec.verify(pair.access_token, TokenKind.REFRESH)

    def test_kind_none_accepts_either(self):
        codec = _codec()
        pair = codec.issue_pair(_account())
        assert codec.verify(pair.access_token, None)["typ"] == "access"
        assert codec.verify(pair.refresh_token, None)["typ"] == "refresh"

    def test_wrong_secret(self):
        token = _codec(secret_key="another-secret-key-also-32-chars-long!").issue_access(account_claims(_account()))
        with pytest.raises(TokenInvalid):
            _codec().verify(token)

    def test_wrong_audience(self):
        token = _codec(audience="someone-else").issue_access(account_claims(_account()))
        with pytest.raises(TokenInvalid):
            _codec().verify(token)

    def test_wrong_issuer(self):
        token = _codec(issuer="someone-else").issue_access(account_claims(_account()))
        with pytest.raises(TokenInvalid):
            _codec().verify(token)

    @pytest.mark.parametrize("garbage", ["", "not.a.jwt", "abc"])
    def test_garbage(self, garbage):
        with pytest.raises(TokenInvalid):
            _codec().verify(garbage)

    def test_expired(self):
        past = datetime.now(timezone.utc) - timedelta(days=8)
        codec = _codec(clock=lambda: past, access_lifetime=timedelta(days=7))
        token = codec.issue_access(account_claims(_account()))
        with pytest.raises(TokenExpired):
            _codec().verify(token)

    def test_missing_claims(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "account_id": 7,
                "typ": "access",
                "iss": "backend-api-scaffold",
                "aud": "scaffold-client",
                "iat": now,
                "exp": now + timedelta(hours=1),
            },
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            _codec().verify(token)

    def test_expiry_follows_injected_clock(self):
        now = [datetime.now(timezone.utc)]
        codec = _codec(clock=lambda: now[0], access_lifetime=timedelta(hours=1))
        token = codec.issue_access(account_claims(_account()))
        now[0] += timedelta(minutes=59)
        assert codec.verify(token)["username"] == "alice"
        now[0] += timedelta(minutes=2)
        with pytest.raises(TokenExpired):
            codec.verify(token)

    def test_expired_token_checked_before_kind(self):
        past = datetime.now(timezone.utc) - timedelta(days=31)
        token = _codec(clock=lambda: past).issue_refresh(account_claims(_account()))
        with pytest.raises(TokenExpired):
            _codec().verify(token, TokenKind.ACCESS)
