"""
auth/service.py -- AuthService: the authentication use cases.

AuthService composes PasswordHasher, TokenCodec, LockoutPolicy, the
AccountRepository and (optionally) the mini-app exchanger. It never writes
storage directly; every mutation goes through a repository call that returns
the post-mutation Account.

Use cases:
  register, login, refresh, logout, change_password, reset_password,
  external_login, validate_token
plus the administrative account operations (profile, status, role, soft
delete, restore).

Failures are the typed AuthError subclasses from auth/errors.py. Nothing is
retried except the optimistic-concurrency loop in _transition(), which reloads
and recomputes a lockout/login transition when another request wrote first.

Timing [C1]: every login rejection that happens before the real password
check still burns one bcrypt comparison, so unknown-account, inactive and
locked paths cost the same as a wrong password.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from auth.errors import (
    AccountInactive,
    AccountLocked,
    AccountNotFound,
    AuthError,
    DuplicateField,
    InvalidCredentials,
    NotConfigured,
    RepositoryUnavailable,
    StaleAccount,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from auth.lockout import LockoutPolicy
from auth.models import (
    Account,
    AccountStatus,
    AuthResult,
    ExternalIdentity,
    Gender,
    ProfileHints,
    Registration,
    Role,
    TokenKind,
    TokenPair,
)
from auth.passwords import MAX_PASSWORD_BYTES, PasswordHasher
from auth.repository import AccountRepository
from auth.tokens import TokenCodec

if TYPE_CHECKING:
    from auth.exchange import MiniProgramExchanger
    from core.config import Settings

logger = logging.getLogger("scaffold.auth.service")
security_log = logging.getLogger("scaffold.auth.security")
audit_log = logging.getLogger("scaffold.auth.audit")

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,50}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^1[3-9]\d{9}$")
_EXTERNAL_USERNAME_UNSAFE = re.compile(r"[^A-Za-z0-9_]")

EXTERNAL_USERNAME_PREFIX = "wx_"
EXTERNAL_DEFAULT_NICKNAME = "WeChat user"

# Upper bound on reload-and-retry rounds for a contended account row.
_MAX_WRITE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def _validate_username(username: str | None) -> str:
    if not username or not _USERNAME_RE.fullmatch(username):
        raise ValidationError("username", "must be 3-50 characters of letters, digits or underscore")
    return username


def _normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    if not email:
        return None
    if len(email) > 100 or not _EMAIL_RE.fullmatch(email):
        raise ValidationError("email", "must be a valid email address")
    return email


def _normalize_phone(phone: str | None) -> str | None:
    if phone is None:
        return None
    phone = phone.strip()
    if not phone:
        return None
    if not _PHONE_RE.fullmatch(phone):
        raise ValidationError("phone", "must be a valid mobile number")
    return phone


def _validate_nickname(nickname: str | None) -> str | None:
    if nickname is None:
        return None
    nickname = nickname.strip()
    if not 1 <= len(nickname) <= 50:
        raise ValidationError("nickname", "must be 1-50 characters")
    return nickname


def _normalize_identifier(identifier: str | None) -> str:
    identifier = (identifier or "").strip()
    if not identifier:
        raise ValidationError("identifier", "is required")
    # Emails are stored lower-case.
    return identifier.lower() if "@" in identifier else identifier


def _gender_from_hint(value: int | None) -> Gender | None:
    if value == 1:
        return Gender.MALE
    if value == 2:
        return Gender.FEMALE
    return None


class AuthService:
    """Orchestrates the authentication use cases over an AccountRepository.

    Usage:
        settings = get_settings()
        service = AuthService.from_settings(settings, AccountStore(settings.database_url))
        result = service.register(Registration("alice", "pw123456", email="a@x.com"))
        result = service.login("alice", "pw123456", ip="10.0.0.1")
        account, claims = service.validate_token(result.tokens.access_token)
    """

    def __init__(
        self,
        repository: AccountRepository,
        hasher: PasswordHasher,
        codec: TokenCodec,
        lockout: LockoutPolicy,
        exchanger: MiniProgramExchanger | None = None,
        clock: Callable[[], datetime] = _utcnow,
        password_min_length: int = 6,
        password_max_length: int = 128,
    ) -> None:
        self._repo = repository
        self._hasher = hasher
        self._codec = codec
        self._lockout = lockout
        self._exchanger = exchanger
        self._clock = clock
        self._password_min = password_min_length
        self._password_max = password_max_length

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: AccountRepository,
        exchanger: MiniProgramExchanger | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> AuthService:
        return cls(
            repository=repository,
            hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
            codec=TokenCodec.from_settings(settings, clock=clock),
            lockout=LockoutPolicy.from_settings(settings),
            exchanger=exchanger,
            clock=clock,
            password_min_length=settings.password_min_length,
            password_max_length=settings.password_max_length,
        )

    @property
    def codec(self) -> TokenCodec:
        return self._codec

    # ------------------------------------------------------------------
    # Register / login
    # ------------------------------------------------------------------

    def register(self, registration: Registration, ip: str | None = None) -> AuthResult:
        """Create an active local account and issue its first token pair.

        Uniqueness is enforced by the repository with fixed precedence:
        username, then email, then phone.
        """
        username = _validate_username(registration.username)
        email = _normalize_email(registration.email)
        phone = _normalize_phone(registration.phone)
        nickname = _validate_nickname(registration.nickname) or username
        password_hash = self._hasher.hash(self._validate_password(registration.password))

        account = self._repo.create(
            {
                "username": username,
                "email": email,
                "phone": phone,
                "password_hash": password_hash,
                "nickname": nickname,
                "role": Role.USER,
                "status": AccountStatus.ACTIVE,
            }
        )
        tokens = self._codec.issue_pair(account)
        audit_log.info("user_register account_id=%s username=%s ip=%s", account.id, account.username, ip)
        return AuthResult(account=account, tokens=tokens)

    def login(self, identifier: str, password: str, ip: str | None = None) -> AuthResult:
        """Authenticate by username, email or phone plus password.

        Raises AccountNotFound, AccountInactive, AccountLocked or
        InvalidCredentials. A wrong password advances the lockout counter; the
        failure that reaches the threshold is reported as AccountLocked.
        """
        identifier = _normalize_identifier(identifier)
        password = password or ""
        now = self._clock()

        account = self._repo.find_by_identifier(identifier)
        if account is None:
            self._hasher.dummy_verify(password)
            security_log.warning("login_account_not_found identifier=%s ip=%s", identifier, ip)
            raise AccountNotFound()
        if not account.is_active:
            self._hasher.dummy_verify(password)
            security_log.warning(
                "login_inactive_account account_id=%s status=%s ip=%s", account.id, account.status.value, ip
            )
            raise AccountInactive()
        if self._lockout.is_locked(account, now):
            self._hasher.dummy_verify(password)
            security_log.warning("login_account_locked account_id=%s ip=%s", account.id, ip)
            raise AccountLocked(account.locked_until)

        if not self._hasher.verify(password, account.password_hash):
            account = self._transition(account, lambda a: self._lockout.on_failure(a, now), now)
            security_log.warning(
                "login_invalid_password account_id=%s attempts=%d ip=%s", account.id, account.failed_attempts, ip
            )
            if self._lockout.is_locked(account, now):
                security_log.warning("account_lock_engaged account_id=%s until=%s", account.id, account.locked_until)
                raise AccountLocked(account.locked_until)
            raise InvalidCredentials()

        account = self._transition(account, lambda a: self._lockout.on_success(a, now, ip), now)
        tokens = self._codec.issue_pair(account)
        audit_log.info("user_login account_id=%s username=%s ip=%s", account.id, account.username, ip)
        return AuthResult(account=account, tokens=tokens)

    def _transition(self, account: Account, compute: Callable[[Account], dict[str, Any]], now: datetime) -> Account:
        """Persist compute(account) with compare-and-swap on the account version.

        On a version conflict the account is reloaded and the transition is
        recomputed from the fresh state. If the fresh state is Locked the
        attempt is rejected without touching the counter.
        """
        for _ in range(_MAX_WRITE_ATTEMPTS):
            updates = compute(account)
            if not updates:
                return account
            try:
                updated = self._repo.update(account.id, updates, expected_version=account.version)
            except StaleAccount:
                logger.debug("Version conflict on account %s; reloading", account.id)
                fresh = self._repo.find_by_id(account.id)
                if fresh is None:
                    raise AccountNotFound()
                if self._lockout.is_locked(fresh, now):
                    raise AccountLocked(fresh.locked_until)
                account = fresh
                continue
            if updated is None:
                raise AccountNotFound()
            return updated
        logger.error("Gave up updating account %s after %d version conflicts", account.id, _MAX_WRITE_ATTEMPTS)
        raise RepositoryUnavailable("Account is being modified concurrently; try again.")

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate: verify a refresh token and issue a brand-new pair."""
        claims = self._verify(refresh_token, TokenKind.REFRESH)
        account = self._live_account(claims["account_id"])
        tokens = self._codec.issue_pair(account)
        audit_log.info("token_refresh account_id=%s", account.id)
        return tokens

    def validate_token(self, token: str) -> tuple[Account, dict[str, Any]]:
        """Verify an access token and re-check that its account is still active."""
        claims = self._verify(token, TokenKind.ACCESS)
        return self._live_account(claims["account_id"]), claims

    def logout(self, account_id: int, ip: str | None = None) -> None:
        """Record the logout.

        There is no server-side revocation: an access token stays valid until
        its exp. Clients discard their tokens.
        """
        audit_log.info("user_logout account_id=%s ip=%s", account_id, ip)

    def _verify(self, token: str, kind: TokenKind) -> dict[str, Any]:
        try:
            return self._codec.verify(token, kind)
        except (TokenExpired, TokenInvalid) as exc:
            security_log.warning("token_verification_failed kind=%s reason=%s", kind.value, exc.code)
            raise

    def _live_account(self, account_id: int) -> Account:
        account = self._repo.find_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        if not account.is_active:
            raise AccountInactive()
        return account

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, account_id: int, old_password: str, new_password: str) -> None:
        account = self._repo.find_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        if not self._hasher.verify(old_password or "", account.password_hash):
            security_log.warning("change_password_bad_old_password account_id=%s", account_id)
            raise InvalidCredentials("Current password is incorrect.")
        password_hash = self._hasher.hash(self._validate_password(new_password))
        if self._repo.update(account.id, {"password_hash": password_hash}) is None:
            raise AccountNotFound()
        audit_log.info("password_changed account_id=%s", account_id)

    def reset_password(self, identifier: str, verification_code: str, new_password: str) -> None:
        """Set a new password and clear lockout state.

        verification_code must already have been checked by the verification
        code service before this is called; only its presence is enforced here.
        """
        if not verification_code:
            raise ValidationError("verification_code", "is required")
        identifier = _normalize_identifier(identifier)
        password_hash = self._hasher.hash(self._validate_password(new_password))

        account = self._repo.find_by_identifier(identifier)
        if account is None:
            raise AccountNotFound()
        updates = {"password_hash": password_hash, **self._lockout.on_reset()}
        if self._repo.update(account.id, updates) is None:
            raise AccountNotFound()
        audit_log.info("password_reset account_id=%s", account.id)

    def _validate_password(self, password: str | None) -> str:
        if not password or not self._password_min <= len(password) <= self._password_max:
            raise ValidationError("password", f"must be {self._password_min}-{self._password_max} characters")
        if len(password.encode("utf-8", errors="surrogatepass")) > MAX_PASSWORD_BYTES:
            raise ValidationError("password", f"must be at most {MAX_PASSWORD_BYTES} bytes")
        return password

    # ------------------------------------------------------------------
    # Mini-app login
    # ------------------------------------------------------------------

    def external_login(self, code: str, hints: ProfileHints | None = None, ip: str | None = None) -> AuthResult:
        """Exchange a mini-app login code, upsert the account, issue tokens.

        The same external id always resolves to the same account: first sight
        creates it, later logins refresh optional profile fields only.
        """
        if not code:
            raise ValidationError("code", "is required")
        if self._exchanger is None:
            raise NotConfigured()
        hints = hints or ProfileHints()

        try:
            identity = self._exchanger.exchange(code)
        except AuthError as exc:
            security_log.warning("miniprogram_exchange_failed reason=%s ip=%s", exc.code, ip)
            raise

        now = self._clock()
        account = self._repo.find_by_external_id(identity.external_id)
        if account is None:
            account, created = self._create_external(identity, hints, now, ip)
            if created:
                tokens = self._codec.issue_pair(account)
                return AuthResult(account=account, tokens=tokens, session_secret=identity.session_secret)

        if not account.is_active:
            security_log.warning("miniprogram_login_inactive account_id=%s", account.id)
            raise AccountInactive()

        updates: dict[str, Any] = {"last_login_at": now, "last_login_ip": ip}
        if hints.nickname and hints.nickname.strip():
            updates["nickname"] = _validate_nickname(hints.nickname[:50])
        if hints.avatar:
            updates["avatar"] = hints.avatar
        gender = _gender_from_hint(hints.gender)
        if gender is not None:
            updates["gender"] = gender
        if identity.external_union_id and not account.external_union_id:
            updates["external_union_id"] = identity.external_union_id

        updated = self._repo.update(account.id, updates)
        if updated is None:
            raise AccountNotFound()
        tokens = self._codec.issue_pair(updated)
        audit_log.info("miniprogram_user_login account_id=%s", updated.id)
        return AuthResult(account=updated, tokens=tokens, session_secret=identity.session_secret)

    def _create_external(
        self, identity: ExternalIdentity, hints: ProfileHints, now: datetime, ip: str | None
    ) -> tuple[Account, bool]:
        """Create the account for a first-seen external id.

        Returns (account, created). created is False when a concurrent request
        created the account first. A soft-deleted holder of the external id
        blocks login.
        """
        base = EXTERNAL_USERNAME_PREFIX + _EXTERNAL_USERNAME_UNSAFE.sub("_", identity.external_id[:10])
        nickname = (hints.nickname or "").strip()[:50] or EXTERNAL_DEFAULT_NICKNAME
        fields: dict[str, Any] = {
            "username": base,
            "nickname": nickname,
            "avatar": hints.avatar,
            "gender": _gender_from_hint(hints.gender) or Gender.UNKNOWN,
            "external_id": identity.external_id,
            "external_union_id": identity.external_union_id,
            "role": Role.USER,
            "status": AccountStatus.ACTIVE,
            "last_login_at": now,
            "last_login_ip": ip,
        }
        for _ in range(_MAX_WRITE_ATTEMPTS):
            try:
                account = self._repo.create(fields)
            except DuplicateField as exc:
                if exc.field == "username":
                    fields["username"] = f"{base}_{secrets.token_hex(3)}"
                    continue
                if exc.field == "external_id":
                    existing = self._repo.find_by_external_id(identity.external_id)
                    if existing is None:
                        raise AccountInactive() from exc
                    return existing, False
                raise
            audit_log.info("miniprogram_user_register account_id=%s username=%s", account.id, account.username)
            return account, True
        raise RepositoryUnavailable("Could not allocate a username for the external account.")

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get_account(self, account_id: int, include_deleted: bool = False) -> Account:
        account = self._repo.find_by_id(account_id, include_deleted=include_deleted)
        if account is None:
            raise AccountNotFound()
        return account

    def update_profile(
        self,
        account_id: int,
        nickname: str | None = None,
        avatar: str | None = None,
        gender: Gender | str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> Account:
        """Update optional profile fields. None leaves a field unchanged."""
        updates: dict[str, Any] = {}
        if nickname is not None:
            updates["nickname"] = _validate_nickname(nickname)
        if avatar is not None:
            updates["avatar"] = avatar
        if gender is not None:
            updates["gender"] = _coerce(Gender, gender, "gender")
        if email is not None:
            updates["email"] = _normalize_email(email)
        if phone is not None:
            updates["phone"] = _normalize_phone(phone)
        if not updates:
            return self.get_account(account_id)
        account = self._repo.update(account_id, updates)
        if account is None:
            raise AccountNotFound()
        audit_log.info("profile_updated account_id=%s fields=%s", account_id, sorted(updates))
        return account

    def update_status(self, account_id: int, status: AccountStatus | str) -> Account:
        new_status = _coerce(AccountStatus, status, "status")
        account = self._repo.update(account_id, {"status": new_status})
        if account is None:
            raise AccountNotFound()
        audit_log.info("status_changed account_id=%s status=%s", account_id, new_status.value)
        return account

    def update_role(self, account_id: int, role: Role | str) -> Account:
        new_role = _coerce(Role, role, "role")
        account = self._repo.update(account_id, {"role": new_role})
        if account is None:
            raise AccountNotFound()
        audit_log.info("role_changed account_id=%s role=%s", account_id, new_role.value)
        return account

    def delete_account(self, account_id: int) -> Account:
        account = self._repo.soft_delete(account_id)
        if account is None:
            raise AccountNotFound()
        audit_log.info("user_deleted account_id=%s", account_id)
        return account

    def restore_account(self, account_id: int) -> Account:
        account = self._repo.restore(account_id)
        if account is None:
            raise AccountNotFound()
        audit_log.info("user_restored account_id=%s", account_id)
        return account


def _coerce(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field, f"must be one of: {allowed}") from exc
