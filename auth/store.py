"""
auth/store.py -- SQLAlchemy Core persistence layer for Account records.

Pattern: Repository + Data Mapper. AccountStore implements the
AccountRepository protocol (auth/repository.py); _row_to_account is the
mapper. Service and route code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The store never hashes passwords. It persists whatever password_hash the
  caller hands it -- hashing is an explicit AuthService step.

Concurrency:
  Every row carries an integer version, bumped by each write. update() with
  expected_version adds "AND version = :v" to the UPDATE; zero matched rows
  on a live account means somebody else wrote first, and StaleAccount is
  raised so the caller can reload and recompute.

Uniqueness:
  Conflicts are checked in precedence order (username > email > phone >
  external ids) before writing so DuplicateField always names the highest
  priority field. The UNIQUE constraints stay as the backstop for races; an
  IntegrityError re-runs the check to name the field; a violation it cannot
  attribute to a unique field surfaces as RepositoryUnavailable. NULLs never
  collide.

Soft delete:
  deleted_at marks a row as deleted. Lookups skip such rows unless
  include_deleted is requested. Unique values stay reserved while deleted.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, func, or_, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import DuplicateField, RepositoryUnavailable, StaleAccount
from auth.models import Account, AccountStatus, Gender, Role
from auth.repository import UNIQUE_FIELDS

logger = logging.getLogger("scaffold.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), unique=True),
    Column("phone", String(20), unique=True),
    Column("password_hash", Text),  # NULL for mini-app only accounts
    Column("nickname", String(50)),
    Column("avatar", Text),
    Column("gender", String(10), nullable=False, server_default="unknown"),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("external_id", String(100), unique=True),
    Column("external_union_id", String(100), unique=True),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login_at", String(32)),
    Column("last_login_ip", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
    Column("version", Integer, nullable=False, server_default="0"),
)

# Columns callers may set through create() / update(). id, timestamps managed
# here, and version are owned by the store.
_WRITABLE = frozenset(
    {
        "username",
        "email",
        "phone",
        "password_hash",
        "nickname",
        "avatar",
        "gender",
        "role",
        "status",
        "external_id",
        "external_union_id",
        "failed_attempts",
        "locked_until",
        "last_login_at",
        "last_login_ip",
    }
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """SQL implementation of AccountRepository.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account = store.create({"username": "alice", "password_hash": hasher.hash("pw123456")})
        store.find_by_identifier("alice")
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 10.0) -> None:
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # sqlite busy timeout bounds how long a write waits on a locked DB.
            connect_args["timeout"] = timeout_seconds
        else:
            engine_args["pool_timeout"] = timeout_seconds
            engine_args["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        """Yield a connection, turning driver-level outages into RepositoryUnavailable."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except (OperationalError, PoolTimeoutError) as exc:
            logger.error("Account storage unavailable: %s", exc)
            raise RepositoryUnavailable() from exc

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except RepositoryUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_identifier(self, identifier: str) -> Account | None:
        """Find a live account whose username, email or phone equals identifier.

        Values are unique per column, but one account's email could equal
        another's username; the username match wins, then email, then phone.
        """
        if not identifier:
            return None
        c = _accounts.c
        with self._connect() as conn:
            rows = conn.execute(
                _accounts.select().where(
                    c.deleted_at.is_(None),
                    or_(c.username == identifier, c.email == identifier, c.phone == identifier),
                )
            ).fetchall()
        for field in ("username", "email", "phone"):
            for row in rows:
                if getattr(row, field) == identifier:
                    return _row_to_account(row)
        return None

    def find_by_id(self, account_id: int, include_deleted: bool = False) -> Account | None:
        with self._connect() as conn:
            row = self._fetch(conn, account_id, include_deleted)
        return _row_to_account(row) if row is not None else None

    def find_by_external_id(self, external_id: str) -> Account | None:
        with self._connect() as conn:
            row = conn.execute(
                _accounts.select().where(_accounts.c.external_id == external_id, _accounts.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_accounts).where(_accounts.c.deleted_at.is_(None))
            ).scalar_one()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, fields: dict[str, Any]) -> Account:
        """Insert a new account and return it. Raises DuplicateField on conflicts."""
        values = _prepare(fields)
        now = _now_iso()
        with self._connect() as conn:
            self._raise_on_conflict(conn, values)
            try:
                result = conn.execute(_accounts.insert().values(**values, created_at=now, updated_at=now, version=0))
                conn.commit()
            except IntegrityError as exc:
                conn.rollback()
                raise self._integrity_error(conn, values, exc) from exc
            row = self._fetch(conn, result.inserted_primary_key[0], include_deleted=False)
        return _row_to_account(row)

    def update(self, account_id: int, fields: dict[str, Any], expected_version: int | None = None) -> Account | None:
        """Apply fields to a live account and return the post-update state.

        Returns None if the account does not exist or is soft-deleted. Raises
        StaleAccount when expected_version no longer matches.
        """
        values = _prepare(fields)
        c = _accounts.c
        stmt = (
            _accounts.update()
            .where(c.id == account_id, c.deleted_at.is_(None))
            .values(**values, updated_at=_now_iso(), version=c.version + 1)
        )
        if expected_version is not None:
            stmt = stmt.where(c.version == expected_version)

        with self._connect() as conn:
            self._raise_on_conflict(conn, values, exclude_id=account_id)
            try:
                result = conn.execute(stmt)
                conn.commit()
            except IntegrityError as exc:
                conn.rollback()
                raise self._integrity_error(conn, values, exc, exclude_id=account_id) from exc
            row = self._fetch(conn, account_id, include_deleted=False)

        if result.rowcount == 0:
            if row is not None and expected_version is not None:
                raise StaleAccount(account_id, expected_version)
            return None
        return _row_to_account(row) if row is not None else None

    def soft_delete(self, account_id: int) -> Account | None:
        """Mark a live account deleted. Returns the deleted record, or None if not found."""
        c = _accounts.c
        now = _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(c.id == account_id, c.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now, version=c.version + 1)
            )
            conn.commit()
            if result.rowcount == 0:
                return None
            row = self._fetch(conn, account_id, include_deleted=True)
        return _row_to_account(row)

    def restore(self, account_id: int) -> Account | None:
        """Clear deleted_at. Restoring a live account is a no-op that returns it."""
        c = _accounts.c
        with self._connect() as conn:
            conn.execute(
                _accounts.update()
                .where(c.id == account_id, c.deleted_at.is_not(None))
                .values(deleted_at=None, updated_at=_now_iso(), version=c.version + 1)
            )
            conn.commit()
            row = self._fetch(conn, account_id, include_deleted=False)
        return _row_to_account(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch(conn: Connection, account_id: int, include_deleted: bool):
        stmt = _accounts.select().where(_accounts.c.id == account_id)
        if not include_deleted:
            stmt = stmt.where(_accounts.c.deleted_at.is_(None))
        return conn.execute(stmt).fetchone()

    @staticmethod
    def _find_conflict(conn: Connection, values: dict[str, Any], exclude_id: int | None = None) -> str | None:
        for field in UNIQUE_FIELDS:
            value = values.get(field)
            if value is None:
                continue
            column = _accounts.c[field]
            stmt = select(_accounts.c.id).where(column == value)
            if exclude_id is not None:
                stmt = stmt.where(_accounts.c.id != exclude_id)
            if conn.execute(stmt).first() is not None:
                return field
        return None

    def _raise_on_conflict(self, conn: Connection, values: dict[str, Any], exclude_id: int | None = None) -> None:
        field = self._find_conflict(conn, values, exclude_id)
        if field is not None:
            raise DuplicateField(field)

    def _integrity_error(
        self, conn: Connection, values: dict[str, Any], exc: IntegrityError, exclude_id: int | None = None
    ) -> Exception:
        """Translate a constraint violation: DuplicateField when a unique value collides."""
        field = self._find_conflict(conn, values, exclude_id)
        if field is not None:
            return DuplicateField(field)
        logger.error("Account write rejected by a constraint: %s", exc)
        return RepositoryUnavailable("Account could not be written.")


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _prepare(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _WRITABLE
    if unknown:
        raise ValueError(f"Unknown or read-only account fields: {sorted(unknown)!r}")
    return {name: _to_db(value) for name, value in fields.items()}


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        phone=row.phone,
        password_hash=row.password_hash,
        nickname=row.nickname,
        avatar=row.avatar,
        gender=Gender(row.gender),
        role=Role(row.role),
        status=AccountStatus(row.status),
        external_id=row.external_id,
        external_union_id=row.external_union_id,
        failed_attempts=row.failed_attempts,
        locked_until=_parse_ts(row.locked_until),
        last_login_at=_parse_ts(row.last_login_at),
        last_login_ip=row.last_login_ip,
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
        deleted_at=_parse_ts(row.deleted_at),
        version=row.version,
    )
