"""Repository contract for Account persistence.

AuthService only talks to this protocol; auth/store.py is the SQLAlchemy
implementation. Every lookup returns None for a missing (or soft-deleted)
account. create/update enforce uniqueness and raise DuplicateField naming the
first conflicting field in precedence order (username, email, phone,
external_id, external_union_id). update(..., expected_version=v) raises
StaleAccount when the stored version is no longer v. Storage failures and
timeouts raise RepositoryUnavailable.
"""

from __future__ import annotations

from typing import Any, Protocol

from auth.models import Account

UNIQUE_FIELDS = ("username", "email", "phone", "external_id", "external_union_id")


class AccountRepository(Protocol):
    def find_by_identifier(self, identifier: str) -> Account | None:
        """Match identifier against username, then email, then phone."""
        ...

    def find_by_id(self, account_id: int, include_deleted: bool = False) -> Account | None:
        ...

    def find_by_external_id(self, external_id: str) -> Account | None:
        ...

    def create(self, fields: dict[str, Any]) -> Account:
        ...

    def update(self, account_id: int, fields: dict[str, Any], expected_version: int | None = None) -> Account | None:
        ...

    def soft_delete(self, account_id: int) -> Account | None:
        ...

    def restore(self, account_id: int) -> Account | None:
        ...
