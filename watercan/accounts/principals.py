# watercan/accounts/principals.py
"""
Durable principal records (users and distributors).

This module provides:
- PrincipalRepository interface
- SupabasePrincipalRepository (users / distributors tables)
- InMemoryPrincipalRepository (development and tests)
- PrincipalResolver: find-or-create after OTP verification

Uniqueness:
- ``phone`` is UNIQUE per table. A concurrent insert for the same
  identifier fails with PrincipalConflict and the resolver returns the
  record that won, so retries never create duplicates.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from watercan import config
from watercan.accounts.models import Principal, PrincipalKind, normalize_display_name
from watercan.db import (
    TABLE_DISTRIBUTORS,
    TABLE_USERS,
    get_supabase_client,
    is_unique_violation,
)
from watercan.errors import DisplayNameRequired, Internal
from watercan.privacy_utils import hash_principal_id, mask_phone

log = logging.getLogger("watercan.principals")

_TABLES = {
    PrincipalKind.USER: TABLE_USERS,
    PrincipalKind.DISTRIBUTOR: TABLE_DISTRIBUTORS,
}

# Principal field → table column
_COLUMNS = {
    "display_name": "full_name",
    "payout_handle": "upi_id",
    "is_active": "is_working",
}


class PrincipalConflict(Exception):
    """A principal with this identifier already exists."""


class PrincipalRepository(ABC):

    @abstractmethod
    def get_by_identifier(self, kind: PrincipalKind, identifier: str) -> Optional[Principal]:
        ...

    @abstractmethod
    def get_by_id(self, kind: PrincipalKind, principal_id: str) -> Optional[Principal]:
        ...

    @abstractmethod
    def create(self, kind: PrincipalKind, identifier: str, display_name: str) -> Principal:
        """
        Insert a new principal with default flags.

        Raises:
            PrincipalConflict: If the identifier is already taken.
        """

    @abstractmethod
    def update(self, kind: PrincipalKind, principal_id: str, changes: Dict[str, Any]) -> Optional[Principal]:
        """Apply a partial update. Returns None if the principal does not exist."""


# ============================================================
# Supabase Implementation
# ============================================================

class SupabasePrincipalRepository(PrincipalRepository):
    """Principals stored in the Supabase ``users`` / ``distributors`` tables."""

    def __init__(self, client):
        self.client = client

    def _first(self, kind: PrincipalKind, column: str, value: str) -> Optional[Principal]:
        result = self.client.table(_TABLES[kind])\
            .select("*")\
            .eq(column, value)\
            .limit(1)\
            .execute()
        if result.data:
            return Principal.from_db_row(kind, result.data[0])
        return None

    def get_by_identifier(self, kind: PrincipalKind, identifier: str) -> Optional[Principal]:
        return self._first(kind, "phone", identifier)

    def get_by_id(self, kind: PrincipalKind, principal_id: str) -> Optional[Principal]:
        return self._first(kind, "id", principal_id)

    def create(self, kind: PrincipalKind, identifier: str, display_name: str) -> Principal:
        row: Dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "phone": identifier,
            "full_name": display_name,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if kind == PrincipalKind.DISTRIBUTOR:
            row["is_working"] = True

        try:
            result = self.client.table(_TABLES[kind]).insert(row).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise PrincipalConflict(identifier) from e
            raise

        if not result.data:
            raise Internal("Failed to create account.")
        return Principal.from_db_row(kind, result.data[0])

    def update(self, kind: PrincipalKind, principal_id: str, changes: Dict[str, Any]) -> Optional[Principal]:
        columns = {_COLUMNS[field]: value for field, value in changes.items()}
        result = self.client.table(_TABLES[kind])\
            .update(columns)\
            .eq("id", principal_id)\
            .execute()
        if result.data:
            return Principal.from_db_row(kind, result.data[0])
        return None


# ============================================================
# In-Memory Implementation
# ============================================================

class InMemoryPrincipalRepository(PrincipalRepository):
    """Process-local principals. Identifier uniqueness is enforced under a lock."""

    def __init__(self):
        self._by_id: Dict[PrincipalKind, Dict[str, Principal]] = {k: {} for k in PrincipalKind}
        self._by_identifier: Dict[PrincipalKind, Dict[str, str]] = {k: {} for k in PrincipalKind}
        self._lock = threading.Lock()

    def get_by_identifier(self, kind: PrincipalKind, identifier: str) -> Optional[Principal]:
        with self._lock:
            principal_id = self._by_identifier[kind].get(identifier)
            principal = self._by_id[kind].get(principal_id) if principal_id else None
            return principal.model_copy() if principal else None

    def get_by_id(self, kind: PrincipalKind, principal_id: str) -> Optional[Principal]:
        with self._lock:
            principal = self._by_id[kind].get(principal_id)
            return principal.model_copy() if principal else None

    def create(self, kind: PrincipalKind, identifier: str, display_name: str) -> Principal:
        with self._lock:
            if identifier in self._by_identifier[kind]:
                raise PrincipalConflict(identifier)
            is_distributor = kind == PrincipalKind.DISTRIBUTOR
            principal = Principal(
                id=str(uuid.uuid4()),
                kind=kind,
                identifier=identifier,
                display_name=display_name,
                created_at=datetime.now(timezone.utc),
                is_active=True if is_distributor else None,
            )
            self._by_id[kind][principal.id] = principal
            self._by_identifier[kind][identifier] = principal.id
            return principal.model_copy()

    def update(self, kind: PrincipalKind, principal_id: str, changes: Dict[str, Any]) -> Optional[Principal]:
        with self._lock:
            principal = self._by_id[kind].get(principal_id)
            if principal is None:
                return None
            updated = principal.model_copy(update=changes)
            self._by_id[kind][principal_id] = updated
            return updated.model_copy()

    def count(self, kind: PrincipalKind) -> int:
        with self._lock:
            return len(self._by_id[kind])


# ============================================================
# Resolver
# ============================================================

class PrincipalResolver:
    """Find-or-create a principal for a verified identifier."""

    def __init__(self, repository: PrincipalRepository):
        self.repository = repository

    def resolve(
        self,
        identifier: str,
        kind: PrincipalKind,
        display_name: Optional[str] = None,
    ) -> Tuple[Principal, bool]:
        """
        Return ``(principal, is_new)``.

        Existing principals are returned as-is and ``display_name`` is
        ignored.

        Raises:
            DisplayNameRequired: If the principal does not exist and no
                usable display name was supplied.
        """
        existing = self.repository.get_by_identifier(kind, identifier)
        if existing:
            log.info("Existing %s authenticated: %s", kind.value, mask_phone(identifier))
            return existing, False

        name = normalize_display_name(display_name)
        if name is None:
            log.info("New %s without display name: %s", kind.value, mask_phone(identifier))
            raise DisplayNameRequired()

        try:
            created = self.repository.create(kind, identifier, name)
        except PrincipalConflict:
            winner = self.repository.get_by_identifier(kind, identifier)
            if winner is None:
                raise Internal("Failed to resolve account.")
            log.info("Concurrent %s creation resolved to existing record", kind.value)
            return winner, False

        log.info("%s created: %s", kind.value.capitalize(), hash_principal_id(created.id))
        return created, True


# ============================================================
# Singleton
# ============================================================

_repository: Optional[PrincipalRepository] = None


def get_principal_repository() -> PrincipalRepository:
    """
    Get the principal repository (FastAPI dependency).

    Uses Supabase when SUPABASE_URL/SUPABASE_KEY are configured, otherwise
    an in-memory repository.
    """
    global _repository
    if _repository is None:
        client = get_supabase_client()
        if client is not None:
            _repository = SupabasePrincipalRepository(client)
        else:
            if config.is_production():
                log.error("Supabase not configured in production - principals are not durable")
            else:
                log.warning("Supabase not configured - using in-memory principals")
            _repository = InMemoryPrincipalRepository()
    return _repository
