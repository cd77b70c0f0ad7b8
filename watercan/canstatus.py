# watercan/canstatus.py
"""
Household can inventory.

Each user has one record tracking whether each of their three cans is
full. The record is keyed by the caller's principal id, so a session can
only ever see or change its own cans.

Endpoints:
- GET /api/users/can-status: Current state (creates an all-empty record
  on first read)
- PUT /api/users/can-status: Replace the state of all three cans
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends

from watercan import config
from watercan.accounts.auth import require_kind
from watercan.accounts.models import (
    CanStatus,
    CanStatusResponse,
    CanStatusUpdate,
    PrincipalKind,
    SessionClaims,
)
from watercan.db import TABLE_CAN_STATUS, get_supabase_client, is_unique_violation
from watercan.errors import Internal
from watercan.privacy_utils import hash_principal_id

log = logging.getLogger("watercan.can_status")


class CanStatusRepository(ABC):

    @abstractmethod
    def get(self, user_id: str) -> Optional[CanStatus]:
        ...

    @abstractmethod
    def create_default(self, user_id: str) -> CanStatus:
        """Insert an all-empty record, or return the existing one."""

    @abstractmethod
    def upsert(self, user_id: str, update: CanStatusUpdate) -> CanStatus:
        ...


class SupabaseCanStatusRepository(CanStatusRepository):

    def __init__(self, client):
        self.client = client

    def get(self, user_id: str) -> Optional[CanStatus]:
        result = self.client.table(TABLE_CAN_STATUS)\
            .select("*")\
            .eq("user_id", user_id)\
            .limit(1)\
            .execute()
        if result.data:
            return CanStatus.from_db_row(result.data[0])
        return None

    def create_default(self, user_id: str) -> CanStatus:
        row = {
            "user_id": user_id,
            "can_1_full": False,
            "can_2_full": False,
            "can_3_full": False,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            result = self.client.table(TABLE_CAN_STATUS).insert(row).execute()
        except Exception as e:
            if not is_unique_violation(e):
                raise
            existing = self.get(user_id)
            if existing is None:
                raise Internal("Failed to load can status.")
            return existing

        if not result.data:
            raise Internal("Failed to create can status.")
        return CanStatus.from_db_row(result.data[0])

    def upsert(self, user_id: str, update: CanStatusUpdate) -> CanStatus:
        row = {
            "user_id": user_id,
            **update.model_dump(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        result = self.client.table(TABLE_CAN_STATUS)\
            .upsert(row, on_conflict="user_id")\
            .execute()
        if not result.data:
            raise Internal("Failed to update can status.")
        return CanStatus.from_db_row(result.data[0])


class InMemoryCanStatusRepository(CanStatusRepository):

    def __init__(self):
        self._records: Dict[str, CanStatus] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[CanStatus]:
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    def create_default(self, user_id: str) -> CanStatus:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                record = CanStatus(
                    user_id=user_id,
                    updated_at=datetime.now(timezone.utc).isoformat(),
                )
                self._records[user_id] = record
            return record.model_copy()

    def upsert(self, user_id: str, update: CanStatusUpdate) -> CanStatus:
        record = CanStatus(
            user_id=user_id,
            updated_at=datetime.now(timezone.utc).isoformat(),
            **update.model_dump(),
        )
        with self._lock:
            self._records[user_id] = record
        return record.model_copy()


_repository: Optional[CanStatusRepository] = None


def get_can_status_repository() -> CanStatusRepository:
    """Get the can status repository (FastAPI dependency)."""
    global _repository
    if _repository is None:
        client = get_supabase_client()
        if client is not None:
            _repository = SupabaseCanStatusRepository(client)
        else:
            if config.is_production():
                log.error("Supabase not configured in production - can status is not durable")
            _repository = InMemoryCanStatusRepository()
    return _repository


# ============================================================
# Routes
# ============================================================

router = APIRouter(prefix="/api/users", tags=["Can Status"])


@router.get("/can-status", response_model=CanStatusResponse)
async def get_can_status(
    claims: SessionClaims = Depends(require_kind(PrincipalKind.USER)),
    repository: CanStatusRepository = Depends(get_can_status_repository),
):
    status = await asyncio.to_thread(repository.get, claims.principal_id)
    if status is None:
        status = await asyncio.to_thread(repository.create_default, claims.principal_id)
        log.info("Default can status created for %s", hash_principal_id(claims.principal_id))
    return CanStatusResponse(can_status=status)


@router.put("/can-status", response_model=CanStatusResponse)
async def update_can_status(
    body: CanStatusUpdate,
    claims: SessionClaims = Depends(require_kind(PrincipalKind.USER)),
    repository: CanStatusRepository = Depends(get_can_status_repository),
):
    status = await asyncio.to_thread(repository.upsert, claims.principal_id, body)
    log.info("Can status updated for %s", hash_principal_id(claims.principal_id))
    return CanStatusResponse(can_status=status)
