# watercan/accounts/models.py
"""
Pydantic models for the accounts package.

Records:
1. Challenge: Ephemeral OTP record, keyed by identifier
2. Principal: Durable user or distributor account
3. SessionClaims: Decoded session token payload

Wire schemas use camelCase aliases (``displayName``, ``isNew``) and accept
either the alias or the field name on input.

Design Decisions:
- Identifier is exactly 10 digits after trimming
- Display names are trimmed and capped at 255 characters
- Payout handle follows ``handle@provider`` (UPI style)
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# ============================================================
# Constants
# ============================================================

IDENTIFIER_PATTERN = re.compile(r"^\d{10}$")
OTP_CODE_PATTERN = re.compile(r"^\d{6}$")
PAYOUT_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9.\-_]{2,256}@[a-zA-Z]{2,64}$")

OTP_LENGTH = 6
DISPLAY_NAME_MAX_LENGTH = 255


class PrincipalKind(str, Enum):
    USER = "user"
    DISTRIBUTOR = "distributor"


# ============================================================
# Normalisation Helpers
# ============================================================

def normalize_identifier(identifier: Any) -> str:
    """
    Trim and validate a phone identifier.

    Raises:
        ValueError: If the value is not exactly 10 digits.
    """
    if not isinstance(identifier, str):
        raise ValueError("must be a string of 10 digits")
    cleaned = identifier.strip()
    if not IDENTIFIER_PATTERN.match(cleaned):
        raise ValueError("Valid 10-digit phone number is required")
    return cleaned


def normalize_display_name(name: Any) -> Optional[str]:
    """
    Trim and cap a display name. Returns None for missing or blank input.

    Examples:
        normalize_display_name("  Asha ") → "Asha"
        normalize_display_name("   ") → None
        normalize_display_name("x" * 300) → "x" * 255
    """
    if name is None:
        return None
    if not isinstance(name, str):
        raise ValueError("must be a string")
    cleaned = name.strip()[:DISPLAY_NAME_MAX_LENGTH]
    return cleaned or None


def normalize_payout_handle(handle: Any) -> Optional[str]:
    """
    Validate a payout handle. Blank input clears the handle (returns None).

    Raises:
        ValueError: If a non-blank handle does not look like ``name@provider``.
    """
    if handle is None:
        return None
    if not isinstance(handle, str):
        raise ValueError("must be a string")
    cleaned = handle.strip()
    if not cleaned:
        return None
    if not PAYOUT_HANDLE_PATTERN.match(cleaned):
        raise ValueError("Invalid payout handle format. Format: username@bank")
    return cleaned


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class WireModel(BaseModel):
    """Base for request/response bodies (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================
# Challenge
# ============================================================

class Challenge(BaseModel):
    """
    Ephemeral OTP challenge.

    Security:
    - ``secret_hash`` is an HMAC of the code, never the plaintext
    - Overwritten on every issuance for the same identifier
    - Deleted on success, expiry, lockout, or sweep
    """

    identifier: str
    challenge_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    secret_hash: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_locked(self, max_attempts: int) -> bool:
        return self.attempts >= max_attempts

    @staticmethod
    def compute_expiry(issued_at: datetime, ttl_seconds: int) -> datetime:
        return issued_at + timedelta(seconds=ttl_seconds)

    def to_mapping(self) -> Dict[str, str]:
        """Flat string mapping for key-value stores."""
        return {
            "identifier": self.identifier,
            "challenge_id": self.challenge_id,
            "secret_hash": self.secret_hash,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "attempts": str(self.attempts),
        }

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Challenge":
        return cls(
            identifier=data["identifier"],
            challenge_id=data["challenge_id"],
            secret_hash=data["secret_hash"],
            issued_at=_parse_timestamp(data["issued_at"]),
            expires_at=_parse_timestamp(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
        )


# ============================================================
# Principal
# ============================================================

class Principal(BaseModel):
    """A user or distributor account."""

    id: str
    kind: PrincipalKind
    identifier: str
    display_name: str
    created_at: datetime
    payout_handle: Optional[str] = None
    is_active: Optional[bool] = None

    @classmethod
    def from_db_row(cls, kind: PrincipalKind, row: Dict[str, Any]) -> "Principal":
        """Create Principal from a users/distributors row."""
        is_distributor = kind == PrincipalKind.DISTRIBUTOR
        return cls(
            id=str(row["id"]),
            kind=kind,
            identifier=row["phone"],
            display_name=row.get("full_name") or "",
            created_at=_parse_timestamp(row["created_at"]) if row.get("created_at")
                       else datetime.now(timezone.utc),
            payout_handle=row.get("upi_id") if is_distributor else None,
            is_active=bool(row.get("is_working", True)) if is_distributor else None,
        )


class PrincipalOut(WireModel):
    """Public-safe principal response."""

    id: str
    kind: PrincipalKind
    identifier: str
    display_name: str
    created_at: str
    payout_handle: Optional[str] = None
    is_active: Optional[bool] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalOut":
        return cls(
            id=principal.id,
            kind=principal.kind,
            identifier=principal.identifier,
            display_name=principal.display_name,
            created_at=principal.created_at.isoformat(),
            payout_handle=principal.payout_handle,
            is_active=principal.is_active,
        )


# ============================================================
# Session
# ============================================================

class SessionClaims(BaseModel):
    """Decoded session token payload."""

    principal_id: str
    identifier: str
    kind: PrincipalKind
    iat: int
    exp: int


# ============================================================
# OTP Schemas
# ============================================================

class SendOTPInput(WireModel):
    identifier: str = Field(..., description="10-digit phone number")

    @field_validator("identifier", mode="before")
    @classmethod
    def validate_identifier(cls, v):
        return normalize_identifier(v)


class SendOTPResponse(WireModel):
    challenge_id: str = Field(..., description="Opaque ID of the issued challenge")
    expires_in_seconds: int = Field(..., description="Seconds until the code expires")
    code: Optional[str] = Field(default=None, description="Only present when OTP echo is enabled")


class VerifyOTPInput(WireModel):
    identifier: str = Field(..., description="10-digit phone number")
    code: str = Field(..., description="6-digit verification code")
    display_name: Optional[str] = Field(default=None, description="Required for new accounts")

    @field_validator("identifier", mode="before")
    @classmethod
    def validate_identifier(cls, v):
        return normalize_identifier(v)

    @field_validator("code", mode="before")
    @classmethod
    def validate_code(cls, v):
        if not isinstance(v, str) or not OTP_CODE_PATTERN.match(v.strip()):
            raise ValueError("Invalid OTP format")
        return v.strip()

    @field_validator("display_name", mode="before")
    @classmethod
    def clean_display_name(cls, v):
        return normalize_display_name(v)


class VerifyOTPResponse(WireModel):
    token: str = Field(..., description="Bearer token for authenticated requests")
    expires_at: str = Field(..., description="Token expiry timestamp (ISO 8601)")
    principal: PrincipalOut
    is_new: bool = Field(..., description="Whether this account was just created")


# ============================================================
# Profile Schemas
# ============================================================

class ProfileResponse(WireModel):
    principal: PrincipalOut


class UserProfileUpdate(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    display_name: Optional[str] = None

    @field_validator("display_name", mode="before")
    @classmethod
    def clean_display_name(cls, v):
        cleaned = normalize_display_name(v)
        if cleaned is None:
            raise ValueError("Full name is required")
        return cleaned


class DistributorProfileUpdate(UserProfileUpdate):
    payout_handle: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("payout_handle", mode="before")
    @classmethod
    def validate_payout_handle(cls, v):
        return normalize_payout_handle(v)

    @field_validator("is_active", mode="before")
    @classmethod
    def validate_is_active(cls, v):
        if v is None:
            raise ValueError("must be true or false")
        return v


class PayoutLookupResponse(WireModel):
    distributor_id: str
    display_name: str
    payout_handle: Optional[str] = None


# ============================================================
# Can Status
# ============================================================

class CanStatus(WireModel):
    """Fill state of the three cans held by a household."""

    user_id: str
    can_1_full: bool = Field(default=False, alias="can1Full")
    can_2_full: bool = Field(default=False, alias="can2Full")
    can_3_full: bool = Field(default=False, alias="can3Full")
    updated_at: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> "CanStatus":
        updated = row.get("updated_at")
        return cls(
            user_id=str(row["user_id"]),
            can_1_full=bool(row.get("can_1_full", False)),
            can_2_full=bool(row.get("can_2_full", False)),
            can_3_full=bool(row.get("can_3_full", False)),
            updated_at=_parse_timestamp(updated).isoformat() if updated else None,
        )


class CanStatusUpdate(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    can_1_full: bool = Field(..., alias="can1Full")
    can_2_full: bool = Field(..., alias="can2Full")
    can_3_full: bool = Field(..., alias="can3Full")


class CanStatusResponse(WireModel):
    can_status: CanStatus
