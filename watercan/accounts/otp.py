# watercan/accounts/otp.py
"""
OTP issuance and verification.

This module provides:
- OTP generation, hashing, and constant-time comparison
- Abstract SMS delivery interface with stub and Twilio implementations
- OTPManager: issue / check / consume / verify / sweep over a ChallengeStore

Security:
- OTP is 6 digits (000000-999999, leading zeros allowed)
- Stored as HMAC-SHA256(pepper, identifier:code), never plaintext
- TTL: OTP_TTL_SECONDS (default 10 minutes)
- Max failed attempts: OTP_MAX_ATTEMPTS (default 5); the failure that
  reaches the limit locks the challenge out and deletes it
- Single-use: deleted after successful verification
- Issuing a new code replaces any pending one for the same identifier

Rate Limits:
- Per-IP limits on /otp/send and /otp/verify are enforced at route level
  via slowapi
"""

from __future__ import annotations

import hmac
import logging
import os
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from typing import Callable, Optional

import httpx

from watercan import config
from watercan.accounts.models import Challenge, OTP_LENGTH, normalize_identifier
from watercan.accounts.store import ChallengeStore, get_challenge_store
from watercan.errors import (
    ChallengeExpired,
    ChallengeNotFound,
    InvalidChallenge,
    TooManyAttempts,
    ValidationError,
)
from watercan.privacy_utils import mask_phone

log = logging.getLogger("watercan.otp")


# ============================================================
# OTP Utilities
# ============================================================

def generate_otp() -> str:
    """
    Generate a secure 6-digit OTP.

    Sampled uniformly from the full range, so "000123" is as likely as
    "987654".
    """
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


def hash_otp(otp: str, identifier: str = "", pepper: str = "") -> str:
    """
    Hash an OTP for storage.

    Binding the identifier means a stolen hash for one phone cannot be
    replayed against another.

    Returns:
        Hexadecimal HMAC-SHA256 digest.
    """
    message = f"{identifier}:{otp}".encode("utf-8")
    return hmac.new(pepper.encode("utf-8"), message, sha256).hexdigest()


def verify_otp_hash(otp: str, otp_hash: str, identifier: str = "", pepper: str = "") -> bool:
    """Verify OTP against stored hash (constant-time comparison)."""
    computed = hash_otp(otp, identifier, pepper)
    return hmac.compare_digest(computed, otp_hash)


# ============================================================
# SMS Delivery
# ============================================================

class SMSService(ABC):
    """
    Out-of-band delivery of OTP codes.

    Implementations:
    - StubSMSService: Logs a masked notice (development)
    - TwilioSMSService: Sends via Twilio Messages API (production)
    """

    @abstractmethod
    def send_otp(self, identifier: str, otp: str, ttl_seconds: int) -> bool:
        """
        Send OTP to a phone number.

        Returns:
            True if handed to the provider, False otherwise.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return provider name for logging."""


class StubSMSService(SMSService):
    """Stub that only logs. Never use in production."""

    def send_otp(self, identifier: str, otp: str, ttl_seconds: int) -> bool:
        log.info(
            "[STUB SMS] Would send OTP to %s (expires in %ds)",
            mask_phone(identifier), ttl_seconds,
        )
        return True

    def get_provider_name(self) -> str:
        return "stub"


class TwilioSMSService(SMSService):
    """
    OTP delivery via Twilio.

    Requires:
    - TWILIO_ACCOUNT_SID
    - TWILIO_AUTH_TOKEN
    - TWILIO_FROM or TWILIO_MESSAGING_SID
    - SMS_COUNTRY_CODE: Prefix for 10-digit identifiers (default: +91)
    """

    def __init__(self):
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN", "")
        self.from_number = os.getenv("TWILIO_FROM", "")
        self.messaging_sid = os.getenv("TWILIO_MESSAGING_SID", "")
        self.country_code = os.getenv("SMS_COUNTRY_CODE", "+91")

        if not (self.account_sid and self.auth_token):
            log.warning("TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN not set for Twilio provider")

    @property
    def messages_url(self) -> str:
        return f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def send_otp(self, identifier: str, otp: str, ttl_seconds: int) -> bool:
        if not (self.account_sid and self.auth_token):
            log.error("Cannot send OTP: Twilio credentials not configured")
            return False

        payload = {
            "To": f"{self.country_code}{identifier}",
            "Body": f"Your WaterCan verification code is {otp}. It expires in {ttl_seconds // 60} minutes.",
        }
        if self.messaging_sid:
            payload["MessagingServiceSid"] = self.messaging_sid
        else:
            payload["From"] = self.from_number

        try:
            response = httpx.post(
                self.messages_url,
                data=payload,
                auth=(self.account_sid, self.auth_token),
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            log.error("Failed to send OTP via Twilio: %s", str(e)[:100])
            return False

        if response.status_code in (200, 201):
            log.info("OTP sent via Twilio to %s", mask_phone(identifier))
            return True

        log.error("Twilio API error: %s %s", response.status_code, response.text[:100])
        return False

    def get_provider_name(self) -> str:
        return "twilio"


def get_sms_service() -> SMSService:
    """
    Get SMS service based on SMS_PROVIDER.

    Providers:
    - "stub" (default): Logs only
    - "twilio": Sends via Twilio
    """
    provider = config.get_sms_provider()

    if provider == "twilio":
        return TwilioSMSService()
    if provider != "stub":
        log.warning("Unknown SMS_PROVIDER '%s', falling back to stub", provider)
    return StubSMSService()


# ============================================================
# OTP Manager
# ============================================================

@dataclass(frozen=True)
class IssuedChallenge:
    challenge_id: str
    expires_in_seconds: int
    code: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OTPManager:
    """
    Manages the challenge lifecycle for one ChallengeStore.

    Verification states per identifier:
    - NoChallenge → ChallengeNotFound
    - Expired → challenge deleted, ChallengeExpired
    - LockedOut → challenge deleted, TooManyAttempts
    - Pending + wrong code → attempts incremented, InvalidChallenge
    - Pending + right code → Consumed (deleted by consume())

    Thresholds are read from config on each call unless given explicitly.
    """

    def __init__(
        self,
        store: Optional[ChallengeStore] = None,
        sms: Optional[SMSService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        ttl_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
        pepper: Optional[str] = None,
    ):
        self.store = store if store is not None else get_challenge_store()
        self.sms = sms if sms is not None else get_sms_service()
        self.clock = clock or _utcnow
        self._ttl_seconds = ttl_seconds
        self._max_attempts = max_attempts
        self._pepper = pepper

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds or config.get_otp_ttl_seconds()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts or config.get_otp_max_attempts()

    @property
    def pepper(self) -> str:
        return self._pepper if self._pepper is not None else config.get_otp_pepper()

    def issue(self, identifier: str) -> IssuedChallenge:
        """
        Issue a fresh challenge and deliver the code out-of-band.

        Raises:
            ValidationError: If the identifier is not 10 digits.
        """
        try:
            identifier = normalize_identifier(identifier)
        except ValueError as e:
            raise ValidationError(str(e))

        if not self.pepper:
            log.warning("OTP_PEPPER and JWT_SECRET unset - OTP hashes are unkeyed")

        code = generate_otp()
        now = self.clock()
        ttl = self.ttl_seconds
        challenge = Challenge(
            identifier=identifier,
            secret_hash=hash_otp(code, identifier, self.pepper),
            issued_at=now,
            expires_at=Challenge.compute_expiry(now, ttl),
        )
        self.store.put(identifier, challenge)

        if self.sms.send_otp(identifier, code, ttl):
            log.info("OTP issued for %s via %s", mask_phone(identifier), self.sms.get_provider_name())
        else:
            log.warning("OTP delivery failed for %s", mask_phone(identifier))

        return IssuedChallenge(
            challenge_id=challenge.challenge_id,
            expires_in_seconds=ttl,
            code=code,
        )

    def check(self, identifier: str, code: str) -> Challenge:
        """
        Evaluate a presented code without consuming the challenge.

        Returns:
            The matching Pending challenge.

        Raises:
            ChallengeNotFound, ChallengeExpired, TooManyAttempts,
            InvalidChallenge.
        """
        masked = mask_phone(identifier)
        challenge = self.store.get(identifier)

        if challenge is None:
            log.info("No OTP found for %s", masked)
            raise ChallengeNotFound()

        if challenge.is_expired(self.clock()):
            self.store.delete_if_match(identifier, challenge.challenge_id)
            log.info("OTP expired for %s", masked)
            raise ChallengeExpired()

        max_attempts = self.max_attempts
        if challenge.is_locked(max_attempts):
            self.store.delete_if_match(identifier, challenge.challenge_id)
            log.warning("OTP locked (max attempts) for %s", masked)
            raise TooManyAttempts()

        if not verify_otp_hash(code, challenge.secret_hash, identifier, self.pepper):
            attempts = self.store.increment_attempts(identifier, challenge.challenge_id)
            if attempts is None:
                log.info("OTP replaced or used during check for %s", masked)
                raise ChallengeNotFound()

            if attempts >= max_attempts:
                self.store.delete_if_match(identifier, challenge.challenge_id)
                log.warning("OTP locked after %d failed attempts for %s", attempts, masked)
                raise TooManyAttempts()

            remaining = max_attempts - attempts
            log.info("OTP mismatch for %s, %d attempts remaining", masked, remaining)
            raise InvalidChallenge(
                f"Invalid OTP. {remaining} attempts remaining.",
                remainingAttempts=remaining,
            )

        return challenge

    def consume(self, identifier: str, challenge_id: str) -> None:
        """
        Delete a checked challenge, exactly once.

        Raises:
            ChallengeNotFound: If the challenge was already consumed by a
                concurrent request or replaced by a newer one.
        """
        if not self.store.delete_if_match(identifier, challenge_id):
            log.info("OTP already consumed or replaced for %s", mask_phone(identifier))
            raise ChallengeNotFound()
        log.info("OTP consumed for %s", mask_phone(identifier))

    def verify(self, identifier: str, code: str) -> Challenge:
        """Check and consume in one step."""
        challenge = self.check(identifier, code)
        self.consume(identifier, challenge.challenge_id)
        return challenge

    def sweep(self) -> int:
        """Remove expired challenges now."""
        return self.store.sweep(self.clock())


# ============================================================
# Singleton
# ============================================================

_otp_manager: Optional[OTPManager] = None


def get_otp_manager() -> OTPManager:
    """Get singleton OTP manager instance (FastAPI dependency)."""
    global _otp_manager
    if _otp_manager is None:
        _otp_manager = OTPManager()
    return _otp_manager
