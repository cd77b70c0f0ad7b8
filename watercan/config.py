# watercan/config.py
"""
Runtime configuration for the WaterCan API.

All settings are read from the environment at call time so that tests can
patch ``os.environ`` without reloading modules.

Environment Variables:
- APP_ENV: "production" | "staging" | "development" (default: development)
- JWT_SECRET: Session signing secret (REQUIRED, no default)
- JWT_EXPIRY_DAYS: Session lifetime in days (default: 30)
- OTP_PEPPER: Key for hashing OTP secrets at rest (default: JWT_SECRET)
- OTP_TTL_SECONDS: Challenge validity window (default: 600)
- OTP_MAX_ATTEMPTS: Failed verifications before lockout (default: 5)
- OTP_SWEEP_INTERVAL_SECONDS: Expired-challenge sweep period (default: 300)
- OTP_SEND_RATE_LIMIT: Per-IP issuance limit (default: 5/15minutes)
- OTP_VERIFY_RATE_LIMIT: Per-IP verification limit (default: 10/15minutes)
- OTP_ECHO_ENABLED: Return the code in /otp/send responses (default: off,
  always off when APP_ENV=production)
- OTP_STORE: "memory" | "redis" (default: memory)
- REDIS_URL: Redis connection URL for OTP_STORE=redis
- SMS_PROVIDER: "stub" | "twilio" (default: stub)
- ALLOWED_ORIGINS: Comma-separated CORS origins
"""

from __future__ import annotations

import os
import logging
from typing import List

log = logging.getLogger("watercan.config")

DEFAULT_OTP_TTL_SECONDS = 600
DEFAULT_OTP_MAX_ATTEMPTS = 5
DEFAULT_SWEEP_INTERVAL_SECONDS = 300
DEFAULT_JWT_EXPIRY_DAYS = 30
DEFAULT_SEND_RATE_LIMIT = "5/15minutes"
DEFAULT_VERIFY_RATE_LIMIT = "10/15minutes"

MIN_SECRET_LENGTH = 32


def _flag_on(name: str) -> bool:
    """Check if a feature flag is enabled. Default: off."""
    val = os.getenv(name, "off").lower()
    return val in ("on", "true", "1", "yes")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("%s=%r is not an integer, using %d", name, raw, default)
        return default
    if value <= 0:
        log.warning("%s must be positive, using %d", name, default)
        return default
    return value


# ============================================================
# Environment
# ============================================================

def get_app_env() -> str:
    return os.getenv("APP_ENV", "development").strip().lower()


def is_production() -> bool:
    return get_app_env() == "production"


# ============================================================
# Session Tokens
# ============================================================

def get_jwt_secret() -> str:
    """Get session signing secret from environment. Empty if unset."""
    return os.getenv("JWT_SECRET", "").strip()


def get_jwt_expiry_days() -> int:
    return _int_env("JWT_EXPIRY_DAYS", DEFAULT_JWT_EXPIRY_DAYS)


# ============================================================
# OTP
# ============================================================

def get_otp_pepper() -> str:
    """Key used to hash OTP codes before they are stored."""
    return os.getenv("OTP_PEPPER", "").strip() or get_jwt_secret()


def get_otp_ttl_seconds() -> int:
    return _int_env("OTP_TTL_SECONDS", DEFAULT_OTP_TTL_SECONDS)


def get_otp_max_attempts() -> int:
    return _int_env("OTP_MAX_ATTEMPTS", DEFAULT_OTP_MAX_ATTEMPTS)


def get_sweep_interval_seconds() -> int:
    return _int_env("OTP_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS)


def get_send_rate_limit() -> str:
    return os.getenv("OTP_SEND_RATE_LIMIT", DEFAULT_SEND_RATE_LIMIT).strip() or DEFAULT_SEND_RATE_LIMIT


def get_verify_rate_limit() -> str:
    return os.getenv("OTP_VERIFY_RATE_LIMIT", DEFAULT_VERIFY_RATE_LIMIT).strip() or DEFAULT_VERIFY_RATE_LIMIT


def is_otp_echo_enabled() -> bool:
    """
    Whether /otp/send may return the plaintext code.

    Test/staging escape hatch only. Never honoured in production.
    """
    return _flag_on("OTP_ECHO_ENABLED") and not is_production()


def get_otp_store_backend() -> str:
    return os.getenv("OTP_STORE", "memory").strip().lower()


def get_redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0").strip()


def get_sms_provider() -> str:
    return os.getenv("SMS_PROVIDER", "stub").strip().lower()


# ============================================================
# HTTP
# ============================================================

def get_allowed_origins() -> List[str]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    return [o.strip() for o in raw.split(",") if o.strip()]


# ============================================================
# Startup Validation
# ============================================================

def validate_settings() -> List[str]:
    """
    Check settings that must be present before serving traffic.

    Returns:
        List of problems found. Each is also logged. In production a
        missing signing secret or a stub SMS provider is an error; in other
        environments these are warnings.
    """
    problems: List[str] = []
    secret = get_jwt_secret()

    if not secret:
        problems.append("JWT_SECRET not set - session issuance will fail")
    elif len(secret) < MIN_SECRET_LENGTH:
        problems.append(f"JWT_SECRET should be at least {MIN_SECRET_LENGTH} characters")

    if is_production() and get_sms_provider() == "stub":
        problems.append("SMS_PROVIDER=stub in production - codes will not be delivered")

    if is_production() and _flag_on("OTP_ECHO_ENABLED"):
        log.warning("OTP_ECHO_ENABLED is set in production and will be ignored")

    if is_production() and get_otp_store_backend() == "memory":
        log.warning("OTP_STORE=memory in production - challenges are lost on restart and not shared across instances")

    for problem in problems:
        if is_production():
            log.error(problem)
        else:
            log.warning(problem)
    return problems
