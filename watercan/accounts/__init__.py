# watercan/accounts/__init__.py
"""
WaterCan Accounts Package

This package provides:
- OTP challenge issuance and verification (users and distributors)
- Principal resolution (find-or-create on first login)
- Session tokens and authenticated-route dependencies
- Profile routes and the public payout lookup

Submodules:
- models: Pydantic models for Challenge, Principal, SessionClaims, wire schemas
- store: Challenge stores (in-memory, Redis) and the expiry sweeper
- otp: Code generation, hashing, SMS delivery, OTPManager
- principals: Principal repositories and PrincipalResolver
- auth: Token management, authenticate(), FastAPI dependencies
- auth_routes: FastAPI routes for /otp/send and /otp/verify
- routes: FastAPI routes for /profile and /{id}/payout
"""

from __future__ import annotations

# Explicit exports for clean imports
__all__ = [
    # Models
    "Challenge",
    "Principal",
    "PrincipalKind",
    "SessionClaims",
    # Store
    "ChallengeStore",
    "InMemoryChallengeStore",
    "RedisChallengeStore",
    # OTP
    "OTPManager",
    "generate_otp",
    "hash_otp",
    "verify_otp_hash",
    "get_otp_manager",
    # Principals
    "PrincipalResolver",
    "get_principal_repository",
    # Auth
    "create_token",
    "verify_token",
    "authenticate",
    "get_session_claims",
    "require_kind",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import pattern for clean module loading."""

    if name in ("Challenge", "Principal", "PrincipalKind", "SessionClaims"):
        from . import models
        return getattr(models, name)

    if name in ("ChallengeStore", "InMemoryChallengeStore", "RedisChallengeStore"):
        from . import store
        return getattr(store, name)

    if name in ("OTPManager", "generate_otp", "hash_otp", "verify_otp_hash", "get_otp_manager"):
        from . import otp
        return getattr(otp, name)

    if name in ("PrincipalResolver", "get_principal_repository"):
        from . import principals
        return getattr(principals, name)

    if name in ("create_token", "verify_token", "authenticate",
                "get_session_claims", "require_kind"):
        from . import auth
        return getattr(auth, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
