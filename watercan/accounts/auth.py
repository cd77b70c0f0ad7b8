# watercan/accounts/auth.py
"""
Session issuance and authentication.

This module provides:
- Session token creation and verification (PyJWT, HS256)
- authenticate(): OTP check → principal resolution → consume → token
- FastAPI dependencies for authenticated routes

Environment Variables Required:
- JWT_SECRET: Random 32+ character string (REQUIRED, no default)
- JWT_EXPIRY_DAYS: Token expiry in days (default: 30)

Token Payload:
- principal_id: Principal UUID
- identifier: 10-digit phone
- kind: "user" | "distributor"
- iat: Issued at timestamp
- exp: Expiry timestamp

Status Codes:
- Missing bearer token → 401
- Invalid, expired, or wrong-kind token → 403
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError as PydanticValidationError

from watercan import config
from watercan.accounts.models import Principal, PrincipalKind, SessionClaims
from watercan.accounts.otp import OTPManager
from watercan.accounts.principals import PrincipalResolver
from watercan.errors import Forbidden, Internal, Unauthorized
from watercan.privacy_utils import hash_principal_id, mask_phone

log = logging.getLogger("watercan.auth")

ALGORITHM = "HS256"


# ============================================================
# Token Creation
# ============================================================

def create_token(principal: Principal, now: Optional[datetime] = None) -> Tuple[str, datetime]:
    """
    Create signed session token for a principal.

    Returns:
        Tuple of (token: str, expires_at: datetime).

    Raises:
        Internal: If JWT_SECRET not configured.
    """
    secret = config.get_jwt_secret()
    if not secret:
        log.error("Cannot issue token: JWT_SECRET not configured")
        raise Internal("Authentication configuration error.")

    now = now or datetime.now(timezone.utc)
    expiry_days = config.get_jwt_expiry_days()
    expires_at = now + timedelta(days=expiry_days)

    payload = {
        "principal_id": principal.id,
        "identifier": principal.identifier,
        "kind": principal.kind.value,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }

    token = jwt.encode(payload, secret, algorithm=ALGORITHM)

    log.info(
        "Token created for %s %s (expires in %dd)",
        principal.kind.value, hash_principal_id(principal.id), expiry_days,
    )
    return token, expires_at


def verify_token(token: str) -> SessionClaims:
    """
    Verify and decode a session token.

    Raises:
        Forbidden: If the token is invalid, expired, or malformed, or if
            JWT_SECRET is not configured.
    """
    secret = config.get_jwt_secret()
    if not secret:
        log.error("Cannot verify token: JWT_SECRET not configured")
        raise Forbidden()

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        log.info("Token expired")
        raise Forbidden()
    except jwt.InvalidTokenError as e:
        log.warning("Invalid token: %s", str(e)[:50])
        raise Forbidden()

    try:
        return SessionClaims(**payload)
    except PydanticValidationError:
        log.warning("Token payload missing required claims")
        raise Forbidden()


# ============================================================
# Authentication After OTP Verification
# ============================================================

@dataclass
class AuthResult:
    token: str
    expires_at: datetime
    principal: Principal
    is_new: bool


def authenticate(
    identifier: str,
    code: str,
    kind: PrincipalKind,
    display_name: Optional[str],
    otp_manager: OTPManager,
    resolver: PrincipalResolver,
) -> AuthResult:
    """
    Exchange a verified OTP for a session.

    Order matters:
    1. check() the code without consuming the challenge
    2. resolve the principal (may raise DisplayNameRequired)
    3. consume the challenge
    4. issue the token

    A DisplayNameRequired failure therefore leaves the challenge pending
    so the client can resubmit the same code with a name. Routes call
    this from a worker thread; if two requests present the same code,
    consume() lets only one of them through.
    """
    challenge = otp_manager.check(identifier, code)
    principal, is_new = resolver.resolve(identifier, kind, display_name)
    otp_manager.consume(identifier, challenge.challenge_id)

    token, expires_at = create_token(principal)
    log.info(
        "%s authenticated: %s (new=%s)",
        kind.value.capitalize(), mask_phone(identifier), is_new,
    )
    return AuthResult(token=token, expires_at=expires_at, principal=principal, is_new=is_new)


# ============================================================
# FastAPI Dependencies
# ============================================================

# HTTP Bearer token extractor
bearer_scheme = HTTPBearer(auto_error=False)


async def get_session_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> SessionClaims:
    """
    Decode the caller's session (required).

    Raises:
        Unauthorized: No bearer token supplied.
        Forbidden: Token invalid or expired.
    """
    if not credentials or not credentials.credentials:
        raise Unauthorized()
    return verify_token(credentials.credentials)


def require_kind(kind: PrincipalKind) -> Callable:
    """
    Build a dependency that only admits sessions of one principal kind.

    Usage:
        @router.get("/profile")
        def profile(claims: SessionClaims = Depends(require_kind(PrincipalKind.USER))):
            ...
    """

    async def dependency(claims: SessionClaims = Depends(get_session_claims)) -> SessionClaims:
        if claims.kind != kind:
            log.info(
                "Rejected %s token on %s route (%s)",
                claims.kind.value, kind.value, hash_principal_id(claims.principal_id),
            )
            raise Forbidden("Access denied for this account type.")
        return claims

    return dependency
