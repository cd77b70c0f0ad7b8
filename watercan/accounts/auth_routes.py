# watercan/accounts/auth_routes.py
"""
OTP authentication routes.

Endpoints (mounted once per principal kind):
- POST /api/users/otp/send, /api/distributors/otp/send: Issue a code
- POST /api/users/otp/verify, /api/distributors/otp/verify: Exchange a
  code for a session token

Rate Limits (per client address, via slowapi):
┌─────────────────────────────────────────────────────────────────────────┐
│ Endpoint      │ Default        │ Override                               │
├─────────────────────────────────────────────────────────────────────────┤
│ /otp/send     │ 5/15minutes    │ OTP_SEND_RATE_LIMIT                    │
│ /otp/verify   │ 10/15minutes   │ OTP_VERIFY_RATE_LIMIT                  │
└─────────────────────────────────────────────────────────────────────────┘
User and distributor routes keep separate counters.

Security:
- Codes are never returned unless OTP_ECHO_ENABLED is on outside
  production
- No raw identifiers or codes in logs
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request

from watercan import config
from watercan.accounts.auth import authenticate
from watercan.accounts.models import (
    PrincipalKind,
    PrincipalOut,
    SendOTPInput,
    SendOTPResponse,
    VerifyOTPInput,
    VerifyOTPResponse,
)
from watercan.accounts.otp import OTPManager, get_otp_manager
from watercan.accounts.principals import (
    PrincipalRepository,
    PrincipalResolver,
    get_principal_repository,
)
from watercan.ratelimit import limiter

log = logging.getLogger("watercan.auth_routes")

PREFIXES = {
    PrincipalKind.USER: "/api/users",
    PrincipalKind.DISTRIBUTOR: "/api/distributors",
}


def get_principal_resolver(
    repository: PrincipalRepository = Depends(get_principal_repository),
) -> PrincipalResolver:
    return PrincipalResolver(repository)


def _named(func, name: str):
    # slowapi keys counters by function name
    func.__name__ = name
    func.__qualname__ = name
    return func


def build_auth_router(kind: PrincipalKind) -> APIRouter:
    """Build the /otp/send and /otp/verify routes for one principal kind."""
    router = APIRouter(prefix=PREFIXES[kind], tags=[f"{kind.value.capitalize()} Authentication"])

    async def send_otp(
        request: Request,
        body: SendOTPInput,
        otp: OTPManager = Depends(get_otp_manager),
    ) -> SendOTPResponse:
        """
        Issue a verification code for the identifier.

        Any pending code for the same identifier is replaced. The code
        expires after OTP_TTL_SECONDS and can be used once.
        """
        issued = await asyncio.to_thread(otp.issue, body.identifier)
        echo = config.is_otp_echo_enabled()
        if echo:
            log.info("OTP echo enabled - returning code in response")

        return SendOTPResponse(
            challenge_id=issued.challenge_id,
            expires_in_seconds=issued.expires_in_seconds,
            code=issued.code if echo else None,
        )

    async def verify_otp(
        request: Request,
        body: VerifyOTPInput,
        otp: OTPManager = Depends(get_otp_manager),
        resolver: PrincipalResolver = Depends(get_principal_resolver),
    ) -> VerifyOTPResponse:
        """
        Verify the code and issue a session token.

        New accounts need ``displayName``. Without it the request fails
        with DISPLAY_NAME_REQUIRED and the code stays valid for a retry.
        """
        result = await asyncio.to_thread(
            authenticate,
            body.identifier,
            body.code,
            kind,
            body.display_name,
            otp_manager=otp,
            resolver=resolver,
        )
        return VerifyOTPResponse(
            token=result.token,
            expires_at=result.expires_at.isoformat(),
            principal=PrincipalOut.from_principal(result.principal),
            is_new=result.is_new,
        )

    send_endpoint = limiter.limit(config.get_send_rate_limit)(
        _named(send_otp, f"send_{kind.value}_otp")
    )
    verify_endpoint = limiter.limit(config.get_verify_rate_limit)(
        _named(verify_otp, f"verify_{kind.value}_otp")
    )

    router.add_api_route(
        "/otp/send",
        send_endpoint,
        methods=["POST"],
        status_code=202,
        response_model=SendOTPResponse,
        response_model_exclude_none=True,
        responses={
            400: {"description": "Invalid identifier"},
            429: {"description": "Rate limit exceeded"},
        },
        summary="Send OTP",
    )
    router.add_api_route(
        "/otp/verify",
        verify_endpoint,
        methods=["POST"],
        status_code=200,
        response_model=VerifyOTPResponse,
        response_model_exclude_none=True,
        responses={
            400: {"description": "Invalid, expired, or locked-out code; or display name required"},
            429: {"description": "Rate limit exceeded"},
        },
        summary="Verify OTP",
    )
    return router


user_auth_router = build_auth_router(PrincipalKind.USER)
distributor_auth_router = build_auth_router(PrincipalKind.DISTRIBUTOR)
