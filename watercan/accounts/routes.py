# watercan/accounts/routes.py
"""
Profile routes.

Endpoints:
- GET /api/users/profile, /api/distributors/profile: Own profile (auth required)
- PUT /api/users/profile, /api/distributors/profile: Partial update (auth required)
- GET /api/distributors/{distributor_id}/payout: Public payout handle lookup

Updatable Fields:
- Users: displayName
- Distributors: displayName, payoutHandle (null or "" clears it), isActive

Security:
- A session only ever reads or writes its own principal
- Tokens of the other kind are rejected with 403
- Response headers: Cache-Control: no-store
"""

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, Response

from watercan.accounts.auth import require_kind
from watercan.accounts.models import (
    DistributorProfileUpdate,
    PayoutLookupResponse,
    PrincipalKind,
    PrincipalOut,
    ProfileResponse,
    SessionClaims,
    UserProfileUpdate,
)
from watercan.accounts.principals import PrincipalRepository, get_principal_repository
from watercan.accounts.auth_routes import PREFIXES
from watercan.errors import NotFound, ValidationError
from watercan.privacy_utils import hash_principal_id

log = logging.getLogger("watercan.profile_routes")

_UPDATE_MODELS = {
    PrincipalKind.USER: UserProfileUpdate,
    PrincipalKind.DISTRIBUTOR: DistributorProfileUpdate,
}


def build_profile_router(kind: PrincipalKind) -> APIRouter:
    """Build GET/PUT /profile for one principal kind."""
    router = APIRouter(prefix=PREFIXES[kind], tags=[f"{kind.value.capitalize()} Profile"])
    update_model = _UPDATE_MODELS[kind]
    require_session = require_kind(kind)

    @router.get("/profile", response_model=ProfileResponse, response_model_exclude_none=True)
    async def get_profile(
        response: Response,
        claims: SessionClaims = Depends(require_session),
        repository: PrincipalRepository = Depends(get_principal_repository),
    ):
        principal = await asyncio.to_thread(repository.get_by_id, kind, claims.principal_id)
        if principal is None:
            log.info("Profile not found for %s", hash_principal_id(claims.principal_id))
            raise NotFound(f"{kind.value.capitalize()} not found.")

        response.headers["Cache-Control"] = "no-store"
        return ProfileResponse(principal=PrincipalOut.from_principal(principal))

    @router.put("/profile", response_model=ProfileResponse, response_model_exclude_none=True)
    async def update_profile(
        body: update_model,
        response: Response,
        claims: SessionClaims = Depends(require_session),
        repository: PrincipalRepository = Depends(get_principal_repository),
    ):
        changes = body.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("No fields to update.")

        principal = await asyncio.to_thread(repository.update, kind, claims.principal_id, changes)
        if principal is None:
            raise NotFound(f"{kind.value.capitalize()} not found.")

        log.info(
            "Profile updated for %s %s (fields=%s)",
            kind.value, hash_principal_id(claims.principal_id), ",".join(sorted(changes)),
        )
        response.headers["Cache-Control"] = "no-store"
        return ProfileResponse(principal=PrincipalOut.from_principal(principal))

    return router


user_profile_router = build_profile_router(PrincipalKind.USER)
distributor_profile_router = build_profile_router(PrincipalKind.DISTRIBUTOR)


# ============================================================
# Payout Lookup
# ============================================================

payout_router = APIRouter(prefix=PREFIXES[PrincipalKind.DISTRIBUTOR], tags=["Distributor Payout"])


@payout_router.get(
    "/{distributor_id}/payout",
    response_model=PayoutLookupResponse,
    summary="Payout handle for a distributor",
)
async def get_payout_handle(
    distributor_id: str,
    repository: PrincipalRepository = Depends(get_principal_repository),
):
    """Public lookup used by customers paying a distributor directly."""
    try:
        uuid.UUID(distributor_id)
    except ValueError:
        raise NotFound("Distributor not found.")

    distributor = await asyncio.to_thread(repository.get_by_id, PrincipalKind.DISTRIBUTOR, distributor_id)
    if distributor is None:
        raise NotFound("Distributor not found.")

    return PayoutLookupResponse(
        distributor_id=distributor.id,
        display_name=distributor.display_name,
        payout_handle=distributor.payout_handle,
    )
