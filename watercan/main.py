# watercan/main.py
"""
WaterCan API application.

Routers:
- /api/users/otp/*, /api/distributors/otp/*: OTP authentication
- /api/users/profile, /api/distributors/profile: Own profile
- /api/distributors/{id}/payout: Public payout lookup
- /api/users/can-status: Household can inventory
- /health: Liveness and database status

Startup:
- Validate settings (missing secrets are logged as errors in production)
- Initialise the Supabase client
- Start the expired-challenge sweeper; it is cancelled on shutdown
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from watercan import __version__, config
from watercan.accounts.auth_routes import distributor_auth_router, user_auth_router
from watercan.accounts.otp import get_otp_manager
from watercan.accounts.routes import (
    distributor_profile_router,
    payout_router,
    user_profile_router,
)
from watercan.accounts.store import run_sweeper
from watercan.canstatus import router as can_status_router
from watercan.db import check_db_health, init_db
from watercan.errors import register_exception_handlers
from watercan.ratelimit import limiter

# =========================
# Logging
# =========================
logger = logging.getLogger("watercan")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")


# =========================
# Lifespan
# =========================
@asynccontextmanager
async def lifespan(app: FastAPI):
    config.validate_settings()
    init_db()

    manager = get_otp_manager()
    sweeper = asyncio.create_task(
        run_sweeper(manager.store, config.get_sweep_interval_seconds(), manager.clock)
    )
    logger.info("WaterCan API started (env=%s)", config.get_app_env())

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("WaterCan API stopped")


# =========================
# App Setup
# =========================
app = FastAPI(title="WaterCan API", version=__version__, lifespan=lifespan)
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get_allowed_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(user_auth_router)
app.include_router(distributor_auth_router)
app.include_router(user_profile_router)
app.include_router(distributor_profile_router)
app.include_router(payout_router)
app.include_router(can_status_router)


@app.get("/health")
def health():
    return {"status": "ok", "version": __version__, **check_db_health()}
