# tests/conftest.py
"""
Pytest configuration and shared fixtures.

- Rate limiting disabled by default (enabled explicitly in rate-limit tests)
- In-memory challenge store, principal and can-status repositories
- Controllable clock for expiry tests
- Recording SMS service so tests can read delivered codes
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from watercan.main import app
from watercan.ratelimit import limiter
from watercan.accounts.otp import OTPManager, SMSService, get_otp_manager
from watercan.accounts.principals import InMemoryPrincipalRepository, get_principal_repository
from watercan.accounts.store import InMemoryChallengeStore
from watercan.canstatus import InMemoryCanStatusRepository, get_can_status_repository

TEST_SECRET = "test-secret-for-testing-only-not-production"


# ============================================================
# Rate Limiter Disabling
# ============================================================
# Prevents 429 when many POSTs run against the same address.

app.state.limiter.enabled = False


@pytest.fixture
def rate_limited():
    """Enable the limiter with fresh counters for one test."""
    limiter.reset()
    limiter.enabled = True
    yield limiter
    limiter.enabled = False
    limiter.reset()


# ============================================================
# Environment
# ============================================================

@pytest.fixture(autouse=True)
def test_env():
    """Known-good environment for every test."""
    env = {
        "APP_ENV": "test",
        "JWT_SECRET": TEST_SECRET,
        "OTP_PEPPER": "",
        "OTP_ECHO_ENABLED": "off",
        "OTP_STORE": "memory",
        "SMS_PROVIDER": "stub",
    }
    with patch.dict(os.environ, env):
        for name in ("OTP_TTL_SECONDS", "OTP_MAX_ATTEMPTS", "JWT_EXPIRY_DAYS",
                     "OTP_SEND_RATE_LIMIT", "OTP_VERIFY_RATE_LIMIT"):
            os.environ.pop(name, None)
        yield


# ============================================================
# Test Doubles
# ============================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingSMSService(SMSService):
    """Keeps the last code sent to each identifier."""

    def __init__(self, succeed=True):
        self.sent = {}
        self.succeed = succeed

    def send_otp(self, identifier, otp, ttl_seconds):
        self.sent[identifier] = otp
        return self.succeed

    def get_provider_name(self):
        return "recording"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryChallengeStore()


@pytest.fixture
def sms():
    return RecordingSMSService()


@pytest.fixture
def otp_manager(store, sms, clock):
    return OTPManager(store=store, sms=sms, clock=clock)


@pytest.fixture
def principal_repo():
    return InMemoryPrincipalRepository()


@pytest.fixture
def can_repo():
    return InMemoryCanStatusRepository()


# ============================================================
# API Client
# ============================================================

@pytest.fixture
def client(otp_manager, principal_repo, can_repo):
    """TestClient with in-memory dependencies. Lifespan is not run."""
    app.dependency_overrides[get_otp_manager] = lambda: otp_manager
    app.dependency_overrides[get_principal_repository] = lambda: principal_repo
    app.dependency_overrides[get_can_status_repository] = lambda: can_repo
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login(client, sms):
    """Run a full send → verify cycle and return the verify response JSON."""

    def _login(identifier="9876543210", kind="users", display_name="Asha"):
        sent = client.post(f"/api/{kind}/otp/send", json={"identifier": identifier})
        assert sent.status_code == 202, sent.text
        body = {"identifier": identifier, "code": sms.sent[identifier]}
        if display_name is not None:
            body["displayName"] = display_name
        verified = client.post(f"/api/{kind}/otp/verify", json=body)
        assert verified.status_code == 200, verified.text
        return verified.json()

    return _login