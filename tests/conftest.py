"""
Shared test fixtures.

Provides a FastAPI TestClient wired to:
  • a temporary SQLite database (via app lifespan)
  • a fake SMS sender that records codes instead of sending them
  • a fresh in-memory rate limiter per test (disabled unless asked for)

Service-level tests use the async ``database`` fixture instead, which
opens the same schema on the test's own event loop.
"""

from __future__ import annotations

from typing import Callable

import pytest
from fastapi.testclient import TestClient

from agroai import db
from agroai.dependencies import get_otp_service, get_session_service
from agroai.main import app
from agroai.models import District
from agroai.rate_limit import RateLimiter, get_rate_limiter
from agroai.services.otp import OtpService
from agroai.services.sessions import SessionService
from tests.mocks.models import MOCK_PHONE
from tests.mocks.services import FakeSmsSender, make_limiter


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture()
def _test_env(monkeypatch, tmp_path):
    """Point the app at a temp database."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "test.db"))


@pytest.fixture()
def sms() -> FakeSmsSender:
    return FakeSmsSender()


@pytest.fixture()
def sessions() -> SessionService:
    return SessionService()


@pytest.fixture()
def otp_service(sms: FakeSmsSender, sessions: SessionService) -> OtpService:
    return OtpService(sender=sms, sessions=sessions)


def _make_client(otp_service: OtpService, sessions: SessionService, limiter: RateLimiter):
    app.dependency_overrides[get_otp_service] = lambda: otp_service
    app.dependency_overrides[get_session_service] = lambda: sessions
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc

    app.dependency_overrides.clear()


@pytest.fixture()
def client(_test_env, otp_service, sessions) -> TestClient:
    """
    TestClient with a temp DB, the fake SMS sender and rate limiting off.

    Uses a context manager so the lifespan runs (DB init/shutdown).
    """
    yield from _make_client(otp_service, sessions, make_limiter(enabled=False))


@pytest.fixture()
def limited_client(_test_env, otp_service, sessions) -> TestClient:
    """Like ``client`` but with rate limiting **enabled** on fresh counters."""
    yield from _make_client(otp_service, sessions, make_limiter(enabled=True))


@pytest.fixture()
def register(sms: FakeSmsSender) -> Callable[..., dict]:
    """
    Run the full send-otp → verify-otp registration flow.

    Returns the verify-otp response body (``token``, ``user``...).
    """

    def _register(
        tc: TestClient,
        phone_number: str = MOCK_PHONE,
        district: District = District.LUDHIANA,
    ) -> dict:
        resp = tc.post("/api/auth/send-otp", json={"phone_number": phone_number})
        assert resp.status_code == 200, resp.text
        resp = tc.post(
            "/api/auth/verify-otp",
            json={
                "phone_number": phone_number,
                "otp_code": sms.last_code(phone_number),
                "district": district.value,
            },
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _register


@pytest.fixture()
async def database(monkeypatch, tmp_path):
    """Initialised database on the running test loop."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "test.db"))
    await db.init_db()
    yield
    await db.close_db()
