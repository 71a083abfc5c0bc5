"""Tests for rate limiting behaviour."""

import asyncio
import time

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from agroai.dependencies import get_optional_user
from agroai.errors import RateLimited, install_error_handlers
from agroai.main import app as main_app
from agroai.rate_limit import (
    RateLimitPolicy,
    client_ip,
    get_rate_limiter,
    rate_limit,
)
from tests.mocks.services import make_limiter
from tests.mocks.models import MOCK_PHONE, MOCK_PHONE_2, MOCK_USER, make_user


class TestOtpRequestLimit:
    def test_fourth_send_is_rejected(self, limited_client):
        """POST /api/auth/send-otp is limited to 3 requests/hour per phone."""
        for i in range(3):
            resp = limited_client.post("/api/auth/send-otp", json={"phone_number": MOCK_PHONE})
            assert resp.status_code == 200, f"Request {i + 1} should succeed"

        resp = limited_client.post("/api/auth/send-otp", json={"phone_number": MOCK_PHONE})
        assert resp.status_code == 429
        data = resp.json()
        assert data["error"] == "rate_limited"
        assert "OTP requests" in data["message"]
        assert 0 < data["retry_after"] <= 3600
        assert resp.headers["Retry-After"] == str(data["retry_after"])

    def test_limit_is_per_phone(self, limited_client):
        for _ in range(3):
            limited_client.post("/api/auth/send-otp", json={"phone_number": MOCK_PHONE})

        resp = limited_client.post("/api/auth/send-otp", json={"phone_number": MOCK_PHONE_2})
        assert resp.status_code == 200

    def test_rejected_requests_send_nothing(self, limited_client, sms):
        for _ in range(5):
            limited_client.post("/api/auth/send-otp", json={"phone_number": MOCK_PHONE})
        assert len(sms.sent) == 3


class TestAuthLimit:
    def test_failed_verifications_are_limited(self, limited_client):
        """POST /api/auth/verify-otp allows 5 failures per 15 minutes."""
        body = {"phone_number": MOCK_PHONE, "otp_code": "000000", "district": "Moga"}
        for i in range(5):
            resp = limited_client.post("/api/auth/verify-otp", json=body)
            assert resp.status_code == 400, f"Request {i + 1} should not be rate-limited"

        resp = limited_client.post("/api/auth/verify-otp", json=body)
        assert resp.status_code == 429
        assert resp.json()["error"] == "rate_limited"

    def test_successful_verifications_are_not_counted(self, limited_client, register):
        for n in range(7):
            register(limited_client, phone_number=f"90000000{n:02d}")


class TestGeneralLimit:
    def test_low_volume_not_limited(self, limited_client):
        for _ in range(20):
            assert limited_client.get("/api/health").status_code == 200

    def test_general_limit_applies_everywhere(self, _test_env, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_GENERAL", "2/minute")
        limiter = make_limiter(enabled=True)

        main_app.dependency_overrides[get_rate_limiter] = lambda: limiter
        try:
            with TestClient(main_app, raise_server_exceptions=False) as tc:
                assert tc.get("/api/health").status_code == 200
                assert tc.get("/api/health").status_code == 200
                resp = tc.post("/api/auth/send-otp", json={"phone_number": MOCK_PHONE})
                assert resp.status_code == 429
                assert resp.json()["message"].startswith("Rate limit exceeded.")
        finally:
            main_app.dependency_overrides.clear()


class TestUserKeyedPolicies:
    @pytest.fixture()
    def make_client(self):
        """Tiny app exposing one route per user-keyed policy."""

        def _make(user=None):
            app = FastAPI()
            install_error_handlers(app)
            for policy in (RateLimitPolicy.AI, RateLimitPolicy.UPLOAD, RateLimitPolicy.COMMUNITY):
                app.add_api_route(
                    f"/{policy.value}",
                    lambda: {"ok": True},
                    dependencies=[Depends(rate_limit(policy))],
                )
            limiter = make_limiter(enabled=True)
            app.dependency_overrides[get_rate_limiter] = lambda: limiter
            app.dependency_overrides[get_optional_user] = lambda: user
            return TestClient(app, raise_server_exceptions=False)

        return _make

    @pytest.mark.parametrize(
        ("policy", "allowed", "message"),
        [
            ("ai", 50, "AI usage"),
            ("upload", 20, "File upload"),
            ("community", 30, "Community posting"),
        ],
    )
    def test_policy_ceiling(self, make_client, policy, allowed, message):
        with make_client(MOCK_USER) as tc:
            for _ in range(allowed):
                assert tc.get(f"/{policy}").status_code == 200

            resp = tc.get(f"/{policy}")
        assert resp.status_code == 429
        assert message in resp.json()["message"]

    def test_policies_are_independent(self, make_client):
        with make_client(MOCK_USER) as tc:
            for _ in range(20):
                tc.get("/upload")
            assert tc.get("/upload").status_code == 429
            assert tc.get("/community").status_code == 200

    async def test_keyed_by_user(self):
        limiter = make_limiter(enabled=True)
        dep = rate_limit(RateLimitPolicy.UPLOAD)
        request = _fake_request("10.0.0.1")

        for _ in range(20):
            await dep(request, limiter, MOCK_USER)
        with pytest.raises(RateLimited):
            await dep(request, limiter, MOCK_USER)

        # Same IP, different user: separate bucket.
        await dep(request, limiter, make_user(id="user-2", phone_number=MOCK_PHONE_2))

    async def test_anonymous_falls_back_to_ip(self):
        limiter = make_limiter(enabled=True)
        dep = rate_limit(RateLimitPolicy.UPLOAD)

        for _ in range(20):
            await dep(_fake_request("10.0.0.1"), limiter, None)
        with pytest.raises(RateLimited):
            await dep(_fake_request("10.0.0.1"), limiter, None)
        await dep(_fake_request("10.0.0.2"), limiter, None)


class TestRateLimiter:
    async def test_window_resets(self, monkeypatch):
        # Counters and retry-after both read the wall clock.
        now = [1_772_355_600.0]
        monkeypatch.setattr(time, "time", lambda: now[0])
        limiter = make_limiter(enabled=True)
        key = f"phone:{MOCK_PHONE}"

        for _ in range(3):
            await limiter.admit(RateLimitPolicy.OTP_REQUEST, key)
        with pytest.raises(RateLimited) as exc_info:
            await limiter.admit(RateLimitPolicy.OTP_REQUEST, key)
        assert exc_info.value.retry_after == 3600

        now[0] += 1800
        with pytest.raises(RateLimited) as exc_info:
            await limiter.admit(RateLimitPolicy.OTP_REQUEST, key)
        assert exc_info.value.retry_after == 1800

        now[0] += 1801
        decision = await limiter.admit(RateLimitPolicy.OTP_REQUEST, key)
        assert decision.allowed
        assert decision.remaining == 2

    async def test_skip_successful_refunds_successes(self):
        limiter = make_limiter(enabled=True)
        for _ in range(10):
            await limiter.admit(RateLimitPolicy.AUTH, "ip:1.2.3.4")
            await limiter.record_success(RateLimitPolicy.AUTH, "ip:1.2.3.4")

        for _ in range(5):
            await limiter.admit(RateLimitPolicy.AUTH, "ip:1.2.3.4")
        with pytest.raises(RateLimited):
            await limiter.admit(RateLimitPolicy.AUTH, "ip:1.2.3.4")

    async def test_concurrent_failures_cannot_exceed_ceiling(self):
        limiter = make_limiter(enabled=True)

        async def _failing_attempt() -> bool:
            try:
                await limiter.admit(RateLimitPolicy.AUTH, "ip:1.2.3.4")
            except RateLimited:
                return False
            # Verification in flight; nothing is refunded for a failure.
            await asyncio.sleep(0)
            return True

        results = await asyncio.gather(*(_failing_attempt() for _ in range(10)))
        assert sum(results) == 5

    async def test_refund_never_goes_negative(self):
        limiter = make_limiter(enabled=True)
        await limiter.record_success(RateLimitPolicy.AUTH, "ip:1.2.3.4")

        for _ in range(5):
            await limiter.admit(RateLimitPolicy.AUTH, "ip:1.2.3.4")
        with pytest.raises(RateLimited):
            await limiter.admit(RateLimitPolicy.AUTH, "ip:1.2.3.4")

    async def test_record_success_ignored_for_counting_policies(self):
        limiter = make_limiter(enabled=True)
        for _ in range(3):
            await limiter.admit(RateLimitPolicy.OTP_REQUEST, "phone:1")
            await limiter.record_success(RateLimitPolicy.OTP_REQUEST, "phone:1")
        with pytest.raises(RateLimited):
            await limiter.admit(RateLimitPolicy.OTP_REQUEST, "phone:1")

    async def test_disabled_limiter_admits_everything(self):
        limiter = make_limiter(enabled=False)
        for _ in range(10):
            decision = await limiter.admit(RateLimitPolicy.OTP_REQUEST, "phone:1")
            assert decision.allowed

    async def test_reset_clears_counters(self):
        limiter = make_limiter(enabled=True)
        for _ in range(3):
            await limiter.admit(RateLimitPolicy.OTP_REQUEST, "phone:1")
        await limiter.reset()
        await limiter.admit(RateLimitPolicy.OTP_REQUEST, "phone:1")

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_OTP_REQUEST", "10/minute")
        limiter = make_limiter(enabled=True)
        item = limiter.item_for(RateLimitPolicy.OTP_REQUEST)
        assert item.amount == 10
        assert item.get_expiry() == 60

    def test_default_policies(self):
        limiter = make_limiter(enabled=True)
        expected = {
            RateLimitPolicy.GENERAL: (100, 900),
            RateLimitPolicy.AUTH: (5, 900),
            RateLimitPolicy.OTP_REQUEST: (3, 3600),
            RateLimitPolicy.AI: (50, 3600),
            RateLimitPolicy.UPLOAD: (20, 3600),
            RateLimitPolicy.COMMUNITY: (30, 3600),
        }
        for policy, (amount, expiry) in expected.items():
            item = limiter.item_for(policy)
            assert (item.amount, item.get_expiry()) == (amount, expiry), policy


class TestClientIp:
    def test_uses_socket_address(self):
        assert client_ip(_fake_request("10.0.0.1", forwarded="1.1.1.1")) == "10.0.0.1"

    def test_trust_proxy(self, monkeypatch):
        monkeypatch.setattr("agroai.rate_limit.TRUST_PROXY", True)
        request = _fake_request("10.0.0.1", forwarded="1.1.1.1, 10.0.0.1")
        assert client_ip(request) == "1.1.1.1"


def _fake_request(host: str, forwarded: str | None = None):
    from starlette.requests import Request

    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "headers": headers, "client": (host, 12345)})
