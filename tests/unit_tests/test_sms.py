"""Tests for the SMS senders (Twilio over a mocked transport, console)."""

from urllib.parse import parse_qs

import httpx
import pytest

from agroai.services.sms import (
    ConsoleSmsSender,
    SmsDispatchError,
    TwilioSmsSender,
    UnconfiguredSmsSender,
    build_otp_message,
    build_sms_sender,
    mask_phone,
)
from tests.mocks.models import MOCK_PHONE

SID = "AC00000000000000000000000000000000"


def _twilio(handler) -> tuple[TwilioSmsSender, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    sender = TwilioSmsSender(
        SID,
        "token",
        "+15005550006",
        api_base="https://twilio.test/2010-04-01",
        transport=httpx.MockTransport(_record),
    )
    return sender, seen


class TestMessages:
    def test_otp_message(self):
        assert build_otp_message("123456", "registration", 600) == (
            "Your AgroAI registration OTP is: 123456. "
            "Valid for 10 minutes. Do not share this code."
        )

    def test_password_reset_wording(self):
        assert "password reset OTP" in build_otp_message("123456", "password_reset", 600)

    def test_mask_phone(self):
        assert mask_phone(MOCK_PHONE) == "******3210"


class TestTwilioSender:
    async def test_send_otp(self):
        sender, seen = _twilio(lambda r: httpx.Response(201, json={"sid": "SM123", "status": "queued"}))

        sid = await sender.send_otp(MOCK_PHONE, "123456", "login", 600)
        await sender.close()

        assert sid == "SM123"
        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == f"https://twilio.test/2010-04-01/Accounts/{SID}/Messages.json"
        assert request.headers["Authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form["To"] == ["+919876543210"]
        assert form["From"] == ["+15005550006"]
        assert "login OTP is: 123456" in form["Body"][0]

    async def test_send_alert(self):
        sender, seen = _twilio(lambda r: httpx.Response(201, json={"sid": "SM456"}))

        assert await sender.send_alert(MOCK_PHONE, "Heavy rain expected tomorrow") == "SM456"
        await sender.close()

        form = parse_qs(seen[0].content.decode())
        assert form["Body"] == ["AgroAI Alert: Heavy rain expected tomorrow"]

    async def test_provider_rejects(self):
        sender, _ = _twilio(
            lambda r: httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})
        )
        with pytest.raises(SmsDispatchError):
            await sender.send_otp(MOCK_PHONE, "123456", "login", 600)
        await sender.close()

    async def test_timeout(self):
        def _timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        sender, _ = _twilio(_timeout)
        with pytest.raises(SmsDispatchError):
            await sender.send_otp(MOCK_PHONE, "123456", "login", 600)
        await sender.close()

    async def test_unreachable(self):
        def _refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        sender, _ = _twilio(_refused)
        with pytest.raises(SmsDispatchError):
            await sender.send_otp(MOCK_PHONE, "123456", "login", 600)
        await sender.close()


class TestConsoleSender:
    async def test_logs_instead_of_sending(self, caplog):
        caplog.set_level("INFO", logger="agroai.services.sms")

        sid = await ConsoleSmsSender().send_otp(MOCK_PHONE, "654321", "registration", 600)

        assert sid.startswith("simulated_")
        assert "+919876543210" in caplog.text
        assert "654321" in caplog.text


class TestBuildSender:
    def test_development_without_credentials_simulates(self, monkeypatch):
        monkeypatch.setattr("agroai.services.sms.sms_enabled", lambda: False)
        assert isinstance(build_sms_sender("development"), ConsoleSmsSender)

    def test_production_without_credentials_refuses(self, monkeypatch):
        monkeypatch.setattr("agroai.services.sms.sms_enabled", lambda: False)
        assert isinstance(build_sms_sender("production"), UnconfiguredSmsSender)

    def test_production_with_credentials_uses_twilio(self, monkeypatch):
        monkeypatch.setattr("agroai.services.sms.sms_enabled", lambda: True)
        assert isinstance(build_sms_sender("production"), TwilioSmsSender)

    async def test_unconfigured_sender_never_logs_code(self, caplog):
        caplog.set_level("INFO", logger="agroai.services.sms")

        with pytest.raises(SmsDispatchError):
            await UnconfiguredSmsSender().send_otp(MOCK_PHONE, "654321", "login", 600)

        assert "654321" not in caplog.text
        assert "******3210" in caplog.text
