"""
SMS service: sends OTP codes and advisory alerts.

In production the Twilio REST API is called over httpx. In development
(no Twilio credentials configured), messages are logged to the console
so you can see what *would* be sent without a real SMS account. A
production deployment without credentials refuses to send.
"""

from __future__ import annotations

import logging
import time

import httpx

from agroai.config import (
    ENVIRONMENT,
    SMS_COUNTRY_CODE,
    SMS_TIMEOUT_SECONDS,
    TWILIO_ACCOUNT_SID,
    TWILIO_API_BASE,
    TWILIO_AUTH_TOKEN,
    TWILIO_PHONE_NUMBER,
    sms_enabled,
)

logger = logging.getLogger(__name__)


class SmsDispatchError(Exception):
    """The SMS provider rejected the message or could not be reached."""


def mask_phone(phone_number: str) -> str:
    """Hide all but the last four digits for log output."""
    return "*" * max(len(phone_number) - 4, 0) + phone_number[-4:]


def build_otp_message(code: str, purpose: str, ttl_seconds: int) -> str:
    minutes = max(ttl_seconds // 60, 1)
    purpose = purpose.replace("_", " ")
    return (
        f"Your AgroAI {purpose} OTP is: {code}. "
        f"Valid for {minutes} minutes. Do not share this code."
    )


class SmsSender:
    """Base class: formats messages and hands them to ``_deliver``."""

    def __init__(self, *, country_code: str = SMS_COUNTRY_CODE) -> None:
        self._country_code = country_code

    def to_e164(self, phone_number: str) -> str:
        return f"{self._country_code}{phone_number}"

    async def send_otp(self, phone_number: str, code: str, purpose: str, ttl_seconds: int) -> str:
        """Send an OTP message. Returns the provider message id."""
        body = build_otp_message(code, purpose, ttl_seconds)
        return await self._deliver(self.to_e164(phone_number), body)

    async def send_alert(self, phone_number: str, message: str) -> str:
        """Send a free-form advisory alert. Returns the provider message id."""
        return await self._deliver(self.to_e164(phone_number), f"AgroAI Alert: {message}")

    async def close(self) -> None:
        pass

    async def _deliver(self, to: str, body: str) -> str:
        raise NotImplementedError


class ConsoleSmsSender(SmsSender):
    """Development sender: logs the message instead of sending it."""

    async def _deliver(self, to: str, body: str) -> str:
        logger.info("📱 [DEV] Would send SMS to %s:\n  %s", to, body)
        return f"simulated_{int(time.time() * 1000)}"


class UnconfiguredSmsSender(SmsSender):
    """Production sender without provider credentials: every send fails."""

    async def _deliver(self, to: str, body: str) -> str:
        logger.error("SMS to %s not sent: Twilio credentials are not configured", mask_phone(to))
        raise SmsDispatchError("SMS provider not configured")


class TwilioSmsSender(SmsSender):
    """Sends SMS through the Twilio Messages REST endpoint."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        api_base: str = TWILIO_API_BASE,
        timeout: float = SMS_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        country_code: str = SMS_COUNTRY_CODE,
    ) -> None:
        super().__init__(country_code=country_code)
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=(self._account_sid, self._auth_token),
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _deliver(self, to: str, body: str) -> str:
        url = f"{self._api_base}/Accounts/{self._account_sid}/Messages.json"
        payload = {"To": to, "From": self._from_number, "Body": body}

        try:
            resp = await self._get_client().post(url, data=payload)
        except httpx.TimeoutException as exc:
            logger.error("Twilio request timed out after %ss", self._timeout)
            raise SmsDispatchError("SMS provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("Twilio request failed: %s", exc)
            raise SmsDispatchError("SMS provider unreachable") from exc

        if resp.status_code != 201:
            try:
                detail = resp.json().get("message", resp.text)
            except ValueError:
                detail = resp.text
            logger.error("Twilio rejected message (%d): %s", resp.status_code, detail)
            raise SmsDispatchError(f"SMS provider returned {resp.status_code}")

        sid = resp.json().get("sid", "")
        logger.info("SMS sent (sid=%s)", sid)
        return sid


def build_sms_sender(environment: str = ENVIRONMENT) -> SmsSender:
    """
    Pick the Twilio sender when SMS is enabled. Outside production the
    console sender stands in; in production sends fail instead.
    """
    if sms_enabled():
        return TwilioSmsSender(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER)
    if environment == "production":
        logger.error("Twilio credentials not configured, OTP delivery will fail")
        return UnconfiguredSmsSender()
    logger.warning("Twilio credentials not configured, SMS will be simulated")
    return ConsoleSmsSender()


# ── Singleton instance ────────────────────────────────────────────────────
sms_sender = build_sms_sender()
