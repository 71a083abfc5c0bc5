"""
Rate limiting built on the ``limits`` library (fixed windows).

Policies:
  • general     – 100 / 15 min per IP     (every request)
  • auth        – 5 / 15 min per IP       (verify-otp; successful requests are not counted)
  • otp_request – 3 / hour per phone      (send-otp; falls back to IP)
  • ai          – 50 / hour per user      (falls back to IP)
  • upload      – 20 / hour per user      (falls back to IP)
  • community   – 30 / hour per user      (falls back to IP)

Policies layer: a send-otp call is counted under both ``general`` and
``otp_request`` and must be admitted by each. Counters live in the storage
named by RATE_LIMIT_STORAGE_URI, so several instances can share them.
Any policy can be overridden with RATE_LIMIT_<POLICY>, e.g.
RATE_LIMIT_OTP_REQUEST="5/hour".
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Callable

from fastapi import Depends, Request
from limits import RateLimitItem, parse
from limits.aio.storage import Storage
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string

from agroai.config import (
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URI,
    TRUST_PROXY,
    rate_limit_override,
)
from agroai.dependencies import OptionalUser
from agroai.errors import RateLimited

logger = logging.getLogger(__name__)


class RateLimitPolicy(str, Enum):
    GENERAL = "general"
    AUTH = "auth"
    OTP_REQUEST = "otp_request"
    AI = "ai"
    UPLOAD = "upload"
    COMMUNITY = "community"


@dataclass(frozen=True)
class PolicyRule:
    limit: str
    message: str
    skip_successful: bool = False


POLICY_RULES: dict[RateLimitPolicy, PolicyRule] = {
    RateLimitPolicy.GENERAL: PolicyRule(
        "100/15 minutes", "Rate limit exceeded. Please try again later."
    ),
    RateLimitPolicy.AUTH: PolicyRule(
        "5/15 minutes",
        "Rate limit exceeded for authentication. Please try again later.",
        skip_successful=True,
    ),
    RateLimitPolicy.OTP_REQUEST: PolicyRule(
        "3/hour", "Rate limit exceeded for OTP requests. Please try again later."
    ),
    RateLimitPolicy.AI: PolicyRule(
        "50/hour", "AI usage limit exceeded. Please try again later."
    ),
    RateLimitPolicy.UPLOAD: PolicyRule(
        "20/hour", "File upload limit exceeded. Please try again later."
    ),
    RateLimitPolicy.COMMUNITY: PolicyRule(
        "30/hour", "Community posting limit exceeded. Please try again later."
    ),
}


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Admits or rejects requests per (policy, key) pair."""

    def __init__(self, storage: Storage | None = None, *, enabled: bool = RATE_LIMIT_ENABLED) -> None:
        self.storage = storage or storage_from_string(RATE_LIMIT_STORAGE_URI)
        self.enabled = enabled
        self._strategy = FixedWindowRateLimiter(self.storage)
        self._items: dict[RateLimitPolicy, RateLimitItem] = {
            policy: parse(rate_limit_override(policy.value) or rule.limit)
            for policy, rule in POLICY_RULES.items()
        }

    def item_for(self, policy: RateLimitPolicy) -> RateLimitItem:
        return self._items[policy]

    async def admit(self, policy: RateLimitPolicy, key: str) -> RateLimitDecision:
        """
        Count the request against the policy, or raise ``RateLimited``.

        Every admitted request takes its hit up front so concurrent requests
        cannot overrun the limit. Skip-successful policies hand the hit back
        through ``record_success``.
        """
        item = self._items[policy]
        if not self.enabled:
            return RateLimitDecision(allowed=True, remaining=item.amount, reset_at=time.time())

        rule = POLICY_RULES[policy]
        allowed = await self._strategy.hit(item, policy.value, key)

        stats = await self._strategy.get_window_stats(item, policy.value, key)
        if not allowed:
            retry_after = max(1, math.ceil(stats.reset_time - time.time()))
            logger.warning(
                "Rate limit %s exceeded for %s (retry in %ds)", policy.value, key, retry_after
            )
            raise RateLimited(rule.message, retry_after=retry_after)

        return RateLimitDecision(allowed=True, remaining=stats.remaining, reset_at=stats.reset_time)

    async def record_success(self, policy: RateLimitPolicy, key: str) -> None:
        """Refund the hit of a successful request for skip-successful policies."""
        if not (self.enabled and POLICY_RULES[policy].skip_successful):
            return
        item = self._items[policy]
        counter = item.key_for(policy.value, key)
        # The window may have rolled over since admit; never go below zero.
        if await self.storage.incr(counter, item.get_expiry(), amount=-1) < 0:
            await self.storage.incr(counter, item.get_expiry(), amount=1)

    async def reset(self) -> None:
        """Drop every counter (tests and admin tooling)."""
        await self.storage.reset()


# ── Keys ───────────────────────────────────────────────────────────────────


def client_ip(request: Request) -> str:
    if TRUST_PROXY:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def phone_or_ip_key(request: Request, phone_number: str | None) -> str:
    if phone_number:
        return f"phone:{phone_number}"
    return f"ip:{client_ip(request)}"


def user_or_ip_key(request: Request, user_id: str | None) -> str:
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_ip(request)}"


# ── Singleton + FastAPI dependencies ──────────────────────────────────────

rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


Limiter = Annotated[RateLimiter, Depends(get_rate_limiter)]


async def general_rate_limit(request: Request, limiter: Limiter) -> None:
    """App-wide policy applied to every route."""
    await limiter.admit(RateLimitPolicy.GENERAL, f"ip:{client_ip(request)}")


def rate_limit(policy: RateLimitPolicy) -> Callable:
    """Dependency for the user-keyed policies (ai, upload, community)."""

    async def _dependency(request: Request, limiter: Limiter, user: OptionalUser) -> None:
        await limiter.admit(policy, user_or_ip_key(request, user.id if user else None))

    _dependency.__name__ = f"rate_limit_{policy.value}"
    return _dependency
