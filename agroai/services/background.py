from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Callable

from agroai import db
from agroai.config import OTP_SWEEP_INTERVAL

logger = logging.getLogger(__name__)


class BackgroundWorker:
    """Base class for services that run a periodic background loop."""

    def __init__(self, *, interval: float, name: str) -> None:
        self._interval = interval
        self._name = name
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        await self._on_start()
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.info("%s started (every %ds)", self._name, self._interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("%s stopped", self._name)

    async def _on_start(self) -> None:
        pass

    async def _tick(self) -> None:
        raise NotImplementedError

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._tick()
            except Exception:
                logger.exception("%s tick failed, will retry", self._name)


class OtpSweeper(BackgroundWorker):
    """Deletes expired and consumed OTP rows.

    Expiry is already enforced when a code is looked up; this only keeps
    the table small.
    """

    def __init__(
        self,
        *,
        interval: float = OTP_SWEEP_INTERVAL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        super().__init__(interval=interval, name="otp-sweeper")
        self._clock = clock

    async def _on_start(self) -> None:
        await self._tick()

    async def _tick(self) -> None:
        removed = await db.delete_stale_otps(self._clock())
        if removed:
            logger.info("Swept %d stale OTP codes", removed)


# ── Singleton instance ────────────────────────────────────────────────────
otp_sweeper = OtpSweeper()
