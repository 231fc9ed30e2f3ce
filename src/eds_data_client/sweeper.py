"""Periodic reclaiming of abandoned reservations."""

import asyncio
import logging
from typing import Optional

from eds_data_client.quota_manager import QuotaManager

logger = logging.getLogger(__name__)


class ReservationSweeper:
    """
    Runs `QuotaManager.expire_stale_reservations` every `interval_seconds`
    on the current event loop until stopped.
    """

    def __init__(self, quota: QuotaManager, interval_seconds: float = 60.0):
        self._quota = quota
        self._interval = interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        return await self._quota.expire_stale_reservations()

    async def start(self):
        if self.running:
            logger.warning("Reservation sweeper already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._loop())
        logger.info(f"Reservation sweeper started (every {self._interval}s)")

    async def stop(self):
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("Reservation sweeper stopped")

    async def _loop(self):
        while self.running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reservation sweep failed, retrying next interval")
            await asyncio.sleep(self._interval)
