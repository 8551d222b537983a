import asyncio
import logging

from checkout.application.expire_reservations import ExpireReservationsUseCase

logger = logging.getLogger(__name__)


class SweeperWorker:
    def __init__(self, use_case: ExpireReservationsUseCase, interval: float = 30):
        self._use_case = use_case
        self._interval = interval

    async def run(self):
        while True:
            try:
                await self._use_case()
            except Exception as e:
                logger.error(f"Sweep failed: {e}", exc_info=True)

            await asyncio.sleep(self._interval)
