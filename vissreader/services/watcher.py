from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from vissreader.config import Settings, get_settings
from vissreader.services.payments import PaymentOrchestrator
from vissreader.utils.logging import get_logger


logger = get_logger('payment_watcher')


class PaymentWatcher:
    """Reconciles open payments whose callback never arrived."""

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self._sleep = sleep
        self.sem = asyncio.Semaphore(max(1, self.settings.payment_watch_concurrency))

    async def _poll_one(self, payment_id: str) -> None:
        async with self.sem:
            try:
                await self.orchestrator.poll_status(payment_id)
            except Exception as exc:
                logger.warning('payment_watch_poll_failed', payment_id=payment_id, error=str(exc))

    async def sweep(self) -> int:
        ids = await self.orchestrator.list_open_payment_ids()
        if ids:
            await asyncio.gather(*(self._poll_one(payment_id) for payment_id in ids))
        expired = await self.orchestrator.expire_stale()
        logger.debug('payment_watch_sweep', checked=len(ids), expired=expired)
        return len(ids)

    async def watch(self) -> None:
        interval = max(1, self.settings.payment_watch_interval_seconds)
        while True:
            try:
                await self.sweep()
            except Exception as exc:
                logger.warning('payment_watch_failed', error=str(exc))
            await self._sleep(interval)
