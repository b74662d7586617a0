from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vissreader.config import Settings, get_settings
from vissreader.errors import InsufficientFunds, InvalidAmount
from vissreader.services.balance import BalanceService
from vissreader.utils.logging import get_logger


logger = get_logger('spend_gate')

T = TypeVar('T')


@dataclass
class PaidResult(Generic[T]):
    """What a paid operation hands back; ``chargeable=False`` marks a free result such as a cache hit."""

    value: T
    chargeable: bool = True


@dataclass
class SpendResult(Generic[T]):
    value: T
    charged: bool
    cost: int
    balance: int
    user_id: int


class SpendGate:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], settings: Settings | None = None) -> None:
        self.sessionmaker = sessionmaker
        self.settings = settings or get_settings()

    async def run(
        self,
        device_id: str,
        cost: int,
        operation: Callable[[], Awaitable[PaidResult[Any]]],
        description: str,
    ) -> SpendResult[Any]:
        if cost <= 0:
            raise InvalidAmount(f'operation cost must be positive, got {cost}')

        async with self.sessionmaker() as session:
            balance_service = BalanceService(session, self.settings)
            user = await balance_service.ensure_user(device_id)
            balance = await balance_service.get_balance(user.id)
        if balance < cost:
            logger.info('spend_rejected', user_id=user.id, balance=balance, required=cost)
            raise InsufficientFunds(balance=balance, required=cost)

        # No transaction is held while the operation runs; a failure here propagates uncharged.
        result = await operation()

        if not result.chargeable:
            logger.info('spend_skipped_free_result', user_id=user.id, cost=cost)
            return SpendResult(value=result.value, charged=False, cost=cost, balance=balance, user_id=user.id)

        async with self.sessionmaker() as session:
            balance_service = BalanceService(session, self.settings)
            try:
                await balance_service.debit(user.id, cost, description)
            except InsufficientFunds:
                await session.rollback()
                logger.warning('spend_lost_race', user_id=user.id, required=cost)
                raise
            await session.commit()
            balance_after = await balance_service.get_balance(user.id)

        logger.info('spend_charged', user_id=user.id, cost=cost, balance=balance_after)
        return SpendResult(value=result.value, charged=True, cost=cost, balance=balance_after, user_id=user.id)
