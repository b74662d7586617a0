from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vissreader.config import Settings, get_settings
from vissreader.db.models import TokenTransaction, TransactionKind, User
from vissreader.errors import InsufficientFunds, InvalidAmount
from vissreader.utils.logging import get_logger
from vissreader.utils.time import utcnow


logger = get_logger('balance')

MAX_HISTORY_LIMIT = 500


class BalanceService:
    """Ledger reads and writes for one database session.

    Balance is always re-derived from ``token_transactions``; nothing here
    caches it. Callers own the transaction boundary and commit, except for
    ``ensure_user``, which commits a new user together with its welcome bonus.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def get_user(self, device_id: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.device_id == device_id))
        return result.scalar_one_or_none()

    async def ensure_user(self, device_id: str, display_name: Optional[str] = None) -> User:
        user = await self.get_user(device_id)
        if user:
            return user

        user = User(
            device_id=device_id,
            display_name=display_name,
            ledger_version=0,
            created_at=utcnow(),
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError:
            # Another request created the same device concurrently.
            await self.session.rollback()
            existing = await self.get_user(device_id)
            if existing is None:
                raise
            return existing

        bonus = int(self.settings.welcome_bonus_tokens)
        if bonus > 0:
            await self._append(user.id, bonus, TransactionKind.BONUS, 'Welcome bonus for a new user')
        await self.session.commit()
        logger.info('user_created', user_id=user.id, welcome_bonus=bonus)
        return user

    async def get_balance(self, user_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(TokenTransaction.amount), 0)).where(TokenTransaction.user_id == user_id)
        )
        return int(result.scalar_one() or 0)

    async def credit(
        self,
        user_id: int,
        amount: int,
        description: str,
        kind: TransactionKind = TransactionKind.PURCHASE,
        payment_id: Optional[int] = None,
    ) -> int:
        if amount <= 0:
            raise InvalidAmount(f'credit amount must be positive, got {amount}')
        await self._lock_user(user_id)
        entry = await self._append(user_id, amount, kind, description, payment_id=payment_id)
        return entry.id

    async def debit(self, user_id: int, amount: int, description: str) -> TokenTransaction:
        if amount <= 0:
            raise InvalidAmount(f'debit amount must be positive, got {amount}')
        await self._lock_user(user_id)
        balance = await self.get_balance(user_id)
        if balance - amount < 0:
            raise InsufficientFunds(balance=balance, required=amount)
        return await self._append(user_id, -amount, TransactionKind.SPEND, description)

    async def list_transactions(self, user_id: int, limit: int = 50) -> list[TokenTransaction]:
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        result = await self.session.execute(
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _lock_user(self, user_id: int) -> None:
        # First write of the unit of work: serializes ledger writers for this user
        # (row lock on PostgreSQL, database write lock on SQLite).
        await self.session.execute(
            update(User).where(User.id == user_id).values(ledger_version=User.ledger_version + 1)
        )

    async def _append(
        self,
        user_id: int,
        amount: int,
        kind: TransactionKind,
        description: str,
        payment_id: Optional[int] = None,
    ) -> TokenTransaction:
        entry = TokenTransaction(
            user_id=user_id,
            amount=int(amount),
            kind=kind.value,
            description=description,
            payment_id=payment_id,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry


def serialize_transaction(entry: TokenTransaction) -> dict:
    return {
        'id': entry.id,
        'amount': entry.amount,
        'type': entry.kind,
        'description': entry.description,
        'paymentId': entry.payment_id,
        'createdAt': entry.created_at.isoformat() if entry.created_at else None,
    }
