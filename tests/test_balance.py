import asyncio

import pytest
from sqlalchemy import func, select

from vissreader.db.models import TokenTransaction, TransactionKind, User
from vissreader.errors import InsufficientFunds, InvalidAmount
from vissreader.services.balance import BalanceService, serialize_transaction


async def _new_user(sessionmaker, settings, device_id='device-1'):
    async with sessionmaker() as session:
        user = await BalanceService(session, settings).ensure_user(device_id)
    return user.id


async def test_new_user_gets_welcome_bonus_once(sessionmaker, settings):
    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        user = await service.ensure_user('device-1', 'Reader')
        again = await service.ensure_user('device-1')

        assert again.id == user.id
        assert await service.get_balance(user.id) == 300
        entries = await service.list_transactions(user.id)

    assert len(entries) == 1
    assert entries[0].kind == TransactionKind.BONUS.value
    assert entries[0].amount == 300


async def test_concurrent_first_contact_creates_one_user(sessionmaker, settings):
    async def ensure():
        async with sessionmaker() as session:
            user = await BalanceService(session, settings).ensure_user('device-race')
            return user.id

    ids = await asyncio.gather(*(ensure() for _ in range(5)))

    assert len(set(ids)) == 1
    async with sessionmaker() as session:
        users = await session.execute(select(func.count()).select_from(User))
        bonus = await session.execute(select(func.count()).select_from(TokenTransaction))
        assert users.scalar_one() == 1
        assert bonus.scalar_one() == 1


async def test_balance_is_sum_of_ledger(sessionmaker, settings):
    user_id = await _new_user(sessionmaker, settings)
    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        await service.credit(user_id, 1000, 'top-up')
        await service.debit(user_id, 25, 'illustration')
        await service.credit(user_id, 7, 'reward', kind=TransactionKind.EARN)
        await session.commit()

        total = await session.execute(
            select(func.sum(TokenTransaction.amount)).where(TokenTransaction.user_id == user_id)
        )
        assert await service.get_balance(user_id) == total.scalar_one() == 1282


@pytest.mark.parametrize('amount', [0, -5])
async def test_non_positive_amounts_are_rejected(sessionmaker, settings, amount):
    user_id = await _new_user(sessionmaker, settings)
    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        with pytest.raises(InvalidAmount):
            await service.credit(user_id, amount, 'x')
        with pytest.raises(InvalidAmount):
            await service.debit(user_id, amount, 'x')
        assert len(await service.list_transactions(user_id)) == 1


async def test_debit_over_balance_writes_nothing(sessionmaker, settings):
    user_id = await _new_user(sessionmaker, settings)
    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        with pytest.raises(InsufficientFunds) as exc_info:
            await service.debit(user_id, 301, 'too much')
        await session.rollback()

        assert exc_info.value.balance == 300
        assert exc_info.value.required == 301
        assert await service.get_balance(user_id) == 300
        assert len(await service.list_transactions(user_id)) == 1


async def test_debit_to_exactly_zero_is_allowed(sessionmaker, settings):
    user_id = await _new_user(sessionmaker, settings)
    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        await service.debit(user_id, 300, 'all of it')
        await session.commit()
        assert await service.get_balance(user_id) == 0


async def test_concurrent_debits_never_overdraw(sessionmaker, settings):
    user_id = await _new_user(sessionmaker, settings)

    async def attempt() -> bool:
        async with sessionmaker() as session:
            service = BalanceService(session, settings)
            try:
                await service.debit(user_id, 50, 'parallel spend')
            except InsufficientFunds:
                await session.rollback()
                return False
            await session.commit()
            return True

    results = await asyncio.gather(*(attempt() for _ in range(10)))

    assert results.count(True) == 6
    assert results.count(False) == 4
    async with sessionmaker() as session:
        assert await BalanceService(session, settings).get_balance(user_id) == 0


async def test_list_transactions_newest_first_and_clamped(sessionmaker, settings):
    user_id = await _new_user(sessionmaker, settings)
    async with sessionmaker() as session:
        service = BalanceService(session, settings)
        for i in range(3):
            await service.debit(user_id, 1, f'spend {i}')
        await session.commit()

        entries = await service.list_transactions(user_id, limit=2)
        assert [entry.description for entry in entries] == ['spend 2', 'spend 1']
        assert len(await service.list_transactions(user_id, limit=0)) == 1

        row = serialize_transaction(entries[0])
        assert row['amount'] == -1
        assert row['type'] == 'spend'
        assert row['paymentId'] is None
