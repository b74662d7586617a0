from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vissreader.config import Settings, get_settings
from vissreader.db.models import OPEN_STATUSES, TERMINAL_STATUSES, Payment, PaymentStatus, TransactionKind
from vissreader.errors import GatewayError, InvalidAmount, InvalidSignature, PaymentNotFound, ValidationError
from vissreader.services.balance import BalanceService
from vissreader.services.pricing import PricingTable, quantize_rub
from vissreader.services.tbank import map_gateway_status, verify_signature
from vissreader.utils.logging import get_logger
from vissreader.utils.time import utcnow


logger = get_logger('payments')


class PaymentGateway(Protocol):
    async def init_payment(self, *, amount: Decimal, order_id: str, description: str) -> Dict[str, Any]:
        ...

    async def get_state(self, gateway_payment_id: str) -> Dict[str, Any]:
        ...


@dataclass
class PaymentSession:
    payment_id: str
    payment_url: str
    order_id: str
    gateway_payment_id: str
    amount: Decimal
    tokens_amount: int
    status: str


@dataclass
class ReconcileOutcome:
    payment_id: str
    previous_status: str
    status: str
    credited: int = 0

    @property
    def transitioned(self) -> bool:
        return self.status != self.previous_status


def generate_payment_id() -> str:
    return f'payment_{int(time.time() * 1000)}_{secrets.token_hex(8)}'


def serialize_payment(payment: Payment) -> dict[str, Any]:
    return {
        'paymentId': payment.payment_id,
        'status': payment.status,
        'amount': float(payment.amount),
        'tokensAmount': payment.tokens_amount,
        'createdAt': payment.created_at.isoformat() if payment.created_at else None,
        'updatedAt': payment.updated_at.isoformat() if payment.updated_at else None,
    }


class PaymentOrchestrator:
    """Top-up lifecycle against the acquiring gateway.

    Callback delivery and active polling both end in ``_reconcile``; the
    conditional status UPDATE there is the only place a purchase credit is
    written, so repeated triggers credit a payment at most once.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        pricing: PricingTable,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.gateway = gateway
        self.pricing = pricing
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def create_tier_payment(self, user_id: int, tier_id: str) -> PaymentSession:
        tier = self.pricing.require(tier_id)
        return await self.create_payment(user_id, tier.tokens, tier.price)

    async def create_payment(
        self,
        user_id: int,
        tokens_amount: int,
        amount: Decimal | int | float | str,
        description: Optional[str] = None,
    ) -> PaymentSession:
        if int(tokens_amount) <= 0:
            raise InvalidAmount('tokensAmount must be greater than 0')
        amount = quantize_rub(amount)
        if amount <= 0:
            raise InvalidAmount('amount must be greater than 0')

        local_id = generate_payment_id()
        async with self.sessionmaker() as session:
            now = utcnow()
            session.add(
                Payment(
                    user_id=user_id,
                    amount=amount,
                    tokens_amount=int(tokens_amount),
                    payment_id=local_id,
                    status=PaymentStatus.PENDING.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        logger.info('payment_created', payment_id=local_id, user_id=user_id, amount=str(amount), tokens=tokens_amount)

        try:
            data = await self.gateway.init_payment(
                amount=amount,
                order_id=local_id,
                description=description or f'Token top-up: {tokens_amount} tokens',
            )
        except Exception as exc:
            await self._mark_failed(local_id, str(exc))
            logger.warning('payment_init_failed', payment_id=local_id, error=str(exc))
            raise

        gateway_id = str(data.get('PaymentId') or '').strip()
        payment_url = str(data.get('PaymentURL') or '').strip()
        if not gateway_id or not payment_url:
            message = 'gateway_invalid_response'
            await self._mark_failed(local_id, message)
            raise GatewayError(message)

        async with self.sessionmaker() as session:
            await session.execute(
                update(Payment)
                .where(Payment.payment_id == local_id, Payment.status == PaymentStatus.PENDING.value)
                .values(
                    status=PaymentStatus.PROCESSING.value,
                    gateway_payment_id=gateway_id,
                    callback_raw=dict(data),
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            status = await self._current_status(session, local_id)

        logger.info('payment_session_opened', payment_id=local_id, gateway_payment_id=gateway_id)
        return PaymentSession(
            payment_id=local_id,
            payment_url=payment_url,
            order_id=str(data.get('OrderId') or local_id),
            gateway_payment_id=gateway_id,
            amount=amount,
            tokens_amount=int(tokens_amount),
            status=status,
        )

    async def handle_callback(self, payload: Mapping[str, Any]) -> ReconcileOutcome:
        if not isinstance(payload, Mapping):
            raise ValidationError('callback payload must be an object')
        if not verify_signature(payload, self.settings.tbank_password):
            logger.warning('callback_invalid_signature', order_id=payload.get('OrderId'))
            raise InvalidSignature('callback signature mismatch')

        gateway_id = str(payload.get('PaymentId') or '').strip() or None
        order_id = str(payload.get('OrderId') or '').strip() or None
        async with self.sessionmaker() as session:
            payment = await self._find_for_callback(session, gateway_id, order_id)
            if payment is None:
                logger.warning('callback_payment_not_found', order_id=order_id, gateway_payment_id=gateway_id)
                raise PaymentNotFound(f'Payment not found for orderId: {order_id}')
            return await self._reconcile(session, payment, payload.get('Status'), gateway_id, dict(payload), 'callback')

    async def poll_status(self, payment_id: str) -> str:
        async with self.sessionmaker() as session:
            payment = await self._get(session, payment_id)
            if payment is None:
                raise PaymentNotFound(f'Payment not found: {payment_id}')
            if payment.is_terminal or not payment.gateway_payment_id:
                return payment.status
            gateway_id = payment.gateway_payment_id

        try:
            state = await self._fetch_state(gateway_id)
        except GatewayError:
            state = None
        if state is None:
            return await self._stored_status(payment_id)

        async with self.sessionmaker() as session:
            payment = await self._get(session, payment_id)
            if payment is None:
                raise PaymentNotFound(f'Payment not found: {payment_id}')
            state_gateway_id = str(state.get('PaymentId') or '').strip() or None
            outcome = await self._reconcile(session, payment, state.get('Status'), state_gateway_id, dict(state), 'poll')
        return outcome.status

    async def get_payment(self, payment_id: str) -> Payment:
        async with self.sessionmaker() as session:
            payment = await self._get(session, payment_id)
        if payment is None:
            raise PaymentNotFound(f'Payment not found: {payment_id}')
        return payment

    async def list_open_payment_ids(self, limit: int = 200) -> List[str]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(Payment.payment_id)
                .where(Payment.status.in_(OPEN_STATUSES), Payment.gateway_payment_id.is_not(None))
                .order_by(Payment.created_at)
                .limit(limit)
            )
            return [row[0] for row in result.all()]

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Fail payments left open past ``PAYMENT_EXPIRY_HOURS``.

        A payment is only expired after the gateway reports it as still not
        completed, rejects the status request outright, or if it never got a
        gateway session. An unreachable gateway leaves it open for the next
        sweep.
        """
        cutoff = (now or utcnow()) - timedelta(hours=self.settings.payment_expiry_hours)
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(Payment.payment_id, Payment.gateway_payment_id)
                .where(Payment.status.in_(OPEN_STATUSES), Payment.created_at <= cutoff)
                .order_by(Payment.created_at)
            )
            rows = result.all()

        expired = 0
        for payment_id, gateway_id in rows:
            if gateway_id:
                try:
                    state = await self._fetch_state(gateway_id)
                except GatewayError as exc:
                    # The gateway refuses to report on it at all; it can never settle.
                    if await self._mark_expired(payment_id, f'expired: {exc}'):
                        expired += 1
                    continue
                if state is None:
                    continue
                async with self.sessionmaker() as session:
                    payment = await self._get(session, payment_id)
                    if payment is None:
                        continue
                    state_gateway_id = str(state.get('PaymentId') or '').strip() or None
                    outcome = await self._reconcile(
                        session, payment, state.get('Status'), state_gateway_id, dict(state), 'expiry'
                    )
                if outcome.status in TERMINAL_STATUSES:
                    continue
            if await self._mark_expired(payment_id):
                expired += 1
        if expired:
            logger.info('payments_expired', count=expired)
        return expired

    async def _reconcile(
        self,
        session: AsyncSession,
        payment: Payment,
        gateway_status: Any,
        gateway_id: Optional[str],
        raw: Dict[str, Any],
        source: str,
    ) -> ReconcileOutcome:
        previous = payment.status
        target = map_gateway_status(gateway_status)
        audit: Dict[str, Any] = {'callback_raw': raw, 'updated_at': utcnow()}
        if gateway_id and not payment.gateway_payment_id:
            audit['gateway_payment_id'] = gateway_id

        if target is None:
            await self._write_audit(session, payment.id, audit)
            await session.commit()
            logger.info(
                'payment_status_unrecognized',
                payment_id=payment.payment_id,
                gateway_status=str(gateway_status),
                source=source,
            )
            return ReconcileOutcome(payment.payment_id, previous, previous)

        if target is PaymentStatus.PENDING:
            # Never moves a payment backwards; processing stays processing.
            await self._write_audit(session, payment.id, audit)
            await session.commit()
            current = await self._current_status(session, payment.payment_id)
            return ReconcileOutcome(payment.payment_id, previous, current)

        result = await session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.notin_(TERMINAL_STATUSES))
            .values(status=target.value, **audit)
            .returning(Payment.id)
        )
        claimed = result.scalar_one_or_none() is not None
        if not claimed:
            await self._write_audit(session, payment.id, audit)
            await session.commit()
            current = await self._current_status(session, payment.payment_id)
            if current != target.value:
                logger.warning(
                    'payment_terminal_status_ignored',
                    payment_id=payment.payment_id,
                    status=current,
                    gateway_status=str(gateway_status),
                    source=source,
                )
            return ReconcileOutcome(payment.payment_id, previous, current)

        # Rollback below expires ``payment``; only these locals are safe after it.
        payment_pk = payment.id
        local_id = payment.payment_id
        credited = 0
        if target is PaymentStatus.COMPLETED:
            balance = BalanceService(session, self.settings)
            try:
                await balance.credit(
                    payment.user_id,
                    payment.tokens_amount,
                    f'Token top-up via payment {local_id}',
                    kind=TransactionKind.PURCHASE,
                    payment_id=payment_pk,
                )
            except IntegrityError:
                await session.rollback()
                logger.warning('payment_credit_duplicate', payment_id=local_id, source=source)
                # The purchase row already exists, so the payment is settled without a second credit.
                await session.execute(
                    update(Payment)
                    .where(Payment.id == payment_pk, Payment.status.notin_(TERMINAL_STATUSES))
                    .values(status=target.value, **audit)
                )
                await session.commit()
                current = await self._current_status(session, local_id)
                return ReconcileOutcome(local_id, previous, current)
            credited = payment.tokens_amount
        await session.commit()

        logger.info(
            'payment_reconciled',
            payment_id=local_id,
            previous_status=previous,
            status=target.value,
            gateway_status=str(gateway_status),
            credited=credited,
            source=source,
        )
        return ReconcileOutcome(local_id, previous, target.value, credited)

    async def _find_for_callback(
        self,
        session: AsyncSession,
        gateway_id: Optional[str],
        order_id: Optional[str],
    ) -> Optional[Payment]:
        # Gateway id first, local order id second; a hit whose other id
        # disagrees with the payload is rejected rather than reconciled.
        if gateway_id:
            result = await session.execute(
                select(Payment).where(Payment.gateway_payment_id == gateway_id).order_by(Payment.id)
            )
            payment = result.scalars().first()
            if payment is not None:
                if order_id and order_id != payment.payment_id:
                    logger.warning(
                        'callback_id_mismatch',
                        gateway_payment_id=gateway_id,
                        order_id=order_id,
                        stored_order_id=payment.payment_id,
                    )
                    return None
                return payment
        if order_id:
            payment = await self._get(session, order_id)
            if payment is not None:
                if gateway_id and payment.gateway_payment_id and payment.gateway_payment_id != gateway_id:
                    logger.warning(
                        'callback_id_mismatch',
                        gateway_payment_id=gateway_id,
                        order_id=order_id,
                        stored_gateway_payment_id=payment.gateway_payment_id,
                    )
                    return None
                return payment
        return None

    async def _fetch_state(self, gateway_id: str) -> Optional[Dict[str, Any]]:
        """``None`` once transient retries run out; a permanent rejection raises ``GatewayError``."""
        backoffs = self.settings.tbank_poll_backoff_list() or [0.0]
        for attempt, delay in enumerate(backoffs, start=1):
            try:
                return await self.gateway.get_state(gateway_id)
            except GatewayError as exc:
                logger.warning(
                    'payment_poll_failed',
                    gateway_payment_id=gateway_id,
                    attempt=attempt,
                    transient=exc.transient,
                    error=str(exc),
                )
                if not exc.transient:
                    raise
                if attempt < len(backoffs):
                    await self._sleep(delay)
        return None

    async def _get(self, session: AsyncSession, payment_id: str) -> Optional[Payment]:
        result = await session.execute(select(Payment).where(Payment.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def _current_status(self, session: AsyncSession, payment_id: str) -> str:
        result = await session.execute(select(Payment.status).where(Payment.payment_id == payment_id))
        return str(result.scalar_one())

    async def _stored_status(self, payment_id: str) -> str:
        async with self.sessionmaker() as session:
            return await self._current_status(session, payment_id)

    async def _write_audit(self, session: AsyncSession, payment_pk: int, audit: Dict[str, Any]) -> None:
        await session.execute(update(Payment).where(Payment.id == payment_pk).values(**audit))

    async def _mark_failed(self, payment_id: str, error: str) -> None:
        async with self.sessionmaker() as session:
            await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status.in_(OPEN_STATUSES))
                .values(
                    status=PaymentStatus.FAILED.value,
                    error_message=error[:2000],
                    callback_raw={'error': error[:2000]},
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def _mark_expired(self, payment_id: str, reason: str = 'expired') -> bool:
        async with self.sessionmaker() as session:
            result = await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status.in_(OPEN_STATUSES))
                .values(status=PaymentStatus.FAILED.value, error_message=reason[:2000], updated_at=utcnow())
                .returning(Payment.id)
            )
            expired = result.scalar_one_or_none() is not None
            await session.commit()
        return expired
