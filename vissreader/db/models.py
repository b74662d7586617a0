from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vissreader.db.base import Base


JSONVariant = JSON().with_variant(JSONB(), 'postgresql')


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TERMINAL_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
)
OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


class TransactionKind(str, Enum):
    SPEND = 'spend'
    EARN = 'earn'
    BONUS = 'bonus'
    PURCHASE = 'purchase'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Bumped by every ledger write; the UPDATE doubles as the per-user write lock.
    ledger_version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    payments: Mapped[list['Payment']] = relationship(back_populates='user')
    transactions: Mapped[list['TokenTransaction']] = relationship(back_populates='user')


class Payment(Base):
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    tokens_amount: Mapped[int] = mapped_column(Integer)
    payment_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(16), index=True, default=PaymentStatus.PENDING.value)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    callback_raw: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['User'] = relationship(back_populates='payments')

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TokenTransaction(Base):
    __tablename__ = 'token_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column('type', String(16))
    description: Mapped[str] = mapped_column(Text, default='')
    # At most one ledger entry may reference a payment: the purchase credit.
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey('payments.id', ondelete='SET NULL'),
        unique=True,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['User'] = relationship(back_populates='transactions')
