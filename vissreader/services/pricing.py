from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from vissreader.errors import ValidationError


def quantize_rub(value: Decimal | float | int | str) -> Decimal:
    return Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingTier:
    id: str
    tokens: int
    price: Decimal
    label: str = ''
    description: str = ''
    popular: bool = False

    @property
    def price_per_token(self) -> Decimal:
        return (self.price / Decimal(self.tokens)).quantize(Decimal('0.00001'), rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data['price'] = float(self.price)
        data['pricePerToken'] = float(self.price_per_token)
        return data


DEFAULT_TIERS: tuple[PricingTier, ...] = (
    PricingTier('tier1', 1000, Decimal('300.00'), '1000 tokens', 'Basic pack'),
    PricingTier('tier2', 2000, Decimal('549.00'), '2000 tokens', 'Best value', popular=True),
    PricingTier('tier3', 4000, Decimal('999.00'), '4000 tokens', 'Maximum pack'),
    PricingTier('tier_test', 100, Decimal('10.00'), 'TEST (100 tokens)', 'For checking the payment flow'),
)


class PricingTable:
    """Read-only tier list handed to the payment layer at construction."""

    def __init__(self, tiers: Iterable[PricingTier]) -> None:
        self._tiers = tuple(tiers)
        ids = [tier.id for tier in self._tiers]
        if len(ids) != len(set(ids)):
            raise ValueError('duplicate_tier_id')
        for tier in self._tiers:
            if tier.tokens <= 0 or tier.price <= 0:
                raise ValueError(f'invalid_tier:{tier.id}')

    @property
    def tiers(self) -> tuple[PricingTier, ...]:
        return self._tiers

    def get(self, tier_id: str) -> Optional[PricingTier]:
        for tier in self._tiers:
            if tier.id == tier_id:
                return tier
        return None

    def require(self, tier_id: str) -> PricingTier:
        tier = self.get(tier_id)
        if tier is None:
            raise ValidationError(f'Invalid tierId: {tier_id}')
        return tier

    def to_list(self) -> list[dict[str, Any]]:
        return [tier.to_dict() for tier in self._tiers]

    @classmethod
    def from_json(cls, raw: str) -> 'PricingTable':
        rows = json.loads(raw)
        if not isinstance(rows, list):
            raise ValueError('pricing_tiers_json must be a list')
        tiers = [
            PricingTier(
                id=str(row['id']),
                tokens=int(row['tokens']),
                price=quantize_rub(row['price']),
                label=str(row.get('label') or ''),
                description=str(row.get('description') or ''),
                popular=bool(row.get('popular', False)),
            )
            for row in rows
        ]
        return cls(tiers)


def build_pricing_table(raw_json: str = '') -> PricingTable:
    if raw_json.strip():
        return PricingTable.from_json(raw_json)
    return PricingTable(DEFAULT_TIERS)
