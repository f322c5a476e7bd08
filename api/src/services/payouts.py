import logging
from collections import OrderedDict
from uuid import UUID
from typing import Any, Iterable
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from domain import gateways
from domain.gateways import GatewayKind
from domain.statuses import PaymentStatus
from domain.errors import ShopDoesntExistError
from settings import settings


logger = logging.getLogger('paygate-payouts')


# ISO 4217 exponents differing from 2
MINOR_UNITS = {
    'JPY': 0, 'KRW': 0, 'VND': 0, 'CLP': 0, 'ISK': 0,
    'BHD': 3, 'KWD': 3, 'OMR': 3, 'JOD': 3, 'TND': 3,
}


def quantize(amount: Decimal, currency: str) -> Decimal:
    exponent = MINOR_UNITS.get(currency.upper(), 2)
    return amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


def net_amount(amount: Decimal, commission: Decimal, currency: str) -> Decimal:
    return quantize(amount * (1 - commission / 100), currency)


@dataclass(frozen=True)
class PayoutTerms:
    commission: Decimal
    payout_delay_days: int


def terms_for(gateway_settings: dict[str, Any] | None, gateway: GatewayKind) -> PayoutTerms:
    """Shop overrides keyed by gateway name or ID (any case), gateway defaults otherwise."""
    info = gateways.info_for(gateway)
    terms = PayoutTerms(commission=info.commission, payout_delay_days=info.payout_delay_days)

    keys = {gateway.value, info.id}
    for key, value in (gateway_settings or {}).items():
        if key.lower() not in keys or not isinstance(value, dict):
            continue

        commission = value.get('commission', terms.commission)
        delay = value.get('payout_delay_days', value.get('payoutDelay', terms.payout_delay_days))
        terms = PayoutTerms(commission=Decimal(str(commission)), payout_delay_days=int(delay))

    return terms


class PayoutEntry(BaseModel):
    payment_id: UUID
    gateway: str
    amount: Decimal
    currency: str
    commission: Decimal
    net_amount: Decimal
    paid_at: datetime
    eligible_at: datetime
    eligible: bool


class PayoutTotals(BaseModel):
    currency: str
    awaiting_payout: Decimal = Decimal(0)
    not_yet_eligible: Decimal = Decimal(0)
    paid_out: Decimal = Decimal(0)


class PayoutSummary(BaseModel):
    shop_id: UUID
    as_of: datetime
    eligible: list[PayoutEntry]
    not_yet_eligible: list[PayoutEntry]
    totals: list[PayoutTotals]


def payout_entry(payment: tables.Payment, gateway_settings: dict[str, Any] | None, as_of: datetime) -> PayoutEntry:
    assert payment.paid_at is not None
    terms = terms_for(gateway_settings, GatewayKind(payment.gateway))
    eligible_at = payment.paid_at + timedelta(days=terms.payout_delay_days)

    return PayoutEntry(
        payment_id=payment.id,
        gateway=gateways.id_from_name(payment.gateway),
        amount=payment.amount,
        currency=payment.currency,
        commission=terms.commission,
        net_amount=net_amount(payment.amount, terms.commission, payment.currency),
        paid_at=payment.paid_at,
        eligible_at=eligible_at,
        eligible=as_of >= eligible_at
    )


def compute_eligibility(
    payments: Iterable[tables.Payment],
    gateway_settings: dict[str, Any] | None,
    as_of: datetime
) -> list[PayoutEntry]:
    """Eligible entries only, ordered by eligibility time. Does not touch the payments."""
    entries = [
        payout_entry(payment, gateway_settings, as_of)
        for payment in payments
        if payment.status == PaymentStatus.PAID and payment.paid_at is not None and not payment.merchant_paid
    ]
    return sorted((entry for entry in entries if entry.eligible), key=lambda entry: entry.eligible_at)


def summarize(
    shop_id: UUID,
    payments: Iterable[tables.Payment],
    gateway_settings: dict[str, Any] | None,
    as_of: datetime
) -> PayoutSummary:
    eligible: list[PayoutEntry] = []
    waiting: list[PayoutEntry] = []
    totals: dict[str, PayoutTotals] = {}

    for payment in payments:
        if payment.status != PaymentStatus.PAID or payment.paid_at is None:
            continue

        entry = payout_entry(payment, gateway_settings, as_of)
        total = totals.setdefault(entry.currency, PayoutTotals(currency=entry.currency))

        if payment.merchant_paid:
            total.paid_out += entry.net_amount
        elif entry.eligible:
            eligible.append(entry)
            total.awaiting_payout += entry.net_amount
        else:
            waiting.append(entry)
            total.not_yet_eligible += entry.net_amount

    return PayoutSummary(
        shop_id=shop_id,
        as_of=as_of,
        eligible=sorted(eligible, key=lambda entry: entry.eligible_at),
        not_yet_eligible=sorted(waiting, key=lambda entry: entry.eligible_at),
        totals=sorted(totals.values(), key=lambda total: total.currency)
    )


@dataclass(frozen=True)
class _ShopSnapshot:
    gateway_settings: dict[str, Any] | None
    payments: list[tables.Payment]


@dataclass(frozen=True)
class PayoutService:
    """Payout views of a shop, cached until one of its payments changes.

    At most `cache_size` shops are kept, least recently used first out.
    """
    session_maker: async_sessionmaker[AsyncSession]
    cache_size: int = settings.payout_cache_size
    _cache: OrderedDict[UUID, _ShopSnapshot] = field(default_factory=OrderedDict)
    # Loads in flight per shop, dropped by `invalidate`
    _loads: dict[UUID, object] = field(default_factory=dict)

    def invalidate(self, shop_id: UUID):
        self._loads.pop(shop_id, None)
        if self._cache.pop(shop_id, None) is not None:
            logger.debug(f'payout cache of shop {shop_id} invalidated')

    def invalidate_for(self, payment: tables.Payment):
        self.invalidate(payment.shop_id)

    async def _load(self, shop_id: UUID) -> _ShopSnapshot:
        async with self.session_maker() as session:
            shop = await session.get(tables.Shop, shop_id)
            if shop is None:
                raise ShopDoesntExistError()

            payments = list((await session.execute(
                select(tables.Payment)
                .where(
                    tables.Payment.shop_id == shop_id,
                    tables.Payment.status == PaymentStatus.PAID
                )
            )).scalars())

        return _ShopSnapshot(gateway_settings=shop.gateway_settings, payments=payments)

    async def _snapshot(self, shop_id: UUID) -> _ShopSnapshot:
        snapshot = self._cache.get(shop_id)
        if snapshot is not None:
            self._cache.move_to_end(shop_id)
            return snapshot

        load = object()
        self._loads[shop_id] = load
        try:
            snapshot = await self._load(shop_id)
        finally:
            current = self._loads.get(shop_id)
            if current is load:
                del self._loads[shop_id]

        if current is not load:
            logger.debug(f'payments of shop {shop_id} changed while loading, snapshot not cached')
            return snapshot

        self._cache[shop_id] = snapshot
        while len(self._cache) > self.cache_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f'payout cache of shop {evicted} evicted')
        return snapshot

    async def compute_eligibility(self, shop_id: UUID, as_of: datetime | None = None) -> list[PayoutEntry]:
        snapshot = await self._snapshot(shop_id)
        return compute_eligibility(snapshot.payments, snapshot.gateway_settings, as_of or datetime.now())

    async def summary(self, shop_id: UUID, as_of: datetime | None = None) -> PayoutSummary:
        snapshot = await self._snapshot(shop_id)
        return summarize(shop_id, snapshot.payments, snapshot.gateway_settings, as_of or datetime.now())
