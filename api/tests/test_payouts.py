import pytest
from contextlib import asynccontextmanager
from uuid import uuid4
from decimal import Decimal
from datetime import datetime, timedelta
from sqlalchemy import insert

import tables
from domain.gateways import GatewayKind
from domain.events import WebhookEvent
from domain.statuses import PaymentStatus
from domain.errors import ShopDoesntExistError
from services.payouts import PayoutService, net_amount, quantize, terms_for
from services.reconciliation import Reconciler


PAID_AT = datetime(2026, 3, 2, 12, 0, 0)


def test_net_amount_rounds_to_currency_minor_units():
    assert net_amount(Decimal('100.00'), Decimal('10'), 'EUR') == Decimal('90.00')
    assert net_amount(Decimal('10.05'), Decimal('10'), 'EUR') == Decimal('9.05')
    assert net_amount(Decimal('1005'), Decimal('5'), 'JPY') == Decimal('955')
    assert net_amount(Decimal('1.0005'), Decimal('0'), 'KWD') == Decimal('1.001')
    assert quantize(Decimal('0.125'), 'usd') == Decimal('0.13')


def test_terms_for():
    assert terms_for(None, GatewayKind.COINTOPAY).commission == Decimal('10')
    assert terms_for(None, GatewayKind.COINTOPAY).payout_delay_days == 5

    settings = {'Rapyd': {'commission': '5', 'payoutDelay': 2}, '0100': {'commission': 7.5, 'payout_delay_days': 1}}
    rapyd = terms_for(settings, GatewayKind.RAPYD)
    assert rapyd.commission == Decimal('5')
    assert rapyd.payout_delay_days == 2

    cointopay = terms_for(settings, GatewayKind.COINTOPAY)
    assert cointopay.commission == Decimal('7.5')
    assert cointopay.payout_delay_days == 1

    assert terms_for(settings, GatewayKind.NODA).commission == Decimal('10')


async def test_eligible_only_after_the_payout_delay(session_maker, shop, make_payment):
    payment_id = await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT)
    service = PayoutService(session_maker=session_maker)

    assert await service.compute_eligibility(shop, PAID_AT + timedelta(days=4)) == []

    entries = await service.compute_eligibility(shop, PAID_AT + timedelta(days=5))
    assert len(entries) == 1
    assert entries[0].payment_id == payment_id
    assert entries[0].gateway == '0100'
    assert entries[0].net_amount == Decimal('90.00')
    assert entries[0].eligible_at == PAID_AT + timedelta(days=5)


async def test_shop_override_applies_to_its_gateway(session_maker, shop, make_payment):
    await make_payment(gateway=GatewayKind.RAPYD, status=PaymentStatus.PAID, paid_at=PAID_AT)
    service = PayoutService(session_maker=session_maker)

    entries = await service.compute_eligibility(shop, PAID_AT + timedelta(days=2))
    assert len(entries) == 1
    assert entries[0].commission == Decimal('5')
    assert entries[0].net_amount == Decimal('95.00')


async def test_summary_splits_payments(session_maker, shop, make_payment):
    await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT - timedelta(days=10))
    await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT - timedelta(days=10), merchant_paid=True)
    await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT)
    await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT, amount=Decimal('1000'), currency='JPY')
    await make_payment(status=PaymentStatus.PENDING)
    await make_payment(status=PaymentStatus.REFUND, paid_at=PAID_AT - timedelta(days=10))

    summary = await PayoutService(session_maker=session_maker).summary(shop, PAID_AT + timedelta(days=1))

    assert summary.shop_id == shop
    assert len(summary.eligible) == 1
    assert len(summary.not_yet_eligible) == 2

    eur, jpy = summary.totals
    assert eur.currency == 'EUR'
    assert eur.awaiting_payout == Decimal('90.00')
    assert eur.not_yet_eligible == Decimal('90.00')
    assert eur.paid_out == Decimal('90.00')
    assert jpy.currency == 'JPY'
    assert jpy.not_yet_eligible == Decimal('900')


async def test_reconciled_settlement_invalidates_the_cache(session_maker, shop, make_payment):
    service = PayoutService(session_maker=session_maker)
    reconciler = Reconciler(session_maker=session_maker)
    reconciler.on_change.append(service.invalidate_for)
    await make_payment(gateway_payment_id='ctp-1')

    as_of = datetime.now() + timedelta(days=30)
    assert await service.compute_eligibility(shop, as_of) == []

    await reconciler.reconcile(WebhookEvent(
        gateway=GatewayKind.COINTOPAY,
        gateway_payment_id='ctp-1',
        reported_status='paid',
        status=PaymentStatus.PAID,
        received_at=datetime.now()
    ))

    entries = await service.compute_eligibility(shop, as_of)
    assert len(entries) == 1
    assert entries[0].net_amount == Decimal('90.00')


async def test_unknown_shop(session_maker):
    with pytest.raises(ShopDoesntExistError):
        await PayoutService(session_maker=session_maker).summary(uuid4())


async def test_settlement_during_a_load_is_not_lost(session_maker, shop, make_payment, get_payment):
    first = await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT)
    settled = []

    @asynccontextmanager
    async def session_with_concurrent_settlement():
        async with session_maker() as session:
            yield session
        # Committed and invalidated after the read, before the snapshot is stored
        if not settled:
            settled.append(await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT))
            service.invalidate_for(await get_payment(settled[0]))

    service = PayoutService(session_maker=session_with_concurrent_settlement)  # type: ignore
    as_of = PAID_AT + timedelta(days=5)

    entries = await service.compute_eligibility(shop, as_of)
    assert [entry.payment_id for entry in entries] == [first]

    entries = await service.compute_eligibility(shop, as_of)
    assert {entry.payment_id for entry in entries} == {first, settled[0]}


async def test_cache_keeps_most_recently_used_shops(session_maker, shop, make_payment):
    other = uuid4()
    async with session_maker() as session:
        await session.execute(insert(tables.Shop).values({tables.Shop.id: other, tables.Shop.name: 'Other shop'}))
        await session.commit()

    service = PayoutService(session_maker=session_maker, cache_size=1)
    as_of = PAID_AT + timedelta(days=5)

    assert await service.compute_eligibility(shop, as_of) == []
    assert await service.compute_eligibility(other, as_of) == []
    assert list(service._cache) == [other]

    # Evicted shop is read again
    await make_payment(status=PaymentStatus.PAID, paid_at=PAID_AT)
    assert len(await service.compute_eligibility(shop, as_of)) == 1
    assert list(service._cache) == [shop]
