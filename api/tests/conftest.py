import os
import sys
import json
import pathlib
import asyncio
import pytest
import httpx
from uuid import UUID, uuid4
from decimal import Decimal
from datetime import datetime, timedelta
from typing import Any

sys.path.append(str(pathlib.Path(__file__).parent.parent/'src'))
sys.path.append(str(pathlib.Path(__file__).parent))

os.environ.setdefault('paygate_postgres_user', 'paygate')
os.environ.setdefault('paygate_postgres_password', 'paygate')
os.environ.setdefault('paygate_postgres_db', 'paygate')

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

import tables
import dependencies
from domain.gateways import GatewayKind
from domain.events import WebhookEvent
from domain.statuses import PaymentStatus
from services.normalizer import normalize_status_report


class FakeKafkaProducer:
    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send_and_wait(self, topic: str, value: bytes):
        self.sent.append((topic, json.loads(value.decode())))


class FakeClock:
    """`datetime.now` replacement whose `sleep` moves time forward instantly."""
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float):
        self.now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeStatusClient:
    """CoinToPay status query stand-in, answers with the queued statuses, then with `default`."""
    def __init__(self, clock: FakeClock, default: str = 'waiting'):
        self.clock = clock
        self.default = default
        self.answers: list[str | Exception] = []
        self.calls: list[datetime] = []

    async def query_status(self, gateway_payment_id: str) -> WebhookEvent:
        self.calls.append(self.clock())
        answer = self.answers.pop(0) if self.answers else self.default
        if isinstance(answer, Exception):
            raise answer
        return normalize_status_report(GatewayKind.COINTOPAY, gateway_payment_id, {'Status': answer})


@pytest.fixture
async def session_maker(tmp_path: pathlib.Path):
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path/"paygate.db"}')
    async with engine.begin() as conn:
        await conn.run_sync(tables.Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def kafka_producer() -> FakeKafkaProducer:
    return FakeKafkaProducer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def status_client(clock: FakeClock) -> FakeStatusClient:
    return FakeStatusClient(clock)


@pytest.fixture
async def components(
    session_maker: async_sessionmaker[AsyncSession],
    kafka_producer: FakeKafkaProducer,
    status_client: FakeStatusClient
):
    # Real sleep: timers started by the API stay idle for the whole test
    components = dependencies.init(
        session_maker,
        {GatewayKind.COINTOPAY: status_client},
        kafka_producer  # type: ignore
    )

    yield components

    await components.scheduler.stop()
    dependencies.components = None


@pytest.fixture
async def api_client(components: dependencies.Components):
    from main import app

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url='http://tests'
    ) as client:
        yield client


@pytest.fixture
async def shop(session_maker: async_sessionmaker[AsyncSession]) -> UUID:
    shop_id = uuid4()
    async with session_maker() as session:
        await session.execute(insert(tables.Shop).values({
            tables.Shop.id: shop_id,
            tables.Shop.name: 'Test shop',
            tables.Shop.webhook_url: 'https://shop.example.com/webhook',
            tables.Shop.webhook_events: ['payment.success', 'payment.failed', 'payment.refund', 'payment.chargeback'],
            tables.Shop.gateway_settings: {'Rapyd': {'commission': '5', 'payoutDelay': 2}}
        }))
        await session.commit()
    return shop_id


@pytest.fixture
def make_payment(session_maker: async_sessionmaker[AsyncSession], shop: UUID):
    async def make_payment(
        gateway: GatewayKind = GatewayKind.COINTOPAY,
        gateway_payment_id: str | None = None,
        amount: Decimal = Decimal('100.00'),
        currency: str = 'EUR',
        status: PaymentStatus = PaymentStatus.PENDING,
        order_id: str | None = None,
        created_at: datetime | None = None,
        paid_at: datetime | None = None,
        merchant_paid: bool = False
    ) -> UUID:
        payment_id = uuid4()
        created_at = created_at or datetime.now()
        async with session_maker() as session:
            await session.execute(insert(tables.Payment).values({
                tables.Payment.id: payment_id,
                tables.Payment.shop_id: shop,
                tables.Payment.gateway: gateway.value,
                tables.Payment.gateway_payment_id: gateway_payment_id,
                tables.Payment.order_id: order_id,
                tables.Payment.amount: amount,
                tables.Payment.currency: currency,
                tables.Payment.status: status,
                tables.Payment.merchant_paid: merchant_paid,
                tables.Payment.created_at: created_at,
                tables.Payment.updated_at: created_at,
                tables.Payment.paid_at: paid_at,
                tables.Payment.version: 1
            }))
            await session.commit()
        return payment_id

    return make_payment


@pytest.fixture
def get_payment(session_maker: async_sessionmaker[AsyncSession]):
    async def get_payment(payment_id: UUID) -> tables.Payment:
        async with session_maker() as session:
            return await session.get_one(tables.Payment, payment_id)

    return get_payment
