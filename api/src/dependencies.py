import asyncio
import aiokafka
from typing import Any, Awaitable, Callable, Mapping
from datetime import datetime
from dataclasses import dataclass
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from domain.gateways import GatewayKind
from services.audit import AuditLog
from services.cointopay import StatusClient
from services.notifications import StatusPublisher
from services.payment import PaymentService
from services.payouts import PayoutService
from services.polling import PollingScheduler
from services.reconciliation import Reconciler
from services.webhooks import WebhookIngestion


@dataclass(frozen=True)
class Components:
    reconciler: Reconciler
    scheduler: PollingScheduler
    audit: AuditLog
    payments: PaymentService
    payouts: PayoutService
    webhooks: WebhookIngestion


components: Components | None = None


def init(
    session_maker: async_sessionmaker[AsyncSession],
    status_clients: Mapping[GatewayKind, StatusClient],
    kafka_producer: aiokafka.AIOKafkaProducer | None = None,
    clock: Callable[[], datetime] = datetime.now,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Components:
    global components

    audit = AuditLog(session_maker=session_maker)
    payouts = PayoutService(session_maker=session_maker)
    reconciler = Reconciler(
        session_maker=session_maker,
        publisher=StatusPublisher(kafka_producer) if kafka_producer is not None else None
    )
    reconciler.on_change.append(payouts.invalidate_for)

    scheduler = PollingScheduler(
        session_maker=session_maker,
        reconciler=reconciler,
        status_clients=status_clients,
        audit=audit,
        clock=clock,
        sleep=sleep
    )

    components = Components(
        reconciler=reconciler,
        scheduler=scheduler,
        audit=audit,
        payments=PaymentService(session_maker=session_maker, scheduler=scheduler, reconciler=reconciler),
        payouts=payouts,
        webhooks=WebhookIngestion(reconciler=reconciler, audit=audit)
    )
    return components


def get_components() -> Components:
    assert components is not None
    return components


def get_payment_service() -> PaymentService:
    return get_components().payments


def get_payout_service() -> PayoutService:
    return get_components().payouts


def get_scheduler() -> PollingScheduler:
    return get_components().scheduler


def get_webhook_ingestion() -> WebhookIngestion:
    return get_components().webhooks
