import json
import logging
import aiokafka
from uuid import uuid4
from typing import Any
from datetime import datetime
from dataclasses import dataclass
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

import tables
from domain import gateways
from domain.gateways import GatewayKind
from domain.statuses import PaymentStatus
from settings import kafka_settings


logger = logging.getLogger('paygate-notifications')


SHOP_WEBHOOK_EVENTS = {
    PaymentStatus.PAID: 'payment.success',
    PaymentStatus.FAILED: 'payment.failed',
    PaymentStatus.EXPIRED: 'payment.failed',
    PaymentStatus.REFUND: 'payment.refund',
    PaymentStatus.CHARGEBACK: 'payment.chargeback',
}


def shop_webhook_event(status: PaymentStatus) -> str:
    return SHOP_WEBHOOK_EVENTS.get(status, 'payment.pending')


def shop_webhook_body(payment: tables.Payment, status: PaymentStatus, event: str) -> dict[str, Any]:
    # Shops see the 4-character gateway ID, never the internal name
    return {
        'event': event,
        'payment_id': str(payment.id),
        'order_id': payment.order_id,
        'gateway': gateways.id_from_name(payment.gateway),
        'gateway_payment_id': payment.gateway_payment_id,
        'amount': str(payment.amount),
        'currency': payment.currency,
        'status': status.lower(),
        'chargeback_amount': str(payment.chargeback_amount) if payment.chargeback_amount is not None else None,
        'created_at': payment.created_at.isoformat(),
        'updated_at': payment.updated_at.isoformat(),
    }


async def enqueue_shop_webhook(
    session: AsyncSession,
    payment: tables.Payment,
    status: PaymentStatus,
    now: datetime
) -> bool:
    """Writes the outbox row inside the caller's transaction. Delivered by the worker."""
    shop = await session.get(tables.Shop, payment.shop_id)
    if shop is None or not shop.webhook_url:
        return False

    event = shop_webhook_event(status)
    if event not in (shop.webhook_events or []):
        return False

    await session.execute(
        insert(tables.HandlerNotificationRequest)
        .values({
            tables.HandlerNotificationRequest.id: uuid4(),
            tables.HandlerNotificationRequest.created_at: now,
            tables.HandlerNotificationRequest.handler_url: shop.webhook_url,
            tables.HandlerNotificationRequest.data: shop_webhook_body(payment, status, event)
        })
    )
    return True


@dataclass(frozen=True)
class StatusPublisher:
    kafka_producer: aiokafka.AIOKafkaProducer
    topic: str = kafka_settings.payment_topic

    async def publish(
        self,
        payment: tables.Payment,
        previous_status: PaymentStatus,
        source: str,
        amount_mismatch: bool = False
    ):
        data = {
            'id': str(payment.id),
            'shop_id': str(payment.shop_id),
            'gateway': payment.gateway,
            'gateway_display_name': gateways.display_name(GatewayKind(payment.gateway)),
            'status': str(payment.status),
            'previous_status': str(previous_status),
            'amount': str(payment.amount),
            'currency': payment.currency,
            'source': source,
            'amount_mismatch': amount_mismatch
        }

        await self.kafka_producer.send_and_wait(
            topic=self.topic,
            value=json.dumps(data).encode()
        )
        logger.info(f'sent notification about payment {payment.id} to the "{self.topic}" topic')
