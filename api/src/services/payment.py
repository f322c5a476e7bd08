import logging
from uuid import UUID, uuid4
from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from pydantic import BaseModel
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from domain import gateways
from domain.gateways import GatewayKind
from domain.statuses import PaymentStatus
from domain.errors import PaymentDoesntExistError, ShopDoesntExistError, IllegalTransition
from domain.events import WebhookEvent, ReconciliationResult
from services.polling import PollingScheduler
from services.reconciliation import Reconciler


logger = logging.getLogger('paygate-payment-service')


class PaymentInfo(BaseModel):
    id: UUID
    shop_id: UUID
    gateway: str
    gateway_display_name: str
    gateway_payment_id: str | None
    order_id: str | None
    amount: Decimal
    currency: str
    source_currency: str | None
    status: PaymentStatus
    chargeback_amount: Decimal | None
    merchant_paid: bool
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None
    paid_at: datetime | None

    @classmethod
    def from_row(cls, payment: tables.Payment) -> 'PaymentInfo':
        kind = GatewayKind(payment.gateway)
        return cls(
            id=payment.id,
            shop_id=payment.shop_id,
            gateway=gateways.id_from_name(kind),
            gateway_display_name=gateways.display_name(kind),
            gateway_payment_id=payment.gateway_payment_id,
            order_id=payment.order_id,
            amount=payment.amount,
            currency=payment.currency,
            source_currency=payment.source_currency,
            status=payment.status,
            chargeback_amount=payment.chargeback_amount,
            merchant_paid=payment.merchant_paid,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            expires_at=payment.expires_at,
            paid_at=payment.paid_at
        )


@dataclass(frozen=True)
class PaymentService:
    session_maker: async_sessionmaker[AsyncSession]
    scheduler: PollingScheduler
    reconciler: Reconciler

    async def register(
        self,
        shop_id: UUID,
        gateway: GatewayKind,
        amount: Decimal,
        currency: str,
        order_id: str | None = None,
        gateway_payment_id: str | None = None,
        source_currency: str | None = None,
        amount_is_editable: bool | None = None,
        max_payments: int | None = None,
        expires_at: datetime | None = None
    ) -> PaymentInfo:
        payment_id = uuid4()
        now = datetime.now()

        async with self.session_maker() as session:
            if await session.get(tables.Shop, shop_id) is None:
                raise ShopDoesntExistError()

            await session.execute(insert(tables.Payment).values({
                tables.Payment.id: payment_id,
                tables.Payment.shop_id: shop_id,
                tables.Payment.gateway: gateway.value,
                tables.Payment.gateway_payment_id: gateway_payment_id,
                tables.Payment.order_id: order_id,
                tables.Payment.amount: amount,
                tables.Payment.currency: currency.upper(),
                tables.Payment.source_currency: source_currency.upper() if source_currency else None,
                tables.Payment.amount_is_editable: amount_is_editable,
                tables.Payment.max_payments: max_payments,
                tables.Payment.status: PaymentStatus.PENDING,
                tables.Payment.created_at: now,
                tables.Payment.updated_at: now,
                tables.Payment.expires_at: expires_at or now + self.scheduler.backoff.horizon,
                tables.Payment.version: 1
            }))
            await session.commit()

            payment = await session.get_one(tables.Payment, payment_id)

        logger.info(f'registered {gateway} payment {payment_id} of {amount} {currency} for shop {shop_id}')

        # Checks before the gateway acknowledges the payment are skipped
        self.scheduler.schedule(payment_id, gateway, gateway_payment_id, started_at=now)

        return PaymentInfo.from_row(payment)

    async def acknowledge(self, payment_id: UUID, gateway_payment_id: str) -> PaymentInfo:
        """Attaches the gateway-assigned ID. It is written once and never changes."""
        async with self.session_maker() as session:
            payment = await session.get(tables.Payment, payment_id)
            if payment is None:
                raise PaymentDoesntExistError()

            if payment.gateway_payment_id is not None:
                if payment.gateway_payment_id != gateway_payment_id:
                    raise IllegalTransition(
                        f'payment {payment_id} is already bound to gateway id "{payment.gateway_payment_id}"'
                    )
                return PaymentInfo.from_row(payment)

            try:
                await session.execute(
                    update(tables.Payment)
                    .where(
                        tables.Payment.id == payment_id,
                        tables.Payment.gateway_payment_id.is_(None)
                    )
                    .values({
                        tables.Payment.gateway_payment_id: gateway_payment_id,
                        tables.Payment.updated_at: datetime.now(),
                        tables.Payment.version: tables.Payment.version + 1
                    })
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except IntegrityError as e:
                raise IllegalTransition(f'gateway id "{gateway_payment_id}" is already used by another payment') from e

            await session.refresh(payment)

        if payment.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            self.scheduler.schedule(payment.id, GatewayKind(payment.gateway), gateway_payment_id, started_at=payment.created_at)

        return PaymentInfo.from_row(payment)

    async def get(self, payment_id: UUID) -> PaymentInfo:
        async with self.session_maker() as session:
            payment = await session.get(tables.Payment, payment_id)
            if payment is None:
                raise PaymentDoesntExistError()
        return PaymentInfo.from_row(payment)

    async def set_status(
        self,
        payment_id: UUID,
        status: PaymentStatus,
        chargeback_amount: Decimal | None = None,
        reason: str | None = None
    ) -> ReconciliationResult:
        """Operator-initiated change, e.g. a refund or a dispute reported out of band."""
        async with self.session_maker() as session:
            payment = await session.get(tables.Payment, payment_id)
            if payment is None:
                raise PaymentDoesntExistError()

        event = WebhookEvent(
            gateway=GatewayKind(payment.gateway),
            gateway_payment_id=payment.gateway_payment_id,
            reported_status=status.lower(),
            status=status,
            chargeback_amount=chargeback_amount,
            metadata={'manual_reason': reason} if reason else {},
            received_at=datetime.now(),
            source='manual'
        )
        return await self.reconciler.reconcile(event, payment_id=payment_id, strict=True)
