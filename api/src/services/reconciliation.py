import asyncio
import logging
import weakref
from uuid import UUID
from decimal import Decimal
from datetime import datetime
from typing import Any, Callable, Sequence
from dataclasses import dataclass, field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from domain.events import WebhookEvent, ReconciliationResult
from domain.gateways import GatewayKind
from domain.statuses import PaymentStatus, can_transition, is_terminal
from domain.errors import UnknownPayment, IllegalTransition, PersistenceConflict, MalformedPayload
from services.notifications import StatusPublisher, enqueue_shop_webhook
from settings import settings


logger = logging.getLogger('paygate-reconciler')


@dataclass(frozen=True)
class _Change:
    payment: tables.Payment
    previous_status: PaymentStatus


@dataclass(frozen=True)
class Reconciler:
    """Single authority for payment status changes, shared by webhooks, polling and operators.

    Attempts for one payment are serialized by an in-process lock and, across
    processes, by the `version` compare-and-set. Callbacks in `on_terminal`
    run before `reconcile` returns, `on_change` callbacks run on every
    applied change.
    """
    session_maker: async_sessionmaker[AsyncSession]
    publisher: StatusPublisher | None = None
    amount_tolerance: Decimal = settings.amount_tolerance
    on_terminal: list[Callable[[UUID], Any]] = field(default_factory=list)
    on_change: list[Callable[[tables.Payment], Any]] = field(default_factory=list)
    _locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = field(default_factory=weakref.WeakValueDictionary)

    def _lock_for(self, payment_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(payment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[payment_id] = lock
        return lock

    async def reconcile(
        self,
        event: WebhookEvent,
        payment_id: UUID | None = None,
        strict: bool = False
    ) -> ReconciliationResult:
        if payment_id is None:
            payment_id = await self.resolve(event)

        async with self._lock_for(payment_id):
            try:
                result, change = await self._apply(payment_id, event, strict)
            except PersistenceConflict:
                logger.warning(f'concurrent update of payment {payment_id}, retrying with a fresh read')
                try:
                    result, change = await self._apply(payment_id, event, strict)
                except PersistenceConflict:
                    logger.error(
                        f'payment {payment_id} changed concurrently twice, dropping {event.source} event '
                        f'"{event.reported_status}" from {event.gateway}: {event.raw_payload}'
                    )
                    raise

            if change is not None:
                await self._after_change(change, event, result)

        return result

    async def resolve(self, event: WebhookEvent) -> UUID:
        payment_id, _ = await self.locate(event, [event.gateway])
        return payment_id

    async def locate(self, event: WebhookEvent, kinds: Sequence[GatewayKind]) -> tuple[UUID, GatewayKind]:
        """Finds the payment by gateway payment ID, then by merchant reference.

        Only payments of `kinds` are considered. Returns the payment ID together
        with the gateway it was created for.
        """
        names = [kind.value for kind in kinds]
        async with self.session_maker() as session:
            if event.gateway_payment_id is not None:
                row = (await session.execute(
                    select(tables.Payment.id, tables.Payment.gateway)
                    .where(
                        tables.Payment.gateway.in_(names),
                        tables.Payment.gateway_payment_id == event.gateway_payment_id
                    )
                    .order_by(tables.Payment.created_at.desc())
                    .limit(1)
                )).first()
                if row is not None:
                    return row.id, GatewayKind(row.gateway)

            reference = event.merchant_reference
            if reference is not None:
                try:
                    row = (await session.execute(
                        select(tables.Payment.id, tables.Payment.gateway)
                        .where(
                            tables.Payment.gateway.in_(names),
                            tables.Payment.id == UUID(reference)
                        )
                    )).first()
                except ValueError:
                    row = None

                if row is None:
                    row = (await session.execute(
                        select(tables.Payment.id, tables.Payment.gateway)
                        .where(
                            tables.Payment.gateway.in_(names),
                            tables.Payment.order_id == reference
                        )
                        .order_by(tables.Payment.created_at.desc())
                        .limit(1)
                    )).first()
                if row is not None:
                    return row.id, GatewayKind(row.gateway)

        raise UnknownPayment(
            f'no {"/".join(names)} payment for gateway id "{event.gateway_payment_id}" '
            f'or reference "{event.merchant_reference}"'
        )

    def _amount_mismatch(self, payment: tables.Payment, event: WebhookEvent) -> bool:
        if event.amount is None or event.status == PaymentStatus.CHARGEBACK:
            return False
        # Not comparable across currencies, e.g. a crypto amount for a fiat invoice
        if event.currency is not None and event.currency.upper() != payment.currency.upper():
            return False
        return abs(event.amount - payment.amount) > self.amount_tolerance

    async def _apply(
        self,
        payment_id: UUID,
        event: WebhookEvent,
        strict: bool
    ) -> tuple[ReconciliationResult, _Change | None]:
        async with self.session_maker() as session, session.begin():
            payment = await session.scalar(
                select(tables.Payment)
                .where(tables.Payment.id == payment_id)
                .with_for_update()
            )
            if payment is None:
                raise UnknownPayment(f'payment {payment_id} disappeared')

            current = PaymentStatus(payment.status)
            target = event.status
            mismatch = self._amount_mismatch(payment, event)

            if mismatch:
                logger.warning(
                    f'{event.gateway} reported amount {event.amount} {event.currency or payment.currency} for payment {payment.id}, '
                    f'stored {payment.amount} {payment.currency}'
                )

            if target == current:
                logger.info(f'payment {payment.id} is already {current}, duplicate {event.source} event ignored')
                return ReconciliationResult(
                    applied=False,
                    resulting_status=current,
                    payment_id=payment.id,
                    previous_status=current,
                    amount_mismatch=mismatch
                ), None

            if not can_transition(current, target):
                message = (
                    f'illegal transition {current} -> {target} for payment {payment.id} '
                    f'({event.source} from {event.gateway}, reported "{event.reported_status}")'
                )
                if strict:
                    raise IllegalTransition(message)
                logger.warning(f'{message}, ignoring')
                return ReconciliationResult(
                    applied=False,
                    resulting_status=current,
                    payment_id=payment.id,
                    previous_status=current,
                    amount_mismatch=mismatch
                ), None

            if target == PaymentStatus.CHARGEBACK and (event.chargeback_amount is None or event.chargeback_amount <= 0):
                raise MalformedPayload(f'chargeback for payment {payment.id} without a positive amount')

            now = datetime.now()
            values: dict[Any, Any] = {
                tables.Payment.status: target,
                tables.Payment.updated_at: now,
                tables.Payment.version: payment.version + 1
            }
            if target == PaymentStatus.PAID:
                values[tables.Payment.paid_at] = now
            if target == PaymentStatus.CHARGEBACK:
                values[tables.Payment.chargeback_amount] = event.chargeback_amount
            # Gateway payment ID is written once
            if payment.gateway_payment_id is None and event.gateway_payment_id is not None:
                values[tables.Payment.gateway_payment_id] = event.gateway_payment_id
            if event.metadata:
                values[tables.Payment.details] = {**(payment.details or {}), **event.metadata}

            result = await session.execute(
                update(tables.Payment)
                .where(
                    tables.Payment.id == payment.id,
                    tables.Payment.version == payment.version
                )
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PersistenceConflict(f'payment {payment.id} version {payment.version} is stale')

            await session.refresh(payment)
            await enqueue_shop_webhook(session, payment, target, now)

        logger.info(f'payment {payment.id}: {current} -> {target} ({event.source} from {event.gateway})')

        return ReconciliationResult(
            applied=True,
            resulting_status=target,
            payment_id=payment.id,
            previous_status=current,
            amount_mismatch=mismatch
        ), _Change(payment=payment, previous_status=current)

    async def _after_change(self, change: _Change, event: WebhookEvent, result: ReconciliationResult):
        payment = change.payment

        # The committed status is authoritative, failures below are only logged
        if is_terminal(result.resulting_status):
            for callback in self.on_terminal:
                try:
                    callback(payment.id)
                except Exception:
                    logger.exception(f'terminal-status callback failed for payment {payment.id}')

        for callback in self.on_change:
            try:
                callback(payment)
            except Exception:
                logger.exception(f'change callback failed for payment {payment.id}')

        if self.publisher is not None:
            try:
                await self.publisher.publish(
                    payment,
                    previous_status=change.previous_status,
                    source=event.source,
                    amount_mismatch=result.amount_mismatch
                )
            except Exception:
                logger.exception(f'couldn\'t publish status change of payment {payment.id}')
