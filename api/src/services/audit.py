import logging
from uuid import UUID, uuid4
from typing import Any, Literal
from datetime import datetime
from dataclasses import dataclass
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from domain.events import ReconciliationResult
from domain.errors import (
    MalformedPayload,
    AuthenticationFailure,
    UnknownPayment,
    GatewayUnreachable,
    PersistenceConflict,
    UnknownGateway
)


logger = logging.getLogger('paygate-audit')


Outcome = Literal[
    'applied',
    'ignored',
    'amount_mismatch',
    'unknown_payment',
    'unknown_gateway',
    'malformed',
    'auth_failed',
    'unreachable',
    'conflict',
    'error'
]


ERROR_OUTCOMES: tuple[tuple[type[Exception], Outcome], ...] = (
    (MalformedPayload, 'malformed'),
    (AuthenticationFailure, 'auth_failed'),
    (UnknownPayment, 'unknown_payment'),
    (UnknownGateway, 'unknown_gateway'),
    (GatewayUnreachable, 'unreachable'),
    (PersistenceConflict, 'conflict'),
)


def outcome_for_result(result: ReconciliationResult) -> Outcome:
    if result.amount_mismatch:
        return 'amount_mismatch'
    return 'applied' if result.applied else 'ignored'


def outcome_for_error(error: Exception) -> Outcome:
    for error_type, outcome in ERROR_OUTCOMES:
        if isinstance(error, error_type):
            return outcome
    return 'error'


@dataclass(frozen=True)
class AuditLog:
    session_maker: async_sessionmaker[AsyncSession]

    async def record(
        self,
        gateway: str,
        source: str,
        event: str,
        outcome: Outcome,
        payment_id: UUID | None = None,
        detail: str | None = None,
        payload: dict[str, Any] | None = None
    ):
        # Audit failures are logged only
        try:
            async with self.session_maker() as session, session.begin():
                await session.execute(insert(tables.WebhookLog).values({
                    tables.WebhookLog.id: uuid4(),
                    tables.WebhookLog.created_at: datetime.now(),
                    tables.WebhookLog.gateway: gateway,
                    tables.WebhookLog.source: source,
                    tables.WebhookLog.event: event,
                    tables.WebhookLog.outcome: outcome,
                    tables.WebhookLog.payment_id: payment_id,
                    tables.WebhookLog.detail: detail,
                    tables.WebhookLog.payload: payload
                }))
        except Exception:
            logger.exception(f'couldn\'t write audit entry for {gateway} {source} "{event}" ({outcome}): {payload}')

    async def record_error(self, gateway: str, source: str, event: str, error: Exception, payload: Any = None):
        await self.record(
            gateway=gateway,
            source=source,
            event=event,
            outcome=outcome_for_error(error),
            detail=f'{type(error).__name__}: {error}',
            payload=payload if isinstance(payload, dict) else {'raw': str(payload)} if payload is not None else None
        )

    async def entries(self, payment_id: UUID | None = None, limit: int = 100) -> list[tables.WebhookLog]:
        async with self.session_maker() as session:
            query = select(tables.WebhookLog).order_by(tables.WebhookLog.created_at.desc()).limit(limit)
            if payment_id is not None:
                query = query.where(tables.WebhookLog.payment_id == payment_id)
            return list((await session.execute(query)).scalars())
