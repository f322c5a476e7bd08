from typing import Annotated
from uuid import UUID
from decimal import Decimal
from fastapi import APIRouter, Body, Depends, Path, HTTPException
from pydantic import BaseModel, Field, model_validator
from starlette import status

from dependencies import get_scheduler, get_payment_service
from domain.events import ReconciliationResult
from domain.statuses import PaymentStatus
from domain.errors import PaymentDoesntExistError, IllegalTransition, GatewayUnreachable, ReconciliationError
from services.payment import PaymentService
from services.polling import PollingScheduler, PollingStats, TimerInfo


router = APIRouter()


ERROR_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (PaymentDoesntExistError, status.HTTP_404_NOT_FOUND),
    (IllegalTransition, status.HTTP_409_CONFLICT),
    (GatewayUnreachable, status.HTTP_502_BAD_GATEWAY),
    (ReconciliationError, status.HTTP_400_BAD_REQUEST),
]


def http_error(error: Exception) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error) or 'payment doesn\'t exist')
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.get(
    path='/polling/stats',
    description='Active timers, expiry horizon, backoff schedule and per-payment timer state'
)
async def get_polling_stats(
    scheduler: Annotated[PollingScheduler, Depends(get_scheduler)]
) -> PollingStats:
    return scheduler.stats()


@router.get(
    path='/polling/{payment_id}',
    description='Timer state of one payment'
)
async def get_polling_timer(
    payment_id: Annotated[UUID, Path()],
    scheduler: Annotated[PollingScheduler, Depends(get_scheduler)]
) -> TimerInfo:
    info = scheduler.timer_info(payment_id)
    if info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='payment has no active timer')
    return info


@router.post(
    path='/polling/{payment_id}/check',
    description='Queries the gateway for the payment status right now, outside of the backoff schedule'
)
async def check_payment_now(
    payment_id: Annotated[UUID, Path()],
    scheduler: Annotated[PollingScheduler, Depends(get_scheduler)]
) -> ReconciliationResult:
    try:
        return await scheduler.check_now(payment_id)
    except (PaymentDoesntExistError, ReconciliationError) as e:
        raise http_error(e) from e


class StatusChangeBody(BaseModel):
    status: PaymentStatus
    chargeback_amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None

    @model_validator(mode='after')
    def check_chargeback_amount(self) -> 'StatusChangeBody':
        if self.status == PaymentStatus.CHARGEBACK and self.chargeback_amount is None:
            raise ValueError('CHARGEBACK requires a positive chargeback_amount')
        if self.status != PaymentStatus.CHARGEBACK and self.chargeback_amount is not None:
            raise ValueError('chargeback_amount is only allowed with CHARGEBACK')
        return self


@router.post(
    path='/payment/{payment_id}/status',
    description=
    'Manual status change, goes through the same transition rules as gateway events<br>'
    'CHARGEBACK needs a positive `chargeback_amount`'
)
async def change_payment_status(
    payment_id: Annotated[UUID, Path()],
    body: Annotated[StatusChangeBody, Body()],
    payment_service: Annotated[PaymentService, Depends(get_payment_service)]
) -> ReconciliationResult:
    try:
        return await payment_service.set_status(
            payment_id,
            body.status,
            chargeback_amount=body.chargeback_amount,
            reason=body.reason
        )
    except (PaymentDoesntExistError, ReconciliationError) as e:
        raise http_error(e) from e
