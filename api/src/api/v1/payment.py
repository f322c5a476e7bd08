from typing import Annotated
from uuid import UUID
from decimal import Decimal
from datetime import datetime
from fastapi import APIRouter, Body, Depends, Path, HTTPException
from pydantic import BaseModel, Field
from starlette import status

from dependencies import get_payment_service
from domain import gateways
from domain.errors import PaymentDoesntExistError, ShopDoesntExistError, IllegalTransition, UnknownGateway
from services.payment import PaymentService, PaymentInfo


router = APIRouter()


class PaymentBody(BaseModel):
    shop_id: UUID
    gateway: str = Field(description='Gateway ID (e.g. "0100") or name (e.g. "cointopay")')
    amount: Decimal = Field(gt=0.0)
    currency: str = Field(min_length=3, max_length=10)
    order_id: str | None = None
    gateway_payment_id: str | None = Field(default=None, description='Known if the gateway already created the payment')
    source_currency: str | None = None
    amount_is_editable: bool | None = None
    max_payments: int | None = Field(default=None, gt=0)
    expires_at: datetime | None = None


@router.post(
    path='',
    description=
    'Registers a payment intent in PENDING status<br>'
    'Payments of gateways without webhooks are checked on a backoff schedule until they settle or expire'
)
async def register_payment(
    body: Annotated[PaymentBody, Body()],
    payment_service: Annotated[PaymentService, Depends(get_payment_service)]
) -> PaymentInfo:
    try:
        gateway = gateways.resolve(body.gateway)
    except UnknownGateway as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    try:
        return await payment_service.register(
            shop_id=body.shop_id,
            gateway=gateway,
            amount=body.amount,
            currency=body.currency,
            order_id=body.order_id,
            gateway_payment_id=body.gateway_payment_id,
            source_currency=body.source_currency,
            amount_is_editable=body.amount_is_editable,
            max_payments=body.max_payments,
            expires_at=body.expires_at
        )
    except ShopDoesntExistError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='shop doesn\'t exist')


class AcknowledgeBody(BaseModel):
    gateway_payment_id: str = Field(min_length=1)


@router.post(
    path='/{payment_id}/acknowledge',
    description='Binds the gateway-assigned payment ID. Once set it never changes'
)
async def acknowledge_payment(
    payment_id: Annotated[UUID, Path()],
    body: Annotated[AcknowledgeBody, Body()],
    payment_service: Annotated[PaymentService, Depends(get_payment_service)]
) -> PaymentInfo:
    try:
        return await payment_service.acknowledge(payment_id, body.gateway_payment_id)
    except PaymentDoesntExistError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='payment doesn\'t exist')
    except IllegalTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get(
    path='/{payment_id}',
    description='Last reconciled state of the payment'
)
async def get_payment(
    payment_id: Annotated[UUID, Path()],
    payment_service: Annotated[PaymentService, Depends(get_payment_service)]
) -> PaymentInfo:
    try:
        return await payment_service.get(payment_id)
    except PaymentDoesntExistError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='payment doesn\'t exist')
