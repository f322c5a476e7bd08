from typing import Annotated
from uuid import UUID
from datetime import datetime
from fastapi import APIRouter, Depends, Path, Query, HTTPException
from starlette import status

from dependencies import get_payout_service
from domain.errors import ShopDoesntExistError
from services.payouts import PayoutService, PayoutSummary


router = APIRouter()


@router.get(
    path='/{shop_id}/payouts',
    description=
    'PAID payments of the shop split into eligible for payout and not yet eligible, with net amounts<br>'
    'A payment is eligible once `as_of` reaches paid-at plus the payout delay of its gateway'
)
async def get_payouts(
    shop_id: Annotated[UUID, Path()],
    payout_service: Annotated[PayoutService, Depends(get_payout_service)],
    as_of: Annotated[datetime | None, Query()] = None
) -> PayoutSummary:
    try:
        return await payout_service.summary(shop_id, as_of)
    except ShopDoesntExistError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='shop doesn\'t exist')
