import asyncio
import httpx
import logging
from datetime import datetime, timedelta
from sqlalchemy import select, update, nulls_last, or_
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

import tables
from settings import settings


logger = logging.getLogger('paygate-worker-handlers-notification-loop')


async def handlers_notification_loop(
    session_maker: async_sessionmaker[AsyncSession],
    handler_client: httpx.AsyncClient
):
    while True:
        if not await process_next_notification(session_maker, handler_client):
            await asyncio.sleep(settings.handlers_notification_loop_sleep_duration)


async def process_next_notification(
    session_maker: async_sessionmaker[AsyncSession],
    handler_client: httpx.AsyncClient
) -> bool:
    """Delivers one due shop webhook. Returns False if nothing was due."""
    async with session_maker() as session:
        request = await session.scalar(
            select(tables.HandlerNotificationRequest)
            .where(or_(
                tables.HandlerNotificationRequest.processed_at.is_(None),
                tables.HandlerNotificationRequest.processed_at < (datetime.now() - timedelta(seconds=settings.handlers_notification_loop_sleep_duration))
            ))
            .order_by(nulls_last(tables.HandlerNotificationRequest.processed_at.asc()))
            .with_for_update(skip_locked=True)
            .limit(1)
        )

        if request is None:
            return False

        if await notify_handler(request, handler_client):
            await session.delete(request)
        elif request.attempts + 1 >= settings.notification_max_attempts:
            logger.error(
                f'giving up on "{request.data.get("event")}" for payment {request.data.get("payment_id")} '
                f'after {request.attempts + 1} attempts to "{request.handler_url}"'
            )
            await session.delete(request)
        else:
            await session.execute(
                update(tables.HandlerNotificationRequest)
                .where(tables.HandlerNotificationRequest.id == request.id)
                .values({
                    tables.HandlerNotificationRequest.processed_at: datetime.now(),
                    tables.HandlerNotificationRequest.attempts: request.attempts + 1
                })
            )

        await session.commit()
        return True


async def notify_handler(
    notify_request: tables.HandlerNotificationRequest,
    handler_client: httpx.AsyncClient
) -> bool:
    error_msg = None
    try:
        response = await handler_client.post(
            url=notify_request.handler_url,
            json=notify_request.data,
            timeout=settings.notification_timeout
        )
        if not response.is_success:
            error_msg = f'got status {response.status_code} from shop webhook "{notify_request.handler_url}"'
    except httpx.TimeoutException:
        error_msg = f'shop webhook "{notify_request.handler_url}" timed out'
    except httpx.TransportError:
        error_msg = f'couldn\'t connect to shop webhook "{notify_request.handler_url}"'

    if error_msg is not None:
        logger.warning(error_msg)
        return False

    logger.info(f'delivered "{notify_request.data.get("event")}" to "{notify_request.handler_url}"')
    return True
