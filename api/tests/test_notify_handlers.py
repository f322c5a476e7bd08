import httpx
import json
import pytest
from uuid import uuid4
from datetime import datetime
from pytest_httpx import HTTPXMock
from sqlalchemy import select, insert
from starlette import status

import tables
from settings import settings
from worker.notify_handlers import process_next_notification


WEBHOOK_URL = 'https://shop.example.com/webhook'


@pytest.fixture
async def handler_client():
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def enqueue(session_maker):
    async def enqueue(attempts: int = 0):
        async with session_maker() as session:
            await session.execute(insert(tables.HandlerNotificationRequest).values({
                tables.HandlerNotificationRequest.id: uuid4(),
                tables.HandlerNotificationRequest.created_at: datetime.now(),
                tables.HandlerNotificationRequest.attempts: attempts,
                tables.HandlerNotificationRequest.handler_url: WEBHOOK_URL,
                tables.HandlerNotificationRequest.data: {'event': 'payment.success', 'payment_id': str(uuid4())}
            }))
            await session.commit()

    return enqueue


async def pending_requests(session_maker) -> list[tables.HandlerNotificationRequest]:
    async with session_maker() as session:
        return list((await session.execute(select(tables.HandlerNotificationRequest))).scalars())


async def test_nothing_to_deliver(session_maker, handler_client: httpx.AsyncClient):
    assert not await process_next_notification(session_maker, handler_client)


async def test_delivered_notification_is_removed(
    session_maker,
    handler_client: httpx.AsyncClient,
    enqueue,
    httpx_mock: HTTPXMock
):
    httpx_mock.add_response(method='POST', url=WEBHOOK_URL, status_code=status.HTTP_200_OK)
    await enqueue()

    assert await process_next_notification(session_maker, handler_client)

    request = httpx_mock.get_request()
    assert request is not None
    assert json.loads(request.content)['event'] == 'payment.success'
    assert await pending_requests(session_maker) == []


async def test_failed_delivery_is_retried_later(
    session_maker,
    handler_client: httpx.AsyncClient,
    enqueue,
    httpx_mock: HTTPXMock
):
    httpx_mock.add_response(url=WEBHOOK_URL, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    await enqueue()

    assert await process_next_notification(session_maker, handler_client)

    [request] = await pending_requests(session_maker)
    assert request.attempts == 1
    assert request.processed_at is not None

    # Not due again until the loop sleep duration has passed
    assert not await process_next_notification(session_maker, handler_client)


async def test_gives_up_after_max_attempts(
    session_maker,
    handler_client: httpx.AsyncClient,
    enqueue,
    httpx_mock: HTTPXMock
):
    httpx_mock.add_exception(httpx.ConnectError('connection refused'), url=WEBHOOK_URL)
    await enqueue(attempts=settings.notification_max_attempts - 1)

    assert await process_next_notification(session_maker, handler_client)
    assert await pending_requests(session_maker) == []
