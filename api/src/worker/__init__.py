import httpx
import logging
import anyio

import db.postgres
from .notify_handlers import handlers_notification_loop


logger = logging.getLogger('paygate-worker')


async def run():
    session_maker = db.postgres.init()
    handler_client = httpx.AsyncClient()

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(handlers_notification_loop, session_maker, handler_client)

            logger.info('worker is started')
    finally:
        await handler_client.aclose()
        await db.postgres.dispose()
