import httpx
import logging
import aiokafka
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

import db.postgres
import dependencies
from api.v1 import payment, webhooks, shop, admin
from services.cointopay import make_status_clients
from settings import kafka_settings, polling_settings, gateway_secrets


logger = logging.getLogger('paygate-api')


@asynccontextmanager
async def lifespan(app: FastAPI):
    session_maker = db.postgres.init()

    gateway_client = httpx.AsyncClient(timeout=gateway_secrets.connection_timeout_sec)
    kafka_producer = aiokafka.AIOKafkaProducer(bootstrap_servers=kafka_settings.bootstrap_servers)
    await kafka_producer.start()

    status_clients = {
        gateway: client
        for gateway, client in make_status_clients(gateway_client).items()
        if gateway in polling_settings.polled_gateways
    }
    components = dependencies.init(session_maker, status_clients, kafka_producer)
    await components.scheduler.resume_pending()
    logger.info(f'api is started, polling {", ".join(status_clients) or "nothing"}')

    yield

    await components.scheduler.stop()
    await kafka_producer.stop()
    await gateway_client.aclose()
    await db.postgres.dispose()


app = FastAPI(
    title='Paygate',
    lifespan=lifespan,
    docs_url='/api/openapi',
    openapi_url='/api/openapi.json',
    default_response_class=ORJSONResponse
)

app.include_router(payment.router, prefix='/api/v1/payment')
app.include_router(webhooks.router, prefix='/api/v1/webhooks')
app.include_router(shop.router, prefix='/api/v1/shop')
app.include_router(admin.router, prefix='/api/v1/admin')


if __name__ == '__main__':
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(name)s %(levelname)s: %(message)s'
    )
    uvicorn.run(app, host='0.0.0.0', port=8000)
