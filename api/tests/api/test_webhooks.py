import hmac
import json
import hashlib
import httpx
import pytest
from starlette import status

import dependencies
from conftest import FakeKafkaProducer
from domain.statuses import PaymentStatus
from domain.gateways import GatewayKind
from services.webhooks import WebhookIngestion
from settings import GatewaySecrets


async def test_cointopay_webhook_settles_payment(
    api_client: httpx.AsyncClient,
    components: dependencies.Components,
    kafka_producer: FakeKafkaProducer,
    make_payment,
    get_payment
):
    payment_id = await make_payment(gateway_payment_id='ctp-1')

    response = await api_client.post('/api/v1/webhooks/cointopay', json={
        'gateway_payment_id': 'ctp-1',
        'status': 'Paid',
        'amount': '100.00',
        'transaction_id': 'T-1'
    })

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json() == {'success': True, 'message': 'payment status updated to PAID'}
    assert (await get_payment(payment_id)).status == PaymentStatus.PAID

    assert len(kafka_producer.sent) == 1
    assert kafka_producer.sent[0][1]['source'] == 'webhook'

    [entry] = await components.audit.entries(payment_id)
    assert entry.gateway == 'cointopay'
    assert entry.source == 'webhook'
    assert entry.event == 'paid'
    assert entry.outcome == 'applied'


async def test_gateway_id_in_path(api_client: httpx.AsyncClient, make_payment, get_payment):
    payment_id = await make_payment(gateway=GatewayKind.PLISIO, gateway_payment_id='plisio-1')

    response = await api_client.post('/api/v1/webhooks/0001', json={'txn_id': 'plisio-1', 'status': 'pending'})

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json()['success']
    assert (await get_payment(payment_id)).status == PaymentStatus.PROCESSING


async def test_plisio_form_body(api_client: httpx.AsyncClient, make_payment, get_payment):
    payment_id = await make_payment(gateway=GatewayKind.PLISIO, gateway_payment_id='plisio-2')

    response = await api_client.post('/api/v1/webhooks/plisio', data={
        'txn_id': 'plisio-2',
        'status': 'expired',
        'amount': '0.001'
    })

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json()['success']
    assert (await get_payment(payment_id)).status == PaymentStatus.EXPIRED


async def test_klyme_region_picks_the_gateway(api_client: httpx.AsyncClient, make_payment, get_payment):
    gb = await make_payment(gateway=GatewayKind.KLYME_GB, gateway_payment_id='kl-1')
    de = await make_payment(gateway=GatewayKind.KLYME_DE, gateway_payment_id='kl-1')

    response = await api_client.post('/api/v1/webhooks/klyme', json={'payment_id': 'kl-1', 'status': 'completed', 'region': 'GB'})

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json()['success']
    assert (await get_payment(gb)).status == PaymentStatus.PAID
    assert (await get_payment(de)).status == PaymentStatus.PENDING


async def test_klyme_without_region_uses_the_stored_payment(
    api_client: httpx.AsyncClient,
    components: dependencies.Components,
    make_payment,
    get_payment
):
    eu = await make_payment(gateway=GatewayKind.KLYME_EU, gateway_payment_id='kl-1')
    de = await make_payment(gateway=GatewayKind.KLYME_DE, gateway_payment_id=None, order_id='order-9')

    response = await api_client.post('/api/v1/webhooks/klyme', json={'payment_id': 'kl-1', 'status': 'paid'})

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json() == {'success': True, 'message': 'payment status updated to PAID'}
    assert (await get_payment(eu)).status == PaymentStatus.PAID

    [entry] = await components.audit.entries(eu)
    assert entry.gateway == 'klyme_eu'
    assert entry.outcome == 'applied'

    response = await api_client.post('/api/v1/webhooks/klyme', json={'payment_id': 'kl-2', 'order_id': 'order-9', 'status': 'failed'})

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json()['success']
    payment = await get_payment(de)
    assert payment.status == PaymentStatus.FAILED
    assert payment.gateway_payment_id == 'kl-2'


async def test_duplicate_webhook_is_acknowledged(api_client: httpx.AsyncClient, kafka_producer: FakeKafkaProducer, make_payment):
    await make_payment(gateway_payment_id='ctp-1')
    body = {'gateway_payment_id': 'ctp-1', 'status': 'failed'}

    first = await api_client.post('/api/v1/webhooks/cointopay', json=body)
    second = await api_client.post('/api/v1/webhooks/cointopay', json=body)

    assert first.status_code == second.status_code == status.HTTP_200_OK
    assert second.json() == {'success': True, 'message': 'payment status stays FAILED'}
    assert len(kafka_producer.sent) == 1


@pytest.mark.parametrize(
    ('gateway', 'content', 'outcome'),
    [
        ('cointopay', json.dumps({'gateway_payment_id': 'ctp-404', 'status': 'paid'}), 'unknown_payment'),
        ('cointopay', json.dumps({'gateway_payment_id': 'ctp-1', 'status': 'teleported'}), 'malformed'),
        ('cointopay', 'definitely not json', 'malformed'),
        ('rapyd', json.dumps({'type': 'PAYMENT_COMPLETED'}), 'malformed'),
        ('klyme', json.dumps({'payment_id': 'kl-1', 'status': 'completed', 'region': 'FR'}), 'malformed'),
        ('klyme', json.dumps({'payment_id': 'ctp-1', 'status': 'completed'}), 'unknown_payment'),
        ('stripe', json.dumps({'id': 'ch_1', 'status': 'succeeded'}), 'unknown_gateway'),
        ('9999', json.dumps({'id': 'ch_1', 'status': 'succeeded'}), 'unknown_gateway'),
    ]
)
async def test_rejected_webhooks_still_answer_200(
    api_client: httpx.AsyncClient,
    components: dependencies.Components,
    make_payment,
    get_payment,
    gateway: str,
    content: str,
    outcome: str
):
    payment_id = await make_payment(gateway_payment_id='ctp-1')

    response = await api_client.post(f'/api/v1/webhooks/{gateway}', content=content, headers={'Content-Type': 'application/json'})

    assert response.status_code == status.HTTP_200_OK, response.text
    assert response.json()['success'] is False
    assert (await get_payment(payment_id)).status == PaymentStatus.PENDING

    [entry] = await components.audit.entries()
    assert entry.outcome == outcome
    assert entry.source == 'webhook'
    assert entry.payload is not None


async def test_bad_signature_is_rejected(
    api_client: httpx.AsyncClient,
    components: dependencies.Components,
    make_payment,
    get_payment
):
    from main import app

    secrets = GatewaySecrets(rapyd_webhook_secret='rapyd-secret')
    app.dependency_overrides[dependencies.get_webhook_ingestion] = lambda: WebhookIngestion(
        reconciler=components.reconciler,
        audit=components.audit,
        secrets=secrets
    )
    try:
        payment_id = await make_payment(gateway=GatewayKind.RAPYD, gateway_payment_id='payment_abc')
        body = json.dumps({'type': 'PAYMENT_FAILED', 'data': {'id': 'payment_abc'}}).encode()

        response = await api_client.post(
            '/api/v1/webhooks/rapyd',
            content=body,
            headers={'Content-Type': 'application/json', 'X-Webhook-Signature': 'forged'}
        )
        assert response.status_code == status.HTTP_200_OK, response.text
        assert response.json()['success'] is False
        assert (await get_payment(payment_id)).status == PaymentStatus.PENDING
        assert (await components.audit.entries())[0].outcome == 'auth_failed'

        signature = hmac.new(b'rapyd-secret', body, hashlib.sha256).hexdigest()
        response = await api_client.post(
            '/api/v1/webhooks/rapyd',
            content=body,
            headers={'Content-Type': 'application/json', 'X-Webhook-Signature': signature}
        )
        assert response.status_code == status.HTTP_200_OK, response.text
        assert response.json()['success'] is True
        assert (await get_payment(payment_id)).status == PaymentStatus.FAILED
    finally:
        app.dependency_overrides.clear()
