import httpx
import logging
from typing import Protocol
from dataclasses import dataclass

from domain.gateways import GatewayKind
from domain.events import WebhookEvent
from domain.errors import GatewayUnreachable
from services.normalizer import normalize_status_report
from settings import gateway_secrets


logger = logging.getLogger('paygate-cointopay')


class StatusClient(Protocol):
    async def query_status(self, gateway_payment_id: str) -> WebhookEvent:
        ...


@dataclass(frozen=True)
class CoinToPayStatusClient:
    http_client: httpx.AsyncClient
    status_url: str = gateway_secrets.cointopay_status_url

    async def query_status(self, gateway_payment_id: str) -> WebhookEvent:
        try:
            response = await self.http_client.post(
                url=self.status_url,
                headers={'Accept': 'application/json'},
                json={'gatewayPaymentId': gateway_payment_id}
            )
        except httpx.HTTPError as e:
            raise GatewayUnreachable(f'cointopay status query for {gateway_payment_id} failed: {e!r}') from e

        if response.status_code != 200:
            raise GatewayUnreachable(f'got status {response.status_code} from cointopay: {response.text}')

        try:
            response_json = response.json()
        except ValueError as e:
            raise GatewayUnreachable(f'cointopay answered with non-JSON body: {response.text}') from e

        if not isinstance(response_json, dict) or response_json.get('result') != 'success' or response_json.get('status_code') != 200:
            raise GatewayUnreachable(f'cointopay status query for {gateway_payment_id} was rejected: {response_json}')

        data = response_json.get('data')
        if not data:
            raise GatewayUnreachable(f'cointopay status response for {gateway_payment_id} has no data')

        event = normalize_status_report(GatewayKind.COINTOPAY, gateway_payment_id, data)
        logger.info(f'cointopay reports "{event.reported_status}" for {gateway_payment_id}')
        return event


def make_status_clients(http_client: httpx.AsyncClient) -> dict[GatewayKind, StatusClient]:
    return {GatewayKind.COINTOPAY: CoinToPayStatusClient(http_client=http_client)}
