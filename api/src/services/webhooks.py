import logging
from typing import Any, Mapping
from dataclasses import dataclass, field, replace
from pydantic import BaseModel

from domain.errors import ReconciliationError, UnknownGateway
from services.audit import AuditLog, outcome_for_result
from services.normalizer import normalize, webhook_gateway_candidates
from services.reconciliation import Reconciler
from settings import GatewaySecrets, gateway_secrets


logger = logging.getLogger('paygate-webhooks')


class WebhookAck(BaseModel):
    success: bool
    message: str


@dataclass(frozen=True)
class WebhookIngestion:
    """Gateway callbacks in, acknowledgements out. Never raises."""
    reconciler: Reconciler
    audit: AuditLog
    secrets: GatewaySecrets = field(default_factory=lambda: gateway_secrets)

    async def ingest(
        self,
        gateway: str,
        payload: Any,
        raw_body: bytes = b'',
        headers: Mapping[str, str] | None = None
    ) -> WebhookAck:
        logger.info(f'{gateway} webhook received: {payload}')

        gateway_name = gateway.lower()
        reported = '-'
        try:
            candidates = webhook_gateway_candidates(gateway, payload)
            if len(candidates) == 1:
                gateway_name = candidates[0].value

            # Candidates share one payload format
            event = normalize(candidates[0], payload, raw_body=raw_body, headers=headers, secrets=self.secrets)
            reported = event.reported_status

            payment_id = None
            if len(candidates) > 1:
                payment_id, kind = await self.reconciler.locate(event, candidates)
                gateway_name = kind.value
                event = replace(event, gateway=kind)

            result = await self.reconciler.reconcile(event, payment_id)
        except (ReconciliationError, UnknownGateway) as e:
            logger.warning(f'{gateway_name} webhook discarded: {e!r}, payload: {payload}')
            await self.audit.record_error(gateway_name, 'webhook', reported, e, payload)
            return WebhookAck(success=False, message=str(e))
        except Exception as e:
            logger.exception(f'{gateway_name} webhook failed, payload: {payload}')
            await self.audit.record_error(gateway_name, 'webhook', reported, e, payload)
            return WebhookAck(success=False, message='internal error')

        outcome = outcome_for_result(result)
        await self.audit.record(
            gateway=gateway_name,
            source='webhook',
            event=reported,
            outcome=outcome,
            payment_id=result.payment_id,
            payload=payload
        )
        logger.info(f'{gateway_name} webhook for payment {result.payment_id} processed: {outcome}, status {result.resulting_status}')

        if result.applied:
            return WebhookAck(success=True, message=f'payment status updated to {result.resulting_status}')
        return WebhookAck(success=True, message=f'payment status stays {result.resulting_status}')
