import orjson
from typing import Annotated, Any
from fastapi import APIRouter, Depends, Path, Request

from dependencies import get_webhook_ingestion
from services.webhooks import WebhookIngestion, WebhookAck


router = APIRouter()


FORM_CONTENT_TYPES = ('application/x-www-form-urlencoded', 'multipart/form-data')


async def read_payload(request: Request, raw_body: bytes) -> Any:
    content_type = request.headers.get('content-type', '')
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    try:
        return orjson.loads(raw_body)
    except orjson.JSONDecodeError:
        return raw_body.decode(errors='replace')


@router.post(
    path='/{gateway}',
    description=
    'Gateway callback, `gateway` is a gateway ID ("0100") or name ("cointopay"), `klyme` for any KLYME region<br>'
    'Always answers 200, gateways retry anything else'
)
async def receive_webhook(
    gateway: Annotated[str, Path()],
    request: Request,
    ingestion: Annotated[WebhookIngestion, Depends(get_webhook_ingestion)]
) -> WebhookAck:
    raw_body = await request.body()
    try:
        payload = await read_payload(request, raw_body)
    except Exception:
        payload = raw_body.decode(errors='replace')

    return await ingestion.ingest(gateway, payload, raw_body=raw_body, headers=dict(request.headers))
