import hmac
import json
import hashlib
import logging
from typing import Any, Callable, Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from dataclasses import dataclass, field

from domain import gateways
from domain.gateways import GatewayKind
from domain.statuses import PaymentStatus
from domain.events import WebhookEvent, EventSource
from domain.errors import MalformedPayload, AuthenticationFailure, UnknownGateway
from settings import GatewaySecrets, gateway_secrets


logger = logging.getLogger('paygate-normalizer')


Payload = dict[str, Any]
Verifier = Callable[[Payload, bytes, Mapping[str, str], GatewaySecrets], bool]

SIGNATURE_HEADER = 'x-webhook-signature'


@dataclass(frozen=True)
class GatewayAdapter:
    """Pure functions describing one gateway's payload shape and status vocabulary."""
    payment_id: Callable[[Payload], str | None]
    reference: Callable[[Payload], str | None]
    native_status: Callable[[Payload], str]
    vocabulary: Mapping[str, PaymentStatus]
    amount: Callable[[Payload], Any] = lambda payload: None
    currency: Callable[[Payload], str | None] = lambda payload: None
    metadata: Callable[[Payload], dict[str, Any]] = lambda payload: {}
    verify: Verifier | None = None
    poll_status: Callable[[Payload], str] | None = None
    poll_vocabulary: Mapping[str, PaymentStatus] | None = None
    poll_amount: Callable[[Payload], Any] = lambda payload: None
    poll_metadata: Callable[[Payload], dict[str, Any]] = field(default=lambda payload: {})


def _text(value: Any) -> str | None:
    if value is None or value == '':
        return None
    return str(value)


def _lower(value: Any) -> str:
    return str(value or '').strip().lower()


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value not in (None, '')}


def _hmac_header_verifier(secret_name: str) -> Verifier:
    def verify(payload: Payload, raw_body: bytes, headers: Mapping[str, str], secrets: GatewaySecrets) -> bool:
        secret: str | None = getattr(secrets, secret_name)
        if not secret:
            return True

        received = headers.get(SIGNATURE_HEADER, '')
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, received.lower())

    return verify


def _plisio_amount(payload: Payload) -> Any:
    # Invoice total in the shop currency when the invoice was priced in one
    if payload.get('source_amount') not in (None, ''):
        return payload['source_amount']
    return payload.get('amount')


def _plisio_currency(payload: Payload) -> str | None:
    if payload.get('source_amount') not in (None, ''):
        return _text(payload.get('source_currency'))
    return _text(payload.get('currency'))


def _plisio_verify(payload: Payload, raw_body: bytes, headers: Mapping[str, str], secrets: GatewaySecrets) -> bool:
    if not secrets.plisio_secret_key:
        return True

    received = payload.get('verify_hash')
    if not isinstance(received, str):
        return False

    ordered = {key: value for key, value in payload.items() if key != 'verify_hash'}
    message = json.dumps(ordered, separators=(',', ':'), ensure_ascii=False)
    expected = hmac.new(secrets.plisio_secret_key.encode(), message.encode(), hashlib.sha1).hexdigest()
    return hmac.compare_digest(expected, received.lower())


def _noda_verify(payload: Payload, raw_body: bytes, headers: Mapping[str, str], secrets: GatewaySecrets) -> bool:
    if not secrets.noda_signature_key:
        return True

    received = payload.get('Signature')
    if not isinstance(received, str):
        return False

    message = f'{payload.get("PaymentId", "")}{payload.get("Status", "")}{secrets.noda_signature_key}'
    expected = hashlib.sha256(message.encode()).hexdigest()
    return hmac.compare_digest(expected, received.lower())


PLISIO_VOCABULARY = {
    'new': PaymentStatus.PENDING,
    'pending internal': PaymentStatus.PENDING,
    'pending': PaymentStatus.PROCESSING,
    'completed': PaymentStatus.PAID,
    'mismatch': PaymentStatus.PAID,  # overpaid
    'expired': PaymentStatus.EXPIRED,
    'error': PaymentStatus.FAILED,
    'cancelled': PaymentStatus.FAILED,
}


RAPYD_TYPED_EVENTS = frozenset({
    'PAYMENT_COMPLETED',
    'PAYMENT_CANCELED',
    'PAYMENT_EXPIRED',
    'PAYMENT_FAILED',
    'REFUND_COMPLETED',
    'PAYMENT_DISPUTE_CREATED',
})

RAPYD_VOCABULARY = {
    'payment_completed paid': PaymentStatus.PAID,
    'payment_completed unpaid': PaymentStatus.PROCESSING,
    'payment_canceled': PaymentStatus.FAILED,
    'payment_expired': PaymentStatus.EXPIRED,
    'payment_failed': PaymentStatus.FAILED,
    'refund_completed': PaymentStatus.REFUND,
    'payment_dispute_created': PaymentStatus.CHARGEBACK,
    'clo paid': PaymentStatus.PAID,
    'clo unpaid': PaymentStatus.FAILED,
    'can': PaymentStatus.FAILED,
    'err': PaymentStatus.FAILED,
    'exp': PaymentStatus.EXPIRED,
    'act': PaymentStatus.PROCESSING,
    'new': PaymentStatus.PENDING,
}


def _rapyd_status(payload: Payload) -> str:
    data = payload['data']
    event_type = str(payload.get('type') or '').upper()
    data_status = str(data.get('status') or '').upper()

    token = event_type if event_type in RAPYD_TYPED_EVENTS else data_status
    if token in ('PAYMENT_COMPLETED', 'CLO'):
        paid = data.get('paid') is True and data_status == 'CLO'
        token = f'{token} {"paid" if paid else "unpaid"}'

    return token.lower()


def _rapyd_metadata(payload: Payload) -> dict[str, Any]:
    data = payload['data']
    method_data = data.get('payment_method_data') or {}
    return _compact({
        'event_id': payload.get('id'),
        'card_last4': method_data.get('last4'),
        'payment_method': method_data.get('type') or data.get('payment_method_type'),
    })


NODA_DONE = ('done', 'completed', 'paid', 'success', 'successful')

NODA_VOCABULARY = {
    **{f'{status} settled': PaymentStatus.PAID for status in NODA_DONE},
    # Done but not settled yet
    **{f'{status} unsettled': PaymentStatus.PROCESSING for status in NODA_DONE},
    'processing': PaymentStatus.PROCESSING,
    'awaiting confirmation': PaymentStatus.PROCESSING,
    'in_progress': PaymentStatus.PROCESSING,
    'cancelled': PaymentStatus.FAILED,
    'canceled': PaymentStatus.FAILED,
    'failed': PaymentStatus.FAILED,
    'error': PaymentStatus.FAILED,
    'rejected': PaymentStatus.FAILED,
    'expired': PaymentStatus.EXPIRED,
    'timeout': PaymentStatus.EXPIRED,
    'pending': PaymentStatus.PENDING,
    'created': PaymentStatus.PENDING,
    'active': PaymentStatus.PENDING,
    'refunded': PaymentStatus.REFUND,
}


def _noda_status(payload: Payload) -> str:
    status = _lower(payload['Status'])
    if status in NODA_DONE:
        settled = payload.get('Settled') in ('Yes', True)
        return f'{status} {"settled" if settled else "unsettled"}'
    return status


def _noda_metadata(payload: Payload) -> dict[str, Any]:
    remitter = payload.get('Remitter') or {}
    return _compact({
        'remitter_iban': remitter.get('Iban'),
        'remitter_name': remitter.get('Name'),
        'bank_id': payload.get('BankId'),
        'payment_method': payload.get('Method'),
    })


COINTOPAY_POLL_VOCABULARY = {
    'paid': PaymentStatus.PAID,
    'awaiting fiat': PaymentStatus.PENDING,
    'waiting': PaymentStatus.PENDING,
    'pending': PaymentStatus.PENDING,
    'created': PaymentStatus.PENDING,
    'expired': PaymentStatus.EXPIRED,
    'timeout': PaymentStatus.EXPIRED,
    'cancelled': PaymentStatus.FAILED,
    'failed': PaymentStatus.FAILED,
    'error': PaymentStatus.FAILED,
}

# Callbacks also report intermediate and confirmed states, status queries only ever say Paid
COINTOPAY_VOCABULARY = {
    **COINTOPAY_POLL_VOCABULARY,
    'completed': PaymentStatus.PAID,
    'confirmed': PaymentStatus.PAID,
    'processing': PaymentStatus.PROCESSING,
    'confirming': PaymentStatus.PROCESSING,
}


def _cointopay_poll_metadata(data: Payload) -> dict[str, Any]:
    return _compact({
        'transaction_id': data.get('TransactionID'),
        'payment_detail': data.get('PaymentDetail'),
        'confirmed_on': data.get('TransactionConfirmedOn'),
    })


KLYME_VOCABULARY = {
    'paid': PaymentStatus.PAID,
    'completed': PaymentStatus.PAID,
    'confirmed': PaymentStatus.PAID,
    'success': PaymentStatus.PAID,
    'successful': PaymentStatus.PAID,
    'processing': PaymentStatus.PROCESSING,
    'active': PaymentStatus.PROCESSING,
    'in_progress': PaymentStatus.PROCESSING,
    'cancelled': PaymentStatus.FAILED,
    'canceled': PaymentStatus.FAILED,
    'failed': PaymentStatus.FAILED,
    'error': PaymentStatus.FAILED,
    'rejected': PaymentStatus.FAILED,
    'expired': PaymentStatus.EXPIRED,
    'timeout': PaymentStatus.EXPIRED,
    'pending': PaymentStatus.PENDING,
    'created': PaymentStatus.PENDING,
    'refunded': PaymentStatus.REFUND,
}


_KLYME_ADAPTER = GatewayAdapter(
    payment_id=lambda payload: _text(payload.get('payment_id')),
    reference=lambda payload: _text(payload.get('order_id')),
    native_status=lambda payload: _lower(payload['status']),
    vocabulary=KLYME_VOCABULARY,
    amount=lambda payload: payload.get('amount'),
    currency=lambda payload: _text(payload.get('currency')),
    metadata=lambda payload: _compact({
        'payment_method': payload.get('payment_method'),
        'transaction_id': payload.get('transaction_id'),
    }),
    verify=_hmac_header_verifier('klyme_webhook_secret'),
)


ADAPTERS: dict[GatewayKind, GatewayAdapter] = {
    GatewayKind.PLISIO: GatewayAdapter(
        payment_id=lambda payload: _text(payload.get('txn_id')),
        reference=lambda payload: _text(payload.get('order_number')),
        native_status=lambda payload: _lower(payload['status']),
        vocabulary=PLISIO_VOCABULARY,
        amount=_plisio_amount,
        currency=_plisio_currency,
        metadata=lambda payload: _compact({
            'currency': payload.get('currency'),
            'confirmations': payload.get('confirmations'),
        }),
        verify=_plisio_verify,
    ),
    GatewayKind.RAPYD: GatewayAdapter(
        payment_id=lambda payload: _text(payload['data'].get('id')),
        reference=lambda payload: _text(payload['data'].get('merchant_reference_id')),
        native_status=_rapyd_status,
        vocabulary=RAPYD_VOCABULARY,
        amount=lambda payload: payload['data'].get('amount'),
        currency=lambda payload: _text(payload['data'].get('currency')),
        metadata=_rapyd_metadata,
        verify=_hmac_header_verifier('rapyd_webhook_secret'),
    ),
    GatewayKind.NODA: GatewayAdapter(
        payment_id=lambda payload: _text(payload.get('PaymentId')),
        reference=lambda payload: _text(payload.get('MerchantPaymentId')),
        native_status=_noda_status,
        vocabulary=NODA_VOCABULARY,
        amount=lambda payload: payload.get('Amount'),
        currency=lambda payload: _text(payload.get('Currency')),
        metadata=_noda_metadata,
        verify=_noda_verify,
    ),
    GatewayKind.COINTOPAY: GatewayAdapter(
        payment_id=lambda payload: _text(payload.get('gateway_payment_id')),
        reference=lambda payload: _text(payload.get('order_id')),
        native_status=lambda payload: _lower(payload['status']),
        vocabulary=COINTOPAY_VOCABULARY,
        amount=lambda payload: payload.get('amount'),
        metadata=lambda payload: _compact({'transaction_id': payload.get('transaction_id')}),
        verify=_hmac_header_verifier('cointopay_webhook_secret'),
        poll_status=lambda data: _lower(data['Status']),
        poll_vocabulary=COINTOPAY_POLL_VOCABULARY,
        poll_amount=lambda data: data.get('Amount'),
        poll_metadata=_cointopay_poll_metadata,
    ),
    GatewayKind.KLYME_EU: _KLYME_ADAPTER,
    GatewayKind.KLYME_GB: _KLYME_ADAPTER,
    GatewayKind.KLYME_DE: _KLYME_ADAPTER,
}


def to_canonical(kind: GatewayKind, native_status: str, poll: bool = False) -> PaymentStatus:
    adapter = ADAPTERS[kind]
    vocabulary = adapter.poll_vocabulary if poll and adapter.poll_vocabulary is not None else adapter.vocabulary
    status = vocabulary.get(native_status.strip().lower())
    if status is None:
        raise MalformedPayload(f'{kind} reported unknown status "{native_status}"')
    return status


def parse_amount(value: Any) -> Decimal | None:
    if value is None or value == '':
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise MalformedPayload(f'invalid amount "{value}"') from e
    if not amount.is_finite():
        raise MalformedPayload(f'invalid amount "{value}"')
    return amount


def webhook_gateway_candidates(token: str, payload: Payload) -> list[GatewayKind]:
    """Gateway kinds a callback on the `token` endpoint may belong to.

    KLYME shares one endpoint across regions: a `region` in the payload narrows
    it down to one kind, without it every KLYME kind is a candidate and the
    stored payment decides.
    """
    if token.lower() == 'klyme':
        region = payload.get('region') if isinstance(payload, dict) else None
        if not region:
            return [info.kind for info in gateways.klyme_gateways()]
        try:
            return [gateways.klyme_gateway_for_region(str(region))]
        except UnknownGateway as e:
            raise MalformedPayload(str(e)) from e

    return [gateways.resolve(token)]


def normalize(
    kind: GatewayKind,
    payload: Any,
    *,
    raw_body: bytes = b'',
    headers: Mapping[str, str] | None = None,
    received_at: datetime | None = None,
    secrets: GatewaySecrets = gateway_secrets,
    source: EventSource = 'webhook'
) -> WebhookEvent:
    if not isinstance(payload, dict):
        raise MalformedPayload(f'{kind} payload is not an object')

    adapter = ADAPTERS[kind]

    # Authenticity is checked before anything in the payload is trusted
    if adapter.verify is not None and not adapter.verify(payload, raw_body, headers or {}, secrets):
        raise AuthenticationFailure(f'{kind} webhook signature check failed')

    try:
        gateway_payment_id = adapter.payment_id(payload)
        reference = adapter.reference(payload)
        native_status = adapter.native_status(payload)
        raw_amount = adapter.amount(payload)
        currency = adapter.currency(payload)
        metadata = adapter.metadata(payload)
    except (KeyError, TypeError, AttributeError) as e:
        raise MalformedPayload(f'{kind} payload has unexpected shape: {e!r}') from e

    if gateway_payment_id is None and reference is None:
        raise MalformedPayload(f'{kind} payload carries no payment identifier')

    status = to_canonical(kind, native_status)
    amount = parse_amount(raw_amount)

    chargeback_amount = None
    if status == PaymentStatus.CHARGEBACK:
        if amount is None or amount <= 0:
            raise MalformedPayload(f'{kind} dispute event without a positive amount')
        chargeback_amount = amount

    return WebhookEvent(
        gateway=kind,
        gateway_payment_id=gateway_payment_id,
        merchant_reference=reference,
        reported_status=native_status,
        status=status,
        amount=amount,
        currency=currency.upper() if currency else None,
        chargeback_amount=chargeback_amount,
        metadata=metadata,
        raw_payload=payload,
        received_at=received_at or datetime.now(),
        source=source
    )


def normalize_status_report(
    kind: GatewayKind,
    gateway_payment_id: str,
    data: Any,
    received_at: datetime | None = None
) -> WebhookEvent:
    """Same as `normalize`, for the body of an active "query status" call."""
    adapter = ADAPTERS[kind]
    if adapter.poll_status is None:
        raise MalformedPayload(f'{kind} has no status query support')
    if not isinstance(data, dict):
        raise MalformedPayload(f'{kind} status response is not an object')

    try:
        native_status = adapter.poll_status(data)
        raw_amount = adapter.poll_amount(data)
        metadata = adapter.poll_metadata(data)
    except (KeyError, TypeError, AttributeError) as e:
        raise MalformedPayload(f'{kind} status response has unexpected shape: {e!r}') from e

    return WebhookEvent(
        gateway=kind,
        gateway_payment_id=gateway_payment_id,
        reported_status=native_status,
        status=to_canonical(kind, native_status, poll=True),
        amount=parse_amount(raw_amount),
        metadata=metadata,
        raw_payload=data,
        received_at=received_at or datetime.now(),
        source='poll'
    )
