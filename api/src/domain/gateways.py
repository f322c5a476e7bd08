from enum import StrEnum
from decimal import Decimal
from dataclasses import dataclass

from .errors import UnknownGateway


class GatewayKind(StrEnum):
    PLISIO = 'plisio'
    RAPYD = 'rapyd'
    COINTOPAY = 'cointopay'
    NODA = 'noda'
    KLYME_EU = 'klyme_eu'
    KLYME_GB = 'klyme_gb'
    KLYME_DE = 'klyme_de'


@dataclass(frozen=True)
class GatewayInfo:
    id: str
    kind: GatewayKind
    display_name: str
    region: str | None = None
    commission: Decimal = Decimal('10')
    payout_delay_days: int = 5


# IDs are opaque 4-character tokens, never parsed as binary
GATEWAYS: tuple[GatewayInfo, ...] = (
    GatewayInfo(id='0001', kind=GatewayKind.PLISIO, display_name='0001 - Cryptocurrency (Global)'),
    GatewayInfo(id='0010', kind=GatewayKind.RAPYD, display_name='0010 - Bank Card (Visa, Master, AmEx, Maestro)'),
    GatewayInfo(id='0100', kind=GatewayKind.COINTOPAY, display_name='0100 - Open Banking (EU) + SEPA'),
    GatewayInfo(id='1000', kind=GatewayKind.NODA, display_name='1000 - Open Banking (EU)'),
    GatewayInfo(id='1001', kind=GatewayKind.KLYME_EU, display_name='1001 - Open Banking (EU) KL', region='EU'),
    GatewayInfo(id='1010', kind=GatewayKind.KLYME_GB, display_name='1010 - Open Banking (GB) KL', region='GB'),
    GatewayInfo(id='1100', kind=GatewayKind.KLYME_DE, display_name='1100 - Open Banking (DE) KL', region='DE'),
)

_BY_ID = {info.id: info for info in GATEWAYS}
_BY_NAME = {info.kind.value: info for info in GATEWAYS}


def name_from_id(gateway_id: str) -> GatewayKind:
    info = _BY_ID.get(gateway_id)
    if info is None:
        raise UnknownGateway(f'unknown gateway id "{gateway_id}"')
    return info.kind


def id_from_name(name: str) -> str:
    info = _BY_NAME.get(name.lower())
    if info is None:
        raise UnknownGateway(f'unknown gateway name "{name}"')
    return info.id


def is_valid_id(gateway_id: str) -> bool:
    return gateway_id in _BY_ID


def is_valid_name(name: str) -> bool:
    return name.lower() in _BY_NAME


def info_for(kind: GatewayKind) -> GatewayInfo:
    return _BY_NAME[kind.value]


def resolve(token: str) -> GatewayKind:
    """Accepts either a gateway ID ('0100') or a gateway name ('cointopay')."""
    if is_valid_id(token):
        return name_from_id(token)
    if is_valid_name(token):
        return GatewayKind(token.lower())
    raise UnknownGateway(f'unknown gateway "{token}"')


def klyme_gateways() -> list[GatewayInfo]:
    return [info for info in GATEWAYS if info.region is not None]


def klyme_gateway_for_region(region: str) -> GatewayKind:
    for info in klyme_gateways():
        if info.region == region.upper():
            return info.kind
    raise UnknownGateway(f'unknown KLYME region "{region}"')


def display_name(kind: GatewayKind) -> str:
    return info_for(kind).display_name
