from typing import Any, Literal
from uuid import UUID
from datetime import datetime
from decimal import Decimal
from dataclasses import dataclass, field

from .gateways import GatewayKind
from .statuses import PaymentStatus


EventSource = Literal['webhook', 'poll', 'expiry', 'manual']


@dataclass(frozen=True)
class WebhookEvent:
    """Canonical form of one gateway callback or poll result.

    `reported_status` keeps the gateway-native string, `status` is its
    canonical mapping. Only drives a single reconciliation attempt and the
    audit log entry written for it.
    """
    gateway: GatewayKind
    gateway_payment_id: str | None
    reported_status: str
    status: PaymentStatus
    received_at: datetime
    merchant_reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    chargeback_amount: Decimal | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)
    source: EventSource = 'webhook'


@dataclass(frozen=True)
class ReconciliationResult:
    applied: bool
    resulting_status: PaymentStatus
    payment_id: UUID | None = None
    previous_status: PaymentStatus | None = None
    amount_mismatch: bool = False
