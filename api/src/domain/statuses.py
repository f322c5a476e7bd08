from enum import StrEnum


class PaymentStatus(StrEnum):
    PENDING = 'PENDING'
    PROCESSING = 'PROCESSING'
    PAID = 'PAID'
    EXPIRED = 'EXPIRED'
    FAILED = 'FAILED'
    REFUND = 'REFUND'
    CHARGEBACK = 'CHARGEBACK'


OPEN_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})

# Polling stops once any of these is reached
TERMINAL_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.EXPIRED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUND,
    PaymentStatus.CHARGEBACK,
})

TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.PAID,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.PAID,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.PAID: frozenset({
        PaymentStatus.REFUND,
        PaymentStatus.CHARGEBACK,
    }),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUND: frozenset(),
    PaymentStatus.CHARGEBACK: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in TRANSITIONS[current]


def is_terminal(status: PaymentStatus) -> bool:
    return status in TERMINAL_STATUSES
