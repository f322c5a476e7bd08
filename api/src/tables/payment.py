from .base import Base
from typing import Any
from datetime import datetime
from uuid import UUID
from decimal import Decimal
from sqlalchemy import ForeignKey, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from domain.statuses import PaymentStatus
from .shop import Shop


class Payment(Base):
    __tablename__ = 'payment'
    __table_args__ = (
        UniqueConstraint('gateway', 'gateway_payment_id'),
        CheckConstraint(
            "(status = 'CHARGEBACK') = (chargeback_amount IS NOT NULL)",
            name='chargeback_amount_iff_chargeback'
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, index=True)
    shop_id: Mapped[UUID] = mapped_column(ForeignKey(Shop.id, ondelete='RESTRICT'), index=True)
    gateway: Mapped[str] = mapped_column(index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(index=True, nullable=True)
    order_id: Mapped[str | None] = mapped_column(index=True, nullable=True)

    amount: Mapped[Decimal] = mapped_column()
    currency: Mapped[str] = mapped_column()
    source_currency: Mapped[str | None] = mapped_column(nullable=True)
    amount_is_editable: Mapped[bool | None] = mapped_column(nullable=True)
    max_payments: Mapped[int | None] = mapped_column(nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(default=PaymentStatus.PENDING, index=True)
    chargeback_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    merchant_paid: Mapped[bool] = mapped_column(default=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column()
    updated_at: Mapped[datetime] = mapped_column()
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(default=1)
