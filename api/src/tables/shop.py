from uuid import UUID
from typing import Any
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Shop(Base):
    __tablename__ = 'shop'

    id: Mapped[UUID] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column()
    webhook_url: Mapped[str | None] = mapped_column(nullable=True)
    webhook_events: Mapped[list[str]] = mapped_column(default=list)

    # {"cointopay": {"commission": "10", "payout_delay_days": 5}, ...}
    gateway_settings: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
