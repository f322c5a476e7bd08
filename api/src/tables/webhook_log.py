from uuid import UUID
from typing import Any
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WebhookLog(Base):
    """Append-only audit of every received callback and poll result."""
    __tablename__ = 'webhook_log'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    gateway: Mapped[str] = mapped_column(index=True)
    source: Mapped[str] = mapped_column()
    event: Mapped[str] = mapped_column()
    outcome: Mapped[str] = mapped_column(index=True)
    payment_id: Mapped[UUID | None] = mapped_column(index=True, nullable=True)
    detail: Mapped[str | None] = mapped_column(nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
