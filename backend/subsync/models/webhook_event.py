"""Processed webhook events — idempotency ledger for Stripe deliveries."""

from datetime import datetime

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from subsync.database import Base


class ProcessedWebhookEvent(Base):
    """One row per Stripe event id that has been durably handled."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_created: Mapped[datetime | None] = mapped_column(nullable=True)
    # applied, stale, ignored, unattributed, malformed
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent(event_id={self.event_id}, type={self.event_type}, outcome={self.outcome})>"
