"""Invoice model — ledger of Stripe invoices per user."""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from subsync.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Invoice(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A paid or open Stripe invoice, upserted from invoice webhooks."""

    __tablename__ = "invoices"

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    stripe_invoice_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minor units
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)  # paid, open

    hosted_invoice_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    invoice_pdf: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    attempt_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_payment_attempt: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Invoice(stripe_invoice_id={self.stripe_invoice_id}, user_id={self.user_id}, status={self.status})>"
