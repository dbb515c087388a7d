"""Subscription model — Stripe billing state per user."""

from datetime import datetime

from sqlalchemy import Boolean, String, false
from sqlalchemy.orm import Mapped, mapped_column

from subsync.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

SUBSCRIPTION_STATUSES = ("inactive", "trialing", "active", "past_due", "canceled")
LIVE_STATUSES = ("active", "trialing")


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Local cache of a user's Stripe customer and subscription.

    ``updated_at`` doubles as the ordering stamp for provider snapshots: it
    holds the provider timestamp of the newest snapshot applied, so older
    webhook deliveries can be recognised and skipped.
    """

    __tablename__ = "subscriptions"

    # One row per user (UNIQUE backs the upsert conflict target)
    user_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    # Stripe identifiers
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_subscription_item_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan & status
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="inactive", server_default="inactive")
    billing_interval: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Billing period & cancellation
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    cancel_at: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(nullable=True)

    # Payment failures (set by invoice.payment_failed, cleared by invoice.paid)
    payment_failed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_payment_attempt: Mapped[datetime | None] = mapped_column(nullable=True)

    # Ordering stamp, written explicitly by every upsert (no onupdate)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Most recent one-time purchase
    one_time_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    one_time_paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, price_id={self.price_id}, status={self.status})>"
