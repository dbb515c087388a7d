"""Subscription service — reads and ordered writes of the local subscription row.

All writes of provider-owned fields go through ``apply_subscription_snapshot``:
a single ``INSERT … ON CONFLICT (user_id) DO UPDATE … WHERE updated_at <= :ts``
upsert. Optimistic writes (from synchronous API responses) and webhook writes
(from events) therefore converge on whichever snapshot is newest, without
locks and regardless of arrival order.
"""

import logging
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.auth.dependencies import CallerIdentity
from subsync.billing.events import SubscriptionSnapshot, local_status
from subsync.billing.notifications import spawn_background
from subsync.billing.plans import plan_display_name
from subsync.billing.stripe_client import create_customer, delete_customer
from subsync.database import ts_to_naive, upsert, utcnow
from subsync.models.subscription import Subscription

logger = logging.getLogger(__name__)


async def get_subscription_for_user(db: AsyncSession, user_id: str) -> Subscription | None:
    """Fetch the user's row, refreshed from the database."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_customer(
    db: AsyncSession, stripe_customer_id: str
) -> Subscription | None:
    """Look up subscription by Stripe customer ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_customer_id == stripe_customer_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def claim_stripe_customer(db: AsyncSession, user_id: str, stripe_customer_id: str) -> str:
    """Link a customer ID to the user unless one is already linked.

    Creates the row (``status=inactive``, no snapshot stamp) if missing. Returns the customer ID
    that is stored after the write, which is the pre-existing one if another
    writer got there first.
    """
    stmt = upsert(db, Subscription).values(
        user_id=user_id,
        stripe_customer_id=stripe_customer_id,
        status="inactive",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_={
            "stripe_customer_id": func.coalesce(
                Subscription.stripe_customer_id, stmt.excluded.stripe_customer_id
            ),
        },
    ).returning(Subscription.stripe_customer_id)
    result = await db.execute(stmt)
    return result.scalar_one()


async def ensure_stripe_customer(db: AsyncSession, identity: CallerIdentity) -> str:
    """Return the user's Stripe customer ID, creating the customer on first use.

    Two concurrent first calls may both create a Stripe customer; only one
    ID is stored (``claim_stripe_customer`` never overwrites), and the loser
    deletes its own customer in the background.
    """
    subscription = await get_subscription_for_user(db, identity.user_id)
    if subscription is not None and subscription.stripe_customer_id:
        return subscription.stripe_customer_id

    customer = await create_customer(
        email=identity.email,
        name=identity.display_name,
        user_id=identity.user_id,
    )
    stored_id = await claim_stripe_customer(db, identity.user_id, customer.id)
    # Keep the link even if the caller's later Stripe call fails
    await db.commit()

    if stored_id != customer.id:
        logger.warning(
            "Stripe customer race for user %s: keeping %s, discarding %s",
            identity.user_id,
            stored_id,
            customer.id,
        )
        spawn_background(delete_customer(customer.id), name=f"delete-customer-{customer.id}")
    else:
        logger.info("Linked Stripe customer %s to user %s", customer.id, identity.user_id)
    return stored_id


async def apply_subscription_snapshot(
    db: AsyncSession,
    user_id: str,
    snapshot: SubscriptionSnapshot,
    as_of: datetime,
) -> bool:
    """Replace the provider-owned fields of the user's row with ``snapshot``.

    ``as_of`` is the provider time the snapshot describes (event ``created``
    for webhooks, now for synchronous responses). The write is skipped when
    the stored row is already newer. Returns True if the snapshot was applied.

    Stamps have whole-second resolution and an equal stamp applies, so the
    provider's confirmation of an optimistic write lands. Two opposite changes
    within the same second (cancel then resume) can therefore resolve to
    whichever arrives last; the next provider event for the subscription
    corrects the row.
    """
    existing = await get_subscription_for_user(db, user_id)
    if existing is not None and existing.updated_at is not None and existing.updated_at > as_of:
        logger.info(
            "Skipping stale snapshot of %s for user %s (stored %s > %s)",
            snapshot.id,
            user_id,
            existing.updated_at,
            as_of,
        )
        return False

    period_start, period_end = snapshot.period
    item = snapshot.first_item
    fields = {
        "stripe_subscription_id": snapshot.id,
        "stripe_subscription_item_id": item.id if item else None,
        "price_id": snapshot.price_id,
        "plan_name": plan_display_name(snapshot.price_id, snapshot.price_nickname),
        "status": local_status(snapshot.status),
        "billing_interval": snapshot.billing_interval,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "cancel_at": ts_to_naive(snapshot.cancel_at),
        "canceled_at": ts_to_naive(snapshot.canceled_at),
        "trial_end": ts_to_naive(snapshot.trial_end),
        "updated_at": as_of,
    }

    stmt = upsert(db, Subscription).values(
        user_id=user_id,
        stripe_customer_id=snapshot.customer,
        **fields,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_={
            **fields,
            # Never reassign an existing customer
            "stripe_customer_id": func.coalesce(
                Subscription.stripe_customer_id, stmt.excluded.stripe_customer_id
            ),
        },
        where=or_(Subscription.updated_at.is_(None), Subscription.updated_at <= as_of),
    ).returning(Subscription.id)
    result = await db.execute(stmt)
    if result.scalar_one_or_none() is None:
        # A newer snapshot landed between our read and our write
        logger.info("Skipping stale snapshot of %s for user %s (lost ordering race)", snapshot.id, user_id)
        return False

    if existing is not None and existing.stripe_customer_id not in (None, snapshot.customer):
        logger.warning(
            "Snapshot %s for user %s names customer %s but %s is linked; kept existing",
            snapshot.id,
            user_id,
            snapshot.customer,
            existing.stripe_customer_id,
        )

    logger.info(
        "Applied subscription %s to user %s: price=%s status=%s cancel_at_period_end=%s",
        snapshot.id,
        user_id,
        snapshot.price_id,
        fields["status"],
        snapshot.cancel_at_period_end,
    )
    return True


async def record_one_time_purchase(
    db: AsyncSession, user_id: str, customer_id: str | None, price_id: str | None, paid_at: datetime
) -> None:
    """Remember a completed one-time checkout without touching subscription status."""
    stmt = upsert(db, Subscription).values(
        user_id=user_id,
        stripe_customer_id=customer_id,
        status="inactive",
        one_time_price_id=price_id,
        one_time_paid_at=paid_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_={
            "one_time_price_id": price_id,
            "one_time_paid_at": paid_at,
            "stripe_customer_id": func.coalesce(
                Subscription.stripe_customer_id, stmt.excluded.stripe_customer_id
            ),
        },
    )
    await db.execute(stmt)
    await db.flush()
    logger.info("Recorded one-time purchase of %s for user %s", price_id, user_id)


async def mark_payment_failed(
    db: AsyncSession, user_id: str, failed_at: datetime, next_attempt: datetime | None
) -> None:
    """Record a failed renewal payment (status itself comes from the provider snapshot)."""
    subscription = await get_subscription_for_user(db, user_id)
    if subscription is None:
        return
    subscription.payment_failed_at = failed_at
    subscription.next_payment_attempt = next_attempt
    await db.flush()


async def clear_payment_failure(db: AsyncSession, user_id: str) -> None:
    """Clear the payment-failed markers after a successful payment."""
    subscription = await get_subscription_for_user(db, user_id)
    if subscription is None or subscription.payment_failed_at is None:
        return
    subscription.payment_failed_at = None
    subscription.next_payment_attempt = None
    await db.flush()


def optimistic_timestamp() -> datetime:
    """Stamp for optimistic writes: now, truncated to whole seconds.

    Stripe event timestamps have second resolution, so the webhook that
    confirms the same change (created in the same second or later) still
    passes the ordering guard.
    """
    return utcnow().replace(microsecond=0)


