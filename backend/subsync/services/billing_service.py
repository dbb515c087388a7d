"""Billing service — user-initiated checkout, portal, plan switch, cancel and resume.

Each operation validates local preconditions, calls Stripe, and (for the
subscription mutations) applies the subscription object Stripe returns
through the same ordered upsert the webhook reconciler uses.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from subsync.auth.dependencies import CallerIdentity
from subsync.billing.errors import Conflict, NotFound, ValidationError
from subsync.billing.events import parse_subscription
from subsync.billing.plans import get_price
from subsync.billing.redirects import validate_redirect_url
from subsync.billing.stripe_client import (
    change_subscription_price,
    create_checkout_session,
    create_portal_session,
    set_cancel_at_period_end,
)
from subsync.config import settings
from subsync.database import ts_to_naive
from subsync.models.subscription import Subscription
from subsync.services.subscription_service import (
    apply_subscription_snapshot,
    ensure_stripe_customer,
    get_subscription_for_user,
    optimistic_timestamp,
)

logger = logging.getLogger(__name__)


async def start_checkout(
    db: AsyncSession,
    identity: CallerIdentity,
    price_id: str | None,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> tuple[str, str]:
    """Create a Checkout session for an allow-listed price.

    Returns:
        ``(session_id, session_url)``.

    Raises:
        ValidationError: Missing or non-purchasable price.
        Conflict: Recurring price while the user already has a live subscription.
    """
    if not price_id:
        raise ValidationError("priceId is required.")
    option = get_price(price_id)
    if option is None:
        raise ValidationError("Invalid price.")

    if not option.one_time:
        subscription = await get_subscription_for_user(db, identity.user_id)
        if subscription is not None and subscription.is_live:
            raise Conflict("You already have an active subscription. Use the switch plan option instead.")

    customer_id = await ensure_stripe_customer(db, identity)

    fallback = settings.default_billing_url
    session = await create_checkout_session(
        customer_id=customer_id,
        price_id=option.price_id,
        user_id=identity.user_id,
        one_time=option.one_time,
        success_url=validate_redirect_url(success_url, fallback),
        cancel_url=validate_redirect_url(cancel_url, fallback),
    )
    logger.info("Checkout session %s created for user %s (price %s)", session.id, identity.user_id, price_id)
    return session.id, session.url


async def open_portal(db: AsyncSession, identity: CallerIdentity, return_url: str | None = None) -> str:
    """Create a Customer Portal session; returns its URL."""
    subscription = await get_subscription_for_user(db, identity.user_id)
    if subscription is None or not subscription.stripe_customer_id:
        raise NotFound("No billing account found. Please subscribe first.")

    session = await create_portal_session(
        customer_id=subscription.stripe_customer_id,
        return_url=validate_redirect_url(return_url, settings.default_billing_url),
    )
    return session.url


async def switch_plan(db: AsyncSession, identity: CallerIdentity, new_price_id: str | None) -> None:
    """Move a live subscription to another recurring price, with proration."""
    option = get_price(new_price_id)
    if option is None or option.one_time:
        raise ValidationError("Invalid price.")

    subscription = await get_subscription_for_user(db, identity.user_id)
    if (
        subscription is None
        or not subscription.stripe_subscription_id
        or not subscription.stripe_subscription_item_id
    ):
        raise NotFound("No active subscription found.")
    if not subscription.is_live:
        raise Conflict(f"Cannot switch plan while subscription is {subscription.status}.")
    if subscription.price_id == option.price_id:
        raise Conflict("You are already on this plan.")

    updated = await change_subscription_price(
        subscription.stripe_subscription_id,
        subscription.stripe_subscription_item_id,
        option.price_id,
    )
    await apply_subscription_snapshot(db, identity.user_id, parse_subscription(updated), optimistic_timestamp())
    logger.info(
        "User %s switched from %s to %s",
        identity.user_id,
        subscription.price_id,
        option.price_id,
    )


async def cancel_subscription(db: AsyncSession, identity: CallerIdentity) -> datetime | None:
    """Schedule cancellation at period end; returns when it takes effect."""
    subscription = await _require_subscription(db, identity.user_id)
    if subscription.status == "canceled":
        raise Conflict("Subscription has already ended. Please subscribe again.")

    updated = parse_subscription(
        await set_cancel_at_period_end(subscription.stripe_subscription_id, True)
    )
    await apply_subscription_snapshot(db, identity.user_id, updated, optimistic_timestamp())

    effective_at = ts_to_naive(updated.cancel_at)
    if effective_at is None:
        effective_at = updated.period[1]
    logger.info("User %s scheduled cancellation of %s at %s", identity.user_id, updated.id, effective_at)
    return effective_at


async def resume_subscription(db: AsyncSession, identity: CallerIdentity) -> None:
    """Undo a scheduled cancellation."""
    subscription = await _require_subscription(db, identity.user_id)
    if not subscription.cancel_at_period_end:
        raise Conflict("Subscription is not pending cancellation.")
    if subscription.status == "canceled":
        raise Conflict("Subscription has already ended. Please subscribe again.")

    updated = parse_subscription(
        await set_cancel_at_period_end(subscription.stripe_subscription_id, False)
    )
    await apply_subscription_snapshot(db, identity.user_id, updated, optimistic_timestamp())
    logger.info("User %s resumed subscription %s", identity.user_id, updated.id)


async def _require_subscription(db: AsyncSession, user_id: str) -> Subscription:
    subscription = await get_subscription_for_user(db, user_id)
    if subscription is None or not subscription.stripe_subscription_id:
        raise NotFound("No subscription found.")
    return subscription

