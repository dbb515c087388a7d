"""Async Stripe API wrapper.

Every call is bounded by ``settings.stripe_timeout_seconds`` and any Stripe
or timeout failure is re-raised as ``UpstreamError``.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

import stripe
from stripe import StripeClient

from subsync.billing.errors import UpstreamError
from subsync.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=settings.stripe_max_network_retries,
    )


async def _call(action: str, request: Awaitable[T]) -> T:
    """Await a Stripe request with a hard deadline, normalising failures."""
    try:
        return await asyncio.wait_for(request, timeout=settings.stripe_timeout_seconds)
    except asyncio.TimeoutError as e:
        raise UpstreamError(f"Stripe {action} timed out") from e
    except stripe.StripeError as e:
        raise UpstreamError(f"Stripe {action} failed: {e.user_message or e}") from e


async def create_customer(email: str, name: str | None, user_id: str) -> stripe.Customer:
    """Create a Stripe customer tagged with the application user ID."""
    client = get_stripe_client()
    logger.info("Creating Stripe customer for user %s", user_id)
    params: dict = {"email": email, "metadata": {"userId": user_id}}
    if name:
        params["name"] = name
    customer = await _call("customer create", client.v1.customers.create_async(params=params))
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer


async def delete_customer(customer_id: str) -> None:
    """Delete a Stripe customer (used to clean up a customer that lost a creation race)."""
    client = get_stripe_client()
    logger.info("Deleting orphaned Stripe customer %s", customer_id)
    await _call("customer delete", client.v1.customers.delete_async(customer_id))


async def retrieve_customer(customer_id: str) -> stripe.Customer:
    """Retrieve a Stripe customer by ID."""
    client = get_stripe_client()
    return await _call("customer retrieve", client.v1.customers.retrieve_async(customer_id))


async def create_checkout_session(
    customer_id: str,
    price_id: str,
    user_id: str,
    one_time: bool,
    success_url: str,
    cancel_url: str,
) -> stripe.checkout.Session:
    """Create a Stripe Checkout Session for a one-time or recurring price."""
    client = get_stripe_client()
    mode = "payment" if one_time else "subscription"
    logger.info(
        "Creating %s checkout session for customer %s, price %s",
        mode,
        customer_id,
        price_id,
    )
    params: dict = {
        "mode": mode,
        "customer": customer_id,
        "client_reference_id": user_id,
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        # Lets webhooks attribute the session before the local row exists
        "metadata": {"userId": user_id, "priceId": price_id},
        "allow_promotion_codes": True,
    }
    if not one_time:
        params["subscription_data"] = {"metadata": {"userId": user_id}}
    return await _call("checkout session create", client.v1.checkout.sessions.create_async(params=params))


async def create_portal_session(
    customer_id: str, return_url: str
) -> stripe.billing_portal.Session:
    """Create a Stripe Customer Portal session for subscription management."""
    client = get_stripe_client()
    logger.info("Creating portal session for customer %s", customer_id)
    return await _call(
        "portal session create",
        client.v1.billing_portal.sessions.create_async(
            params={
                "customer": customer_id,
                "return_url": return_url,
            }
        ),
    )


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await _call("subscription retrieve", client.v1.subscriptions.retrieve_async(subscription_id))


async def change_subscription_price(
    subscription_id: str, item_id: str, new_price_id: str
) -> stripe.Subscription:
    """Swap the subscription item's price, prorating the difference."""
    client = get_stripe_client()
    logger.info("Switching subscription %s to price %s", subscription_id, new_price_id)
    return await _call(
        "subscription update",
        client.v1.subscriptions.update_async(
            subscription_id,
            params={
                "items": [{"id": item_id, "price": new_price_id}],
                "proration_behavior": "create_prorations",
            },
        ),
    )


async def set_cancel_at_period_end(subscription_id: str, cancel: bool) -> stripe.Subscription:
    """Schedule (or unschedule) cancellation at the end of the current period."""
    client = get_stripe_client()
    logger.info("Setting cancel_at_period_end=%s on subscription %s", cancel, subscription_id)
    return await _call(
        "subscription update",
        client.v1.subscriptions.update_async(
            subscription_id,
            params={"cancel_at_period_end": cancel},
        ),
    )


def verify_webhook_signature(payload: bytes, sig_header: str) -> None:
    """Verify a Stripe webhook signature against the raw body (synchronous).

    Raises:
        stripe.SignatureVerificationError: If the header is missing, stale,
            or does not match ``settings.stripe_webhook_secret``.
    """
    if not settings.stripe_webhook_secret:
        raise stripe.SignatureVerificationError("Webhook secret not configured", sig_header)
    stripe.WebhookSignature.verify_header(
        payload.decode("utf-8"),
        sig_header,
        settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance_seconds,
    )
