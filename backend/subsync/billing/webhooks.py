"""Stripe webhook event handlers — reconcile local state with provider snapshots."""

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.billing.events import (
    CheckoutSessionCompleted,
    InvoiceEvent,
    SubscriptionEvent,
    UnhandledEvent,
    WebhookEvent,
    local_status,
    parse_subscription,
)
from subsync.billing.stripe_client import get_subscription, retrieve_customer
from subsync.database import ts_to_naive
from subsync.models.subscription import LIVE_STATUSES
from subsync.models.webhook_event import ProcessedWebhookEvent
from subsync.services.invoice_service import upsert_invoice
from subsync.services.subscription_service import (
    apply_subscription_snapshot,
    claim_stripe_customer,
    clear_payment_failure,
    get_subscription_by_stripe_customer,
    mark_payment_failed,
    record_one_time_purchase,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """What a handler did with an event.

    ``outcome`` is one of ``applied``, ``stale``, ``ignored``, ``unattributed``.
    ``notifications`` are (kind, user_id, details) to send after commit.
    """

    outcome: str
    user_id: str | None = None
    notifications: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)


async def resolve_user_id(
    db: AsyncSession,
    customer_id: str | None,
    metadata_user_id: str | None = None,
) -> str | None:
    """Attribute a Stripe customer to an application user.

    Prefers the local row linked to the customer, then ``userId`` metadata on
    the event object, then ``userId`` metadata on the Stripe customer itself.
    """
    if customer_id:
        subscription = await get_subscription_by_stripe_customer(db, customer_id)
        if subscription is not None:
            return subscription.user_id

    if metadata_user_id:
        return metadata_user_id

    if not customer_id:
        return None

    customer = await retrieve_customer(customer_id)
    metadata = getattr(customer, "metadata", None) or {}
    return metadata.get("userId")


async def handle_checkout_session_completed(
    db: AsyncSession, event: CheckoutSessionCompleted
) -> ReconcileResult:
    """Handle checkout.session.completed — link the customer, record one-time purchases.

    Subscription state itself arrives with the customer.subscription.* events.
    """
    session = event.data.object
    user_id = session.user_id
    if user_id is None and session.customer:
        subscription = await get_subscription_by_stripe_customer(db, session.customer)
        user_id = subscription.user_id if subscription else None

    if user_id is None:
        logger.warning("Cannot attribute checkout session %s to a user", session.id)
        return ReconcileResult("unattributed")

    if session.customer:
        stored = await claim_stripe_customer(db, user_id, session.customer)
        if stored != session.customer:
            logger.warning(
                "Checkout %s used customer %s but user %s is linked to %s",
                session.id,
                session.customer,
                user_id,
                stored,
            )

    result = ReconcileResult("applied", user_id=user_id)
    if session.mode == "payment" and session.payment_status == "paid":
        price_id = session.metadata.get("priceId")
        await record_one_time_purchase(db, user_id, session.customer, price_id, event.created_at)
        result.notifications.append(("one_time_purchase", user_id, {"price_id": price_id}))

    logger.info("Checkout completed: session %s (%s) for user %s", session.id, session.mode, user_id)
    return result


async def handle_subscription_event(db: AsyncSession, event: SubscriptionEvent) -> ReconcileResult:
    """Handle customer.subscription.* — replace local fields with the snapshot."""
    snapshot = event.data.object
    user_id = await resolve_user_id(db, snapshot.customer, snapshot.user_id)
    if user_id is None:
        logger.warning(
            "Cannot attribute subscription %s (customer %s) to a user",
            snapshot.id,
            snapshot.customer,
        )
        return ReconcileResult("unattributed")

    applied = await apply_subscription_snapshot(db, user_id, snapshot, event.created_at)
    result = ReconcileResult("applied" if applied else "stale", user_id=user_id)
    details = {"subscription_id": snapshot.id, "price_id": snapshot.price_id}

    if event.type == "customer.subscription.trial_will_end":
        result.notifications.append(
            ("trial_will_end", user_id, {**details, "trial_end": _iso(snapshot.trial_end)})
        )
    elif applied and event.type == "customer.subscription.created" and local_status(snapshot.status) in LIVE_STATUSES:
        result.notifications.append(("subscription_started", user_id, details))
    elif applied and event.type == "customer.subscription.deleted":
        result.notifications.append(("subscription_ended", user_id, details))

    logger.info(
        "Subscription event %s for %s (user %s): %s",
        event.type,
        snapshot.id,
        user_id,
        result.outcome,
    )
    return result


async def handle_invoice_event(db: AsyncSession, event: InvoiceEvent) -> ReconcileResult:
    """Handle invoice.paid / invoice.payment_failed.

    Records the invoice, then re-reads the subscription from Stripe and applies
    that snapshot, so status changes come from the provider's own object.
    """
    invoice = event.data.object
    paid = event.type == "invoice.paid"

    user_id = await resolve_user_id(db, invoice.customer)
    if user_id is None:
        logger.warning("Cannot attribute invoice %s (customer %s) to a user", invoice.id, invoice.customer)
        return ReconcileResult("unattributed")

    await upsert_invoice(db, user_id, invoice, paid=paid)

    subscription_id = invoice.subscription_id
    if not subscription_id:
        logger.info("Invoice %s has no subscription (one-time), ledger only", invoice.id)
        return ReconcileResult("applied", user_id=user_id)

    snapshot = parse_subscription(await get_subscription(subscription_id))
    applied = await apply_subscription_snapshot(db, user_id, snapshot, event.created_at)
    result = ReconcileResult("applied" if applied else "stale", user_id=user_id)
    if not applied:
        return result

    if paid:
        await clear_payment_failure(db, user_id)
        logger.info("Invoice paid: subscription %s for user %s", subscription_id, user_id)
    else:
        await mark_payment_failed(
            db, user_id, event.created_at, ts_to_naive(invoice.next_payment_attempt)
        )
        result.notifications.append(
            (
                "payment_failed",
                user_id,
                {"invoice_id": invoice.id, "subscription_id": subscription_id},
            )
        )
        logger.info("Payment failed: subscription %s for user %s", subscription_id, user_id)
    return result


async def reconcile_event(db: AsyncSession, event: WebhookEvent) -> ReconcileResult:
    """Dispatch a parsed event to its handler; unknown types are a no-op."""
    if isinstance(event, CheckoutSessionCompleted):
        return await handle_checkout_session_completed(db, event)
    if isinstance(event, SubscriptionEvent):
        return await handle_subscription_event(db, event)
    if isinstance(event, InvoiceEvent):
        return await handle_invoice_event(db, event)

    if not isinstance(event, UnhandledEvent):
        raise TypeError(f"Unsupported webhook event: {type(event).__name__}")
    logger.debug("Unhandled webhook event type: %s", event.type)
    return ReconcileResult("ignored")


async def is_event_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(
        select(ProcessedWebhookEvent.event_id).where(ProcessedWebhookEvent.event_id == event_id)
    )
    return result.scalar_one_or_none() is not None


def record_processed_event(
    db: AsyncSession,
    event_id: str,
    event_type: str,
    outcome: str,
    created: int | None = None,
    user_id: str | None = None,
) -> None:
    """Stage the idempotency marker; it commits with the applied changes."""
    db.add(
        ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            event_created=ts_to_naive(created),
            outcome=outcome,
            user_id=user_id,
        )
    )


def _iso(ts: int | None) -> str | None:
    value = ts_to_naive(ts)
    return value.isoformat() if value else None
