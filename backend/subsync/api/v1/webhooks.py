"""Stripe webhook endpoint — verifies, de-duplicates and reconciles Stripe events."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.api.deps import get_session_factory, limit_ip
from subsync.billing.errors import Unauthorized
from subsync.billing.events import MalformedEvent, parse_webhook_event
from subsync.billing.notifications import notify_later
from subsync.billing.stripe_client import verify_webhook_signature
from subsync.billing.webhooks import (
    is_event_processed,
    reconcile_event,
    record_processed_event,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["webhooks"])


@router.post("/webhook", dependencies=[Depends(limit_ip("webhook"))])
async def stripe_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict[str, str]:
    """Receive and reconcile a Stripe webhook event.

    Returns 2xx only once the event is durably recorded as processed (or
    cannot ever be processed); any transient failure returns 500 so Stripe
    redelivers.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        raise Unauthorized("Missing signature")

    # 2. Verify signature
    try:
        verify_webhook_signature(payload, sig_header)
    except stripe.SignatureVerificationError:
        logger.warning("Webhook signature verification failed")
        raise Unauthorized("Invalid signature") from None
    except ValueError:
        logger.warning("Webhook body is not valid UTF-8")
        raise Unauthorized("Invalid signature") from None

    # 3. Parse into a known event shape
    try:
        event = parse_webhook_event(payload)
    except MalformedEvent as e:
        logger.error("Malformed webhook payload (id=%s, type=%s): %s", e.event_id, e.event_type, e)
        if e.event_id:
            await _record_malformed(session_factory, e)
        return {"status": "malformed"}

    logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)

    # 4. Apply and mark processed in one transaction
    async with session_factory() as db:
        if await is_event_processed(db, event.id):
            logger.info("Duplicate webhook event %s, skipping", event.id)
            return {"status": "duplicate"}

        try:
            result = await reconcile_event(db, event)
            record_processed_event(
                db,
                event.id,
                event.type,
                result.outcome,
                created=event.created,
                user_id=result.user_id,
            )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            if await is_event_processed(db, event.id):
                # A concurrent delivery of the same event committed first
                logger.info("Webhook event %s processed concurrently, skipping", event.id)
                return {"status": "duplicate"}
            logger.exception("Integrity error processing webhook event %s", event.id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook processing failed",
            ) from e
        except Exception as e:
            await db.rollback()
            logger.exception("Error processing webhook event %s", event.id)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook processing failed",
            ) from e

    # 5. Side effects only after the commit
    for kind, user_id, details in result.notifications:
        notify_later(kind, user_id, details)

    return {"status": result.outcome}


async def _record_malformed(session_factory: async_sessionmaker[AsyncSession], error: MalformedEvent) -> None:
    """Mark an unreadable event processed so redeliveries are short-circuited."""
    async with session_factory() as db:
        try:
            if await is_event_processed(db, error.event_id):
                return
            record_processed_event(db, error.event_id, error.event_type or "unknown", "malformed")
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Could not record malformed webhook event %s", error.event_id)
