"""Invoice service — ledger upserts from invoice webhooks and per-user listing."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.billing.events import InvoiceSnapshot
from subsync.database import ts_to_naive, upsert, utcnow
from subsync.models.invoice import Invoice

logger = logging.getLogger(__name__)


async def upsert_invoice(db: AsyncSession, user_id: str, invoice: InvoiceSnapshot, paid: bool) -> None:
    """Insert or refresh the ledger row for a Stripe invoice."""
    fields = {
        "user_id": user_id,
        "stripe_subscription_id": invoice.subscription_id,
        "amount": invoice.amount_paid if paid else invoice.amount_due,
        "currency": invoice.currency,
        "status": "paid" if paid else "open",
        "hosted_invoice_url": invoice.hosted_invoice_url,
        "invoice_pdf": invoice.invoice_pdf,
        "period_start": ts_to_naive(invoice.period_start),
        "period_end": ts_to_naive(invoice.period_end),
        "paid_at": invoice.paid_at if paid else None,
        "attempt_count": invoice.attempt_count,
        "next_payment_attempt": None if paid else ts_to_naive(invoice.next_payment_attempt),
        "updated_at": utcnow(),
    }
    stmt = upsert(db, Invoice).values(stripe_invoice_id=invoice.id, **fields)
    if paid:
        stmt = stmt.on_conflict_do_update(index_elements=[Invoice.stripe_invoice_id], set_=fields)
    else:
        # A late payment_failed must not reopen an invoice already recorded as paid
        stmt = stmt.on_conflict_do_update(
            index_elements=[Invoice.stripe_invoice_id],
            set_=fields,
            where=Invoice.status != "paid",
        )
    await db.execute(stmt)
    logger.info("Recorded %s invoice %s for user %s", fields["status"], invoice.id, user_id)


async def list_invoices_for_user(db: AsyncSession, user_id: str, limit: int = 50) -> list[Invoice]:
    """Newest invoices first."""
    result = await db.execute(
        select(Invoice)
        .where(Invoice.user_id == user_id)
        .order_by(Invoice.created_at.desc(), Invoice.period_start.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
