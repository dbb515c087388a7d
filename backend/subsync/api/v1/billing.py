"""Billing API endpoints — Stripe Checkout, Customer Portal, and subscription management."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.api.deps import get_current_identity, get_db, limit_user
from subsync.auth.dependencies import CallerIdentity
from subsync.billing.plans import get_price_catalog
from subsync.schemas.billing import (
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    InvoiceResponse,
    InvoicesListResponse,
    OkResponse,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    StatusResponse,
    SubscriptionRecordResponse,
    SwitchPlanRequest,
)
from subsync.services import billing_service
from subsync.services.invoice_service import list_invoices_for_user
from subsync.services.subscription_service import get_subscription_for_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List purchasable prices (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(price_id=p.price_id, display_name=p.display_name, one_time=p.one_time)
            for p in get_price_catalog().values()
        ]
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
) -> StatusResponse:
    """Current subscription record for the caller, or null."""
    subscription = await get_subscription_for_user(db, identity.user_id)
    if subscription is None:
        return StatusResponse(subscription=None)
    return StatusResponse(subscription=SubscriptionRecordResponse.model_validate(subscription))


@router.get("/invoices", response_model=InvoicesListResponse)
async def list_invoices(
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
) -> InvoicesListResponse:
    """The caller's invoices, newest first."""
    invoices = await list_invoices_for_user(db, identity.user_id)
    return InvoicesListResponse(invoices=[InvoiceResponse.model_validate(i) for i in invoices])


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(limit_user("billing")),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a one-time or recurring price."""
    session_id, session_url = await billing_service.start_checkout(
        db,
        identity,
        body.price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    await db.commit()
    return CheckoutResponse(session_id=session_id, session_url=session_url)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest | None = None,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(limit_user("billing")),
) -> PortalResponse:
    """Create a Stripe Customer Portal session."""
    url = await billing_service.open_portal(db, identity, body.return_url if body else None)
    return PortalResponse(session_url=url)


@router.post("/switch", response_model=OkResponse)
async def switch_plan(
    body: SwitchPlanRequest,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(limit_user("billing")),
) -> OkResponse:
    """Move the caller's subscription to another recurring price (prorated)."""
    await billing_service.switch_plan(db, identity, body.new_price_id)
    await db.commit()
    return OkResponse()


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(limit_user("billing")),
) -> CancelResponse:
    """Cancel at the end of the current billing period."""
    effective_at = await billing_service.cancel_subscription(db, identity)
    await db.commit()
    return CancelResponse(effective_at=effective_at)


@router.post("/resume", response_model=OkResponse)
async def resume_subscription(
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(limit_user("billing")),
) -> OkResponse:
    """Undo a scheduled cancellation."""
    await billing_service.resume_subscription(db, identity)
    await db.commit()
    return OkResponse()
