"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Serialises as camelCase; accepts camelCase or snake_case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request schemas ---


class CheckoutRequest(_CamelModel):
    """Request to create a Stripe Checkout session."""

    price_id: str | None = None  # missing is reported as a 400, not a 422
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(_CamelModel):
    """Request to create a Stripe Customer Portal session."""

    return_url: str | None = None


class SwitchPlanRequest(_CamelModel):
    """Request to move an existing subscription to another price."""

    new_price_id: str | None = None


# --- Response schemas ---


class CheckoutResponse(_CamelModel):
    session_id: str
    session_url: str


class PortalResponse(_CamelModel):
    session_url: str


class OkResponse(_CamelModel):
    ok: bool = True


class CancelResponse(_CamelModel):
    ok: bool = True
    effective_at: datetime | None


class PlanResponse(BaseModel):
    """A purchasable price."""

    price_id: str
    display_name: str
    one_time: bool


class PlansListResponse(BaseModel):
    plans: list[PlanResponse]


class SubscriptionRecordResponse(BaseModel):
    """The caller's locally cached billing state."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    stripe_subscription_item_id: str | None
    price_id: str | None
    plan_name: str | None
    status: str
    billing_interval: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    cancel_at: datetime | None
    trial_end: datetime | None
    payment_failed_at: datetime | None
    one_time_price_id: str | None
    one_time_paid_at: datetime | None
    updated_at: datetime | None


class StatusResponse(BaseModel):
    subscription: SubscriptionRecordResponse | None


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stripe_invoice_id: str
    stripe_subscription_id: str | None
    amount: int
    currency: str | None
    status: str
    hosted_invoice_url: str | None
    invoice_pdf: str | None
    period_start: datetime | None
    period_end: datetime | None
    paid_at: datetime | None


class InvoicesListResponse(BaseModel):
    invoices: list[InvoiceResponse]
