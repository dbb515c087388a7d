"""Typed Stripe payloads — the closed set of webhook events we act on.

Webhook bodies are parsed into a discriminated union on ``type``. Event types
outside the union become ``UnhandledEvent`` and are acknowledged without
side effects. ``SubscriptionSnapshot`` is also used to read the synchronous
responses of subscription updates, so optimistic writes and webhook writes
extract fields the same way.
"""

import json
from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from subsync.database import ts_to_naive

# Stripe statuses that have no local counterpart
_STATUS_MAP = {
    "incomplete": "inactive",
    "paused": "inactive",
    "unpaid": "past_due",
    "incomplete_expired": "canceled",
}

_SINGLE_INTERVAL_LABELS = {
    "day": "daily",
    "week": "weekly",
    "month": "monthly",
    "year": "yearly",
}


def local_status(stripe_status: str) -> str:
    """Map a Stripe subscription status onto the local status set."""
    return _STATUS_MAP.get(stripe_status, stripe_status)


def _expandable_id(value: Any) -> Any:
    """Stripe fields like ``customer`` may arrive as an ID or an expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


class _StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Recurring(_StripeModel):
    interval: str
    interval_count: int = 1

    @property
    def label(self) -> str:
        if self.interval_count <= 1:
            return _SINGLE_INTERVAL_LABELS.get(self.interval, self.interval)
        return f"every-{self.interval_count}-{self.interval}s"


class Price(_StripeModel):
    id: str
    nickname: str | None = None
    recurring: Recurring | None = None


class SubscriptionItem(_StripeModel):
    id: str
    price: Price
    # Stripe API 2025-08-27 (basil) moved the period onto the item
    current_period_start: int | None = None
    current_period_end: int | None = None


class SubscriptionItemList(_StripeModel):
    data: list[SubscriptionItem] = []


class SubscriptionSnapshot(_StripeModel):
    """A full Stripe subscription object, as sent in events and API responses."""

    id: str
    customer: str
    status: str
    cancel_at_period_end: bool = False
    cancel_at: int | None = None
    canceled_at: int | None = None
    trial_end: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    metadata: dict[str, str] = {}
    items: SubscriptionItemList = SubscriptionItemList()

    @field_validator("customer", mode="before")
    @classmethod
    def expand_customer(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> str | None:
        item = self.first_item
        return item.price.id if item else None

    @property
    def price_nickname(self) -> str | None:
        item = self.first_item
        return item.price.nickname if item else None

    @property
    def billing_interval(self) -> str | None:
        item = self.first_item
        if item is None or item.price.recurring is None:
            return None
        return item.price.recurring.label

    @property
    def period(self) -> tuple[datetime | None, datetime | None]:
        """Current period (start, end): item level first, then subscription level."""
        item = self.first_item
        start = item.current_period_start if item and item.current_period_start else self.current_period_start
        end = item.current_period_end if item and item.current_period_end else self.current_period_end
        return ts_to_naive(start), ts_to_naive(end)

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId")


class CheckoutSessionSnapshot(_StripeModel):
    id: str
    customer: str | None = None
    subscription: str | None = None
    mode: str | None = None
    payment_status: str | None = None
    client_reference_id: str | None = None
    metadata: dict[str, str] = {}

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def expand_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or self.client_reference_id


class InvoiceSnapshot(_StripeModel):
    id: str
    customer: str | None = None
    subscription: str | None = None
    parent: dict[str, Any] | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    period_start: int | None = None
    period_end: int | None = None
    attempt_count: int | None = None
    next_payment_attempt: int | None = None
    status_transitions: dict[str, Any] | None = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def expand_ids(cls, value: Any) -> Any:
        return _expandable_id(value)

    @property
    def subscription_id(self) -> str | None:
        """Subscription ID; newer API versions nest it under ``parent``."""
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def paid_at(self) -> datetime | None:
        return ts_to_naive((self.status_transitions or {}).get("paid_at"))


T = TypeVar("T")


class EventData(BaseModel, Generic[T]):
    object: T


class _EventBase(_StripeModel):
    id: str
    created: int
    livemode: bool = False

    @property
    def created_at(self) -> datetime:
        return ts_to_naive(self.created)


class CheckoutSessionCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSessionSnapshot]


class SubscriptionEvent(_EventBase):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.trial_will_end",
    ]
    data: EventData[SubscriptionSnapshot]


class InvoiceEvent(_EventBase):
    type: Literal["invoice.paid", "invoice.payment_failed"]
    data: EventData[InvoiceSnapshot]


class UnhandledEvent(_EventBase):
    """Any event type we do not act on."""

    type: str


KnownEvent = Annotated[
    Union[CheckoutSessionCompleted, SubscriptionEvent, InvoiceEvent],
    Field(discriminator="type"),
]
WebhookEvent = Union[CheckoutSessionCompleted, SubscriptionEvent, InvoiceEvent, UnhandledEvent]

KNOWN_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.trial_will_end",
        "invoice.paid",
        "invoice.payment_failed",
    }
)

_known_event_adapter: TypeAdapter[KnownEvent] = TypeAdapter(KnownEvent)


class MalformedEvent(ValueError):
    """A signed payload whose shape we cannot read."""

    def __init__(self, reason: str, event_id: str | None = None, event_type: str | None = None) -> None:
        super().__init__(reason)
        self.event_id = event_id
        self.event_type = event_type


def parse_webhook_event(payload: bytes) -> WebhookEvent:
    """Parse a raw (already signature-checked) webhook body.

    Raises:
        MalformedEvent: If the body is not an event envelope, or a known
            event type is missing fields we rely on.
    """
    try:
        raw = json.loads(payload)
    except ValueError as e:
        raise MalformedEvent("Body is not valid JSON") from e

    if not isinstance(raw, dict):
        raise MalformedEvent("Body is not a JSON object")

    event_id = raw.get("id") if isinstance(raw.get("id"), str) else None
    event_type = raw.get("type") if isinstance(raw.get("type"), str) else None

    try:
        if event_type in KNOWN_EVENT_TYPES:
            return _known_event_adapter.validate_python(raw)
        return UnhandledEvent.model_validate(raw)
    except PydanticValidationError as e:
        raise MalformedEvent(
            f"Invalid {event_type or 'event'} payload: {e.error_count()} error(s)",
            event_id=event_id,
            event_type=event_type,
        ) from e


def parse_subscription(obj: Any) -> SubscriptionSnapshot:
    """Read a Stripe API subscription response (a StripeObject or plain dict)."""
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    return SubscriptionSnapshot.model_validate(obj)
