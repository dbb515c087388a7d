"""SQLAlchemy models for Subscription Sync.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from subsync.models.invoice import Invoice
from subsync.models.subscription import Subscription
from subsync.models.webhook_event import ProcessedWebhookEvent

__all__ = [
    "Invoice",
    "ProcessedWebhookEvent",
    "Subscription",
]
