"""Shared API dependencies — single import point for all routers.

Re-exports database session, identity and rate-limit dependencies so that
router modules can import everything they need from one place::

    from subsync.api.deps import get_db, get_current_identity, limit_user
"""

from subsync.auth.dependencies import get_current_identity
from subsync.billing.rate_limit import get_rate_limiter, limit_ip, limit_user
from subsync.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_identity",
    "get_rate_limiter",
    "limit_user",
    "limit_ip",
]
