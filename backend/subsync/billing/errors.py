"""Billing error taxonomy and its HTTP rendering.

Services raise these; routers let them propagate and the handler registered
in ``subsync.main`` turns them into ``{"detail": ...}`` responses. Only
``UpstreamError`` hides its message from the caller.
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for expected, user-facing billing failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return self.message


class Unauthorized(BillingError):
    status_code = status.HTTP_401_UNAUTHORIZED


class Forbidden(BillingError):
    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(BillingError):
    status_code = status.HTTP_409_CONFLICT


class RateLimited(BillingError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests. Please try again later.")
        self.retry_after = retry_after


class UpstreamError(BillingError):
    """The payment provider failed or timed out.

    ``message`` is internal detail for the logs; clients only ever see
    ``public_message``.
    """

    status_code = status.HTTP_502_BAD_GATEWAY

    @property
    def public_message(self) -> str:
        return "Payment provider request failed. Please try again."


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render a BillingError as JSON, logging upstream failures in full."""
    headers: dict[str, str] = {}
    if isinstance(exc, UpstreamError):
        logger.error(
            "Upstream failure on %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
            exc_info=exc.__cause__ or exc,
        )
    elif isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, Unauthorized):
        headers["WWW-Authenticate"] = "Bearer"

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.public_message},
        headers=headers or None,
    )
