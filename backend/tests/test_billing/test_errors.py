"""Tests for the billing error taxonomy and its JSON rendering."""

import json
from types import SimpleNamespace

import pytest

from subsync.billing.errors import (
    Conflict,
    Forbidden,
    NotFound,
    RateLimited,
    Unauthorized,
    UpstreamError,
    ValidationError,
    billing_error_handler,
)

_REQUEST = SimpleNamespace(method="POST", url=SimpleNamespace(path="/api/v1/billing/checkout"))


@pytest.mark.parametrize(
    ("exc", "status_code"),
    [
        (ValidationError("Invalid price."), 400),
        (Unauthorized("Not authenticated"), 401),
        (Forbidden("Not allowed"), 403),
        (NotFound("No subscription found."), 404),
        (Conflict("You are already on this plan."), 409),
    ],
)
@pytest.mark.asyncio
async def test_precise_messages(exc, status_code):
    response = await billing_error_handler(_REQUEST, exc)
    assert response.status_code == status_code
    assert json.loads(response.body) == {"detail": exc.message}


@pytest.mark.asyncio
async def test_upstream_detail_is_hidden(caplog):
    try:
        raise RuntimeError("card_declined on cus_secret")
    except RuntimeError as cause:
        exc = UpstreamError("Stripe checkout failed")
        exc.__cause__ = cause

    response = await billing_error_handler(_REQUEST, exc)
    assert response.status_code == 502
    assert json.loads(response.body) == {"detail": "Payment provider request failed. Please try again."}
    assert "Stripe checkout failed" in caplog.text


@pytest.mark.asyncio
async def test_rate_limited_sets_retry_after():
    response = await billing_error_handler(_REQUEST, RateLimited(retry_after=17))
    assert response.status_code == 429
    assert response.headers["retry-after"] == "17"


@pytest.mark.asyncio
async def test_unauthorized_sets_www_authenticate():
    response = await billing_error_handler(_REQUEST, Unauthorized("Could not validate credentials"))
    assert response.headers["www-authenticate"] == "Bearer"
