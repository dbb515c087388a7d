"""Tests for best-effort notifications and background tasks."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from subsync.billing.notifications import (
    drain_background_tasks,
    notify_later,
    send_billing_notification,
    spawn_background,
)
from subsync.config import settings

SINK = "https://hooks.example.com/billing"


def _response(status_code: int) -> httpx.Response:
    return httpx.Response(status_code, request=httpx.Request("POST", SINK))


class TestSendBillingNotification:
    """Test send_billing_notification."""

    @pytest.mark.asyncio
    async def test_noop_without_sink(self):
        with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
            await send_billing_notification("payment_failed", "user-1", {})
        mock_post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        with (
            patch.object(settings, "billing_notification_url", SINK),
            patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock, return_value=_response(204)) as mock_post,
        ):
            await send_billing_notification("payment_failed", "user-1", {"invoice": "in_1"})

        mock_post.assert_awaited_once_with(
            SINK,
            json={"kind": "payment_failed", "user_id": "user-1", "details": {"invoice": "in_1"}},
        )

    @pytest.mark.asyncio
    async def test_sink_error_raises(self):
        with (
            patch.object(settings, "billing_notification_url", SINK),
            patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock, return_value=_response(500)),
        ):
            with pytest.raises(httpx.HTTPStatusError):
                await send_billing_notification("payment_failed", "user-1", {})


class TestBackgroundTasks:
    """Detached tasks log their failures instead of propagating them."""

    @pytest.mark.asyncio
    async def test_failure_is_logged(self, caplog):
        async def boom():
            raise RuntimeError("sink down")

        spawn_background(boom(), name="notify-test-boom")
        await drain_background_tasks()
        await asyncio.sleep(0)

        assert "notify-test-boom" in caplog.text
        assert "sink down" in caplog.text

    @pytest.mark.asyncio
    async def test_notify_later_runs_detached(self):
        with patch(
            "subsync.billing.notifications.send_billing_notification", new_callable=AsyncMock
        ) as mock_send:
            task = notify_later("subscription_started", "user-2")
            await drain_background_tasks()

        assert task.get_name() == "notify-subscription_started-user-2"
        mock_send.assert_awaited_once_with("subscription_started", "user-2", {})
