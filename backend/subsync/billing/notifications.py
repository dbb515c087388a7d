"""Best-effort billing notifications and detached background tasks.

Nothing here may fail a request or influence billing state: tasks run
detached, keep no result, and only log their errors.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import httpx

from subsync.config import settings

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task] = set()


def _log_task_result(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("Background task %s was cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task %s failed: %s",
            task.get_name(),
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def spawn_background(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Run ``coro`` detached from the current request."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_log_task_result)
    return task


async def drain_background_tasks() -> None:
    """Wait for in-flight background tasks (shutdown and tests)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


async def send_billing_notification(kind: str, user_id: str, details: dict[str, Any]) -> None:
    """POST a billing notification to the configured sink, if any."""
    if not settings.billing_notification_url:
        logger.debug("No notification sink configured; dropping %s for user %s", kind, user_id)
        return

    async with httpx.AsyncClient(timeout=settings.billing_notification_timeout_seconds) as client:
        response = await client.post(
            settings.billing_notification_url,
            json={"kind": kind, "user_id": user_id, "details": details},
        )
        response.raise_for_status()
    logger.info("Sent %s notification for user %s", kind, user_id)


def notify_later(kind: str, user_id: str, details: dict[str, Any] | None = None) -> asyncio.Task:
    """Fire-and-forget wrapper around ``send_billing_notification``."""
    return spawn_background(
        send_billing_notification(kind, user_id, details or {}),
        name=f"notify-{kind}-{user_id}",
    )
