"""Fire-and-forget notifications (template code + variables) to the delivery service."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from gavel.config import get_settings

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task] = set()


async def send_notification(template: str, recipient_id: str, variables: dict[str, Any]) -> bool:
    settings = get_settings()
    url = settings.notification_webhook_url.strip()
    if not url:
        logger.info("Notification %s for %s (delivery not configured)", template, recipient_id)
        return False
    body = {
        "template": template,
        "recipient_id": str(recipient_id),
        "variables": {k: str(v) for k, v in variables.items()},
    }
    try:
        async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
            resp = await client.post(url, json=body)
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Notification %s for %s failed: %s", template, recipient_id, exc)
        return False
    return True


def notify(template: str, recipient_id: Any, **variables: Any) -> None:
    """Schedule a notification without waiting on it; failures are only logged."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("No running loop; dropping notification %s", template)
        return
    task = loop.create_task(send_notification(template, str(recipient_id), variables))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain_notifications() -> None:
    """Wait for in-flight notifications (shutdown and tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
