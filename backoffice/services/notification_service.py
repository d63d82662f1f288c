from __future__ import annotations

import logging
from typing import Iterable

import httpx

from backoffice.config import settings
from backoffice.metrics import record_lifecycle_event


logger = logging.getLogger(__name__)


def _recipients(user_ids: Iterable[int | None]) -> list[int]:
    seen: list[int] = []
    for user_id in user_ids:
        if user_id and int(user_id) not in seen:
            seen.append(int(user_id))
    return seen


def notify(event: str, *, user_ids: Iterable[int | None], payload: dict | None = None) -> bool:
    """Deliver a lifecycle event to the messaging webhook.

    Called only after the owning transaction committed. Delivery failures are
    logged and swallowed so the committed state is never affected.
    """
    recipients = _recipients(user_ids)
    if not recipients:
        return False
    logger.info('notification_dispatch event=%s recipients=%s', event, recipients)
    if not settings.enable_notifications or not settings.notification_webhook_url:
        return False
    body = {'event': event, 'recipients': recipients, 'payload': payload or {}}
    try:
        response = httpx.post(
            settings.notification_webhook_url,
            json=body,
            timeout=settings.notification_timeout_seconds,
        )
        response.raise_for_status()
        return True
    except httpx.HTTPError:
        record_lifecycle_event('notification_failed')
        logger.exception('notification_failed event=%s recipients=%s', event, recipients)
        return False
