"""Notification delivery.

Delivery is best effort from the caller's point of view: ``send`` returns
``False`` when the message could not be delivered, and callers decide whether
that matters.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx

from opsagent.observability.tracing import log_event


@dataclass(frozen=True)
class NotificationAction:
    label: str
    action: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    async def send(
        self,
        user_id: str,
        title: str,
        body: str,
        actions: list[NotificationAction] | None = None,
    ) -> bool:
        ...


class LoggingNotificationDispatcher:
    """Emits a ``notification.sent`` event instead of delivering anything."""

    async def send(self, user_id, title, body, actions=None) -> bool:
        log_event(
            'notification.sent',
            trace_id=user_id,
            channel='log',
            title=title,
            actions=[a.action for a in actions or []],
        )
        return True


class WebhookNotificationDispatcher:
    """POSTs notifications as JSON to a single webhook URL."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        """Create a webhook dispatcher.

        Args:
            url: Endpoint receiving ``{"user_id", "title", "body", "actions"}``.
            client: Optional injected httpx client for testing / transport control.
            timeout: Per-request timeout in seconds.
        """
        self._url = url
        self._client = client
        self._timeout = timeout

    async def send(self, user_id, title, body, actions=None) -> bool:
        payload = {
            'user_id': user_id,
            'title': title,
            'body': body,
            'actions': [asdict(a) for a in actions or []],
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(self._url, json=payload, timeout=self._timeout)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log_event(
                'notification.failed',
                trace_id=user_id,
                level=logging.WARNING,
                channel='webhook',
                error=str(exc),
            )
            return False

        log_event('notification.sent', trace_id=user_id, channel='webhook', title=title)
        return True
