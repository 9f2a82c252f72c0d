"""Fire-and-forget notification clients.

A notification failure is logged and swallowed here: it must never roll back
or fail a committed transfer or a recorded schedule outcome.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from remitcore.database import utcnow

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, event: str, user_id: str, payload: Dict[str, Any]) -> bool:
        ...


class LogNotifier:
    """Notifier used when no gateway is configured; it only logs."""

    def __init__(self):
        self.sent: list = []

    async def notify(self, event: str, user_id: str, payload: Dict[str, Any]) -> bool:
        # Never log OTP codes
        safe_payload = {k: v for k, v in payload.items() if k != "code"}
        logger.info(f"Notification {event} for {user_id}: {safe_payload}")
        self.sent.append({"event": event, "user_id": user_id, "payload": payload})
        return True


class HttpNotifier:
    """HTTP client posting events to the notification gateway."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def notify(self, event: str, user_id: str, payload: Dict[str, Any]) -> bool:
        try:
            client = await self._get_client()
            response = await client.post(
                "/events",
                json={
                    "event": event,
                    "user_id": user_id,
                    "payload": payload,
                    "emitted_at": utcnow().isoformat(),
                },
            )
            if response.status_code >= 400:
                logger.warning(f"Notification {event} rejected: HTTP {response.status_code}")
                return False
            return True
        except httpx.TimeoutException:
            logger.warning(f"Notification {event} timed out")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Notification {event} failed: {e}")
            return False


_notifier = None


def get_notifier():
    """Get the configured notifier (singleton)."""
    global _notifier
    if _notifier is None:
        from remitcore.config import get_settings

        settings = get_settings()
        if settings.notification_url:
            _notifier = HttpNotifier(
                settings.notification_url, timeout=settings.notification_timeout_seconds
            )
        else:
            _notifier = LogNotifier()
    return _notifier


async def close_notifier():
    global _notifier
    if isinstance(_notifier, HttpNotifier):
        await _notifier.close()
    _notifier = None
