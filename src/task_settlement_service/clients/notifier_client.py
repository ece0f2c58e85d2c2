"""Async HTTP client for the Notifier."""

from __future__ import annotations

from typing import Any

import httpx

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger


class NotifierClient:
    """Sends user notifications. Delivery is the Notifier's concern."""

    def __init__(self, base_url: str, notify_path: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._notify_path = notify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(self, event: str, recipient_id: str, payload: dict[str, Any]) -> None:
        """
        Send one notification.

        Raises:
            ServiceError: NOTIFIER_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        try:
            response = await self._client.post(
                self._notify_path,
                json={"event": event, "recipient_id": recipient_id, "payload": payload},
            )
        except httpx.HTTPError as exc:
            get_logger(__name__).warning(
                "Notifier request failed",
                extra={"error": str(exc), "event": event, "base_url": self._base_url},
            )
            raise ServiceError(
                error="NOTIFIER_UNAVAILABLE",
                message="Notifier request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code not in (200, 201, 202, 204):
            raise ServiceError(
                error="NOTIFIER_UNAVAILABLE",
                message="Notifier returned unexpected status",
                status_code=502,
                details={"status_code": response.status_code},
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
