"""Async HTTP client for the Receipt Generator."""

from __future__ import annotations

from typing import Any

import httpx

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger


class ReceiptClient:
    """Requests the payment and earnings receipts of a completed task."""

    def __init__(self, base_url: str, generate_path: str, timeout_seconds: int) -> None:
        self._base_url = base_url
        self._generate_path = generate_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def generate_for_completed_task(self, task_id: str) -> dict[str, Any]:
        """
        Generate both receipts for a completed task.

        Returns:
            dict with keys: payment_receipt, earnings_receipt

        Raises:
            ServiceError: RECEIPT_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)
        path = self._generate_path.format(task_id=task_id)

        try:
            response = await self._client.post(path, json={"task_id": task_id})
        except httpx.HTTPError as exc:
            logger.warning(
                "Receipt service request failed",
                extra={"error": str(exc), "task_id": task_id, "base_url": self._base_url},
            )
            raise ServiceError(
                error="RECEIPT_SERVICE_UNAVAILABLE",
                message="Receipt service request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code not in (200, 201):
            logger.warning(
                "Receipt service unexpected status",
                extra={
                    "status_code": response.status_code,
                    "task_id": task_id,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="RECEIPT_SERVICE_UNAVAILABLE",
                message="Receipt service returned unexpected status",
                status_code=502,
                details={},
            )

        result: dict[str, Any] = response.json()
        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
