"""Async HTTP client for the Payment Gateway."""

from __future__ import annotations

from typing import Any

import httpx

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger


class PaymentGatewayClient:
    """
    Client for charge intents.

    Two operation types:
    1. create_charge_intent: reserves the poster's charge when the
       payment intent is created for an accepted offer.
    2. capture_intent: captures a previously created intent when the
       poster confirms completion.
    """

    def __init__(
        self,
        base_url: str,
        create_intent_path: str,
        capture_intent_path: str,
        timeout_seconds: int,
        api_key: str | None = None,
    ) -> None:
        self._base_url = base_url
        self._create_intent_path = create_intent_path
        self._capture_intent_path = capture_intent_path
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
        )

    async def _post(self, path: str, payload: dict[str, Any], operation: str) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            return await self._client.post(path, json=payload)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"error": str(exc), "operation": operation, "base_url": self._base_url},
            )
            raise ServiceError(
                error="PAYMENT_GATEWAY_UNAVAILABLE",
                message="Cannot connect to payment gateway",
                status_code=502,
                details={"operation": operation},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={"error": str(exc), "operation": operation, "base_url": self._base_url},
            )
            raise ServiceError(
                error="PAYMENT_GATEWAY_UNAVAILABLE",
                message="Payment gateway request failed",
                status_code=502,
                details={"operation": operation},
            ) from exc

    async def create_charge_intent(
        self,
        amount: str,
        currency: str,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Create a charge intent for the poster.

        Args:
            amount: Decimal string in major currency units
            currency: ISO currency code
            metadata: task/offer/user references attached to the intent

        Returns:
            dict with keys: intent_id, client_secret, status

        Raises:
            ServiceError: PAYMENT_GATEWAY_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        response = await self._post(
            self._create_intent_path,
            {"amount": amount, "currency": currency.lower(), "metadata": metadata},
            "create_charge_intent",
        )

        if response.status_code in (200, 201):
            result: dict[str, Any] = response.json()
            return result

        get_logger(__name__).warning(
            "Payment gateway unexpected status on intent creation",
            extra={"status_code": response.status_code, "base_url": self._base_url},
        )
        raise ServiceError(
            error="PAYMENT_GATEWAY_UNAVAILABLE",
            message="Payment gateway returned unexpected status",
            status_code=502,
            details={"operation": "create_charge_intent"},
        )

    async def capture_intent(self, intent_id: str) -> dict[str, Any]:
        """
        Capture a previously created charge intent.

        Returns:
            dict with keys: intent_id, status ("succeeded" on success)

        Raises:
            ServiceError: PAYMENT_CAPTURE_FAILED (402) if the gateway declines the capture
            ServiceError: PAYMENT_GATEWAY_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        capture_path = self._capture_intent_path.format(intent_id=intent_id)
        response = await self._post(capture_path, {}, "capture_intent")

        if response.status_code == 200:
            result: dict[str, Any] = response.json()
            return result

        if response.status_code in (400, 402, 409):
            error_body: dict[str, Any] = response.json()
            raise ServiceError(
                error="PAYMENT_CAPTURE_FAILED",
                message=error_body.get("message", "Payment gateway declined the capture"),
                status_code=402,
                details={"intent_id": intent_id},
            )

        get_logger(__name__).warning(
            "Payment gateway unexpected status on capture",
            extra={
                "status_code": response.status_code,
                "intent_id": intent_id,
                "base_url": self._base_url,
            },
        )
        raise ServiceError(
            error="PAYMENT_GATEWAY_UNAVAILABLE",
            message="Payment gateway returned unexpected status on capture",
            status_code=502,
            details={"operation": "capture_intent"},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
