from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
from task_settlement_service.core.exceptions import ServiceError


def _make_client(mock_response: httpx.Response | None = None) -> PaymentGatewayClient:
    """Create a PaymentGatewayClient with a mock HTTP client."""
    client = PaymentGatewayClient(
        base_url="http://mock-gateway:8020",
        create_intent_path="/payment-intents",
        capture_intent_path="/payment-intents/{intent_id}/capture",
        timeout_seconds=5,
    )

    mock_http = AsyncMock(spec=httpx.AsyncClient)
    mock_http.post = AsyncMock(return_value=mock_response)
    client._client = mock_http
    return client


def _mock_response(status_code: int, json_body: dict[str, Any]) -> httpx.Response:
    """Create a mock httpx.Response."""
    return httpx.Response(
        status_code=status_code,
        json=json_body,
        request=httpx.Request("POST", "http://mock-gateway:8020/payment-intents"),
    )


@pytest.mark.unit
async def test_create_charge_intent_posts_amount_and_metadata() -> None:
    response = _mock_response(
        201, {"intent_id": "pi-1", "client_secret": "cs-1", "status": "requires_capture"}
    )
    client = _make_client(response)

    result = await client.create_charge_intent("157.50", "USD", {"task_id": "t-1"})

    assert result["intent_id"] == "pi-1"
    client._client.post.assert_awaited_once_with(
        "/payment-intents",
        json={"amount": "157.50", "currency": "usd", "metadata": {"task_id": "t-1"}},
    )


@pytest.mark.unit
async def test_create_charge_intent_500_raises_unavailable() -> None:
    client = _make_client(_mock_response(500, {"error": "INTERNAL"}))

    with pytest.raises(ServiceError) as exc_info:
        await client.create_charge_intent("10.00", "USD", {})

    assert exc_info.value.status_code == 502
    assert exc_info.value.error == "PAYMENT_GATEWAY_UNAVAILABLE"


@pytest.mark.unit
async def test_capture_formats_intent_path() -> None:
    client = _make_client(_mock_response(200, {"intent_id": "pi-1", "status": "succeeded"}))

    result = await client.capture_intent("pi-1")

    assert result["status"] == "succeeded"
    client._client.post.assert_awaited_once_with("/payment-intents/pi-1/capture", json={})


@pytest.mark.unit
async def test_capture_402_raises_capture_failed() -> None:
    client = _make_client(_mock_response(402, {"message": "Card declined"}))

    with pytest.raises(ServiceError) as exc_info:
        await client.capture_intent("pi-1")

    assert exc_info.value.status_code == 402
    assert exc_info.value.error == "PAYMENT_CAPTURE_FAILED"
    assert exc_info.value.message == "Card declined"
    assert exc_info.value.details == {"intent_id": "pi-1"}


@pytest.mark.unit
async def test_capture_503_raises_unavailable() -> None:
    client = _make_client(_mock_response(503, {}))

    with pytest.raises(ServiceError) as exc_info:
        await client.capture_intent("pi-1")

    assert exc_info.value.error == "PAYMENT_GATEWAY_UNAVAILABLE"


@pytest.mark.unit
async def test_connection_error_raises_unavailable() -> None:
    client = _make_client()
    client._client.post = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

    with pytest.raises(ServiceError) as exc_info:
        await client.capture_intent("pi-1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.details == {"operation": "capture_intent"}


@pytest.mark.unit
async def test_timeout_raises_unavailable() -> None:
    client = _make_client()
    client._client.post = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

    with pytest.raises(ServiceError) as exc_info:
        await client.create_charge_intent("10.00", "USD", {})

    assert exc_info.value.error == "PAYMENT_GATEWAY_UNAVAILABLE"
