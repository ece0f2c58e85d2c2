"""Fee quote and fee administration endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.core.state import get_app_state
from task_settlement_service.routers.validation import parse_json_body, require_token
from task_settlement_service.schemas import FeeQuoteResponse

router = APIRouter()


@router.get("/fees/quote", response_model=FeeQuoteResponse)
async def quote_fee(request: Request) -> FeeQuoteResponse:
    """Quote the service fee for an amount in a currency."""
    amount = request.query_params.get("amount")
    if amount is None:
        raise ServiceError("INVALID_PAYLOAD", "Missing required query parameter: amount", 400)
    currency = request.query_params.get("currency", "USD")

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return FeeQuoteResponse.model_validate(state.task_manager.quote_fee(amount, currency))


@router.get("/admin/fees")
async def get_fee_config(request: Request) -> dict[str, Any]:
    """Current fee configuration with its per-currency schedule."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.get_fee_config(token)


@router.put("/admin/fees")
async def update_fee_config(request: Request) -> dict[str, Any]:
    """Replace fee parameters; requires the version the change was based on."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    data = parse_json_body(body)

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.update_fee_config(token, data)
