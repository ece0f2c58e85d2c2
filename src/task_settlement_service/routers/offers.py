"""Offer submission, listing, and decision endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.core.state import get_app_state
from task_settlement_service.routers.validation import (
    extract_reason,
    parse_json_body,
    parse_optional_json_body,
    require_token,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# GET /offers/mine: offers made by the caller
# ---------------------------------------------------------------------------


@router.get("/offers/mine")
async def list_my_offers(request: Request) -> dict[str, Any]:
    """List the caller's offers, optionally filtered by status."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.list_my_offers(token, request.query_params.get("status"))


# ---------------------------------------------------------------------------
# POST /tasks/{task_id}/offers: make an offer
# MUST be before GET /tasks/{task_id}/offers
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/offers", status_code=201)
async def create_offer(task_id: str, request: Request) -> JSONResponse:
    """Make an offer on an open task."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    data = parse_json_body(body)

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.create_offer(task_id, token, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/offers")
async def list_offers(task_id: str) -> dict[str, Any]:
    """List the offers on a task."""
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.list_offers(task_id)


# ---------------------------------------------------------------------------
# Offer decisions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/offers/{offer_id}/accept")
async def accept_offer(task_id: str, offer_id: str, request: Request) -> JSONResponse:
    """Accept an offer, assign the tasker and create the transaction."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    reason = extract_reason(parse_optional_json_body(body))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.accept_offer(task_id, offer_id, token, reason)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/offers/{offer_id}/reject")
async def reject_offer(task_id: str, offer_id: str, request: Request) -> JSONResponse:
    """Poster rejects a pending offer."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.reject_offer(task_id, offer_id, token)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/offers/{offer_id}/withdraw")
async def withdraw_offer(task_id: str, offer_id: str, request: Request) -> JSONResponse:
    """Tasker withdraws their pending offer."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.withdraw_offer(task_id, offer_id, token)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Method-not-allowed: offer routes
# ---------------------------------------------------------------------------


@router.api_route(
    "/tasks/{task_id}/offers/{offer_id}/accept",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def accept_method_not_allowed(task_id: str, offer_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/offers/{offer_id}/accept."""
    _ = (task_id, offer_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/offers/{offer_id}/reject",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def reject_method_not_allowed(task_id: str, offer_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/offers/{offer_id}/reject."""
    _ = (task_id, offer_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/offers/{offer_id}/withdraw",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def withdraw_method_not_allowed(task_id: str, offer_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/offers/{offer_id}/withdraw."""
    _ = (task_id, offer_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
