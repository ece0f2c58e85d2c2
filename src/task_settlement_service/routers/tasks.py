"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.core.state import get_app_state
from task_settlement_service.routers.validation import (
    extract_reason,
    parse_int_param,
    parse_json_body,
    parse_optional_json_body,
    require_token,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a new open task owned by the caller."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    data = parse_json_body(body)

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.create_task(token, data)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: list tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    offset = parse_int_param(request.query_params.get("offset"), "offset", minimum=0)
    limit = parse_int_param(request.query_params.get("limit"), "limit", minimum=1)

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    tasks = await state.task_manager.list_tasks(
        status=request.query_params.get("status"),
        poster_id=request.query_params.get("poster_id"),
        tasker_id=request.query_params.get("tasker_id"),
        offset=offset,
        limit=limit,
    )
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# Generic status change
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/status")
async def change_status(task_id: str, request: Request) -> JSONResponse:
    """Move a task to a new status."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    data = parse_json_body(body)

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.transition(task_id, token, data)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Cancel / done / complete
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task. Pending and accepted offers are rejected."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    reason = extract_reason(parse_optional_json_body(body))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.cancel_task(task_id, token, reason)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/done")
async def mark_done(task_id: str, request: Request) -> JSONResponse:
    """Tasker reports the work as done."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    reason = extract_reason(parse_optional_json_body(body))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.mark_done(task_id, token, reason)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/complete")
async def confirm_completion(task_id: str, request: Request) -> JSONResponse:
    """Poster confirms completion; payment capture and vote credit follow."""
    token = require_token(request.headers.get("authorization"))
    body = await request.body()
    reason = extract_reason(parse_optional_json_body(body))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.confirm_completion(task_id, token, reason)
    return JSONResponse(status_code=200, content=result)


@router.get("/tasks/{task_id}/completion-status")
async def completion_status(task_id: str, request: Request) -> dict[str, Any]:
    """Whether the caller can confirm completion of the task."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.completion_status(task_id, token)


# ---------------------------------------------------------------------------
# Settlement follow-ups
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/settlement/retry")
async def retry_settlement(task_id: str, request: Request) -> JSONResponse:
    """Retry payment capture, vote credit and side effects of a completed task."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.retry_settlement(task_id, token)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/receipts")
async def regenerate_receipts(task_id: str, request: Request) -> JSONResponse:
    """Generate the receipts of a settled task again."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.regenerate_receipts(task_id, token)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Method-not-allowed: action routes
#
# Without these, requests like GET /tasks/{task_id}/cancel would fall
# through to the router's generic 404 instead of the required 405.
# ---------------------------------------------------------------------------


@router.api_route(
    "/tasks/{task_id}/status",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def status_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/status."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/cancel",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def cancel_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/cancel."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/done",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def done_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/done."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/complete",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def complete_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/complete."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


# ---------------------------------------------------------------------------
# GET /tasks/{task_id}: MUST be LAST (parameterized catch-all)
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get the task aggregate: task, history, offers, transaction and payment."""
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return await state.task_manager.get_task(task_id)
