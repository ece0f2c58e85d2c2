"""Payment intent endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.core.state import get_app_state
from task_settlement_service.routers.validation import require_token

router = APIRouter()


@router.post("/tasks/{task_id}/payment-intent", status_code=201)
async def create_payment_intent(task_id: str, request: Request) -> JSONResponse:
    """Create the gateway charge intent for the task's accepted offer."""
    token = require_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    result = await state.task_manager.create_payment_intent(task_id, token)
    return JSONResponse(status_code=201, content=result)


@router.api_route(
    "/tasks/{task_id}/payment-intent",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def payment_intent_method_not_allowed(task_id: str, request: Request) -> None:
    """Reject wrong methods on /tasks/{task_id}/payment-intent."""
    _ = (task_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
