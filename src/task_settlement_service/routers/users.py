"""User vote counter endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_settlement_service.core.state import get_app_state
from task_settlement_service.schemas import UserStatsResponse

router = APIRouter()


@router.get("/users/{user_id}/stats", response_model=UserStatsResponse)
async def get_user_stats(user_id: str) -> UserStatsResponse:
    """Completed-task vote counter of a user."""
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)

    return UserStatsResponse.model_validate(state.task_manager.get_user_stats(user_id))
