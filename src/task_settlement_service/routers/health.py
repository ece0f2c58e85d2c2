"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from task_settlement_service.core.state import get_app_state
from task_settlement_service.schemas import HealthResponse, TaskStatusCounts

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness plus per-status task counts; counts stay zero until the store is wired."""
    state = get_app_state()
    counts = TaskStatusCounts()
    total_tasks = 0
    if state.task_manager is not None:
        stats = state.task_manager.get_stats()
        counts = TaskStatusCounts.model_validate(stats["tasks_by_status"])
        total_tasks = stats["total_tasks"]

    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_tasks=total_tasks,
        tasks_by_status=counts,
    )
