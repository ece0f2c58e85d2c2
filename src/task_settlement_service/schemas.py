"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class TaskStatusCounts(BaseModel):
    """Number of tasks in each lifecycle status."""

    model_config = ConfigDict(extra="forbid")
    open: int = 0
    todo: int = 0
    done: int = 0
    completed: int = 0
    cancelled: int = 0
    expired: int = 0
    overdue: int = 0


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: TaskStatusCounts


class FeeBreakdown(BaseModel):
    model_config = ConfigDict(extra="forbid")
    base_percentage: float
    calculated_fee: float
    applied_fee: float
    reason: Literal["percentage_applied", "minimum_fee_applied", "maximum_fee_capped"]
    min_fee_in_currency: float
    max_fee_in_currency: float
    exchange_rate: float
    config_version: int


class FeeQuoteResponse(BaseModel):
    """Response model for GET /fees/quote."""

    model_config = ConfigDict(extra="forbid")
    budget_amount: float
    service_fee: float
    total_amount: float
    currency: str
    breakdown: FeeBreakdown


class UserStatsResponse(BaseModel):
    """Completed-task vote counter of one user."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    completed_tasks: int
    updated_at: str | None


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]
