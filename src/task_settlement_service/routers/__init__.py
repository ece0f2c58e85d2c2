"""API routers."""

from task_settlement_service.routers import fees, health, offers, payments, tasks, users

__all__ = ["fees", "health", "offers", "payments", "tasks", "users"]
