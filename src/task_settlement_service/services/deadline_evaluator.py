"""Deadline evaluation and system-driven task transitions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_settlement_service.logging import get_logger
from task_settlement_service.services.task_state_machine import TERMINAL_STATUSES

if TYPE_CHECKING:
    from task_settlement_service.services.settlement_coordinator import SettlementCoordinator
    from task_settlement_service.services.task_state_machine import TaskStateMachine

DATE_TYPES = frozenset({"flexible", "done_by", "done_on"})


def parse_deadline(value: str | None) -> datetime | None:
    """
    Parse an ISO 8601 date or datetime into an aware UTC datetime.

    A bare date means the end of that day, so it parses to the next midnight.
    """
    if value is None:
        return None
    text = value.strip()
    if "T" not in text and " " not in text:
        day = datetime.fromisoformat(text).replace(tzinfo=UTC)
        return day + timedelta(days=1)
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class DeadlineEvaluator:
    """Applies expiry/overdue transitions and pending settlements lazily on read."""

    def __init__(
        self,
        state_machine: TaskStateMachine,
        settlement_coordinator: SettlementCoordinator,
    ) -> None:
        self._state_machine = state_machine
        self._settlement_coordinator = settlement_coordinator
        self._logger = get_logger(__name__)

    @staticmethod
    def deadline_for(task: dict[str, Any]) -> datetime | None:
        """Deadline implied by the task's date policy, or None if it has none."""
        date_type = task["date_type"]
        if date_type == "done_by":
            return parse_deadline(task["date_end"])
        if date_type == "done_on":
            return parse_deadline(task["date_end"] or task["date_start"])
        return None

    async def evaluate(self, task: dict[str, Any]) -> dict[str, Any]:
        """
        Lazy deadline evaluation.

        open past its deadline -> expired; todo past its deadline -> overdue.
        Completed tasks with a pending settlement get a reconciliation attempt.
        """
        if task["status"] == "completed":
            return await self._settlement_coordinator.retry_pending_settlement(task)

        if task["status"] in TERMINAL_STATUSES:
            return task

        deadline = self.deadline_for(task)
        if deadline is None or datetime.now(UTC) < deadline:
            return task

        if task["status"] in ("open", "pending"):
            target = "expired"
        elif task["status"] == "todo":
            target = "overdue"
        else:
            return task

        updated = self._state_machine.system_transition(task, target, "Deadline passed")
        if updated is None:
            refreshed = self._state_machine.get_task(task["task_id"])
            return refreshed

        self._logger.info(
            "Task deadline passed",
            extra={"task_id": task["task_id"], "status": target, "deadline": deadline.isoformat()},
        )
        return updated

    async def evaluate_batch(self, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Evaluate deadlines for a list of tasks."""
        result: list[dict[str, Any]] = []
        for task in tasks:
            evaluated = await self.evaluate(task)
            result.append(evaluated)
        return result
