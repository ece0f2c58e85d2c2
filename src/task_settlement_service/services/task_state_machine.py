"""Task status transitions, permissions and history."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger

if TYPE_CHECKING:
    from task_settlement_service.services.offer_ledger import OfferLedger
    from task_settlement_service.services.settlement_coordinator import SettlementCoordinator
    from task_settlement_service.services.task_store import TaskStore

SYSTEM_ACTOR = "system"

TASK_STATUSES: tuple[str, ...] = (
    "open",
    "todo",
    "done",
    "completed",
    "cancelled",
    "expired",
    "overdue",
)

TRANSITIONS: dict[str, frozenset[str]] = {
    "open": frozenset({"todo", "expired", "cancelled"}),
    "todo": frozenset({"done", "overdue", "cancelled"}),
    "done": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
    "expired": frozenset(),
    "overdue": frozenset(),
}

SYSTEM_ONLY_TARGETS = frozenset({"expired", "overdue"})

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

# Timestamp column stamped when a task enters each status
_TIMESTAMP_COLUMNS = {
    "todo": "assigned_at",
    "done": "done_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
    "expired": "expired_at",
    "overdue": "overdue_at",
}

# Statuses that carry an assigned tasker
_ASSIGNED_STATUSES = frozenset({"todo", "done", "completed"})


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def normalize_status(status: str) -> str:
    """Map the legacy "pending" task status onto "open"."""
    return "open" if status == "pending" else status


def is_legal_transition(current: str, target: str) -> bool:
    """Whether `current -> target` is in the transition table."""
    return target in TRANSITIONS.get(normalize_status(current), frozenset())


class TaskStateMachine:
    """
    Single owner of task status changes.

    Each transition writes the task row, one history entry and the
    transaction's task_status mirror in one store transaction, guarded by a
    compare-and-swap on the status the transition was validated against.
    """

    def __init__(
        self,
        store: TaskStore,
        offer_ledger: OfferLedger,
        settlement_coordinator: SettlementCoordinator,
    ) -> None:
        self._store = store
        self._offer_ledger = offer_ledger
        self._settlement_coordinator = settlement_coordinator
        self._logger = get_logger(__name__)

    def get_task(self, task_id: str) -> dict[str, Any]:
        """Fetch a task or raise TASK_NOT_FOUND."""
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    async def transition(
        self,
        task_id: str,
        target: str,
        actor_id: str,
        *,
        reason: str | None = None,
        offer_id: str | None = None,
        expected_status: str | None = None,
    ) -> dict[str, Any]:
        """
        Move a task to `target` on behalf of a client actor.

        Error precedence:
        1. TASK_NOT_FOUND
        2. STATUS_CONFLICT: `expected_status` given and not the current status
        3. INVALID_TRANSITION: target unknown or not legal from the current status
        4. FORBIDDEN_SYSTEM_TRANSITION: target is expired/overdue
        5. FORBIDDEN_ACTOR: actor may not perform this transition
        6. Delegated errors (acceptance, settlement)

        Returns:
            dict with at least the key "task"; acceptance adds offer and
            transaction, completion adds the settlement result
        """
        task = self.get_task(task_id)
        current = task["status"]

        if expected_status is not None and expected_status != current:
            raise ServiceError(
                "STATUS_CONFLICT",
                f"Task status is '{current}', expected '{expected_status}'",
                409,
                {"current": current, "expected": expected_status},
            )

        if not is_legal_transition(current, target):
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot transition task from '{current}' to '{target}'",
                409,
                {"from": current, "to": target},
            )

        if target in SYSTEM_ONLY_TARGETS:
            raise ServiceError(
                "FORBIDDEN_SYSTEM_TRANSITION",
                f"Status '{target}' can only be set by the system",
                403,
                {"to": target},
            )

        if target == "todo":
            if offer_id is None:
                raise ServiceError(
                    "INVALID_PAYLOAD", "offer_id is required to accept an offer", 400
                )
            return self._offer_ledger.accept(task, offer_id, actor_id, reason)

        if target == "done":
            self._require_actor(task["tasker_id"], actor_id, "Only the assigned tasker")
            return {"task": self._apply(task, "done", actor_id, reason)}

        if target == "completed":
            self._require_actor(task["poster_id"], actor_id, "Only the poster")
            return await self._settlement_coordinator.settle(task, actor_id, reason)

        # cancelled
        self._require_actor(task["poster_id"], actor_id, "Only the poster")
        return {"task": self._apply(task, "cancelled", actor_id, reason)}

    def accept_offer(
        self, task_id: str, offer_id: str, actor_id: str, reason: str | None = None
    ) -> dict[str, Any]:
        """Accept an offer; any non-open task fails with TASK_NOT_OPEN."""
        task = self.get_task(task_id)
        return self._offer_ledger.accept(task, offer_id, actor_id, reason)

    async def mark_done(
        self, task_id: str, actor_id: str, reason: str | None = None
    ) -> dict[str, Any]:
        """Tasker marks an assigned task as done."""
        return await self.transition(task_id, "done", actor_id, reason=reason)

    async def confirm_completion(
        self, task_id: str, actor_id: str, reason: str | None = None
    ) -> dict[str, Any]:
        """Poster confirms a done task, triggering settlement."""
        return await self.transition(task_id, "completed", actor_id, reason=reason)

    async def cancel_task(
        self, task_id: str, actor_id: str, reason: str | None = None
    ) -> dict[str, Any]:
        """Poster cancels an open or assigned task."""
        return await self.transition(task_id, "cancelled", actor_id, reason=reason)

    def system_transition(
        self, task: dict[str, Any], target: str, reason: str
    ) -> dict[str, Any] | None:
        """
        Apply a system-only transition (expired/overdue).

        Returns the updated task, or None if the task moved on concurrently.
        """
        if target not in SYSTEM_ONLY_TARGETS or not is_legal_transition(task["status"], target):
            msg = f"Illegal system transition from '{task['status']}' to '{target}'"
            raise ValueError(msg)
        try:
            return self._apply(task, target, SYSTEM_ACTOR, reason)
        except ServiceError as exc:
            if exc.error != "INVALID_TRANSITION":
                raise
            return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _require_actor(expected: str | None, actor_id: str, who: str) -> None:
        if expected is None or actor_id != expected:
            raise ServiceError(
                "FORBIDDEN_ACTOR",
                f"{who} can perform this transition",
                403,
                {"actor": actor_id},
            )

    def _apply(
        self,
        task: dict[str, Any],
        target: str,
        actor_id: str,
        reason: str | None,
    ) -> dict[str, Any]:
        """Write a plain status change with its history and mirror updates."""
        task_id = task["task_id"]
        current = task["status"]
        now = _now_iso()

        updates: dict[str, Any] = {"status": target, _TIMESTAMP_COLUMNS[target]: now}
        if target not in _ASSIGNED_STATUSES:
            updates["tasker_id"] = None

        with self._store.transaction():
            changed = self._store.update_task(task_id, updates, expected_status=current)
            if changed == 0:
                latest = self._store.get_task(task_id)
                latest_status = latest["status"] if latest is not None else current
                raise ServiceError(
                    "INVALID_TRANSITION",
                    f"Cannot transition task from '{latest_status}' to '{target}'",
                    409,
                    {"from": latest_status, "to": target},
                )
            self._store.append_history(
                task_id, target, actor_id, now, reason or f"Changed to {target}"
            )
            self._store.update_transaction_for_task(
                task_id, {"task_status": target, "updated_at": now}
            )
            if target == "cancelled":
                self._store.reject_offers(task_id, ("pending", "accepted"), now)

        self._logger.info(
            "Task status changed",
            extra={"task_id": task_id, "from": current, "to": target, "actor": actor_id},
        )

        updated = self._store.get_task(task_id)
        if updated is None:
            msg = f"Task {task_id} not found after update"
            raise RuntimeError(msg)
        return updated
