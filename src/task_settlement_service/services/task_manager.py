"""Task settlement facade: authentication, validation and response shaping."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger
from task_settlement_service.services.deadline_evaluator import DATE_TYPES, parse_deadline
from task_settlement_service.services.fee_calculator import (
    calculate_service_fee,
    fee_schedule,
    parse_amount,
)
from task_settlement_service.services.task_state_machine import TASK_STATUSES
from task_settlement_service.services.task_store import DuplicateTaskError

if TYPE_CHECKING:
    from task_settlement_service.clients.identity_client import IdentityClient
    from task_settlement_service.clients.receipt_client import ReceiptClient
    from task_settlement_service.services.deadline_evaluator import DeadlineEvaluator
    from task_settlement_service.services.fee_config import FeeConfigService
    from task_settlement_service.services.offer_ledger import OfferLedger
    from task_settlement_service.services.payment_service import PaymentService
    from task_settlement_service.services.settlement_coordinator import SettlementCoordinator
    from task_settlement_service.services.task_state_machine import TaskStateMachine
    from task_settlement_service.services.task_store import TaskStore
    from task_settlement_service.services.vote_calculator import Votes

_OFFER_STATUSES = frozenset({"pending", "accepted", "rejected", "withdrawn", "completed"})

_MAX_TITLE_LENGTH = 200
_MAX_DESCRIPTION_LENGTH = 10000
_MAX_REASON_LENGTH = 2000


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _money(value: Decimal | None) -> float | None:
    return None if value is None else float(value)


def _require_string(
    data: dict[str, Any], field_name: str, max_length: int, *, required: bool = True
) -> str | None:
    value = data.get(field_name)
    if value is None:
        if required:
            raise ServiceError("INVALID_PAYLOAD", f"Missing required field: {field_name}", 400)
        return None
    if not isinstance(value, str) or not value.strip():
        raise ServiceError("INVALID_PAYLOAD", f"{field_name} must be a non-empty string", 400)
    if len(value) > max_length:
        raise ServiceError(
            "INVALID_PAYLOAD", f"{field_name} must be at most {max_length} characters", 400
        )
    return value


class TaskManager:
    """
    Entry point for routers.

    Resolves the acting user through the Identity provider, applies lazy
    deadline and settlement evaluation on every task it loads, and turns
    store rows into JSON-ready responses. Lifecycle rules live in
    TaskStateMachine, OfferLedger and SettlementCoordinator.
    """

    def __init__(
        self,
        store: TaskStore,
        identity_client: IdentityClient,
        receipt_client: ReceiptClient,
        state_machine: TaskStateMachine,
        offer_ledger: OfferLedger,
        settlement_coordinator: SettlementCoordinator,
        deadline_evaluator: DeadlineEvaluator,
        payment_service: PaymentService,
        fee_config: FeeConfigService,
        admin_user_ids: list[str],
    ) -> None:
        self._store = store
        self._identity_client = identity_client
        self._receipt_client = receipt_client
        self._state_machine = state_machine
        self._offer_ledger = offer_ledger
        self._settlement_coordinator = settlement_coordinator
        self._deadline_evaluator = deadline_evaluator
        self._payment_service = payment_service
        self._fee_config = fee_config
        self._admin_user_ids = frozenset(admin_user_ids)
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    async def _authenticate(self, token: str) -> str:
        """Resolve a bearer token to a user_id via the Identity provider."""
        try:
            identity = await self._identity_client.authenticate(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot verify token with Identity service",
                502,
                {},
            ) from exc
        return str(identity["user_id"])

    async def _load_task(self, task_id: str) -> dict[str, Any]:
        task = self._state_machine.get_task(task_id)
        return await self._deadline_evaluator.evaluate(task)

    def _require_admin(self, user_id: str) -> None:
        if user_id not in self._admin_user_ids:
            raise ServiceError("FORBIDDEN_ACTOR", "Admin access required", 403, {})

    @staticmethod
    def _task_to_response(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "task_id": row["task_id"],
            "poster_id": row["poster_id"],
            "title": row["title"],
            "description": row["description"],
            "categories": row["categories"],
            "budget": _money(row["budget"]),
            "currency": row["currency"],
            "location": row["location"],
            "date_type": row["date_type"],
            "date_start": row["date_start"],
            "date_end": row["date_end"],
            "status": row["status"],
            "tasker_id": row["tasker_id"],
            "accepted_offer_id": row["accepted_offer_id"],
            "created_at": row["created_at"],
            "assigned_at": row["assigned_at"],
            "done_at": row["done_at"],
            "completed_at": row["completed_at"],
            "cancelled_at": row["cancelled_at"],
            "expired_at": row["expired_at"],
            "overdue_at": row["overdue_at"],
            "settlement_pending": bool(row["settlement_pending"]),
        }

    @staticmethod
    def _offer_to_response(row: dict[str, Any]) -> dict[str, Any]:
        response = dict(row)
        response["amount"] = _money(row["amount"])
        return response

    @staticmethod
    def _transaction_to_response(row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        response = dict(row)
        for column in ("amount", "service_fee", "total_amount"):
            response[column] = _money(row[column])
        return response

    @staticmethod
    def _payment_to_response(row: dict[str, Any] | None) -> dict[str, Any] | None:
        if row is None:
            return None
        response = dict(row)
        for column in ("amount", "charge_amount", "service_fee", "tasker_amount"):
            response[column] = _money(row[column])
        return response

    def _aggregate(self, result: dict[str, Any]) -> dict[str, Any]:
        """Shape a state-machine result into a response."""
        response: dict[str, Any] = {"task": self._task_to_response(result["task"])}
        if result.get("offer") is not None:
            response["offer"] = self._offer_to_response(result["offer"])
        if "transaction" in result:
            response["transaction"] = self._transaction_to_response(result["transaction"])
        if "payment" in result:
            response["payment"] = self._payment_to_response(result["payment"])
        votes: Votes | None = result.get("votes")
        if votes is not None:
            response["votes"] = votes.to_dict()
        if "warnings" in result:
            response["warnings"] = result["warnings"]
        return response

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(self, token: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create an open task owned by the caller.

        Error precedence:
        1. UNAUTHORIZED / IDENTITY_SERVICE_UNAVAILABLE
        2. INVALID_PAYLOAD: missing or malformed fields
        3. INVALID_AMOUNT: budget is not a positive finite number
        """
        poster_id = await self._authenticate(token)

        title = _require_string(data, "title", _MAX_TITLE_LENGTH)
        description = _require_string(data, "description", _MAX_DESCRIPTION_LENGTH)
        location = _require_string(data, "location", _MAX_TITLE_LENGTH, required=False)

        if "budget" not in data:
            raise ServiceError("INVALID_PAYLOAD", "Missing required field: budget", 400)
        budget = parse_amount(data["budget"], "budget")

        currency = data.get("currency", "USD")
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise ServiceError("INVALID_PAYLOAD", "currency must be a 3-letter code", 400)

        categories = data.get("categories", [])
        if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
            raise ServiceError("INVALID_PAYLOAD", "categories must be a list of strings", 400)

        date_type = data.get("date_type", "flexible")
        if date_type not in DATE_TYPES:
            raise ServiceError(
                "INVALID_PAYLOAD", f"date_type must be one of {sorted(DATE_TYPES)}", 400
            )
        date_start = data.get("date_start")
        date_end = data.get("date_end")
        for field_name, value in (("date_start", date_start), ("date_end", date_end)):
            if value is None:
                continue
            if not isinstance(value, str):
                raise ServiceError("INVALID_PAYLOAD", f"{field_name} must be an ISO date", 400)
            try:
                parse_deadline(value)
            except ValueError as exc:
                raise ServiceError(
                    "INVALID_PAYLOAD", f"{field_name} must be an ISO date", 400
                ) from exc
        if date_type == "done_by" and date_end is None:
            raise ServiceError("INVALID_PAYLOAD", "done_by tasks require date_end", 400)
        if date_type == "done_on" and date_start is None and date_end is None:
            raise ServiceError("INVALID_PAYLOAD", "done_on tasks require a date", 400)

        now = _now_iso()
        task = {
            "task_id": f"t-{uuid.uuid4()}",
            "poster_id": poster_id,
            "title": title,
            "description": description,
            "categories": categories,
            "budget": budget,
            "currency": currency.upper(),
            "location": location,
            "date_type": date_type,
            "date_start": date_start,
            "date_end": date_end,
            "status": "open",
            "created_at": now,
            "settlement_pending": 0,
        }
        try:
            with self._store.transaction():
                self._store.insert_task(task)
                self._store.append_history(task["task_id"], "open", poster_id, now, "Task created")
        except DuplicateTaskError as exc:
            raise ServiceError("TASK_ALREADY_EXISTS", "Task already exists", 409, {}) from exc

        self._logger.info(
            "Task created",
            extra={"task_id": task["task_id"], "poster_id": poster_id, "budget": str(budget)},
        )
        created = self._state_machine.get_task(task["task_id"])
        return self._task_to_response(created)

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """Task aggregate: task, history, offers, relevant offer, transaction and payment."""
        task = await self._load_task(task_id)
        relevant = self._offer_ledger.relevant_offer(task_id)
        return {
            **self._task_to_response(task),
            "status_history": self._store.get_history(task_id),
            "offers": [
                self._offer_to_response(offer) for offer in self._offer_ledger.list_for_task(task_id)
            ],
            "relevant_offer": None if relevant is None else self._offer_to_response(relevant),
            "transaction": self._transaction_to_response(
                self._store.get_transaction_for_task(task_id)
            ),
            "payment": self._payment_to_response(self._store.get_payment_for_task(task_id)),
        }

    async def list_tasks(
        self,
        status: str | None,
        poster_id: str | None,
        tasker_id: str | None,
        offset: int | None,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        if status is not None and status not in TASK_STATUSES:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown status: {status}", 400, {})
        rows = self._store.list_tasks(
            status=status,
            poster_id=poster_id,
            tasker_id=tasker_id,
            limit=limit,
            offset=offset,
        )
        evaluated = await self._deadline_evaluator.evaluate_batch(rows)
        if status is not None:
            evaluated = [task for task in evaluated if task["status"] == status]
        return [self._task_to_response(task) for task in evaluated]

    async def transition(self, task_id: str, token: str, data: dict[str, Any]) -> dict[str, Any]:
        """Generic status change: status, reason, offer_id, expected_status."""
        actor_id = await self._authenticate(token)

        target = data.get("status")
        if not isinstance(target, str) or not target:
            raise ServiceError("INVALID_PAYLOAD", "Missing required field: status", 400)
        reason = _require_string(data, "reason", _MAX_REASON_LENGTH, required=False)
        offer_id = data.get("offer_id")
        if offer_id is not None and not isinstance(offer_id, str):
            raise ServiceError("INVALID_PAYLOAD", "offer_id must be a string", 400)
        expected_status = data.get("expected_status")
        if expected_status is not None and not isinstance(expected_status, str):
            raise ServiceError("INVALID_PAYLOAD", "expected_status must be a string", 400)

        await self._load_task(task_id)
        result = await self._state_machine.transition(
            task_id,
            target,
            actor_id,
            reason=reason,
            offer_id=offer_id,
            expected_status=expected_status,
        )
        return self._aggregate(result)

    async def cancel_task(self, task_id: str, token: str, reason: str | None) -> dict[str, Any]:
        """Cancel a task; pending and accepted offers are rejected."""
        actor_id = await self._authenticate(token)
        await self._load_task(task_id)
        result = await self._state_machine.cancel_task(task_id, actor_id, reason)
        return self._aggregate(result)

    async def mark_done(self, task_id: str, token: str, reason: str | None) -> dict[str, Any]:
        """Tasker reports the work as done."""
        actor_id = await self._authenticate(token)
        await self._load_task(task_id)
        result = await self._state_machine.mark_done(task_id, actor_id, reason)
        return self._aggregate(result)

    async def confirm_completion(
        self, task_id: str, token: str, reason: str | None
    ) -> dict[str, Any]:
        """Poster confirms completion; returns the settlement result with warnings."""
        actor_id = await self._authenticate(token)
        await self._load_task(task_id)
        result = await self._state_machine.confirm_completion(task_id, actor_id, reason)
        return self._aggregate(result)

    async def completion_status(self, task_id: str, token: str) -> dict[str, Any]:
        """Whether the caller can confirm completion right now."""
        actor_id = await self._authenticate(token)
        task = await self._load_task(task_id)
        is_poster = actor_id == task["poster_id"]
        return {
            "task_id": task_id,
            "status": task["status"],
            "can_complete": task["status"] == "done" and is_poster,
            "is_poster": is_poster,
            "is_tasker": actor_id == task["tasker_id"],
            "settlement_pending": bool(task["settlement_pending"]),
        }

    async def retry_settlement(self, task_id: str, token: str) -> dict[str, Any]:
        """Out-of-band reconciliation of a completed task's settlement."""
        actor_id = await self._authenticate(token)
        task = self._state_machine.get_task(task_id)
        if actor_id not in (task["poster_id"], task["tasker_id"]) and (
            actor_id not in self._admin_user_ids
        ):
            raise ServiceError("FORBIDDEN_ACTOR", "Only task parties can retry settlement", 403)
        result = await self._settlement_coordinator.reconcile(task)
        return self._aggregate(result)

    async def regenerate_receipts(self, task_id: str, token: str) -> dict[str, Any]:
        """Generate receipts again for a settled task."""
        actor_id = await self._authenticate(token)
        task = await self._load_task(task_id)
        if actor_id not in (task["poster_id"], task["tasker_id"]):
            raise ServiceError("FORBIDDEN_ACTOR", "Only task parties can request receipts", 403)
        if task["status"] != "completed":
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Receipts are only available for completed tasks, task is '{task['status']}'",
                409,
                {"status": task["status"]},
            )
        if task["settlement_pending"]:
            raise ServiceError(
                "SETTLEMENT_PENDING",
                "Payment has not been captured yet; receipts are not available",
                409,
                {},
            )

        try:
            receipts = await self._receipt_client.generate_for_completed_task(task_id)
        except Exception as exc:
            self._logger.warning(
                "Receipt regeneration failed", extra={"task_id": task_id, "error": str(exc)}
            )
            raise ServiceError(
                "RECEIPT_GENERATION_FAILED",
                "Receipts could not be generated",
                502,
                {},
            ) from exc
        return {"task_id": task_id, "receipts": receipts}

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def create_offer(self, task_id: str, token: str, data: dict[str, Any]) -> dict[str, Any]:
        """Make a pending offer on an open task."""
        tasker_id = await self._authenticate(token)
        task = await self._load_task(task_id)
        if "amount" not in data:
            raise ServiceError("INVALID_PAYLOAD", "Missing required field: amount", 400)
        offer = self._offer_ledger.create(
            task, tasker_id, data["amount"], data.get("currency"), data.get("message")
        )
        return self._offer_to_response(offer)

    async def list_offers(self, task_id: str) -> dict[str, Any]:
        """Offers on a task, newest first, withdrawn offers excluded."""
        self._state_machine.get_task(task_id)
        offers = self._offer_ledger.list_for_task(task_id)
        return {"task_id": task_id, "offers": [self._offer_to_response(o) for o in offers]}

    async def list_my_offers(self, token: str, status: str | None) -> dict[str, Any]:
        """Offers made by the caller, optionally filtered by status."""
        tasker_id = await self._authenticate(token)
        if status is not None and status not in _OFFER_STATUSES:
            raise ServiceError("INVALID_PAYLOAD", f"Unknown offer status: {status}", 400)
        offers = self._offer_ledger.list_for_tasker(tasker_id, status)
        return {"offers": [self._offer_to_response(o) for o in offers]}

    async def accept_offer(
        self, task_id: str, offer_id: str, token: str, reason: str | None
    ) -> dict[str, Any]:
        """Accept an offer; the task moves to todo and a transaction is created."""
        actor_id = await self._authenticate(token)
        await self._load_task(task_id)
        result = self._state_machine.accept_offer(task_id, offer_id, actor_id, reason)
        return self._aggregate(result)

    async def reject_offer(self, task_id: str, offer_id: str, token: str) -> dict[str, Any]:
        """Poster rejects a pending offer."""
        actor_id = await self._authenticate(token)
        task = self._state_machine.get_task(task_id)
        return self._offer_to_response(self._offer_ledger.reject(task, offer_id, actor_id))

    async def withdraw_offer(self, task_id: str, offer_id: str, token: str) -> dict[str, Any]:
        """Tasker withdraws their own pending offer."""
        actor_id = await self._authenticate(token)
        task = self._state_machine.get_task(task_id)
        return self._offer_to_response(self._offer_ledger.withdraw(task, offer_id, actor_id))

    # ------------------------------------------------------------------
    # Payments and fees
    # ------------------------------------------------------------------

    async def create_payment_intent(self, task_id: str, token: str) -> dict[str, Any]:
        """Create the gateway charge intent for the accepted offer."""
        actor_id = await self._authenticate(token)
        task = await self._load_task(task_id)
        result = await self._payment_service.create_payment_intent(task, actor_id)
        return {
            "payment": self._payment_to_response(result["payment"]),
            "client_secret": result["client_secret"],
            "charge_policy": result["charge_policy"],
        }

    def quote_fee(self, amount: object, currency: str) -> dict[str, Any]:
        """Service fee quote for an amount."""
        return calculate_service_fee(amount, currency, self._fee_config.current()).to_dict()

    async def get_fee_config(self, token: str) -> dict[str, Any]:
        """Current fee configuration and the per-currency fee schedule (admin only)."""
        self._require_admin(await self._authenticate(token))
        config = self._fee_config.current()
        return {"config": config.to_dict(), "schedule": fee_schedule(config)}

    async def update_fee_config(self, token: str, data: dict[str, Any]) -> dict[str, Any]:
        """Versioned partial update of the fee configuration (admin only)."""
        actor_id = await self._authenticate(token)
        self._require_admin(actor_id)

        expected_version = data.get("expected_version")
        if isinstance(expected_version, bool) or not isinstance(expected_version, int):
            raise ServiceError(
                "INVALID_PAYLOAD", "expected_version must be an integer", 400, {}
            )
        changes = {key: value for key, value in data.items() if key != "expected_version"}
        config = self._fee_config.update(changes, expected_version, actor_id)
        return {"config": config.to_dict(), "schedule": fee_schedule(config)}

    # ------------------------------------------------------------------
    # Users and stats
    # ------------------------------------------------------------------

    def get_user_stats(self, user_id: str) -> dict[str, Any]:
        """Vote counters of a user; zero for users who never settled a task."""
        stats = self._store.get_user_stats(user_id)
        if stats is None:
            return {"user_id": user_id, "completed_tasks": 0, "updated_at": None}
        return stats

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        counts = self._store.count_tasks_by_status()
        return {
            "total_tasks": self._store.count_tasks(),
            "tasks_by_status": {status: counts.get(status, 0) for status in TASK_STATUSES},
        }

    def close(self) -> None:
        """Close the underlying store."""
        self._store.close()
