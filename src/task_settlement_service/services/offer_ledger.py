"""Offer management and the single-winner acceptance write."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger
from task_settlement_service.services.fee_calculator import calculate_service_fee, parse_amount
from task_settlement_service.services.task_store import DuplicateOfferError

if TYPE_CHECKING:
    from task_settlement_service.services.fee_config import FeeConfigService
    from task_settlement_service.services.task_store import TaskStore

# "pending" is a legacy alias of "open" kept for old task rows
ACCEPTING_STATUSES: tuple[str, ...] = ("open", "pending")

_MAX_MESSAGE_LENGTH = 2000


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def derive_service_type(categories: list[str] | None) -> str:
    """First comma-separated token of the first category, or "Other"."""
    if not categories:
        return "Other"
    first = categories[0]
    if not isinstance(first, str):
        return "Other"
    service_type = first.split(",", 1)[0].strip()
    return service_type or "Other"


class OfferLedger:
    """Creates, accepts, rejects and withdraws offers on tasks."""

    def __init__(self, store: TaskStore, fee_config: FeeConfigService) -> None:
        self._store = store
        self._fee_config = fee_config
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_offer(self, task_id: str, offer_id: str) -> dict[str, Any]:
        """Fetch an offer of a task or raise OFFER_NOT_FOUND."""
        offer = self._store.get_offer(offer_id, task_id)
        if offer is None:
            raise ServiceError("OFFER_NOT_FOUND", "Offer not found", 404, {"offer_id": offer_id})
        return offer

    def list_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Offers on a task for the poster's decision view, newest first."""
        return self._store.list_offers_for_task(task_id)

    def list_for_tasker(self, tasker_id: str, status: str | None = None) -> list[dict[str, Any]]:
        """Offers made by a tasker, newest first."""
        return self._store.list_offers_for_tasker(tasker_id, status)

    def relevant_offer(self, task_id: str) -> dict[str, Any] | None:
        """The accepted offer if any, else the newest pending one."""
        accepted = self._store.get_offer_by_status(task_id, "accepted")
        if accepted is not None:
            return accepted
        return self._store.get_offer_by_status(task_id, "pending")

    def accepted_offer(self, task: dict[str, Any]) -> dict[str, Any] | None:
        """The task's accepted offer, resolved through accepted_offer_id when recorded."""
        offer_id = task.get("accepted_offer_id")
        if offer_id:
            offer = self._store.get_offer(offer_id, task["task_id"])
            if offer is not None and offer["status"] in ("accepted", "completed"):
                return offer
        return self._store.get_offer_by_status(task["task_id"], "accepted")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        task: dict[str, Any],
        tasker_id: str,
        amount: object,
        currency: str | None,
        message: str | None,
    ) -> dict[str, Any]:
        """
        Create a pending offer on an open task.

        Error precedence:
        1. TASK_NOT_OPEN: task is not open
        2. SELF_OFFER: tasker is the poster
        3. INVALID_AMOUNT: amount is not a positive finite number
        4. INVALID_PAYLOAD: malformed currency or message
        5. OFFER_ALREADY_EXISTS: tasker already has a pending offer
        """
        if task["status"] != "open":
            raise ServiceError(
                "TASK_NOT_OPEN",
                f"Cannot make an offer on task in '{task['status']}' status, must be 'open'",
                409,
                {"status": task["status"]},
            )

        if tasker_id == task["poster_id"]:
            raise ServiceError("SELF_OFFER", "Posters cannot make offers on their own task", 400)

        offer_amount = parse_amount(amount, "amount")

        offer_currency = task["currency"] if currency is None else currency
        if not isinstance(offer_currency, str) or len(offer_currency) != 3:
            raise ServiceError("INVALID_PAYLOAD", "currency must be a 3-letter code", 400)

        if message is not None and (
            not isinstance(message, str) or len(message) > _MAX_MESSAGE_LENGTH
        ):
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"message must be a string of at most {_MAX_MESSAGE_LENGTH} characters",
                400,
            )

        now = _now_iso()
        offer = {
            "offer_id": f"off-{uuid.uuid4()}",
            "task_id": task["task_id"],
            "tasker_id": tasker_id,
            "amount": offer_amount,
            "currency": offer_currency.upper(),
            "message": message,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        try:
            self._store.insert_offer(offer)
        except DuplicateOfferError as exc:
            raise ServiceError(
                "OFFER_ALREADY_EXISTS",
                "You already have a pending offer on this task",
                409,
            ) from exc

        self._logger.info(
            "Offer created",
            extra={"task_id": task["task_id"], "offer_id": offer["offer_id"], "tasker_id": tasker_id},
        )
        return self.get_offer(task["task_id"], offer["offer_id"])

    def accept(
        self,
        task: dict[str, Any],
        offer_id: str,
        actor_id: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """
        Accept a pending offer and assign the task to its tasker.

        Error precedence:
        1. FORBIDDEN_ACTOR: actor is not the poster
        2. TASK_NOT_OPEN: task is not open (or legacy pending)
        3. OFFER_NOT_FOUND: no such offer on this task
        4. OFFER_NOT_PENDING: offer is no longer pending
        5. TASK_NOT_OPEN: another acceptance won the race
        6. OFFER_ACCEPTANCE_FAILED: the atomic write failed; nothing was committed

        Returns:
            dict with keys: task, offer, transaction
        """
        # Re-read so a request that lost the race reports TASK_NOT_OPEN
        current = self._store.get_task(task["task_id"])
        if current is not None:
            task = current

        if actor_id != task["poster_id"]:
            raise ServiceError(
                "FORBIDDEN_ACTOR", "Only the poster can accept offers", 403, {"actor": actor_id}
            )

        if task["status"] not in ACCEPTING_STATUSES:
            raise ServiceError(
                "TASK_NOT_OPEN",
                f"Cannot accept an offer on task in '{task['status']}' status, must be 'open'",
                409,
                {"status": task["status"]},
            )

        offer = self.get_offer(task["task_id"], offer_id)
        if offer["status"] != "pending":
            raise ServiceError(
                "OFFER_NOT_PENDING",
                f"Cannot accept offer in '{offer['status']}' status, must be 'pending'",
                409,
                {"offer_status": offer["status"]},
            )

        # Fee config snapshot is read fresh for every acceptance
        fee_quote = calculate_service_fee(offer["amount"], offer["currency"], self._fee_config.current())

        task_id = task["task_id"]
        now = _now_iso()
        transaction = {
            "transaction_id": f"tx-{uuid.uuid4()}",
            "task_id": task_id,
            "poster_id": task["poster_id"],
            "tasker_id": offer["tasker_id"],
            "offer_id": offer_id,
            "amount": offer["amount"],
            "service_fee": fee_quote.service_fee,
            "total_amount": offer["amount"] + fee_quote.service_fee,
            "currency": offer["currency"],
            "payment_status": "requires_payment_method",
            "task_status": "todo",
            "service_type": derive_service_type(task["categories"]),
            "created_at": now,
            "updated_at": now,
        }

        try:
            with self._store.transaction():
                changed = self._store.update_task(
                    task_id,
                    {
                        "status": "todo",
                        "tasker_id": offer["tasker_id"],
                        "assigned_at": now,
                        "accepted_offer_id": offer_id,
                    },
                    expected_status=ACCEPTING_STATUSES,
                )
                if changed == 0:
                    raise ServiceError(
                        "TASK_NOT_OPEN",
                        "Task is no longer open; another offer was accepted",
                        409,
                        {},
                    )

                changed = self._store.update_offer(
                    offer_id,
                    {"status": "accepted", "updated_at": now},
                    expected_status="pending",
                )
                if changed == 0:
                    raise ServiceError(
                        "OFFER_NOT_PENDING", "Offer is no longer pending", 409, {}
                    )

                self._store.reject_offers(
                    task_id, ("pending",), now, exclude_offer_id=offer_id
                )
                self._store.append_history(
                    task_id, "todo", actor_id, now, reason or "Changed to todo"
                )
                self._store.insert_transaction(transaction)
        except ServiceError:
            raise
        except Exception as exc:
            self._logger.exception(
                "Offer acceptance failed", extra={"task_id": task_id, "offer_id": offer_id}
            )
            raise ServiceError(
                "OFFER_ACCEPTANCE_FAILED",
                "Offer acceptance could not be completed",
                500,
                {"cause": type(exc).__name__},
            ) from exc

        self._logger.info(
            "Offer accepted",
            extra={
                "task_id": task_id,
                "offer_id": offer_id,
                "tasker_id": offer["tasker_id"],
                "service_fee": str(fee_quote.service_fee),
                "fee_config_version": fee_quote.config_version,
            },
        )

        updated_task = self._store.get_task(task_id)
        stored_transaction = self._store.get_transaction_for_task(task_id)
        if updated_task is None or stored_transaction is None:
            msg = f"Task {task_id} not found after offer acceptance"
            raise RuntimeError(msg)
        return {
            "task": updated_task,
            "offer": self.get_offer(task_id, offer_id),
            "transaction": stored_transaction,
        }

    def reject(self, task: dict[str, Any], offer_id: str, actor_id: str) -> dict[str, Any]:
        """Reject a pending offer. Only the task's poster may reject."""
        offer = self.get_offer(task["task_id"], offer_id)
        if actor_id != task["poster_id"]:
            raise ServiceError("FORBIDDEN_ACTOR", "Only the poster can reject offers", 403)
        now = _now_iso()
        self._change_pending_offer(
            offer, {"status": "rejected", "rejected_at": now, "updated_at": now}
        )
        return self.get_offer(task["task_id"], offer_id)

    def withdraw(self, task: dict[str, Any], offer_id: str, actor_id: str) -> dict[str, Any]:
        """Withdraw a pending offer. Only the offer's tasker may withdraw."""
        offer = self.get_offer(task["task_id"], offer_id)
        if actor_id != offer["tasker_id"]:
            raise ServiceError("FORBIDDEN_ACTOR", "Only the tasker can withdraw an offer", 403)
        now = _now_iso()
        self._change_pending_offer(
            offer, {"status": "withdrawn", "withdrawn_at": now, "updated_at": now}
        )
        return self.get_offer(task["task_id"], offer_id)

    def _change_pending_offer(self, offer: dict[str, Any], updates: dict[str, Any]) -> None:
        changed = self._store.update_offer(offer["offer_id"], updates, expected_status="pending")
        if changed == 0:
            raise ServiceError(
                "OFFER_NOT_PENDING",
                f"Cannot change offer in '{offer['status']}' status, must be 'pending'",
                409,
                {"offer_status": offer["status"]},
            )
