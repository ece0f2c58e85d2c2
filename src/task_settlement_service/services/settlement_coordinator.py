"""Settlement of completed tasks: payment capture, vote credit and receipts."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger
from task_settlement_service.services.vote_calculator import Votes, calculate_votes

if TYPE_CHECKING:
    from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
    from task_settlement_service.services.offer_ledger import OfferLedger
    from task_settlement_service.services.side_effects import SideEffectDispatcher
    from task_settlement_service.services.task_store import TaskStore


# A capture claim older than this is treated as abandoned and may be taken over
CAPTURE_CLAIM_TTL = timedelta(minutes=5)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return _iso(datetime.now(UTC))


class SettlementCoordinator:
    """
    Runs the done -> completed transition and everything it triggers.

    Once the task is committed as completed the operation only moves
    forward. A failed payment capture leaves `settlement_pending` set and
    defers vote credit until `reconcile` captures the payment. Vote credit
    is guarded by a compare-and-swap on the offer (accepted -> completed),
    so it runs exactly once per task. The payment row is claimed before the
    gateway capture call, so only one request captures at a time.
    """

    def __init__(
        self,
        store: TaskStore,
        offer_ledger: OfferLedger,
        payment_gateway_client: PaymentGatewayClient,
        dispatcher: SideEffectDispatcher,
    ) -> None:
        self._store = store
        self._offer_ledger = offer_ledger
        self._payment_gateway_client = payment_gateway_client
        self._dispatcher = dispatcher
        self._logger = get_logger(__name__)

    async def settle(
        self,
        task: dict[str, Any],
        actor_id: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """
        Confirm completion of a task that is in `done`.

        Error precedence:
        1. NO_ACCEPTED_OFFER: no accepted offer; nothing is mutated
        2. INVALID_TRANSITION: task left `done` concurrently; nothing is mutated

        Capture and receipt failures do not raise; they are returned in `warnings`.
        """
        task_id = task["task_id"]

        offer = self._offer_ledger.accepted_offer(task)
        if offer is None or offer["status"] != "accepted":
            raise ServiceError(
                "NO_ACCEPTED_OFFER",
                "Task has no accepted offer to settle",
                409,
                {"task_id": task_id},
            )

        votes = calculate_votes(task["budget"], offer["amount"])

        now = _now_iso()
        with self._store.transaction():
            changed = self._store.update_task(
                task_id,
                {"status": "completed", "completed_at": now, "settlement_pending": 1},
                expected_status="done",
            )
            if changed == 0:
                current = self._store.get_task(task_id)
                current_status = current["status"] if current is not None else task["status"]
                raise ServiceError(
                    "INVALID_TRANSITION",
                    f"Cannot transition task from '{current_status}' to 'completed'",
                    409,
                    {"from": current_status, "to": "completed"},
                )
            self._store.append_history(
                task_id, "completed", actor_id, now, reason or "Changed to completed"
            )
            self._store.update_transaction_for_task(
                task_id, {"task_status": "completed", "updated_at": now}
            )

        self._logger.info(
            "Task completed",
            extra={"task_id": task_id, "offer_id": offer["offer_id"], **votes.to_dict()},
        )

        warnings = await self._finish(task_id, offer, votes)
        return self._result(task_id, offer["offer_id"], votes, warnings)

    async def reconcile(self, task: dict[str, Any]) -> dict[str, Any]:
        """
        Retry the settlement steps that follow the completed commit.

        Captures a still-owed payment, then credits votes and runs side
        effects. For already-settled tasks only pending side effects run.
        """
        task_id = task["task_id"]
        if task["status"] != "completed":
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot reconcile settlement of task in '{task['status']}' status",
                409,
                {"from": task["status"], "to": "completed"},
            )

        offer = self._offer_ledger.accepted_offer(task)
        if offer is None:
            raise ServiceError(
                "NO_ACCEPTED_OFFER",
                "Task has no accepted offer to settle",
                409,
                {"task_id": task_id},
            )

        # Votes are deterministic, so recomputing them yields the settled values
        votes = calculate_votes(task["budget"], offer["amount"])

        if task["settlement_pending"]:
            warnings = await self._finish(task_id, offer, votes)
        else:
            warnings = await self._dispatcher.dispatch(task_id)
        return self._result(task_id, offer["offer_id"], votes, warnings)

    async def retry_pending_settlement(self, task: dict[str, Any]) -> dict[str, Any]:
        """Lazy reconciliation on read. Returns the refreshed task."""
        if task["status"] != "completed" or not task["settlement_pending"]:
            return task

        try:
            result = await self.reconcile(task)
        except ServiceError:
            self._logger.warning(
                "Pending settlement retry failed",
                extra={"task_id": task["task_id"]},
            )
            return task

        refreshed: dict[str, Any] = result["task"]
        return refreshed

    async def _finish(
        self,
        task_id: str,
        offer: dict[str, Any],
        votes: Votes,
    ) -> list[dict[str, Any]]:
        captured, capture_warning = await self._capture_payment(task_id)
        if not captured:
            return [capture_warning] if capture_warning is not None else []

        if not self._credit_votes(task_id, offer, votes):
            # Another request already credited this settlement
            return []

        return await self._dispatcher.dispatch(task_id)

    async def _capture_payment(self, task_id: str) -> tuple[bool, dict[str, Any] | None]:
        """
        Capture the task's payment at most once across concurrent callers.

        The payment is claimed (-> `capturing`) before the gateway is called;
        a caller that loses the claim leaves the outcome to the holder.

        Returns:
            (captured, warning): `captured` is True once the payment is completed
        """
        payment = self._store.get_payment_for_task(task_id)
        if payment is None:
            self._logger.warning("No payment record to capture", extra={"task_id": task_id})
            return False, {
                "error": "PAYMENT_CAPTURE_FAILED",
                "message": "No payment exists for this task; settlement is pending reconciliation",
            }

        if payment["status"] == "completed":
            return True, None

        claim = f"cap-{uuid.uuid4()}"
        now = datetime.now(UTC)
        claimed = self._store.claim_payment_capture(
            payment["payment_id"], claim, _iso(now), _iso(now - CAPTURE_CLAIM_TTL)
        )
        if claimed == 0:
            current = self._store.get_payment_for_task(task_id)
            if current is not None and current["status"] == "completed":
                return True, None
            self._logger.info(
                "Payment capture already in progress",
                extra={"task_id": task_id, "payment_id": payment["payment_id"]},
            )
            return False, None

        try:
            result = await self._payment_gateway_client.capture_intent(payment["intent_id"])
            if result.get("status") != "succeeded":
                raise ServiceError(
                    "PAYMENT_CAPTURE_FAILED",
                    f"Payment capture returned status '{result.get('status')}'",
                    402,
                    {},
                )
        except Exception as exc:  # noqa: BLE001
            self._record_capture_failure(task_id, payment, claim, exc)
            return False, {
                "error": "PAYMENT_CAPTURE_FAILED",
                "message": "Task completed but payment capture failed; it will be retried",
            }

        now_iso = _now_iso()
        with self._store.transaction():
            changed = self._store.update_payment(
                payment["payment_id"],
                {
                    "status": "completed",
                    "captured_at": now_iso,
                    "updated_at": now_iso,
                    "last_error": None,
                    "capture_claim": None,
                },
                expected_status="capturing",
                capture_claim=claim,
            )
            if changed:
                self._store.update_transaction_for_task(
                    task_id, {"payment_status": "succeeded", "updated_at": now_iso}
                )

        if not changed:
            self._logger.warning(
                "Payment capture claim expired before the result was recorded",
                extra={"task_id": task_id, "payment_id": payment["payment_id"]},
            )
            return False, None

        self._logger.info(
            "Payment captured",
            extra={"task_id": task_id, "payment_id": payment["payment_id"]},
        )
        return True, None

    def _record_capture_failure(
        self, task_id: str, payment: dict[str, Any], claim: str, exc: Exception
    ) -> None:
        self._logger.warning(
            "Payment capture failed, marking settlement pending",
            extra={"task_id": task_id, "payment_id": payment["payment_id"], "error": str(exc)},
        )
        now = _now_iso()
        with self._store.transaction():
            changed = self._store.update_payment(
                payment["payment_id"],
                {
                    "status": "failed",
                    "last_error": str(exc),
                    "updated_at": now,
                    "capture_claim": None,
                },
                expected_status="capturing",
                capture_claim=claim,
            )
            if changed:
                self._store.update_transaction_for_task(
                    task_id, {"payment_status": "failed", "updated_at": now}
                )

    def _credit_votes(self, task_id: str, offer: dict[str, Any], votes: Votes) -> bool:
        now = _now_iso()
        with self._store.transaction():
            changed = self._store.update_offer(
                offer["offer_id"],
                {
                    "status": "completed",
                    "completed_at": now,
                    "updated_at": now,
                    "poster_votes": votes.poster_votes,
                    "tasker_votes": votes.tasker_votes,
                },
                expected_status="accepted",
            )
            if changed == 0:
                return False

            task = self._store.get_task(task_id)
            if task is None:
                msg = f"Task {task_id} not found during vote credit"
                raise RuntimeError(msg)

            self._store.increment_completed_tasks(task["poster_id"], votes.poster_votes, now)
            self._store.increment_completed_tasks(offer["tasker_id"], votes.tasker_votes, now)
            self._store.update_task(task_id, {"settlement_pending": 0}, expected_status="completed")
            self._dispatcher.enqueue_receipts(task)

        self._logger.info(
            "Votes credited",
            extra={"task_id": task_id, "offer_id": offer["offer_id"], **votes.to_dict()},
        )
        return True

    def _result(
        self,
        task_id: str,
        offer_id: str,
        votes: Votes,
        warnings: list[dict[str, Any]],
    ) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        offer = self._store.get_offer(offer_id, task_id)
        if task is None or offer is None:
            msg = f"Task {task_id} not found after settlement"
            raise RuntimeError(msg)
        return {
            "task": task,
            "offer": offer,
            "transaction": self._store.get_transaction_for_task(task_id),
            "payment": self._store.get_payment_for_task(task_id),
            "votes": votes,
            "warnings": warnings,
        }
