"""Outbox-backed delivery of settlement side effects."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger

if TYPE_CHECKING:
    from task_settlement_service.clients.notifier_client import NotifierClient
    from task_settlement_service.clients.receipt_client import ReceiptClient
    from task_settlement_service.services.task_store import TaskStore

JOB_GENERATE_RECEIPTS = "generate_receipts"
JOB_NOTIFY_RECEIPT_READY = "notify_receipt_ready"

EVENT_RECEIPT_READY = "receipt_ready"

# A running job whose claim is older than this is picked up again
JOB_CLAIM_TTL = timedelta(minutes=5)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return _iso(datetime.now(UTC))


class SideEffectDispatcher:
    """
    Hands receipt generation and notifications off through the outbox table.

    Jobs are written in the same store transaction as the settlement write
    that causes them, then attempted inline. A failed job stays pending and
    is retried by the next `dispatch` for that task.
    """

    def __init__(
        self,
        store: TaskStore,
        receipt_client: ReceiptClient,
        notifier_client: NotifierClient,
    ) -> None:
        self._store = store
        self._receipt_client = receipt_client
        self._notifier_client = notifier_client
        self._logger = get_logger(__name__)

    def enqueue(self, task_id: str, kind: str, payload: dict[str, Any]) -> str:
        """Write a pending job. Joins the caller's store transaction if one is open."""
        now = _now_iso()
        job_id = f"job-{uuid.uuid4()}"
        self._store.insert_outbox_job(
            {
                "job_id": job_id,
                "task_id": task_id,
                "kind": kind,
                "payload": payload,
                "status": "pending",
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
        )
        return job_id

    def enqueue_receipts(self, task: dict[str, Any]) -> str:
        """Queue receipt generation for a settled task."""
        return self.enqueue(
            task["task_id"],
            JOB_GENERATE_RECEIPTS,
            {"poster_id": task["poster_id"], "tasker_id": task["tasker_id"]},
        )

    async def dispatch(self, task_id: str) -> list[dict[str, Any]]:
        """
        Run every pending job of a task, in creation order.

        Each job is claimed (-> `running`) before it runs; jobs claimed by a
        concurrent dispatch are skipped.

        Returns:
            Warnings for failed receipt generation. Notification failures
            are logged but never reported.
        """
        warnings: list[dict[str, Any]] = []
        attempted: set[str] = set()
        # Notification jobs created by a receipt job are picked up on the next pass
        while True:
            stale_before = _iso(datetime.now(UTC) - JOB_CLAIM_TTL)
            jobs = [
                job
                for job in self._store.list_pending_jobs(task_id, stale_before=stale_before)
                if job["job_id"] not in attempted
            ]
            if not jobs:
                break
            for job in jobs:
                attempted.add(job["job_id"])
                claim = self._claim(job)
                if claim is None:
                    continue
                warning = await self._run(job, claim)
                if warning is not None:
                    warnings.append(warning)
        return warnings

    def _claim(self, job: dict[str, Any]) -> str | None:
        claim = f"claim-{uuid.uuid4()}"
        now = datetime.now(UTC)
        claimed = self._store.claim_outbox_job(
            job["job_id"], claim, _iso(now), _iso(now - JOB_CLAIM_TTL)
        )
        if claimed == 0:
            self._logger.info(
                "Side effect already claimed, skipping",
                extra={"task_id": job["task_id"], "job_id": job["job_id"]},
            )
            return None
        return claim

    async def _run(self, job: dict[str, Any], claim: str) -> dict[str, Any] | None:
        try:
            if job["kind"] == JOB_GENERATE_RECEIPTS:
                await self._generate_receipts(job, claim)
            elif job["kind"] == JOB_NOTIFY_RECEIPT_READY:
                await self._notify(job, claim)
            else:
                msg = f"Unknown outbox job kind: {job['kind']}"
                raise ValueError(msg)
        except (ServiceError, ValueError) as exc:
            self._mark_failed(job, claim, exc)
            if job["kind"] == JOB_GENERATE_RECEIPTS:
                return {
                    "error": "RECEIPT_GENERATION_FAILED",
                    "message": "Task completed but receipts could not be generated yet",
                }
        return None

    async def _generate_receipts(self, job: dict[str, Any], claim: str) -> None:
        task_id = job["task_id"]
        payload = job["payload"]
        try:
            receipts = await self._receipt_client.generate_for_completed_task(task_id)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "RECEIPT_GENERATION_FAILED",
                "Receipt generation failed",
                502,
                {},
            ) from exc

        with self._store.transaction():
            changed = self._complete(job, claim)
            if changed:
                for recipient_id, receipt_key in (
                    (payload["poster_id"], "payment_receipt"),
                    (payload["tasker_id"], "earnings_receipt"),
                ):
                    self.enqueue(
                        task_id,
                        JOB_NOTIFY_RECEIPT_READY,
                        {
                            "recipient_id": recipient_id,
                            "task_id": task_id,
                            "receipt": receipts.get(receipt_key),
                        },
                    )

        if changed:
            self._logger.info("Receipts generated", extra={"task_id": task_id})

    async def _notify(self, job: dict[str, Any], claim: str) -> None:
        payload = job["payload"]
        try:
            await self._notifier_client.notify(
                EVENT_RECEIPT_READY,
                payload["recipient_id"],
                {"task_id": payload["task_id"], "receipt": payload.get("receipt")},
            )
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError("NOTIFIER_UNAVAILABLE", "Notification failed", 502, {}) from exc

        self._complete(job, claim)

    def _complete(self, job: dict[str, Any], claim: str) -> bool:
        changed = self._store.update_outbox_job(
            job["job_id"],
            {
                "status": "done",
                "attempts": job["attempts"] + 1,
                "claim": None,
                "updated_at": _now_iso(),
            },
            claim=claim,
        )
        if changed == 0:
            self._logger.warning(
                "Side effect claim expired before completion was recorded",
                extra={"task_id": job["task_id"], "job_id": job["job_id"]},
            )
        return changed > 0

    def _mark_failed(self, job: dict[str, Any], claim: str, exc: Exception) -> None:
        self._logger.warning(
            "Side effect failed, leaving job pending",
            extra={
                "task_id": job["task_id"],
                "job_id": job["job_id"],
                "kind": job["kind"],
                "error": str(exc),
            },
        )
        self._store.update_outbox_job(
            job["job_id"],
            {
                "status": "pending",
                "attempts": job["attempts"] + 1,
                "last_error": str(exc),
                "claim": None,
                "updated_at": _now_iso(),
            },
            claim=claim,
        )
