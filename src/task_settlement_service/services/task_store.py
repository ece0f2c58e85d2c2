"""SQLite-backed storage for tasks, offers, transactions and payments."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class DuplicateOfferError(Exception):
    """Raised when a tasker already has a pending offer on the task."""


class DuplicatePaymentError(Exception):
    """Raised when a payment already exists for the accepted offer."""


class FeeConfigConflictError(Exception):
    """Raised when a fee config write is based on a stale version."""

    def __init__(self, expected_version: int, current_version: int) -> None:
        super().__init__(
            f"Fee config version conflict: expected {expected_version}, current {current_version}"
        )
        self.expected_version = expected_version
        self.current_version = current_version


_MONEY_COLUMNS = frozenset(
    {
        "budget",
        "amount",
        "service_fee",
        "total_amount",
        "charge_amount",
        "tasker_amount",
    }
)


def _to_db_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _MONEY_COLUMNS:
        return str(value)
    if column == "categories":
        return json.dumps(list(value))
    if isinstance(value, bool):
        return int(value)
    return value


def _from_db_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _MONEY_COLUMNS:
        return Decimal(value)
    if column == "categories":
        return json.loads(value)
    return value


class TaskStore:
    """
    SQLite-backed storage for the settlement engine.

    Every write runs inside `transaction()`. Nested calls join the outer
    transaction, so a composite operation commits or rolls back as one unit.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "poster_id",
        "title",
        "description",
        "categories",
        "budget",
        "currency",
        "location",
        "date_type",
        "date_start",
        "date_end",
        "status",
        "tasker_id",
        "accepted_offer_id",
        "created_at",
        "assigned_at",
        "done_at",
        "completed_at",
        "cancelled_at",
        "expired_at",
        "overdue_at",
        "settlement_pending",
    )
    _OFFER_COLUMNS: tuple[str, ...] = (
        "offer_id",
        "task_id",
        "tasker_id",
        "amount",
        "currency",
        "message",
        "status",
        "created_at",
        "updated_at",
        "rejected_at",
        "withdrawn_at",
        "completed_at",
        "poster_votes",
        "tasker_votes",
    )
    _TRANSACTION_COLUMNS: tuple[str, ...] = (
        "transaction_id",
        "task_id",
        "poster_id",
        "tasker_id",
        "offer_id",
        "amount",
        "service_fee",
        "total_amount",
        "currency",
        "payment_status",
        "task_status",
        "service_type",
        "created_at",
        "updated_at",
    )
    _PAYMENT_COLUMNS: tuple[str, ...] = (
        "payment_id",
        "task_id",
        "offer_id",
        "poster_id",
        "tasker_id",
        "intent_id",
        "amount",
        "charge_amount",
        "service_fee",
        "tasker_amount",
        "currency",
        "status",
        "created_at",
        "updated_at",
        "captured_at",
        "last_error",
        "capture_claim",
        "capture_claimed_at",
    )
    _OUTBOX_COLUMNS: tuple[str, ...] = (
        "job_id",
        "task_id",
        "kind",
        "payload",
        "status",
        "attempts",
        "last_error",
        "claim",
        "claimed_at",
        "created_at",
        "updated_at",
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._in_transaction = False
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    poster_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    categories TEXT NOT NULL DEFAULT '[]',
                    budget TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    location TEXT,
                    date_type TEXT NOT NULL DEFAULT 'flexible',
                    date_start TEXT,
                    date_end TEXT,
                    status TEXT NOT NULL DEFAULT 'open',
                    tasker_id TEXT,
                    accepted_offer_id TEXT,
                    created_at TEXT NOT NULL,
                    assigned_at TEXT,
                    done_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT,
                    expired_at TEXT,
                    overdue_at TEXT,
                    settlement_pending INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS status_history (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    status TEXT NOT NULL,
                    changed_by TEXT NOT NULL,
                    changed_at TEXT NOT NULL,
                    reason TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS offers (
                    offer_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    tasker_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    message TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    rejected_at TEXT,
                    withdrawn_at TEXT,
                    completed_at TEXT,
                    poster_votes INTEGER,
                    tasker_votes INTEGER
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_offers_one_accepted
                    ON offers(task_id) WHERE status = 'accepted';
                CREATE UNIQUE INDEX IF NOT EXISTS ux_offers_one_pending_per_tasker
                    ON offers(task_id, tasker_id) WHERE status = 'pending';

                CREATE TABLE IF NOT EXISTS transactions (
                    transaction_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL UNIQUE REFERENCES tasks(task_id),
                    poster_id TEXT NOT NULL,
                    tasker_id TEXT NOT NULL,
                    offer_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    service_fee TEXT NOT NULL,
                    total_amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    payment_status TEXT NOT NULL,
                    task_status TEXT NOT NULL,
                    service_type TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS payments (
                    payment_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    offer_id TEXT NOT NULL UNIQUE,
                    poster_id TEXT NOT NULL,
                    tasker_id TEXT NOT NULL,
                    intent_id TEXT NOT NULL UNIQUE,
                    amount TEXT NOT NULL,
                    charge_amount TEXT NOT NULL,
                    service_fee TEXT NOT NULL,
                    tasker_amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    captured_at TEXT,
                    last_error TEXT,
                    capture_claim TEXT,
                    capture_claimed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS user_stats (
                    user_id TEXT PRIMARY KEY,
                    completed_tasks INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS fee_configs (
                    version INTEGER PRIMARY KEY,
                    base_percentage TEXT NOT NULL,
                    min_fee_usd TEXT NOT NULL,
                    max_fee_usd TEXT NOT NULL,
                    currency_rates TEXT NOT NULL,
                    strict_currency INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    updated_by TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS outbox (
                    job_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    claim TEXT,
                    claimed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._db.commit()

    # ------------------------------------------------------------------
    # Transaction handling
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed writes as one SQLite transaction.

        Opens with BEGIN IMMEDIATE so concurrent writers serialize on the
        database lock. Any exception rolls everything back and propagates.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
                self._db.commit()
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            finally:
                self._in_transaction = False

    def _insert(self, table: str, columns: tuple[str, ...], data: dict[str, Any]) -> None:
        # Omitted columns fall back to their schema defaults
        present = [column for column in columns if column in data]
        values = tuple(_to_db_value(column, data[column]) for column in present)
        placeholders = ", ".join("?" for _ in present)
        query = f"INSERT INTO {table} ({', '.join(present)}) VALUES ({placeholders})"  # nosec B608
        with self.transaction():
            self._db.execute(query, values)

    def _update(
        self,
        table: str,
        columns: tuple[str, ...],
        key: tuple[str, str],
        updates: dict[str, Any],
        expected_status: str | tuple[str, ...] | None,
        conditions: dict[str, Any] | None = None,
    ) -> int:
        if len(updates) == 0:
            return 0

        conditions = conditions or {}
        if any(column not in columns for column in (*updates, *conditions)):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [_to_db_value(column, value) for column, value in updates.items()]

        query = f"UPDATE {table} SET {set_clause} WHERE {key[0]} = ?"  # nosec B608
        params.append(key[1])
        if isinstance(expected_status, str):
            query += " AND status = ?"
            params.append(expected_status)
        elif expected_status is not None:
            query += f" AND status IN ({', '.join('?' for _ in expected_status)})"
            params.extend(expected_status)
        for column, value in conditions.items():
            query += f" AND {column} = ?"
            params.append(value)

        with self.transaction():
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    @staticmethod
    def _row_to_dict(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
        return {column: _from_db_value(column, row[column]) for column in columns}

    def _select_one(
        self, columns: tuple[str, ...], query: str, params: tuple[object, ...]
    ) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_dict(row, columns)

    def _select_many(
        self, columns: tuple[str, ...], query: str, params: list[object] | tuple[object, ...]
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_dict(row, columns) for row in rows]

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        try:
            self._insert("tasks", self._TASK_COLUMNS, task_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateTaskError(
                    f"A task with task_id={task_data['task_id']} already exists"
                ) from exc
            raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        return self._select_one(
            self._TASK_COLUMNS,
            f"SELECT {', '.join(self._TASK_COLUMNS)} FROM tasks WHERE task_id = ?",  # nosec B608
            (task_id,),
        )

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        return self._update(
            "tasks", self._TASK_COLUMNS, ("task_id", task_id), updates, expected_status
        )

    def list_tasks(
        self,
        status: str | None,
        poster_id: str | None,
        tasker_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = f"SELECT {', '.join(self._TASK_COLUMNS)} FROM tasks"  # nosec B608
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if poster_id is not None:
            clauses.append("poster_id = ?")
            params.append(poster_id)
        if tasker_id is not None:
            clauses.append("tasker_id = ?")
            params.append(tasker_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, rowid DESC"

        if limit is not None or offset is not None:
            query += " LIMIT ? OFFSET ?"
            params.append(limit if limit is not None else -1)
            params.append(offset if offset is not None else 0)

        return self._select_many(self._TASK_COLUMNS, query, params)

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Status history
    # ------------------------------------------------------------------

    def append_history(
        self,
        task_id: str,
        status: str,
        changed_by: str,
        changed_at: str,
        reason: str,
    ) -> None:
        """Append one status history entry."""
        with self.transaction():
            self._db.execute(
                "INSERT INTO status_history (task_id, status, changed_by, changed_at, reason) "
                "VALUES (?, ?, ?, ?, ?)",
                (task_id, status, changed_by, changed_at, reason),
            )

    def get_history(self, task_id: str) -> list[dict[str, Any]]:
        """Status history of a task in insertion order."""
        with self._lock:
            rows = self._db.execute(
                "SELECT status, changed_by, changed_at, reason FROM status_history "
                "WHERE task_id = ? ORDER BY seq",
                (task_id,),
            ).fetchall()
        return [
            {
                "status": row["status"],
                "changed_by": row["changed_by"],
                "changed_at": row["changed_at"],
                "reason": row["reason"],
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def insert_offer(self, offer_data: dict[str, Any]) -> None:
        """Insert a pending offer."""
        try:
            self._insert("offers", self._OFFER_COLUMNS, offer_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateOfferError("This tasker already has a pending offer") from exc
            raise

    def get_offer(self, offer_id: str, task_id: str) -> dict[str, Any] | None:
        """Fetch an offer by offer_id and task_id."""
        return self._select_one(
            self._OFFER_COLUMNS,
            f"SELECT {', '.join(self._OFFER_COLUMNS)} FROM offers "  # nosec B608
            "WHERE offer_id = ? AND task_id = ?",
            (offer_id, task_id),
        )

    def update_offer(
        self,
        offer_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None,
    ) -> int:
        """Update offer columns and return the number of affected rows."""
        return self._update(
            "offers", self._OFFER_COLUMNS, ("offer_id", offer_id), updates, expected_status
        )

    def reject_offers(
        self,
        task_id: str,
        statuses: tuple[str, ...],
        rejected_at: str,
        *,
        exclude_offer_id: str | None = None,
    ) -> int:
        """Reject every offer on the task whose status is in `statuses`."""
        query = (
            "UPDATE offers SET status = 'rejected', rejected_at = ?, updated_at = ? "  # nosec B608
            f"WHERE task_id = ? AND status IN ({', '.join('?' for _ in statuses)})"
        )
        params: list[object] = [rejected_at, rejected_at, task_id, *statuses]
        if exclude_offer_id is not None:
            query += " AND offer_id != ?"
            params.append(exclude_offer_id)
        with self.transaction():
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def list_offers_for_task(
        self, task_id: str, *, include_withdrawn: bool = False
    ) -> list[dict[str, Any]]:
        """Offers on a task, newest first."""
        query = f"SELECT {', '.join(self._OFFER_COLUMNS)} FROM offers WHERE task_id = ?"  # nosec B608
        if not include_withdrawn:
            query += " AND status != 'withdrawn'"
        query += " ORDER BY created_at DESC, rowid DESC"
        return self._select_many(self._OFFER_COLUMNS, query, (task_id,))

    def list_offers_for_tasker(self, tasker_id: str, status: str | None) -> list[dict[str, Any]]:
        """Offers made by a tasker, newest first."""
        query = f"SELECT {', '.join(self._OFFER_COLUMNS)} FROM offers WHERE tasker_id = ?"  # nosec B608
        params: list[object] = [tasker_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC"
        return self._select_many(self._OFFER_COLUMNS, query, params)

    def get_offer_by_status(self, task_id: str, status: str) -> dict[str, Any] | None:
        """Newest offer on the task with the given status."""
        return self._select_one(
            self._OFFER_COLUMNS,
            f"SELECT {', '.join(self._OFFER_COLUMNS)} FROM offers "  # nosec B608
            "WHERE task_id = ? AND status = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (task_id, status),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def insert_transaction(self, transaction_data: dict[str, Any]) -> None:
        """Insert the financial transaction for an accepted offer."""
        self._insert("transactions", self._TRANSACTION_COLUMNS, transaction_data)

    def get_transaction_for_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch the transaction for a task."""
        return self._select_one(
            self._TRANSACTION_COLUMNS,
            f"SELECT {', '.join(self._TRANSACTION_COLUMNS)} FROM transactions "  # nosec B608
            "WHERE task_id = ?",
            (task_id,),
        )

    def update_transaction_for_task(self, task_id: str, updates: dict[str, Any]) -> int:
        """Update the transaction of a task and return the number of affected rows."""
        return self._update(
            "transactions", self._TRANSACTION_COLUMNS, ("task_id", task_id), updates, None
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def insert_payment(self, payment_data: dict[str, Any]) -> None:
        """Insert a payment record for an accepted offer."""
        try:
            self._insert("payments", self._PAYMENT_COLUMNS, payment_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicatePaymentError("A payment already exists for this offer") from exc
            raise

    def get_payment_for_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch the newest payment for a task."""
        return self._select_one(
            self._PAYMENT_COLUMNS,
            f"SELECT {', '.join(self._PAYMENT_COLUMNS)} FROM payments "  # nosec B608
            "WHERE task_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (task_id,),
        )

    def update_payment(
        self,
        payment_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | tuple[str, ...] | None,
        capture_claim: str | None = None,
    ) -> int:
        """
        Update payment columns and return the number of affected rows.

        With `capture_claim` the update only applies while that claim still holds the payment.
        """
        conditions = {"capture_claim": capture_claim} if capture_claim is not None else None
        return self._update(
            "payments",
            self._PAYMENT_COLUMNS,
            ("payment_id", payment_id),
            updates,
            expected_status,
            conditions,
        )

    def claim_payment_capture(
        self, payment_id: str, claim: str, claimed_at: str, stale_before: str
    ) -> int:
        """
        Move a payment to `capturing` under `claim`.

        Succeeds for `pending` and `failed` payments, and for `capturing` ones
        whose claim was taken before `stale_before`. Returns the affected row count.
        """
        with self.transaction():
            cursor = self._db.execute(
                "UPDATE payments SET status = 'capturing', capture_claim = ?, "
                "capture_claimed_at = ?, updated_at = ? "
                "WHERE payment_id = ? AND (status IN ('pending', 'failed') "
                "OR (status = 'capturing' AND capture_claimed_at < ?))",
                (claim, claimed_at, claimed_at, payment_id, stale_before),
            )
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # User stats
    # ------------------------------------------------------------------

    def increment_completed_tasks(self, user_id: str, votes: int, updated_at: str) -> None:
        """Add votes to a user's completed-task counter."""
        with self.transaction():
            self._db.execute(
                "INSERT INTO user_stats (user_id, completed_tasks, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET "
                "completed_tasks = completed_tasks + excluded.completed_tasks, "
                "updated_at = excluded.updated_at",
                (user_id, votes, updated_at),
            )

    def get_user_stats(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a user's vote counters."""
        with self._lock:
            row = self._db.execute(
                "SELECT user_id, completed_tasks, updated_at FROM user_stats WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "user_id": row["user_id"],
            "completed_tasks": int(row["completed_tasks"]),
            "updated_at": row["updated_at"],
        }

    # ------------------------------------------------------------------
    # Fee configuration
    # ------------------------------------------------------------------

    def get_latest_fee_config(self) -> dict[str, Any] | None:
        """Fetch the highest fee config version."""
        with self._lock:
            row = self._db.execute(
                "SELECT version, base_percentage, min_fee_usd, max_fee_usd, currency_rates, "
                "strict_currency, updated_at, updated_by FROM fee_configs "
                "ORDER BY version DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return {
            "version": int(row["version"]),
            "base_percentage": Decimal(row["base_percentage"]),
            "min_fee_usd": Decimal(row["min_fee_usd"]),
            "max_fee_usd": Decimal(row["max_fee_usd"]),
            "currency_rates": {
                code: Decimal(rate) for code, rate in json.loads(row["currency_rates"]).items()
            },
            "strict_currency": bool(row["strict_currency"]),
            "updated_at": row["updated_at"],
            "updated_by": row["updated_by"],
        }

    def insert_fee_config(self, config_data: dict[str, Any], *, expected_version: int) -> int:
        """
        Write a new fee config version on top of `expected_version`.

        Returns the new version number.

        Raises:
            FeeConfigConflictError: If the latest stored version is not `expected_version`
        """
        with self.transaction():
            row = self._db.execute("SELECT COALESCE(MAX(version), 0) FROM fee_configs").fetchone()
            current_version = int(row[0])
            if current_version != expected_version:
                raise FeeConfigConflictError(expected_version, current_version)

            new_version = current_version + 1
            self._db.execute(
                "INSERT INTO fee_configs (version, base_percentage, min_fee_usd, max_fee_usd, "
                "currency_rates, strict_currency, updated_at, updated_by) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    new_version,
                    str(config_data["base_percentage"]),
                    str(config_data["min_fee_usd"]),
                    str(config_data["max_fee_usd"]),
                    json.dumps(
                        {code: str(rate) for code, rate in config_data["currency_rates"].items()}
                    ),
                    int(bool(config_data["strict_currency"])),
                    config_data["updated_at"],
                    config_data["updated_by"],
                ),
            )
        return new_version

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def insert_outbox_job(self, job_data: dict[str, Any]) -> None:
        """Enqueue a side-effect job."""
        data = dict(job_data)
        data["payload"] = json.dumps(data["payload"])
        self._insert("outbox", self._OUTBOX_COLUMNS, data)

    def list_pending_jobs(
        self, task_id: str | None = None, *, stale_before: str | None = None
    ) -> list[dict[str, Any]]:
        """
        Runnable side-effect jobs in creation order.

        With `stale_before`, `running` jobs claimed before that time are included too.
        """
        query = f"SELECT {', '.join(self._OUTBOX_COLUMNS)} FROM outbox "  # nosec B608
        params: list[object] = []
        if stale_before is None:
            query += "WHERE status = 'pending'"
        else:
            query += "WHERE (status = 'pending' OR (status = 'running' AND claimed_at < ?))"
            params.append(stale_before)
        if task_id is not None:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY created_at, rowid"
        jobs = self._select_many(self._OUTBOX_COLUMNS, query, params)
        for job in jobs:
            job["payload"] = json.loads(job["payload"])
        return jobs

    def claim_outbox_job(self, job_id: str, claim: str, claimed_at: str, stale_before: str) -> int:
        """Move a pending job, or a running one with an expired claim, to `running`."""
        with self.transaction():
            cursor = self._db.execute(
                "UPDATE outbox SET status = 'running', claim = ?, claimed_at = ?, updated_at = ? "
                "WHERE job_id = ? AND (status = 'pending' "
                "OR (status = 'running' AND claimed_at < ?))",
                (claim, claimed_at, claimed_at, job_id, stale_before),
            )
        return int(cursor.rowcount)

    def update_outbox_job(
        self, job_id: str, updates: dict[str, Any], *, claim: str | None = None
    ) -> int:
        """Update a side-effect job, only while `claim` holds it when given."""
        conditions = {"claim": claim} if claim is not None else None
        return self._update(
            "outbox", self._OUTBOX_COLUMNS, ("job_id", job_id), updates, None, conditions
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
