"""Shared test helpers: component wiring with mocked collaborators and task builders."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

from task_settlement_service.services.deadline_evaluator import DeadlineEvaluator
from task_settlement_service.services.fee_config import FeeConfigService
from task_settlement_service.services.offer_ledger import OfferLedger
from task_settlement_service.services.payment_service import PaymentService
from task_settlement_service.services.settlement_coordinator import SettlementCoordinator
from task_settlement_service.services.side_effects import SideEffectDispatcher
from task_settlement_service.services.task_manager import TaskManager
from task_settlement_service.services.task_state_machine import TaskStateMachine
from task_settlement_service.services.task_store import TaskStore

if TYPE_CHECKING:
    from task_settlement_service.config import FeesConfig

POSTER_ID = "u-poster"
TASKER_ID = "u-tasker"
OTHER_TASKER_ID = "u-tasker-2"
ADMIN_ID = "u-admin"


def token_for(user_id: str) -> str:
    """Bearer token the mocked Identity provider resolves to `user_id`."""
    return f"tok-{user_id}"


def _resolve_token(token: str) -> dict[str, Any]:
    return {"user_id": token.removeprefix("tok-")}


def make_identity_mock() -> AsyncMock:
    """Identity mock: tokens of the form tok-<user_id> resolve to that user."""
    mock_identity = AsyncMock()
    mock_identity.close = AsyncMock()
    mock_identity.authenticate = AsyncMock(side_effect=_resolve_token)
    return mock_identity


def make_payment_gateway_mock() -> AsyncMock:
    """Payment gateway mock: intents are created and captured successfully."""
    mock_gateway = AsyncMock()
    mock_gateway.close = AsyncMock()
    mock_gateway.create_charge_intent = AsyncMock(
        side_effect=lambda amount, currency, metadata: {
            "intent_id": f"pi-{uuid.uuid4()}",
            "client_secret": "cs-test-secret",
            "status": "requires_capture",
        }
    )
    mock_gateway.capture_intent = AsyncMock(return_value={"status": "succeeded"})
    return mock_gateway


def make_receipt_mock() -> AsyncMock:
    """Receipt generator mock returning one receipt per party."""
    mock_receipts = AsyncMock()
    mock_receipts.close = AsyncMock()
    mock_receipts.generate_for_completed_task = AsyncMock(
        return_value={
            "payment_receipt": {"receipt_id": "rc-payment"},
            "earnings_receipt": {"receipt_id": "rc-earnings"},
        }
    )
    return mock_receipts


def make_notifier_mock() -> AsyncMock:
    """Notifier mock accepting every notification."""
    mock_notifier = AsyncMock()
    mock_notifier.close = AsyncMock()
    mock_notifier.notify = AsyncMock(return_value=None)
    return mock_notifier


@dataclass
class Services:
    """Fully wired settlement components backed by one temporary store."""

    store: TaskStore
    fee_config: FeeConfigService
    offer_ledger: OfferLedger
    dispatcher: SideEffectDispatcher
    settlement_coordinator: SettlementCoordinator
    state_machine: TaskStateMachine
    deadline_evaluator: DeadlineEvaluator
    payment_service: PaymentService
    task_manager: TaskManager
    identity_client: AsyncMock
    payment_gateway_client: AsyncMock
    receipt_client: AsyncMock
    notifier_client: AsyncMock


def build_services(
    db_path: str,
    fees: FeesConfig,
    *,
    charge_policy: str = "offer_markup",
) -> Services:
    """Wire every component the way the application lifespan does, with mocked clients."""
    identity_client = make_identity_mock()
    payment_gateway_client = make_payment_gateway_mock()
    receipt_client = make_receipt_mock()
    notifier_client = make_notifier_mock()

    store = TaskStore(db_path=db_path)
    fee_config = FeeConfigService(store=store)
    fee_config.seed(fees)
    offer_ledger = OfferLedger(store=store, fee_config=fee_config)
    dispatcher = SideEffectDispatcher(
        store=store, receipt_client=receipt_client, notifier_client=notifier_client
    )
    settlement_coordinator = SettlementCoordinator(
        store=store,
        offer_ledger=offer_ledger,
        payment_gateway_client=payment_gateway_client,
        dispatcher=dispatcher,
    )
    state_machine = TaskStateMachine(
        store=store, offer_ledger=offer_ledger, settlement_coordinator=settlement_coordinator
    )
    deadline_evaluator = DeadlineEvaluator(
        state_machine=state_machine, settlement_coordinator=settlement_coordinator
    )
    payment_service = PaymentService(
        store=store,
        offer_ledger=offer_ledger,
        fee_config=fee_config,
        payment_gateway_client=payment_gateway_client,
        charge_policy=charge_policy,
    )
    task_manager = TaskManager(
        store=store,
        identity_client=identity_client,
        receipt_client=receipt_client,
        state_machine=state_machine,
        offer_ledger=offer_ledger,
        settlement_coordinator=settlement_coordinator,
        deadline_evaluator=deadline_evaluator,
        payment_service=payment_service,
        fee_config=fee_config,
        admin_user_ids=[ADMIN_ID],
    )
    return Services(
        store=store,
        fee_config=fee_config,
        offer_ledger=offer_ledger,
        dispatcher=dispatcher,
        settlement_coordinator=settlement_coordinator,
        state_machine=state_machine,
        deadline_evaluator=deadline_evaluator,
        payment_service=payment_service,
        task_manager=task_manager,
        identity_client=identity_client,
        payment_gateway_client=payment_gateway_client,
        receipt_client=receipt_client,
        notifier_client=notifier_client,
    )


def insert_task(
    store: TaskStore,
    *,
    task_id: str | None = None,
    poster_id: str = POSTER_ID,
    budget: str = "200",
    currency: str = "USD",
    status: str = "open",
    categories: list[str] | None = None,
    date_type: str = "flexible",
    date_start: str | None = None,
    date_end: str | None = None,
) -> dict[str, Any]:
    """Insert a task row directly and return it as stored."""
    if task_id is None:
        task_id = f"t-{uuid.uuid4()}"
    store.insert_task(
        {
            "task_id": task_id,
            "poster_id": poster_id,
            "title": "Assemble a bookshelf",
            "description": "Flat-pack bookshelf, tools provided",
            "categories": categories if categories is not None else ["Handyman, Furniture"],
            "budget": Decimal(budget),
            "currency": currency,
            "location": "Colombo",
            "date_type": date_type,
            "date_start": date_start,
            "date_end": date_end,
            "status": status,
            "created_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }
    )
    task = store.get_task(task_id)
    assert task is not None
    return task


def make_offer(
    services: Services,
    task: dict[str, Any],
    *,
    tasker_id: str = TASKER_ID,
    amount: str = "150",
) -> dict[str, Any]:
    """Create a pending offer through the ledger."""
    return services.offer_ledger.create(task, tasker_id, amount, None, "I can do it")


def setup_task_in_todo(
    services: Services,
    *,
    budget: str = "200",
    amount: str = "150",
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Create a task and accept one offer. Returns (task, offer)."""
    task = insert_task(services.store, budget=budget)
    offer = make_offer(services, task, amount=amount)
    result = services.offer_ledger.accept(task, offer["offer_id"], POSTER_ID)
    return result["task"], result["offer"]


async def setup_task_in_done(
    services: Services,
    *,
    budget: str = "200",
    amount: str = "150",
    with_payment: bool = True,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Create a task, accept an offer, optionally pay, and mark it done."""
    task, offer = setup_task_in_todo(services, budget=budget, amount=amount)
    if with_payment:
        await services.payment_service.create_payment_intent(task, POSTER_ID)
    result = await services.state_machine.mark_done(task["task_id"], TASKER_ID)
    return result["task"], offer


def config_yaml(
    db_path: str,
    log_directory: str,
    *,
    charge_policy: str = "offer_markup",
    log_level: str = "WARNING",
) -> str:
    """Complete service configuration pointing at a temporary database."""
    return f"""\
service:
  name: "task-settlement"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "{log_level}"
  directory: "{log_directory}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  authenticate_path: "/auth/verify"
  timeout_seconds: 10
payment_gateway:
  base_url: "http://localhost:8020"
  create_intent_path: "/payment-intents"
  capture_intent_path: "/payment-intents/{{intent_id}}/capture"
  timeout_seconds: 10
receipts:
  base_url: "http://localhost:8021"
  generate_path: "/receipts/tasks/{{task_id}}"
  timeout_seconds: 15
notifier:
  base_url: "http://localhost:8022"
  notify_path: "/notifications"
  timeout_seconds: 5
request:
  max_body_size: 1048576
fees:
  base_percentage: "0.10"
  min_fee_usd: "5"
  max_fee_usd: "50"
  strict_currency: false
  currency_rates:
    USD: "1"
    AUD: "1.5"
    LKR: "325"
payments:
  charge_policy: "{charge_policy}"
admin:
  user_ids:
    - "{ADMIN_ID}"
"""
