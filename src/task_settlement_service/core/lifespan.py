"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from task_settlement_service.clients.identity_client import IdentityClient
from task_settlement_service.clients.notifier_client import NotifierClient
from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
from task_settlement_service.clients.receipt_client import ReceiptClient
from task_settlement_service.config import get_settings
from task_settlement_service.core.state import init_app_state
from task_settlement_service.logging import get_logger, setup_logging
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
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # HTTP clients for the external collaborators
    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        authenticate_path=settings.identity.authenticate_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    payment_gateway_client = PaymentGatewayClient(
        base_url=settings.payment_gateway.base_url,
        create_intent_path=settings.payment_gateway.create_intent_path,
        capture_intent_path=settings.payment_gateway.capture_intent_path,
        timeout_seconds=settings.payment_gateway.timeout_seconds,
        api_key=settings.payment_gateway.api_key,
    )
    state.payment_gateway_client = payment_gateway_client

    receipt_client = ReceiptClient(
        base_url=settings.receipts.base_url,
        generate_path=settings.receipts.generate_path,
        timeout_seconds=settings.receipts.timeout_seconds,
    )
    state.receipt_client = receipt_client

    notifier_client = NotifierClient(
        base_url=settings.notifier.base_url,
        notify_path=settings.notifier.notify_path,
        timeout_seconds=settings.notifier.timeout_seconds,
    )
    state.notifier_client = notifier_client

    # Domain components, wired bottom-up around one store
    store = TaskStore(db_path=db_path)
    fee_config = FeeConfigService(store=store)
    initial_fees = fee_config.seed(settings.fees)

    offer_ledger = OfferLedger(store=store, fee_config=fee_config)
    dispatcher = SideEffectDispatcher(
        store=store,
        receipt_client=receipt_client,
        notifier_client=notifier_client,
    )
    state.dispatcher = dispatcher
    settlement_coordinator = SettlementCoordinator(
        store=store,
        offer_ledger=offer_ledger,
        payment_gateway_client=payment_gateway_client,
        dispatcher=dispatcher,
    )
    state.settlement_coordinator = settlement_coordinator
    state_machine = TaskStateMachine(
        store=store,
        offer_ledger=offer_ledger,
        settlement_coordinator=settlement_coordinator,
    )
    deadline_evaluator = DeadlineEvaluator(
        state_machine=state_machine,
        settlement_coordinator=settlement_coordinator,
    )
    payment_service = PaymentService(
        store=store,
        offer_ledger=offer_ledger,
        fee_config=fee_config,
        payment_gateway_client=payment_gateway_client,
        charge_policy=settings.payments.charge_policy,
    )
    state.payment_service = payment_service

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
        admin_user_ids=settings.admin.user_ids,
    )
    state.task_manager = task_manager

    logger.info(
        "Service starting",
        extra={
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "identity_base_url": settings.identity.base_url,
            "payment_gateway_base_url": settings.payment_gateway.base_url,
            "charge_policy": settings.payments.charge_policy,
            "fee_config_version": initial_fees.version,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    # Close task manager (closes SQLite database)
    task_manager.close()

    # Close HTTP clients (closes httpx async clients)
    await identity_client.close()
    await payment_gateway_client.close()
    await receipt_client.close()
    await notifier_client.close()
