"""Service layer components."""

from task_settlement_service.services.deadline_evaluator import DeadlineEvaluator
from task_settlement_service.services.fee_config import FeeConfigService
from task_settlement_service.services.offer_ledger import OfferLedger
from task_settlement_service.services.payment_service import PaymentService
from task_settlement_service.services.settlement_coordinator import SettlementCoordinator
from task_settlement_service.services.side_effects import SideEffectDispatcher
from task_settlement_service.services.task_manager import TaskManager
from task_settlement_service.services.task_state_machine import TaskStateMachine
from task_settlement_service.services.task_store import TaskStore

__all__ = [
    "DeadlineEvaluator",
    "FeeConfigService",
    "OfferLedger",
    "PaymentService",
    "SettlementCoordinator",
    "SideEffectDispatcher",
    "TaskManager",
    "TaskStateMachine",
    "TaskStore",
]
