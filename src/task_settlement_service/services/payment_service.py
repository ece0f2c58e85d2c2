"""Payment intent creation for accepted offers."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger
from task_settlement_service.services.fee_calculator import calculate_service_fee, quantize_money
from task_settlement_service.services.task_store import DuplicatePaymentError

if TYPE_CHECKING:
    from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
    from task_settlement_service.services.fee_config import FeeConfigService
    from task_settlement_service.services.offer_ledger import OfferLedger
    from task_settlement_service.services.task_store import TaskStore

CHARGE_POLICY_OFFER_MARKUP = "offer_markup"
CHARGE_POLICY_FEE_CALCULATOR = "fee_calculator"

# Offers below this amount get a flat surcharge instead of a percentage markup
_MARKUP_THRESHOLD = Decimal(50)
_FLAT_SURCHARGE = Decimal(5)
_MARKUP_RATE = Decimal("1.05")

# A payment can be set up any time after acceptance until settlement is done
_PAYABLE_STATUSES = frozenset({"todo", "done", "completed"})


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def offer_markup_charge(offer_amount: Decimal) -> Decimal:
    """Charge for the poster: offer + 5 below 50, otherwise offer x 1.05."""
    if offer_amount < _MARKUP_THRESHOLD:
        return quantize_money(offer_amount + _FLAT_SURCHARGE)
    return quantize_money(offer_amount * _MARKUP_RATE)


class PaymentService:
    """
    Creates the gateway charge intent and the matching Payment record.

    The charge sent to the gateway follows the configured charge policy.
    The recorded service fee always comes from the fee calculator on the
    task budget, so both figures are visible on the payment record.
    """

    def __init__(
        self,
        store: TaskStore,
        offer_ledger: OfferLedger,
        fee_config: FeeConfigService,
        payment_gateway_client: PaymentGatewayClient,
        charge_policy: str,
    ) -> None:
        self._store = store
        self._offer_ledger = offer_ledger
        self._fee_config = fee_config
        self._payment_gateway_client = payment_gateway_client
        self._charge_policy = charge_policy
        self._logger = get_logger(__name__)

    async def create_payment_intent(self, task: dict[str, Any], actor_id: str) -> dict[str, Any]:
        """
        Create the charge intent for a task's accepted offer.

        Error precedence:
        1. FORBIDDEN_ACTOR: actor is not the poster
        2. INVALID_TRANSITION: task has no accepted offer stage (open/cancelled/...)
        3. NO_ACCEPTED_OFFER
        4. PAYMENT_ALREADY_EXISTS: an intent already exists for the offer
        5. PAYMENT_GATEWAY_UNAVAILABLE: gateway call failed
        """
        task_id = task["task_id"]
        if actor_id != task["poster_id"]:
            raise ServiceError("FORBIDDEN_ACTOR", "Only the poster can pay for a task", 403)

        if task["status"] not in _PAYABLE_STATUSES or (
            task["status"] == "completed" and not task["settlement_pending"]
        ):
            raise ServiceError(
                "INVALID_TRANSITION",
                f"Cannot create a payment for task in '{task['status']}' status",
                409,
                {"status": task["status"]},
            )

        offer = self._offer_ledger.accepted_offer(task)
        if offer is None:
            raise ServiceError("NO_ACCEPTED_OFFER", "Task has no accepted offer", 409, {})

        if self._store.get_payment_for_task(task_id) is not None:
            raise ServiceError(
                "PAYMENT_ALREADY_EXISTS", "A payment already exists for this task", 409, {}
            )

        currency = offer["currency"]
        offer_amount: Decimal = offer["amount"]
        fee_quote = calculate_service_fee(task["budget"], task["currency"], self._fee_config.current())

        if self._charge_policy == CHARGE_POLICY_FEE_CALCULATOR:
            charge_amount = calculate_service_fee(
                offer_amount, currency, self._fee_config.current()
            ).total_amount
        else:
            charge_amount = offer_markup_charge(offer_amount)

        tasker_amount = quantize_money(offer_amount - fee_quote.service_fee)

        metadata = {
            "task_id": task_id,
            "offer_id": offer["offer_id"],
            "user_id": actor_id,
            "offer_amount": str(offer_amount),
            "charge_amount": str(charge_amount),
            "service_fee": str(fee_quote.service_fee),
            "tasker_amount": str(tasker_amount),
        }

        try:
            intent = await self._payment_gateway_client.create_charge_intent(
                str(charge_amount), currency, metadata
            )
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "PAYMENT_GATEWAY_UNAVAILABLE",
                "Payment intent creation failed",
                502,
                {},
            ) from exc

        now = _now_iso()
        payment = {
            "payment_id": f"pay-{uuid.uuid4()}",
            "task_id": task_id,
            "offer_id": offer["offer_id"],
            "poster_id": task["poster_id"],
            "tasker_id": offer["tasker_id"],
            "intent_id": intent["intent_id"],
            "amount": offer_amount,
            "charge_amount": charge_amount,
            "service_fee": fee_quote.service_fee,
            "tasker_amount": tasker_amount,
            "currency": currency,
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self._store.transaction():
                self._store.insert_payment(payment)
                self._store.update_transaction_for_task(
                    task_id, {"payment_status": "pending", "updated_at": now}
                )
        except DuplicatePaymentError as exc:
            raise ServiceError(
                "PAYMENT_ALREADY_EXISTS", "A payment already exists for this task", 409, {}
            ) from exc

        self._logger.info(
            "Payment intent created",
            extra={
                "task_id": task_id,
                "payment_id": payment["payment_id"],
                "charge_policy": self._charge_policy,
                "charge_amount": str(charge_amount),
            },
        )
        return {
            "payment": self._store.get_payment_for_task(task_id),
            "client_secret": intent.get("client_secret"),
            "charge_policy": self._charge_policy,
        }
