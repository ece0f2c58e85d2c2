"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_settlement_service.clients.identity_client import IdentityClient
    from task_settlement_service.clients.notifier_client import NotifierClient
    from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
    from task_settlement_service.clients.receipt_client import ReceiptClient
    from task_settlement_service.services.payment_service import PaymentService
    from task_settlement_service.services.settlement_coordinator import SettlementCoordinator
    from task_settlement_service.services.side_effects import SideEffectDispatcher
    from task_settlement_service.services.task_manager import TaskManager

# Client fields and the components that hold a reference to them
_CLIENT_HOLDERS: dict[str, tuple[str, ...]] = {
    "identity_client": ("task_manager",),
    "payment_gateway_client": ("settlement_coordinator", "payment_service"),
    "receipt_client": ("task_manager", "dispatcher"),
    "notifier_client": ("dispatcher",),
}


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    task_manager: TaskManager | None = None
    identity_client: IdentityClient | None = None
    payment_gateway_client: PaymentGatewayClient | None = None
    receipt_client: ReceiptClient | None = None
    notifier_client: NotifierClient | None = None
    settlement_coordinator: SettlementCoordinator | None = None
    payment_service: PaymentService | None = None
    dispatcher: SideEffectDispatcher | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep component client references in sync with AppState fields."""
        super().__setattr__(name, value)

        if value is None:
            return

        holders = _CLIENT_HOLDERS.get(name)
        if holders is not None:
            for holder_name in holders:
                holder = self.__dict__.get(holder_name)
                if holder is not None:
                    setattr(holder, f"_{name}", value)
            return

        # A component registered after its clients picks them up
        for client_name, client_holders in _CLIENT_HOLDERS.items():
            client = self.__dict__.get(client_name)
            if name in client_holders and client is not None:
                setattr(value, f"_{client_name}", client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
