"""HTTP clients for external collaborators."""

from task_settlement_service.clients.identity_client import IdentityClient
from task_settlement_service.clients.notifier_client import NotifierClient
from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
from task_settlement_service.clients.receipt_client import ReceiptClient

__all__ = ["IdentityClient", "NotifierClient", "PaymentGatewayClient", "ReceiptClient"]
