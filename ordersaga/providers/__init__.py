"""Payment gateways: Cashfree, Razorpay and an in-memory simulator."""

from ordersaga.providers.base import PaymentGateway
from ordersaga.providers.factory import create_configured_gateways, create_gateway
from ordersaga.providers.memory import InMemoryPaymentGateway

__all__ = [
    "InMemoryPaymentGateway",
    "PaymentGateway",
    "create_configured_gateways",
    "create_gateway",
]
