# ============================================
# FILE: ordersaga/__init__.py
# ============================================

"""
ordersaga - Order fulfillment saga for Indian e-commerce checkouts

Drives every order through one state machine:
- Payment intent with Cashfree or Razorpay
- Verification from the client callback or a signed webhook, applied once
- Delhivery shipment booking, at most once per verified order
- Expiry of abandoned orders, with a last provider check before giving up

Storage backends: memory, SQLite, PostgreSQL (Supabase).

Usage:
    >>> from ordersaga import OrderSagaConfig, build_coordinator
    >>>
    >>> coordinator = build_coordinator(OrderSagaConfig.from_env())
    >>> async with coordinator:
    ...     order = await coordinator.create_intent(cart, customer)
    ...     # customer pays with order.client_session_token
    ...     order = await coordinator.confirm_verification(
    ...         order.order_id, order.provider_order_id
    ...     )
"""

from ordersaga.core import (
    ExpirySweeper,
    OrderSagaConfig,
    OrderSagaCoordinator,
    OrderStateMachine,
    RetryPolicy,
    build_coordinator,
    configure,
    get_config,
)
from ordersaga.core.exceptions import (
    AmountMismatch,
    BookingUnavailable,
    ConfigurationError,
    DuplicateEvent,
    InvalidAmount,
    InvalidRequest,
    InvalidSignature,
    InvalidStateTransition,
    OrderNotFound,
    OrderSagaError,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    VerificationUnavailable,
)
from ordersaga.types import (
    CartSnapshot,
    CustomerInfo,
    Order,
    OrderEvent,
    OrderItem,
    PaymentMode,
    PaymentProvider,
    PaymentRecord,
    PaymentState,
    ShipmentState,
    WebhookAck,
)

__version__ = "0.3.0"

__all__ = [
    "AmountMismatch",
    "BookingUnavailable",
    "CartSnapshot",
    "ConfigurationError",
    "CustomerInfo",
    "DuplicateEvent",
    "ExpirySweeper",
    "InvalidAmount",
    "InvalidRequest",
    "InvalidSignature",
    "InvalidStateTransition",
    "Order",
    "OrderEvent",
    "OrderItem",
    "OrderNotFound",
    "OrderSagaConfig",
    "OrderSagaCoordinator",
    "OrderSagaError",
    "OrderStateMachine",
    "PaymentMode",
    "PaymentProvider",
    "PaymentRecord",
    "PaymentState",
    "ProviderError",
    "ProviderRejected",
    "ProviderUnavailable",
    "RetryPolicy",
    "ShipmentState",
    "VerificationUnavailable",
    "WebhookAck",
    "build_coordinator",
    "configure",
    "get_config",
]
