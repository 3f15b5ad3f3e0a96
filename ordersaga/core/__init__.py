"""Saga engine: coordinator, state machine, retry policy and configuration."""

from ordersaga.core.config import (
    CashfreeSettings,
    DelhiverySettings,
    OrderSagaConfig,
    RazorpaySettings,
    configure,
    get_config,
)
from ordersaga.core.coordinator import OrderSagaCoordinator, generate_order_id, validate_amount
from ordersaga.core.factory import build_coordinator
from ordersaga.core.retry import RetryExhausted, RetryPolicy
from ordersaga.core.state_machine import OrderStateMachine
from ordersaga.core.sweeper import ExpirySweeper

__all__ = [
    "CashfreeSettings",
    "DelhiverySettings",
    "ExpirySweeper",
    "OrderSagaConfig",
    "OrderSagaCoordinator",
    "OrderStateMachine",
    "RazorpaySettings",
    "RetryExhausted",
    "RetryPolicy",
    "build_coordinator",
    "configure",
    "generate_order_id",
    "get_config",
    "validate_amount",
]
