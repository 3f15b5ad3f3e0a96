"""
Pytest configuration and shared fixtures for order saga tests

Everything runs in-process: the in-memory gateway and carrier stand in for
Cashfree/Razorpay and Delhivery, and retries never actually sleep.
"""

import pytest

from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.coordinator import OrderSagaCoordinator
from ordersaga.core.logger import reset_logger
from ordersaga.core.retry import RetryPolicy
from ordersaga.providers.memory import InMemoryPaymentGateway
from ordersaga.shipping.memory import InMemoryCarrier
from ordersaga.storage.memory import create_memory_bundle
from ordersaga.types import CartSnapshot, CustomerInfo, OrderItem, PaymentProvider

# ============================================
# AUTO-USE FIXTURES
# ============================================


@pytest.fixture(autouse=True)
def _default_logger():
    """Tests that install a custom logger never leak it into other tests."""
    yield
    reset_logger()


# ============================================
# DOMAIN FIXTURES
# ============================================


@pytest.fixture
def customer() -> CustomerInfo:
    return CustomerInfo(
        first_name="Asha",
        last_name="Rao",
        email="asha@example.com",
        phone="9876543210",
        address="12 MG Road",
        city="Bengaluru",
        state="KA",
        postal_code="560001",
    )


@pytest.fixture
def items() -> tuple[OrderItem, ...]:
    return (
        OrderItem(product_id="saree-001", product_name="Silk Saree", unit_price=449900),
        OrderItem(product_id="blouse-002", product_name="Blouse Piece", unit_price=25000, quantity=2),
    )


@pytest.fixture
def cart(items) -> CartSnapshot:
    # 449900 + 2 * 25000
    return CartSnapshot(items=items)


# ============================================
# SAGA FIXTURES
# ============================================


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def config() -> OrderSagaConfig:
    return OrderSagaConfig(
        default_provider="memory",
        carrier="memory",
        provider_timeout_seconds=1.0,
        payment_expiry_seconds=1800,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(base_delay=0.5, max_delay=8.0, max_attempts=4, timeout=1.0, sleep=_no_sleep)


@pytest.fixture
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway()


@pytest.fixture
def carrier() -> InMemoryCarrier:
    return InMemoryCarrier()


@pytest.fixture
def storage():
    return create_memory_bundle()


@pytest.fixture
def coordinator(gateway, carrier, storage, config, retry_policy) -> OrderSagaCoordinator:
    return OrderSagaCoordinator(
        {PaymentProvider.MEMORY: gateway},
        carrier,
        storage,
        config,
        retry_policy=retry_policy,
    )
