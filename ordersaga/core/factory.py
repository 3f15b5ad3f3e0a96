"""
Wire a coordinator from configuration.

Example:
    >>> config = OrderSagaConfig.from_env()
    >>> coordinator = build_coordinator(config)
    >>> async with coordinator:
    ...     order = await coordinator.create_intent(cart, customer)
"""

from __future__ import annotations

from ordersaga.core.config import OrderSagaConfig, get_config
from ordersaga.core.coordinator import OrderSagaCoordinator
from ordersaga.core.logger import get_logger
from ordersaga.providers.factory import create_configured_gateways
from ordersaga.shipping import create_carrier
from ordersaga.storage.factory import create_storage

logger = get_logger(__name__)


def build_coordinator(config: OrderSagaConfig | None = None) -> OrderSagaCoordinator:
    """
    Build storage, gateways and carrier for a config (global config if None).

    The returned coordinator is not initialized; use it as an async context
    manager or call ``initialize()``.

    Raises:
        ConfigurationError: Unknown backend/carrier or missing credentials
    """
    config = config or get_config()
    storage = create_storage(config.storage_url)
    gateways = create_configured_gateways(config)
    carrier = create_carrier(config)
    logger.info(
        f"Coordinator built: storage={config.storage_url.split('://')[0]}, "
        f"carrier={carrier.name}, default provider={config.default_provider}"
    )
    return OrderSagaCoordinator(gateways, carrier, storage, config)
