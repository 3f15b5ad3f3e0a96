"""Shipment carriers: Delhivery and an in-memory simulator."""

from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.exceptions import ConfigurationError
from ordersaga.shipping.base import ShipmentCarrier, shipment_weight, shipping_charges
from ordersaga.shipping.memory import InMemoryCarrier


def create_carrier(config: OrderSagaConfig, **kwargs) -> ShipmentCarrier:
    """Build the configured carrier ("delhivery" or "memory")."""
    if config.carrier == "memory":
        return InMemoryCarrier(**kwargs)
    if config.carrier == "delhivery":
        from ordersaga.shipping.delhivery import DelhiveryCarrier

        return DelhiveryCarrier(config.delhivery, timeout=config.provider_timeout_seconds, **kwargs)
    msg = f"Unknown carrier: {config.carrier}"
    raise ConfigurationError(msg)


__all__ = [
    "InMemoryCarrier",
    "ShipmentCarrier",
    "create_carrier",
    "shipment_weight",
    "shipping_charges",
]
