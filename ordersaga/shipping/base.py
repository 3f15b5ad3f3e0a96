"""
Shipment carrier interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from ordersaga.types import OrderItem, Serviceability, ShipmentBooking, ShipmentRequest, TrackingInfo

MIN_SHIPMENT_WEIGHT_KG = 0.5


class ShipmentCarrier(ABC):
    """
    Abstract logistics carrier.

    ``create_shipment`` is a side effect with no carrier-side idempotency;
    the coordinator guarantees it is never called again once an order is
    BOOKED.
    """

    name: str = "carrier"

    @abstractmethod
    async def check_serviceability(
        self, pincode: str, weight_kg: float = 0.5, cod: bool = False
    ) -> Serviceability:
        """
        Can the carrier deliver to this pincode with this payment mode?

        Raises:
            InvalidRequest: Malformed pincode
            ProviderUnavailable: Transient carrier failure
        """

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> ShipmentBooking:
        """
        Book one shipment.

        Raises:
            ProviderError: Booking refused or carrier unavailable
        """

    @abstractmethod
    async def track(self, waybill: str) -> TrackingInfo:
        """Latest scan for a waybill."""

    async def close(self) -> None:  # noqa: B027
        pass


def shipment_weight(items: Iterable[OrderItem], per_item_kg: float = 0.5) -> float:
    """Per-unit weight times quantity, never below the carrier minimum."""
    total = sum(item.quantity * per_item_kg for item in items)
    return max(MIN_SHIPMENT_WEIGHT_KG, total)


def shipping_charges(weight_kg: float, cod: bool) -> dict[str, int]:
    """
    Rate card in minor units.

    50/80/120 rupees up to 0.5/1/2 kg, then 20 rupees per extra kg;
    COD adds 20 rupees.
    """
    if weight_kg <= 0.5:
        base = 50.0
    elif weight_kg <= 1:
        base = 80.0
    elif weight_kg <= 2:
        base = 120.0
    else:
        base = 120 + (weight_kg - 2) * 20

    base_minor = round(base * 100)
    return {
        "cod": base_minor + 2000 if cod else base_minor,
        "prepaid": base_minor,
    }
