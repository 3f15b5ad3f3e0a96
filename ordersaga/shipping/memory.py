"""
In-process carrier for local development and tests.
"""

from __future__ import annotations

import asyncio
import itertools

from ordersaga.core.exceptions import InvalidRequest, ProviderRejected
from ordersaga.shipping.base import ShipmentCarrier, shipping_charges
from ordersaga.types import Serviceability, ShipmentBooking, ShipmentRequest, TrackingInfo, utcnow


class InMemoryCarrier(ShipmentCarrier):
    """
    Simulated carrier.

    Attributes:
        bookings: Every successful booking, in call order
        booking_calls: Number of create_shipment calls (successful or not)
        booking_error: Raised by create_shipment when set
        booking_delay: Seconds create_shipment sleeps; use with a short
            provider timeout to simulate a hung carrier
        unserviceable: Pincodes the carrier refuses
    """

    name = "memory"

    def __init__(self, booking_delay: float = 0.0):
        self.bookings: list[ShipmentRequest] = []
        self.booking_calls = 0
        self.booking_error: Exception | None = None
        self.booking_delay = booking_delay
        self.unserviceable: set[str] = set()
        self.check_errors: list[Exception] = []
        self._waybills = itertools.count(1000000001)
        self._tracking: dict[str, TrackingInfo] = {}

    async def check_serviceability(
        self, pincode: str, weight_kg: float = 0.5, cod: bool = False
    ) -> Serviceability:
        await asyncio.sleep(0)
        if self.check_errors:
            raise self.check_errors.pop(0)
        if not (len(pincode) == 6 and pincode.isdigit()):
            msg = "Invalid pincode format. Please enter a 6-digit pincode."
            raise InvalidRequest(msg, details={"pincode": pincode})
        if pincode in self.unserviceable:
            return Serviceability(
                pincode, serviceable=False, error="Sorry, we do not deliver to this pincode."
            )
        return Serviceability(
            pincode,
            serviceable=True,
            eta_days=3,
            delivery_time="2-3 business days",
            charges=shipping_charges(weight_kg, cod),
        )

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentBooking:
        self.booking_calls += 1
        await asyncio.sleep(self.booking_delay)
        if self.booking_error is not None:
            raise self.booking_error

        waybill = str(next(self._waybills))
        self.bookings.append(request)
        self._tracking[waybill] = TrackingInfo(
            waybill=waybill,
            status="Manifested",
            location="Origin facility",
            timestamp=utcnow().isoformat(),
        )
        return ShipmentBooking(waybill=waybill, carrier_order_id=request.order_reference)

    async def track(self, waybill: str) -> TrackingInfo:
        await asyncio.sleep(0)
        info = self._tracking.get(waybill)
        if info is None:
            msg = "Tracking information not found"
            raise ProviderRejected(msg, service="memory", status_code=404, waybill=waybill)
        return info
