"""
Delhivery carrier adapter.

Endpoints (auth header ``Authorization: Token <api key>``):
    GET  /c/api/pin-codes/json/?filter_codes=<pin>   serviceability
    POST /api/cmu/create.json                         booking, form-encoded format=json&data=<json>
    GET  /api/v1/packages/json/?waybill=<wb>          tracking
"""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

from ordersaga.core.config import DelhiverySettings
from ordersaga.core.exceptions import (
    ConfigurationError,
    InvalidRequest,
    ProviderError,
    ProviderRejected,
)
from ordersaga.core.http import ProviderHttpClient
from ordersaga.core.logger import get_logger
from ordersaga.providers.base import to_major_units
from ordersaga.shipping.base import ShipmentCarrier, shipping_charges
from ordersaga.types import (
    PaymentMode,
    Serviceability,
    ShipmentBooking,
    ShipmentRequest,
    TrackingInfo,
    utcnow,
)

logger = get_logger(__name__)

PINCODE_PATTERN = re.compile(r"^\d{6}$")

METRO_STATES = ("DL", "MH", "KA", "TN", "GJ")
METRO_CITIES = ("delhi", "mumbai", "bangalore", "chennai")
TIER_TWO_STATES = ("RJ", "UP", "MP", "WB", "AP", "TS")


class DelhiveryCarrier(ShipmentCarrier):
    """Delhivery express API"""

    name = "delhivery"

    def __init__(
        self,
        settings: DelhiverySettings,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not settings.api_key:
            msg = "Delhivery API key not configured (DELHIVERY_API_KEY)"
            raise ConfigurationError(msg)

        self.settings = settings
        self.http = ProviderHttpClient(
            "delhivery",
            settings.base_url,
            headers={"Authorization": f"Token {settings.api_key}"},
            timeout=timeout,
            transport=transport,
        )

    async def check_serviceability(
        self, pincode: str, weight_kg: float = 0.5, cod: bool = False
    ) -> Serviceability:
        pincode = str(pincode).strip()
        if not PINCODE_PATTERN.match(pincode):
            msg = "Invalid pincode format. Please enter a 6-digit pincode."
            raise InvalidRequest(msg, details={"pincode": pincode})

        data = await self.http.request(
            "GET",
            "/c/api/pin-codes/json/",
            "check_serviceability",
            params={"token": self.settings.api_key, "filter_codes": pincode},
        )

        codes = data.get("delivery_codes") or []
        if not codes:
            return Serviceability(
                pincode, serviceable=False, error="Sorry, we do not deliver to this pincode."
            )

        postal = codes[0].get("postal_code") or {}
        cod_available = postal.get("cod") == "Y"
        prepaid_available = postal.get("pre_paid") == "Y"

        max_weight = _as_float(postal.get("max_weight"))
        if max_weight > 0 and weight_kg > max_weight:
            return Serviceability(
                pincode,
                serviceable=False,
                error=f"Weight limit exceeded. Maximum allowed weight: {max_weight:g}kg",
            )

        if cod and not cod_available:
            return Serviceability(
                pincode,
                serviceable=False,
                error="COD not available for this pincode. Please try prepaid payment.",
            )
        if not cod and not prepaid_available:
            return Serviceability(
                pincode,
                serviceable=False,
                error="Prepaid delivery not available for this pincode. Please try COD.",
            )

        delivery_time = estimate_delivery_time(postal)
        if delivery_time.startswith("Delivery suspended"):
            return Serviceability(pincode, serviceable=False, delivery_time=delivery_time, error=delivery_time)

        return Serviceability(
            pincode,
            serviceable=True,
            eta_days=_max_days(delivery_time),
            delivery_time=delivery_time,
            charges=shipping_charges(weight_kg, cod),
        )

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentBooking:
        if not self.settings.pickup_location:
            msg = "Delhivery pickup location not configured (DELHIVERY_PICKUP_LOCATION)"
            raise ConfigurationError(msg)

        payload = {
            "shipments": [self._shipment(request)],
            "pickup_location": {"name": self.settings.pickup_location},
        }
        data = await self.http.request(
            "POST",
            "/api/cmu/create.json",
            "create_shipment",
            data={"format": "json", "data": json.dumps(payload)},
        )

        if not data.get("success"):
            msg = data.get("error") or data.get("rmk") or data.get("message") or "Failed to create order"
            raise ProviderRejected(str(msg), service="delhivery", order=request.order_reference)

        shipment = (data.get("packages") or data.get("shipments") or [{}])[0]
        waybill = shipment.get("waybill") or shipment.get("awb")
        if not waybill:
            msg = "Delhivery accepted the shipment but returned no waybill"
            raise ProviderError(msg, service="delhivery", order=request.order_reference)

        logger.info(f"Delhivery shipment booked: waybill={waybill} order={request.order_reference}")
        return ShipmentBooking(
            waybill=str(waybill),
            carrier_order_id=str(shipment.get("refnum") or shipment.get("order") or request.order_reference),
            raw=data,
        )

    def _shipment(self, request: ShipmentRequest) -> dict[str, Any]:
        customer = request.customer
        cod = request.payment_mode == PaymentMode.COD
        total = to_major_units(request.total_amount)
        return {
            "name": customer.full_name,
            "add": customer.address,
            "pin": customer.postal_code,
            "city": customer.city,
            "state": customer.state,
            "country": customer.country or "India",
            "phone": customer.phone,
            "order": request.order_reference,
            "payment_mode": "COD" if cod else "Prepaid",
            "products_desc": request.products_desc,
            "cod_amount": total if cod else "",
            "total_amount": total,
            "seller_add": self.settings.seller_address,
            "seller_name": self.settings.seller_name,
            "seller_inv": f"INV-{request.order_reference}",
            "quantity": request.quantity,
            "weight": request.weight_kg,
            "shipment_width": "100",
            "shipment_height": "100",
            "shipping_mode": "Surface",
            "address_type": "home",
            "order_date": utcnow().strftime("%Y-%m-%d %H:%M:%S"),
            "fragile_shipment": False,
            "dangerous_good": False,
            "plastic_packaging": False,
        }

    async def track(self, waybill: str) -> TrackingInfo:
        data = await self.http.request(
            "GET",
            "/api/v1/packages/json/",
            "track",
            params={"token": self.settings.api_key, "waybill": waybill},
        )

        entries = data.get("data") or []
        if entries:
            entry = entries[0]
            return TrackingInfo(
                waybill=str(entry.get("waybill") or waybill),
                status=str(entry.get("status") or "Unknown"),
                location=entry.get("location") or "In Transit",
                timestamp=str(entry.get("timestamp") or ""),
                remarks=entry.get("remarks"),
            )

        # Production API shape: ShipmentData[].Shipment.Status
        shipments = data.get("ShipmentData") or []
        if shipments:
            shipment = shipments[0].get("Shipment") or {}
            status = shipment.get("Status") or {}
            return TrackingInfo(
                waybill=str(shipment.get("AWB") or waybill),
                status=str(status.get("Status") or "Unknown"),
                location=status.get("StatusLocation") or "In Transit",
                timestamp=str(status.get("StatusDateTime") or ""),
                remarks=status.get("Instructions"),
            )

        msg = "Tracking information not found"
        raise ProviderRejected(msg, service="delhivery", status_code=404, waybill=waybill)

    async def close(self) -> None:
        await self.http.close()


def estimate_delivery_time(postal: dict[str, Any]) -> str:
    """Human delivery estimate from a Delhivery postal_code record."""
    if postal.get("is_oda") == "Y":
        return "5-7 business days (Remote area)"

    remarks = str(postal.get("remarks") or "").lower()
    if "embargo" in remarks:
        return "Delivery suspended (Embargo area)"
    if "restricted" in remarks:
        return "4-6 business days (Restricted area)"

    zone = postal.get("covid_zone")
    if zone == "R":
        return "3-5 business days (Red zone)"
    if zone == "O":
        return "2-4 business days (Orange zone)"

    sunday = bool(postal.get("sun_tat"))
    state_code = postal.get("state_code")
    city = str(postal.get("city") or "").lower()

    if state_code in METRO_STATES or any(metro in city for metro in METRO_CITIES):
        return "1-2 business days" if sunday else "2-3 business days"
    if state_code in TIER_TWO_STATES:
        return "2-3 business days" if sunday else "3-4 business days"
    return "3-4 business days" if sunday else "4-5 business days"


def _max_days(delivery_time: str) -> int | None:
    match = re.match(r"(\d+)-(\d+)", delivery_time)
    return int(match.group(2)) if match else None


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
