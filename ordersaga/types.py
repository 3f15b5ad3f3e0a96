# ============================================
# FILE: ordersaga/types.py
# ============================================

"""
All type definitions, enums, and dataclasses

The Order is the saga's aggregate: one checkout attempt, driven through the
payment state machine and then the shipment state machine by the coordinator.
Customer and item snapshots are frozen at intent time.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class PaymentProvider(Enum):
    """Payment gateway that owns an order's payment session"""

    RAZORPAY = "razorpay"
    CASHFREE = "cashfree"
    MEMORY = "memory"
    """In-process gateway for local development and tests."""


class PaymentState(Enum):
    """
    Payment side of the order lifecycle.

    CREATED → PENDING → {VERIFIED | FAILED | EXPIRED}
    """

    CREATED = "created"
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentState.VERIFIED, PaymentState.FAILED, PaymentState.EXPIRED)


class ShipmentState(Enum):
    """Shipment side of the order lifecycle (only moves after VERIFIED)"""

    NOT_REQUESTED = "not_requested"
    BOOKED = "booked"
    BOOKING_FAILED = "booking_failed"


class PaymentMode(Enum):
    """How the customer pays the carrier, if at all"""

    PREPAID = "prepaid"
    COD = "cod"


class ProviderStatus(Enum):
    """
    Provider order status, normalized across gateways.

    Cashfree reports PAID/ACTIVE/EXPIRED/TERMINATED, Razorpay
    paid/created/attempted; anything unknown maps to OTHER.
    """

    PAID = "PAID"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    OTHER = "OTHER"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CustomerInfo:
    """Customer snapshot captured at intent time"""

    first_name: str
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "India"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CustomerInfo:
        return cls(
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
            address=data.get("address", ""),
            city=data.get("city", ""),
            state=data.get("state", ""),
            postal_code=data.get("postal_code", ""),
            country=data.get("country") or "India",
        )


@dataclass(frozen=True)
class OrderItem:
    """One cart line; unit_price is in minor currency units"""

    product_id: str
    product_name: str
    unit_price: int
    quantity: int = 1
    image_url: str = ""

    @property
    def total(self) -> int:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "unit_price": self.unit_price,
            "quantity": self.quantity,
            "image_url": self.image_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderItem:
        return cls(
            product_id=data["product_id"],
            product_name=data.get("product_name", ""),
            unit_price=data["unit_price"],
            quantity=data.get("quantity", 1),
            image_url=data.get("image_url", ""),
        )


@dataclass(frozen=True)
class CartSnapshot:
    """
    Immutable view of the cart at checkout.

    Attributes:
        items: Cart lines
        amount: Explicit total in minor units; derived from items when None
    """

    items: tuple[OrderItem, ...]
    amount: Any = None

    @property
    def items_total(self) -> int:
        return sum(item.total for item in self.items)


@dataclass
class Order:
    """
    One checkout attempt.

    Attributes:
        order_id: Opaque id generated at intent time
        amount: Integer minor currency units
        currency: ISO currency code
        payment_provider: Gateway owning the payment session
        provider_order_id: Gateway's order id, the idempotency anchor
        client_session_token: Token the client needs to open the checkout
        customer_info: Frozen customer snapshot
        items: Frozen item snapshot
        payment_state: Payment lifecycle state
        shipment_state: Shipment lifecycle state
        version: Compare-and-set counter, bumped on every write
    """

    order_id: str
    amount: int
    currency: str
    payment_provider: PaymentProvider
    provider_order_id: str
    customer_info: CustomerInfo
    items: tuple[OrderItem, ...]
    client_session_token: str | None = None
    payment_mode: PaymentMode = PaymentMode.PREPAID
    payment_state: PaymentState = PaymentState.CREATED
    shipment_state: ShipmentState = ShipmentState.NOT_REQUESTED
    payment_id: str | None = None
    waybill: str | None = None
    carrier_order_id: str | None = None
    failure_reason: str | None = None
    shipment_error: str | None = None
    shipment_attempts: int = 0
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    verified_at: datetime | None = None
    booked_at: datetime | None = None

    def evolve(self, **changes: Any) -> Order:
        """Copy with changes applied; snapshots are shared, never mutated."""
        return replace(self, **changes)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        """Convert order to dictionary for serialization."""
        return {
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "payment_provider": self.payment_provider.value,
            "provider_order_id": self.provider_order_id,
            "client_session_token": self.client_session_token,
            "customer_info": self.customer_info.to_dict(),
            "items": [item.to_dict() for item in self.items],
            "payment_mode": self.payment_mode.value,
            "payment_state": self.payment_state.value,
            "shipment_state": self.shipment_state.value,
            "payment_id": self.payment_id,
            "waybill": self.waybill,
            "carrier_order_id": self.carrier_order_id,
            "failure_reason": self.failure_reason,
            "shipment_error": self.shipment_error,
            "shipment_attempts": self.shipment_attempts,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "booked_at": self.booked_at.isoformat() if self.booked_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Order:
        """Create order from dictionary."""
        return cls(
            order_id=data["order_id"],
            amount=int(data["amount"]),
            currency=data["currency"],
            payment_provider=PaymentProvider(data["payment_provider"]),
            provider_order_id=data["provider_order_id"],
            client_session_token=data.get("client_session_token"),
            customer_info=CustomerInfo.from_dict(data.get("customer_info") or {}),
            items=tuple(OrderItem.from_dict(item) for item in data.get("items") or []),
            payment_mode=PaymentMode(data.get("payment_mode", "prepaid")),
            payment_state=PaymentState(data["payment_state"]),
            shipment_state=ShipmentState(data["shipment_state"]),
            payment_id=data.get("payment_id"),
            waybill=data.get("waybill"),
            carrier_order_id=data.get("carrier_order_id"),
            failure_reason=data.get("failure_reason"),
            shipment_error=data.get("shipment_error"),
            shipment_attempts=data.get("shipment_attempts", 0),
            version=data.get("version", 0),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
            verified_at=_parse_datetime(data.get("verified_at")),
            booked_at=_parse_datetime(data.get("booked_at")),
        )


@dataclass(frozen=True)
class OrderEvent:
    """Audit trail entry; one per transition or notable signal"""

    order_id: str
    kind: str
    from_state: str | None
    to_state: str | None
    source: str
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "kind": self.kind,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "source": self.source,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class PaymentRecord:
    """Append-only record of a verified payment"""

    order_id: str
    provider_order_id: str
    payment_id: str | None
    signature: str | None
    recorded_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "provider_order_id": self.provider_order_id,
            "payment_id": self.payment_id,
            "signature": self.signature,
            "recorded_at": self.recorded_at.isoformat(),
        }


@dataclass(frozen=True)
class DedupKey:
    """Idempotency key: provider order + event kind (+ delivery id)"""

    provider_order_id: str
    event_kind: str
    delivery_id: str = ""

    def __str__(self) -> str:
        parts = [self.provider_order_id, self.event_kind]
        if self.delivery_id:
            parts.append(self.delivery_id)
        return ":".join(parts)


@dataclass
class DedupRecord:
    """Stored marker for an applied (or in-flight) idempotency key"""

    key: DedupKey
    claimed_at: datetime
    completed_at: datetime | None = None
    outcome: str | None = None
    payload: dict[str, Any] | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True)
class ProviderOrder:
    """Result of creating a payment session with a gateway"""

    provider_order_id: str
    client_session_token: str | None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderOrderStatus:
    """Gateway's view of an order; amount in minor units"""

    provider_order_id: str
    status: ProviderStatus
    amount: int | None
    currency: str | None
    payment_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEvent:
    """Authenticated, parsed provider notification"""

    provider: PaymentProvider
    provider_order_id: str
    event_type: str
    status: ProviderStatus
    amount: int | None = None
    currency: str | None = None
    payment_id: str | None = None
    delivery_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookAck:
    """
    What the webhook endpoint reports back to the provider.

    ``shipment_pending`` is set when this delivery verified the payment and
    booking was left to the caller (e.g. a background task).
    """

    accepted: bool
    duplicate: bool = False
    order_id: str | None = None
    payment_state: PaymentState | None = None
    message: str = ""
    shipment_pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.accepted,
            "duplicate": self.duplicate,
            "order_id": self.order_id,
            "payment_state": self.payment_state.value if self.payment_state else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class Serviceability:
    """Carrier answer for a pincode; charges in minor units"""

    pincode: str
    serviceable: bool
    eta_days: int | None = None
    delivery_time: str | None = None
    charges: dict[str, int] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pincode": self.pincode,
            "serviceable": self.serviceable,
            "eta_days": self.eta_days,
            "delivery_time": self.delivery_time,
            "charges": self.charges,
            "error": self.error,
        }


@dataclass(frozen=True)
class ShipmentRequest:
    """Everything the carrier needs to book one order"""

    order_reference: str
    customer: CustomerInfo
    items: tuple[OrderItem, ...]
    payment_mode: PaymentMode
    total_amount: int
    weight_kg: float
    currency: str = "INR"

    @property
    def quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def products_desc(self) -> str:
        return ", ".join(f"{item.product_name} (Qty: {item.quantity})" for item in self.items)


@dataclass(frozen=True)
class ShipmentBooking:
    """Carrier confirmation of a booked shipment"""

    waybill: str
    carrier_order_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TrackingInfo:
    waybill: str
    status: str
    location: str
    timestamp: str
    remarks: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "waybill": self.waybill,
            "status": self.status,
            "location": self.location,
            "timestamp": self.timestamp,
            "remarks": self.remarks,
        }


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse datetime from string or return as-is."""
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value
