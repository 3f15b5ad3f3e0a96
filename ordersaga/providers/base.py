"""
Payment gateway interface.

One polymorphic gateway replaces per-provider route handlers: the
coordinator talks to ``PaymentGateway`` only, and each provider maps its
own wire format onto ``ProviderOrder``, ``ProviderOrderStatus`` and
``WebhookEvent``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

from ordersaga.core.exceptions import InvalidRequest, InvalidSignature
from ordersaga.types import (
    CustomerInfo,
    OrderItem,
    PaymentProvider,
    ProviderOrder,
    ProviderOrderStatus,
    WebhookEvent,
)


class PaymentGateway(ABC):
    """
    Abstract payment gateway.

    Attributes:
        provider: Which gateway this is
        supports_checkout_signature: Whether the client receives a signature
            after checkout that the server can verify (Razorpay)
    """

    provider: PaymentProvider
    supports_checkout_signature: bool = False

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt_id: str,
        customer: CustomerInfo,
        items: Sequence[OrderItem],
        return_url: str | None = None,
    ) -> ProviderOrder:
        """
        Create a payment session.

        Args:
            amount_minor: Amount in minor currency units
            currency: ISO currency code
            receipt_id: Our order_id, echoed back by the provider
            customer: Customer snapshot
            items: Item snapshot
            return_url: Where to send the customer after paying

        Raises:
            ProviderError: Any failure; intent creation is never retried
        """

    @abstractmethod
    async def get_order(self, provider_order_id: str) -> ProviderOrderStatus:
        """
        Fetch the provider's view of an order.

        Raises:
            ProviderUnavailable: Transient failure, safe to retry
            ProviderRejected: Unknown order or bad credentials
        """

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """
        Authenticate a webhook over its raw body.

        Raises:
            InvalidSignature: Missing or wrong signature
        """

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """
        Parse an authenticated webhook.

        Raises:
            InvalidRequest: Body is not JSON or lacks order id/status
        """

    def verify_checkout_signature(
        self, provider_order_id: str, payment_id: str | None, signature: str
    ) -> None:
        """
        Verify the signature handed to the client after checkout.

        Raises:
            InvalidSignature: Signature does not match
        """
        msg = f"{self.provider.value} does not issue checkout signatures"
        raise InvalidRequest(msg)

    async def close(self) -> None:  # noqa: B027
        """Release HTTP connections."""

    @property
    def name(self) -> str:
        return self.provider.value


def hmac_sha256(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode(), message, hashlib.sha256).digest()


def signatures_match(expected: str, received: str | None) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode(), received.strip().encode())


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup over any mapping."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def load_json(raw_body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        msg = "Webhook body is not valid JSON"
        raise InvalidRequest(msg) from e
    if not isinstance(data, dict):
        msg = "Webhook body must be a JSON object"
        raise InvalidRequest(msg)
    return data


def to_minor_units(value: Any) -> int | None:
    """Major units (e.g. rupees, possibly "499.00") to minor units."""
    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except InvalidOperation:
        return None


def to_major_units(amount_minor: int) -> float:
    return float(Decimal(amount_minor) / 100)


def require_signature(provider: str, signature: str | None) -> str:
    if not signature:
        raise InvalidSignature(provider, "missing signature header")
    return signature
