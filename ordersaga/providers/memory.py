"""
In-process payment gateway for local development and tests.

Behaves like a real gateway from the coordinator's point of view: orders
have a provider-side status, webhooks are HMAC-signed, and failures can be
scripted.

    >>> gateway = InMemoryPaymentGateway()
    >>> order = await gateway.create_order(499900, "INR", "ORDER_1", customer, items)
    >>> gateway.mark_paid(order.provider_order_id)
    >>> body, headers = gateway.build_webhook(order.provider_order_id)
"""

from __future__ import annotations

import asyncio
import hmac
import itertools
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ordersaga.core.exceptions import InvalidRequest, InvalidSignature, ProviderRejected
from ordersaga.providers.base import (
    PaymentGateway,
    header,
    hmac_sha256,
    load_json,
    require_signature,
    signatures_match,
)
from ordersaga.types import (
    CustomerInfo,
    OrderItem,
    PaymentProvider,
    ProviderOrder,
    ProviderOrderStatus,
    ProviderStatus,
    WebhookEvent,
)

SIGNATURE_HEADER = "x-memory-signature"


@dataclass
class _SimulatedOrder:
    provider_order_id: str
    receipt_id: str
    amount: int
    currency: str
    status: ProviderStatus = ProviderStatus.ACTIVE
    paid_amount: int | None = None
    payment_id: str | None = None
    history: list[str] = field(default_factory=list)


class InMemoryPaymentGateway(PaymentGateway):
    """
    Simulated gateway.

    Attributes:
        create_calls / get_calls: Call counters for assertions
        get_order_errors: Exceptions raised, in order, by the next get_order calls
        latency: Artificial delay per call, in seconds
    """

    provider = PaymentProvider.MEMORY
    supports_checkout_signature = True

    def __init__(self, webhook_secret: str = "memory-secret", latency: float = 0.0):
        self.webhook_secret = webhook_secret
        self.latency = latency
        self.orders: dict[str, _SimulatedOrder] = {}
        self.create_calls = 0
        self.get_calls = 0
        self.get_order_errors: list[Exception] = []
        self.create_order_error: Exception | None = None
        self._ids = itertools.count(1)

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt_id: str,
        customer: CustomerInfo,
        items: Sequence[OrderItem],
        return_url: str | None = None,
    ) -> ProviderOrder:
        self.create_calls += 1
        await self._delay()
        if self.create_order_error is not None:
            raise self.create_order_error

        provider_order_id = f"mem_order_{next(self._ids)}"
        self.orders[provider_order_id] = _SimulatedOrder(
            provider_order_id=provider_order_id,
            receipt_id=receipt_id,
            amount=amount_minor,
            currency=currency,
        )
        return ProviderOrder(
            provider_order_id=provider_order_id,
            client_session_token=f"session_{provider_order_id}",
            raw={"receipt": receipt_id},
        )

    async def get_order(self, provider_order_id: str) -> ProviderOrderStatus:
        self.get_calls += 1
        await self._delay()
        if self.get_order_errors:
            raise self.get_order_errors.pop(0)

        order = self._order(provider_order_id)
        return ProviderOrderStatus(
            provider_order_id=provider_order_id,
            status=order.status,
            amount=order.paid_amount if order.paid_amount is not None else order.amount,
            currency=order.currency,
            payment_id=order.payment_id,
        )

    # Simulation controls

    def mark_paid(
        self,
        provider_order_id: str,
        amount: int | None = None,
        payment_id: str | None = None,
    ) -> None:
        order = self._order(provider_order_id)
        order.status = ProviderStatus.PAID
        order.paid_amount = amount if amount is not None else order.amount
        order.payment_id = payment_id or f"pay_{provider_order_id}"
        order.history.append("paid")

    def mark_status(self, provider_order_id: str, status: ProviderStatus) -> None:
        order = self._order(provider_order_id)
        order.status = status
        order.history.append(status.value.lower())

    def checkout_signature(self, provider_order_id: str, payment_id: str) -> str:
        return hmac_sha256(self.webhook_secret, f"{provider_order_id}|{payment_id}".encode()).hex()

    def build_webhook(
        self,
        provider_order_id: str,
        status: ProviderStatus | None = None,
        amount: int | None = None,
        event_id: str = "",
        signed: bool = True,
    ) -> tuple[bytes, dict[str, str]]:
        """Body and headers of a notification for the order's current status."""
        order = self._order(provider_order_id)
        status = status or order.status
        paid_amount = order.paid_amount if order.paid_amount is not None else order.amount
        body = json.dumps(
            {
                "order_id": provider_order_id,
                "status": status.value,
                "amount": amount if amount is not None else paid_amount,
                "currency": order.currency,
                "payment_id": order.payment_id,
                "event_id": event_id,
            }
        ).encode()
        headers = {"content-type": "application/json"}
        if signed:
            headers[SIGNATURE_HEADER] = hmac_sha256(self.webhook_secret, body).hex()
        return body, headers

    # PaymentGateway webhook/signature contract

    def verify_checkout_signature(
        self, provider_order_id: str, payment_id: str | None, signature: str
    ) -> None:
        if not payment_id:
            msg = "payment_id is required to verify a checkout signature"
            raise InvalidRequest(msg)
        expected = self.checkout_signature(provider_order_id, payment_id)
        if not hmac.compare_digest(expected, signature or ""):
            raise InvalidSignature("memory", "checkout signature mismatch")

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        signature = require_signature("memory", header(headers, SIGNATURE_HEADER))
        if not signatures_match(hmac_sha256(self.webhook_secret, raw_body).hex(), signature):
            raise InvalidSignature("memory")

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        payload = load_json(raw_body)
        order_id = payload.get("order_id")
        raw_status = payload.get("status")
        if not order_id or not raw_status:
            msg = "Missing required fields: order_id and status"
            raise InvalidRequest(msg)
        try:
            status = ProviderStatus(str(raw_status).upper())
        except ValueError:
            status = ProviderStatus.OTHER

        return WebhookEvent(
            provider=self.provider,
            provider_order_id=str(order_id),
            event_type=f"order.{status.value.lower()}",
            status=status,
            amount=payload.get("amount"),
            currency=payload.get("currency"),
            payment_id=payload.get("payment_id"),
            delivery_id=payload.get("event_id") or "",
            payload=payload,
        )

    def _order(self, provider_order_id: str) -> _SimulatedOrder:
        order = self.orders.get(provider_order_id)
        if order is None:
            msg = f"Unknown provider order {provider_order_id}"
            raise ProviderRejected(msg, service="memory", status_code=404)
        return order

    async def _delay(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            # Yield so concurrent callers interleave the way they would over a network
            await asyncio.sleep(0)
