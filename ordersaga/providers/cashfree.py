"""
Cashfree Payment Gateway (PG API version 2022-09-01).

Endpoints:
    POST /pg/orders          create order, returns payment_session_id
    GET  /pg/orders/{id}     order status (PAID, ACTIVE, EXPIRED, TERMINATED)

Webhooks are signed with base64(HMAC-SHA256(timestamp + raw_body)) using the
webhook secret (falling back to the client secret) and carry the signature
and timestamp in ``x-webhook-signature`` / ``x-webhook-timestamp``.

Amounts travel in major units (rupees) on the wire and are converted to
minor units at this boundary.
"""

from __future__ import annotations

import base64
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import httpx

from ordersaga.core.config import CashfreeSettings
from ordersaga.core.exceptions import ConfigurationError, InvalidRequest, InvalidSignature
from ordersaga.core.http import ProviderHttpClient
from ordersaga.core.logger import get_logger
from ordersaga.providers.base import (
    PaymentGateway,
    header,
    hmac_sha256,
    load_json,
    require_signature,
    signatures_match,
    to_major_units,
    to_minor_units,
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

logger = get_logger(__name__)

ORDER_STATUS_MAP = {
    "PAID": ProviderStatus.PAID,
    "ACTIVE": ProviderStatus.ACTIVE,
    "EXPIRED": ProviderStatus.EXPIRED,
    "TERMINATED": ProviderStatus.CANCELLED,
    "CANCELLED": ProviderStatus.CANCELLED,
}

# Nested (2023+) webhooks report the payment, not the order
PAYMENT_STATUS_MAP = {
    "SUCCESS": ProviderStatus.PAID,
    "FAILED": ProviderStatus.ACTIVE,
    "USER_DROPPED": ProviderStatus.ACTIVE,
    "PENDING": ProviderStatus.ACTIVE,
}


class CashfreeGateway(PaymentGateway):
    """
    Cashfree PG adapter.

    Example:
        >>> gateway = CashfreeGateway(CashfreeSettings(client_id="...", secret_key="..."))
        >>> order = await gateway.create_order(499900, "INR", "ORDER_1", customer, items)
        >>> order.client_session_token  # payment_session_id for the JS SDK
    """

    provider = PaymentProvider.CASHFREE

    def __init__(
        self,
        settings: CashfreeSettings,
        notify_url: str = "",
        timeout: float = 10.0,
        webhook_tolerance_seconds: float = 0.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if not settings.configured:
            msg = "Cashfree requires CASHFREE_CLIENT_ID and CASHFREE_SECRET_KEY"
            raise ConfigurationError(msg)

        self.settings = settings
        self.notify_url = notify_url
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self._clock = clock
        self.http = ProviderHttpClient(
            "cashfree",
            settings.api_url,
            headers={
                "Content-Type": "application/json",
                "x-api-version": settings.api_version,
                "x-client-id": settings.client_id,
                "x-client-secret": settings.secret_key,
            },
            timeout=timeout,
            transport=transport,
        )

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt_id: str,
        customer: CustomerInfo,
        items: Sequence[OrderItem],
        return_url: str | None = None,
    ) -> ProviderOrder:
        body: dict[str, Any] = {
            "order_id": receipt_id,
            "order_amount": to_major_units(amount_minor),
            "order_currency": currency,
            "customer_details": {
                "customer_id": _customer_id(customer),
                "customer_name": customer.full_name,
                "customer_email": customer.email,
                "customer_phone": customer.phone,
            },
            "cart_details": {
                "cart_items": [
                    {
                        "item_id": item.product_id or f"item_{index}",
                        "item_name": item.product_name,
                        "item_image_url": item.image_url,
                        "item_original_unit_price": to_major_units(item.unit_price),
                        "item_discounted_unit_price": to_major_units(item.unit_price),
                        "item_quantity": item.quantity,
                        "item_currency": currency,
                    }
                    for index, item in enumerate(items)
                ]
            },
        }
        order_meta = {}
        if return_url:
            order_meta["return_url"] = return_url.replace("{order_id}", receipt_id)
        if self.notify_url:
            order_meta["notify_url"] = self.notify_url
        if order_meta:
            body["order_meta"] = order_meta

        data = await self.http.request("POST", "/pg/orders", "create_order", json=body)
        logger.info(f"Cashfree order created: {data.get('order_id', receipt_id)}")

        return ProviderOrder(
            provider_order_id=data.get("order_id") or receipt_id,
            client_session_token=data.get("payment_session_id"),
            raw=data,
        )

    async def get_order(self, provider_order_id: str) -> ProviderOrderStatus:
        data = await self.http.request("GET", f"/pg/orders/{provider_order_id}", "get_order")
        raw_status = str(data.get("order_status", "")).upper()
        return ProviderOrderStatus(
            provider_order_id=data.get("order_id") or provider_order_id,
            status=ORDER_STATUS_MAP.get(raw_status, ProviderStatus.OTHER),
            amount=to_minor_units(data.get("order_amount")),
            currency=data.get("order_currency"),
            payment_id=_payment_id(data),
            raw=data,
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        signature = require_signature("cashfree", header(headers, "x-webhook-signature"))
        timestamp = header(headers, "x-webhook-timestamp")
        if not timestamp:
            raise InvalidSignature("cashfree", "missing timestamp header")

        expected = base64.b64encode(
            hmac_sha256(self.settings.signing_secret, timestamp.encode() + raw_body)
        ).decode()
        if not signatures_match(expected, signature):
            raise InvalidSignature("cashfree")

        if self.webhook_tolerance_seconds > 0:
            self._check_freshness(timestamp)

    def _check_freshness(self, timestamp: str) -> None:
        try:
            sent_at = float(timestamp)
        except ValueError:
            raise InvalidSignature("cashfree", "malformed timestamp") from None
        if sent_at > 1e12:
            sent_at /= 1000  # milliseconds
        if abs(self._clock() - sent_at) > self.webhook_tolerance_seconds:
            raise InvalidSignature("cashfree", "timestamp outside tolerance")

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        payload = load_json(raw_body)
        data = payload.get("data")

        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            order = data["order"]
            payment = data.get("payment") or {}
            order_id = order.get("order_id")
            raw_status = str(payment.get("payment_status", "")).upper()
            status = PAYMENT_STATUS_MAP.get(raw_status, ProviderStatus.OTHER)
            amount = order.get("order_amount")
            currency = order.get("order_currency")
            payment_id = payment.get("cf_payment_id")
            event_type = payload.get("type") or f"payment.{raw_status.lower()}"
        else:
            order_id = payload.get("order_id")
            raw_status = str(payload.get("order_status") or "").upper()
            status = ORDER_STATUS_MAP.get(raw_status, ProviderStatus.OTHER)
            amount = payload.get("order_amount")
            currency = payload.get("order_currency")
            payment_id = payload.get("cf_payment_id") or _payment_id(payload)
            event_type = payload.get("type") or f"order_status.{raw_status.lower()}"

        if not order_id or not raw_status:
            msg = "Missing required fields: order_id and status"
            raise InvalidRequest(msg)

        delivery_id = header(headers, "x-idempotency-key") or (str(payment_id) if payment_id else "")

        return WebhookEvent(
            provider=self.provider,
            provider_order_id=str(order_id),
            event_type=str(event_type),
            status=status,
            amount=to_minor_units(amount),
            currency=currency,
            payment_id=str(payment_id) if payment_id else None,
            delivery_id=delivery_id,
            payload=payload,
        )

    def sign_webhook(self, raw_body: bytes, timestamp: str | None = None) -> dict[str, str]:
        """Headers Cashfree would send for this body; used by tests and local tooling."""
        timestamp = timestamp or str(int(self._clock()))
        signature = base64.b64encode(
            hmac_sha256(self.settings.signing_secret, timestamp.encode() + raw_body)
        ).decode()
        return {"x-webhook-signature": signature, "x-webhook-timestamp": timestamp}

    async def close(self) -> None:
        await self.http.close()


def _customer_id(customer: CustomerInfo) -> str:
    # Cashfree requires an alphanumeric customer id; the phone number is stable per customer
    digits = "".join(ch for ch in customer.phone if ch.isalnum())
    return f"CUST_{digits or 'GUEST'}"


def _payment_id(data: dict[str, Any]) -> str | None:
    details = data.get("payment_details")
    if isinstance(details, dict) and details.get("cf_payment_id"):
        return str(details["cf_payment_id"])
    if isinstance(details, list) and details and isinstance(details[0], dict):
        value = details[0].get("cf_payment_id")
        return str(value) if value else None
    return None
