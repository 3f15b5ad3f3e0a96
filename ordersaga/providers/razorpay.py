"""
Razorpay Payment Gateway.

Endpoints:
    POST /v1/orders        create order (amount in paise), basic auth key_id:key_secret
    GET  /v1/orders/{id}   status created | attempted | paid

Signatures:
    checkout  hex HMAC-SHA256("{order_id}|{payment_id}", key_secret)
    webhook   hex HMAC-SHA256(raw_body, webhook_secret) in X-Razorpay-Signature
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from ordersaga.core.config import RazorpaySettings
from ordersaga.core.exceptions import (
    ConfigurationError,
    InvalidRequest,
    InvalidSignature,
    ProviderError,
)
from ordersaga.core.http import ProviderHttpClient
from ordersaga.core.logger import get_logger
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

logger = get_logger(__name__)

ORDER_STATUS_MAP = {
    "paid": ProviderStatus.PAID,
    "created": ProviderStatus.ACTIVE,
    "attempted": ProviderStatus.ACTIVE,
}

# payment.failed leaves the order open: the customer may retry in the same session
EVENT_STATUS_MAP = {
    "order.paid": ProviderStatus.PAID,
    "payment.captured": ProviderStatus.PAID,
    "payment.authorized": ProviderStatus.ACTIVE,
    "payment.failed": ProviderStatus.ACTIVE,
}


class RazorpayGateway(PaymentGateway):
    """Razorpay Orders API adapter"""

    provider = PaymentProvider.RAZORPAY
    supports_checkout_signature = True

    def __init__(
        self,
        settings: RazorpaySettings,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not settings.configured:
            msg = "Razorpay requires RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET"
            raise ConfigurationError(msg)

        self.settings = settings
        self.http = ProviderHttpClient(
            "razorpay",
            settings.base_url,
            auth=(settings.key_id, settings.key_secret),
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
        body = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt_id,
            "notes": {
                "order_id": receipt_id,
                "customer_email": customer.email,
                "customer_phone": customer.phone,
            },
        }
        data = await self.http.request("POST", "/v1/orders", "create_order", json=body)
        logger.info(f"Razorpay order created: {data.get('id')} for {receipt_id}")

        if not data.get("id"):
            msg = "Razorpay response is missing the order id"
            raise ProviderError(msg, service="razorpay", response=data)

        # The Checkout.js form is opened with the order id itself
        return ProviderOrder(provider_order_id=data["id"], client_session_token=data["id"], raw=data)

    async def get_order(self, provider_order_id: str) -> ProviderOrderStatus:
        data = await self.http.request("GET", f"/v1/orders/{provider_order_id}", "get_order")
        return ProviderOrderStatus(
            provider_order_id=data.get("id") or provider_order_id,
            status=ORDER_STATUS_MAP.get(str(data.get("status", "")).lower(), ProviderStatus.OTHER),
            amount=data.get("amount_paid") or data.get("amount"),
            currency=data.get("currency"),
            raw=data,
        )

    def verify_checkout_signature(
        self, provider_order_id: str, payment_id: str | None, signature: str
    ) -> None:
        if not payment_id:
            msg = "payment_id is required to verify a Razorpay checkout signature"
            raise InvalidRequest(msg)
        message = f"{provider_order_id}|{payment_id}".encode()
        expected = hmac_sha256(self.settings.key_secret, message).hex()
        if not hmac.compare_digest(expected, signature or ""):
            raise InvalidSignature("razorpay", "checkout signature mismatch")

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self.settings.webhook_secret:
            msg = "RAZORPAY_WEBHOOK_SECRET is not configured"
            raise ConfigurationError(msg)
        signature = require_signature("razorpay", header(headers, "x-razorpay-signature"))
        expected = hmac_sha256(self.settings.webhook_secret, raw_body).hex()
        if not signatures_match(expected, signature):
            raise InvalidSignature("razorpay")

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        payload = load_json(raw_body)
        event = payload.get("event")
        entities = payload.get("payload") or {}
        order = _entity(entities, "order")
        payment = _entity(entities, "payment")

        provider_order_id = order.get("id") or payment.get("order_id")
        if not event or not provider_order_id:
            msg = "Missing required fields: event and order id"
            raise InvalidRequest(msg)

        if order:
            amount = order.get("amount_paid") or order.get("amount")
            currency = order.get("currency")
        else:
            amount = payment.get("amount")
            currency = payment.get("currency")

        return WebhookEvent(
            provider=self.provider,
            provider_order_id=str(provider_order_id),
            event_type=str(event),
            status=EVENT_STATUS_MAP.get(str(event), ProviderStatus.OTHER),
            amount=int(amount) if amount is not None else None,
            currency=currency,
            payment_id=payment.get("id"),
            delivery_id=header(headers, "x-razorpay-event-id") or "",
            payload=payload,
        )

    def sign_webhook(self, raw_body: bytes) -> dict[str, str]:
        return {"x-razorpay-signature": hmac_sha256(self.settings.webhook_secret, raw_body).hex()}

    async def close(self) -> None:
        await self.http.close()


def _entity(entities: dict[str, Any], name: str) -> dict[str, Any]:
    wrapper = entities.get(name)
    if isinstance(wrapper, dict) and isinstance(wrapper.get("entity"), dict):
        return wrapper["entity"]
    return {}
