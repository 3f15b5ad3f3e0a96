"""
Tests for the Razorpay gateway and the gateway factory.
"""

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from ordersaga.core.config import CashfreeSettings, OrderSagaConfig, RazorpaySettings
from ordersaga.core.exceptions import (
    ConfigurationError,
    InvalidRequest,
    InvalidSignature,
    ProviderError,
)
from ordersaga.providers.cashfree import CashfreeGateway
from ordersaga.providers.factory import create_configured_gateways, create_gateway
from ordersaga.providers.memory import InMemoryPaymentGateway
from ordersaga.providers.razorpay import RazorpayGateway
from ordersaga.types import PaymentProvider, ProviderStatus

SETTINGS = RazorpaySettings(
    key_id="rzp_test_key", key_secret="rzp_secret", webhook_secret="rzp_wh", base_url="https://rzp.test"
)


def _gateway(handler=None, settings=SETTINGS):
    return RazorpayGateway(settings, transport=httpx.MockTransport(handler) if handler else None)


def _hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _order_paid(order_id="order_RZP1", amount_paid=499900, payment_id="pay_RZP1"):
    return {
        "event": "order.paid",
        "payload": {
            "order": {"entity": {"id": order_id, "amount": 499900, "amount_paid": amount_paid, "currency": "INR"}},
            "payment": {"entity": {"id": payment_id, "order_id": order_id, "amount": amount_paid}},
        },
    }


class TestRazorpayOrders:
    """Tests for create_order and get_order"""

    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            RazorpayGateway(RazorpaySettings(key_id="rzp_test_key"))

    @pytest.mark.asyncio
    async def test_create_order_sends_paise_with_basic_auth(self, customer, items):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "order_RZP1", "status": "created", "amount": 499900})

        order = await _gateway(handler).create_order(499900, "INR", "ORDER_1", customer, items)

        expected_auth = base64.b64encode(b"rzp_test_key:rzp_secret").decode()
        assert seen["auth"] == f"Basic {expected_auth}"
        assert seen["body"]["amount"] == 499900
        assert seen["body"]["receipt"] == "ORDER_1"
        assert seen["body"]["notes"]["customer_email"] == "asha@example.com"
        assert order.provider_order_id == "order_RZP1"
        assert order.client_session_token == "order_RZP1"

    @pytest.mark.asyncio
    async def test_create_order_without_id(self, customer, items):
        def handler(request):
            return httpx.Response(200, json={"status": "created"})

        with pytest.raises(ProviderError):
            await _gateway(handler).create_order(499900, "INR", "ORDER_1", customer, items)

    @pytest.mark.asyncio
    async def test_get_order(self):
        def handler(request):
            assert request.url.path == "/v1/orders/order_RZP1"
            return httpx.Response(
                200, json={"id": "order_RZP1", "status": "paid", "amount": 499900, "amount_paid": 499900, "currency": "INR"}
            )

        status = await _gateway(handler).get_order("order_RZP1")

        assert status.status == ProviderStatus.PAID
        assert status.amount == 499900

    @pytest.mark.asyncio
    async def test_attempted_order_is_still_active(self):
        def handler(request):
            return httpx.Response(200, json={"id": "order_RZP1", "status": "attempted", "amount": 499900, "amount_paid": 0})

        status = await _gateway(handler).get_order("order_RZP1")

        assert status.status == ProviderStatus.ACTIVE
        assert status.amount == 499900


class TestRazorpaySignatures:
    """Tests for checkout and webhook signatures"""

    def test_checkout_signature(self):
        signature = _hex("rzp_secret", b"order_RZP1|pay_RZP1")

        _gateway().verify_checkout_signature("order_RZP1", "pay_RZP1", signature)

    def test_checkout_signature_mismatch(self):
        with pytest.raises(InvalidSignature):
            _gateway().verify_checkout_signature("order_RZP1", "pay_RZP1", "0" * 64)

    def test_checkout_signature_needs_payment_id(self):
        with pytest.raises(InvalidRequest):
            _gateway().verify_checkout_signature("order_RZP1", None, "abc")

    def test_webhook_signature(self):
        body = json.dumps(_order_paid()).encode()
        gateway = _gateway()

        gateway.verify_webhook(body, {"X-Razorpay-Signature": _hex("rzp_wh", body)})
        gateway.verify_webhook(body, gateway.sign_webhook(body))

    def test_webhook_signature_mismatch(self):
        body = json.dumps(_order_paid()).encode()

        with pytest.raises(InvalidSignature):
            _gateway().verify_webhook(body, {"x-razorpay-signature": _hex("wrong", body)})
        with pytest.raises(InvalidSignature):
            _gateway().verify_webhook(body, {})

    def test_webhook_needs_secret(self):
        settings = RazorpaySettings(key_id="k", key_secret="s")

        with pytest.raises(ConfigurationError):
            _gateway(settings=settings).verify_webhook(b"{}", {"x-razorpay-signature": "abc"})


class TestRazorpayWebhookParsing:
    """Tests for parse_webhook"""

    def test_order_paid(self):
        body = json.dumps(_order_paid()).encode()

        event = _gateway().parse_webhook(body, {"x-razorpay-event-id": "evt_1"})

        assert event.provider == PaymentProvider.RAZORPAY
        assert event.provider_order_id == "order_RZP1"
        assert event.status == ProviderStatus.PAID
        assert event.amount == 499900
        assert event.payment_id == "pay_RZP1"
        assert event.delivery_id == "evt_1"

    def test_payment_captured_without_order_entity(self):
        body = json.dumps(
            {
                "event": "payment.captured",
                "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_RZP1", "amount": 499900, "currency": "INR"}}},
            }
        ).encode()

        event = _gateway().parse_webhook(body, {})

        assert event.status == ProviderStatus.PAID
        assert event.amount == 499900
        assert event.currency == "INR"

    def test_payment_failed_keeps_order_open(self):
        body = json.dumps(
            {"event": "payment.failed", "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_RZP1"}}}}
        ).encode()

        event = _gateway().parse_webhook(body, {})

        assert event.status == ProviderStatus.ACTIVE
        assert event.amount is None

    def test_unknown_event(self):
        body = json.dumps({"event": "refund.created", "payload": {"payment": {"entity": {"order_id": "order_RZP1"}}}}).encode()

        assert _gateway().parse_webhook(body, {}).status == ProviderStatus.OTHER

    def test_missing_order_id(self):
        with pytest.raises(InvalidRequest):
            _gateway().parse_webhook(json.dumps({"event": "order.paid", "payload": {}}).encode(), {})


class TestGatewayFactory:
    """Tests for create_gateway and create_configured_gateways"""

    def test_create_each_provider(self):
        config = OrderSagaConfig(
            cashfree=CashfreeSettings(client_id="cf", secret_key="s"),
            razorpay=SETTINGS,
        )

        assert isinstance(create_gateway("cashfree", config), CashfreeGateway)
        assert isinstance(create_gateway(PaymentProvider.RAZORPAY, config), RazorpayGateway)
        assert isinstance(create_gateway("memory", config), InMemoryPaymentGateway)

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            create_gateway("paypal", OrderSagaConfig())

    def test_only_configured_gateways_plus_default(self):
        config = OrderSagaConfig(default_provider="memory", razorpay=SETTINGS)

        gateways = create_configured_gateways(config)

        assert set(gateways) == {PaymentProvider.RAZORPAY, PaymentProvider.MEMORY}

    def test_default_provider_must_be_configured(self):
        with pytest.raises(ConfigurationError):
            create_configured_gateways(OrderSagaConfig(default_provider="cashfree"))
