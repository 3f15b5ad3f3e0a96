"""
Tests for WebhookGateway in isolation: signature gate, dedup claims and
claim release on failure.
"""

import json

import pytest

from ordersaga.core.exceptions import AmountMismatch, InvalidRequest, InvalidSignature
from ordersaga.providers.base import hmac_sha256
from ordersaga.storage.memory import InMemoryDedupStore
from ordersaga.types import DedupKey, PaymentProvider, PaymentState
from ordersaga.webhooks.gateway import WebhookGateway


class _Recorder:
    """Stands in for the coordinator's apply_event."""

    def __init__(self, result=None, error=None):
        self.events = []
        self.result = result
        self.error = error

    async def __call__(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.result


class _FakeOrder:
    order_id = "ORDER_1"
    payment_state = PaymentState.VERIFIED


@pytest.fixture
def dedup():
    return InMemoryDedupStore()


@pytest.fixture
async def paid_webhook(gateway, customer, items):
    await gateway.create_order(499900, "INR", "ORDER_1", customer, items)
    gateway.mark_paid("mem_order_1")
    return gateway.build_webhook("mem_order_1", event_id="evt_1")


def _webhooks(gateway, dedup, apply):
    return WebhookGateway({PaymentProvider.MEMORY: gateway}, dedup, apply=apply)


class TestWebhookGateway:
    """Tests for WebhookGateway.ingest"""

    @pytest.mark.asyncio
    async def test_applies_and_completes(self, gateway, dedup, paid_webhook):
        apply = _Recorder(result=(_FakeOrder(), True))
        body, headers = paid_webhook

        ack = await _webhooks(gateway, dedup, apply).ingest("memory", body, headers)

        assert ack.accepted
        assert ack.shipment_pending
        assert ack.order_id == "ORDER_1"
        assert len(apply.events) == 1
        record = await dedup.get(DedupKey("mem_order_1", "webhook.order.paid", "evt_1"))
        assert record.outcome == "verified"
        assert record.payload["event_id"] == "evt_1"

    @pytest.mark.asyncio
    async def test_duplicate_is_not_applied(self, gateway, dedup, paid_webhook):
        apply = _Recorder(result=(_FakeOrder(), True))
        webhooks = _webhooks(gateway, dedup, apply)
        body, headers = paid_webhook

        await webhooks.ingest("memory", body, headers)
        ack = await webhooks.ingest("memory", body, headers)

        assert ack.duplicate
        assert ack.message == "Already processed (verified)"
        assert not ack.shipment_pending
        assert len(apply.events) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_never_claims(self, gateway, dedup, paid_webhook):
        apply = _Recorder(result=(_FakeOrder(), True))
        body, headers = paid_webhook
        headers = {**headers, "x-memory-signature": "f" * 64}

        with pytest.raises(InvalidSignature):
            await _webhooks(gateway, dedup, apply).ingest("memory", body, headers)

        assert len(dedup) == 0
        assert apply.events == []

    @pytest.mark.asyncio
    async def test_malformed_body(self, gateway, dedup):
        body = json.dumps({"status": "PAID"}).encode()
        headers = {"x-memory-signature": hmac_sha256("memory-secret", body).hex()}

        with pytest.raises(InvalidRequest):
            await _webhooks(gateway, dedup, _Recorder()).ingest("memory", body, headers)

    @pytest.mark.asyncio
    async def test_failure_releases_claim(self, gateway, dedup, paid_webhook):
        apply = _Recorder(error=RuntimeError("database down"))
        body, headers = paid_webhook

        with pytest.raises(RuntimeError):
            await _webhooks(gateway, dedup, apply).ingest("memory", body, headers)

        assert len(dedup) == 0

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_acknowledged(self, gateway, dedup, paid_webhook):
        apply = _Recorder(error=AmountMismatch("ORDER_1", 499900, 100))
        body, headers = paid_webhook

        ack = await _webhooks(gateway, dedup, apply).ingest("memory", body, headers)

        assert ack.accepted
        assert ack.payment_state == PaymentState.FAILED
        record = await dedup.get(DedupKey("mem_order_1", "webhook.order.paid", "evt_1"))
        assert record.outcome == "amount_mismatch"

    @pytest.mark.asyncio
    async def test_unknown_order(self, gateway, dedup, paid_webhook):
        body, headers = paid_webhook

        ack = await _webhooks(gateway, dedup, _Recorder(result=(None, False))).ingest("memory", body, headers)

        assert not ack.accepted
        assert ack.message == "Unknown order"

    def test_gateway_for(self, gateway, dedup):
        webhooks = _webhooks(gateway, dedup, _Recorder())

        assert webhooks.gateway_for("memory") is gateway
        with pytest.raises(InvalidRequest, match="Unknown payment provider"):
            webhooks.gateway_for("paypal")
        with pytest.raises(InvalidRequest, match="not enabled"):
            webhooks.gateway_for("cashfree")

    @pytest.mark.asyncio
    async def test_cleanup_old_entries(self, gateway, dedup, paid_webhook):
        webhooks = _webhooks(gateway, dedup, _Recorder(result=(_FakeOrder(), False)))
        body, headers = paid_webhook
        await webhooks.ingest("memory", body, headers)

        assert await webhooks.cleanup_old_entries(older_than_days=7) == 0
        assert await webhooks.cleanup_old_entries(older_than_days=-1) == 1

