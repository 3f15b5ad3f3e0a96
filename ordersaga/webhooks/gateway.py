"""
Webhook ingestion with inbox-style deduplication.

Providers deliver at least once; this gateway makes processing effectively
exactly-once:

    raw body ──► verify signature ──► parse ──► claim dedup key ──► apply ──► complete
                   │ 401                │ 400       │ duplicate              │ error
                   ▼                    ▼           ▼                        ▼
                 reject              reject      ack (200)            release + raise (500)

The dedup key is (provider_order_id, "webhook.<event type>", delivery id).
A second, independent guard on the VERIFIED transition lives in the
coordinator, so a replay under a new delivery id is still a no-op.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta

from ordersaga.core.exceptions import AmountMismatch, DuplicateEvent, InvalidRequest, InvalidSignature
from ordersaga.core.logger import get_logger
from ordersaga.monitoring.logging import order_log_context
from ordersaga.monitoring.metrics import record_duplicate, record_webhook
from ordersaga.providers.base import PaymentGateway
from ordersaga.storage.base import DedupStore
from ordersaga.types import DedupKey, Order, PaymentProvider, PaymentState, WebhookAck, WebhookEvent, utcnow

logger = get_logger(__name__)

# Applies an event; returns the order (None if unknown) and whether this call verified it
EventHandler = Callable[[WebhookEvent], Awaitable[tuple[Order | None, bool]]]


class WebhookGateway:
    """
    Authenticate, deduplicate and dispatch provider notifications.

    Usage:
        gateway = WebhookGateway(gateways, storage.dedup, apply=coordinator.apply_event)
        ack = await gateway.ingest("cashfree", raw_body, headers)
    """

    def __init__(
        self,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        dedup: DedupStore,
        apply: EventHandler,
        claim_timeout_seconds: float = 60.0,
    ):
        self.gateways = gateways
        self.dedup = dedup
        self.apply = apply
        self.claim_timeout_seconds = claim_timeout_seconds

    def gateway_for(self, provider: str | PaymentProvider) -> PaymentGateway:
        try:
            provider = PaymentProvider(provider)
        except ValueError:
            msg = f"Unknown payment provider: {provider}"
            raise InvalidRequest(msg) from None
        gateway = self.gateways.get(provider)
        if gateway is None:
            msg = f"Payment provider not enabled: {provider.value}"
            raise InvalidRequest(msg)
        return gateway

    async def ingest(
        self, provider: str | PaymentProvider, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookAck:
        """
        Process one delivery.

        Raises:
            InvalidSignature: Authenticity check failed; nothing was applied
            InvalidRequest: Unknown provider or malformed body
            Exception: Processing failed; the claim is released so a redelivery can apply it
        """
        gateway = self.gateway_for(provider)
        name = gateway.name

        try:
            gateway.verify_webhook(raw_body, headers)
        except InvalidSignature as e:
            record_webhook(name, "rejected")
            logger.warning(f"Rejected {name} webhook: {e.reason}")
            raise

        try:
            event = gateway.parse_webhook(raw_body, headers)
        except InvalidRequest:
            record_webhook(name, "invalid")
            raise

        key = DedupKey(event.provider_order_id, f"webhook.{event.event_type}", event.delivery_id)

        with order_log_context(provider=name, provider_order_id=event.provider_order_id):
            try:
                await self._claim(key, event)
            except DuplicateEvent as dup:
                record_duplicate(key.event_kind)
                record_webhook(name, "duplicate")
                logger.info(f"Duplicate webhook: {key}, skipping")
                return WebhookAck(
                    accepted=True,
                    duplicate=True,
                    message=f"Already processed ({dup.outcome or 'in progress'})",
                )

            logger.info(f"Webhook received: {event.event_type} status={event.status.value}")
            return await self._dispatch(key, event)

    async def _claim(self, key: DedupKey, event: WebhookEvent) -> None:
        existing = await self.dedup.claim(
            key, payload=event.payload, stale_after_seconds=self.claim_timeout_seconds
        )
        if existing is not None:
            raise DuplicateEvent(key, existing.outcome)

    async def _dispatch(self, key: DedupKey, event: WebhookEvent) -> WebhookAck:
        name = event.provider.value
        try:
            order, newly_verified = await self.apply(event)
        except AmountMismatch as e:
            # Applied: the order is now FAILED; redelivery must not re-run it
            await self.dedup.complete(key, "amount_mismatch")
            record_webhook(name, "amount_mismatch")
            return WebhookAck(
                accepted=True,
                order_id=e.order_id,
                payment_state=PaymentState.FAILED,
                message=e.message,
            )
        except Exception as exc:
            await self.dedup.release(key)
            record_webhook(name, "error")
            logger.error(f"Failed to process webhook {key}: {exc}", exc_info=True)
            raise

        if order is None:
            await self.dedup.complete(key, "unknown_order")
            record_webhook(name, "unknown_order")
            logger.warning(f"Webhook for unknown provider order {event.provider_order_id}")
            return WebhookAck(accepted=False, message="Unknown order")

        await self.dedup.complete(key, order.payment_state.value)
        record_webhook(name, "applied")
        return WebhookAck(
            accepted=True,
            order_id=order.order_id,
            payment_state=order.payment_state,
            message="Webhook processed successfully",
            shipment_pending=newly_verified,
        )

    async def cleanup_old_entries(self, older_than_days: int = 7) -> int:
        """Delete dedup markers older than the retention window."""
        deleted = await self.dedup.cleanup(utcnow() - timedelta(days=older_than_days))
        logger.info(f"Cleaned up {deleted} old dedup entries")
        return deleted
