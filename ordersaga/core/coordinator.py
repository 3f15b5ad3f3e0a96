"""
Order Saga Coordinator - drives each order through payment and shipment.

    create_intent ──► CREATED
                         │  client pays out of band
          ┌──────────────┴───────────────┐
    confirm_verification            ingest_webhook
          └──────────────┬───────────────┘
                         ▼
              _apply_status (per-order lock)
                         │  PAID + amount matches
                         ▼
        claim (provider_order_id, "transition.verified")
        write payment record ─► CAS PENDING→VERIFIED ─► complete claim
                         │
                         ▼
                   book_shipment ──► BOOKED | BOOKING_FAILED

Guarantees:
- Every write is a compare-and-set on ``Order.version``.
- The VERIFIED transition and every carrier booking attempt are guarded by a
  dedup claim, so they run at most once per order even across processes.
- Within one process all transitions on an order run under a keyed lock;
  the shipment state is re-read inside the lock before the carrier is called.
- A payment record always exists before an order is observable as VERIFIED.
"""

from __future__ import annotations

import math
import secrets
import string
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.exceptions import (
    AmountMismatch,
    BookingUnavailable,
    ConfigurationError,
    InvalidAmount,
    InvalidRequest,
    InvalidStateTransition,
    OrderNotFound,
    OrderSagaError,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    VerificationUnavailable,
)
from ordersaga.core.locks import KeyedLock
from ordersaga.core.logger import get_logger
from ordersaga.core.retry import RetryExhausted, RetryPolicy, call_with_timeout
from ordersaga.core.state_machine import OrderStateMachine
from ordersaga.monitoring.logging import order_log_context
from ordersaga.monitoring.metrics import record_booking, record_duplicate, record_transition
from ordersaga.providers.base import PaymentGateway
from ordersaga.shipping.base import ShipmentCarrier, shipment_weight
from ordersaga.storage.base import StorageBundle
from ordersaga.types import (
    CartSnapshot,
    CustomerInfo,
    DedupKey,
    Order,
    OrderEvent,
    PaymentMode,
    PaymentProvider,
    PaymentRecord,
    PaymentState,
    ProviderOrderStatus,
    ProviderStatus,
    Serviceability,
    ShipmentRequest,
    ShipmentState,
    TrackingInfo,
    WebhookAck,
    WebhookEvent,
    utcnow,
)
from ordersaga.webhooks.gateway import WebhookGateway

logger = get_logger(__name__)

VERIFIED_EVENT_KIND = "transition.verified"
_ID_ALPHABET = string.ascii_letters + string.digits


def generate_order_id() -> str:
    """ORDER_<epoch ms>_<6 random chars>"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"ORDER_{int(time.time() * 1000)}_{suffix}"


def validate_amount(value: Any) -> int:
    """
    Coerce an amount to a positive integer of minor units.

    Integral floats and Decimals are accepted; bools, strings, NaN,
    infinities, fractions and non-positive values are not.

    Raises:
        InvalidAmount
    """
    if isinstance(value, bool):
        raise InvalidAmount(value)
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise InvalidAmount(value)
        amount = int(value)
    elif isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise InvalidAmount(value)
        amount = int(value)
    else:
        raise InvalidAmount(value)

    if amount <= 0:
        raise InvalidAmount(value)
    return amount


def validate_customer(customer: CustomerInfo) -> None:
    missing = [
        name
        for name, value in (
            ("name", customer.full_name),
            ("email", customer.email),
            ("phone", customer.phone),
        )
        if not str(value).strip()
    ]
    if missing:
        msg = "Customer information is incomplete"
        raise InvalidRequest(msg, details={"missing": missing})


class OrderSagaCoordinator:
    """
    One state machine per order, shared by every entry point.

    Example:
        >>> coordinator = OrderSagaCoordinator(gateways, carrier, storage, config)
        >>> order = await coordinator.create_intent(cart, customer)
        >>> order = await coordinator.confirm_verification(order.order_id, order.provider_order_id)
        >>> order.shipment_state
        <ShipmentState.BOOKED: 'booked'>
    """

    def __init__(
        self,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        carrier: ShipmentCarrier,
        storage: StorageBundle,
        config: OrderSagaConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or OrderSagaConfig()
        self.gateways = dict(gateways)
        self.carrier = carrier
        self.storage = storage
        self.retry_policy = retry_policy or RetryPolicy(
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            max_attempts=self.config.retry_max_attempts,
            timeout=self.config.provider_timeout_seconds,
        )
        self.clock = clock
        self.state_machine = OrderStateMachine(on_transition=self._on_transition)
        self.webhooks = WebhookGateway(
            self.gateways,
            storage.dedup,
            apply=self.apply_event,
            claim_timeout_seconds=self.config.claim_timeout_seconds,
        )
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.storage.initialize()

    async def close(self) -> None:
        for gateway in self.gateways.values():
            await gateway.close()
        await self.carrier.close()
        await self.storage.close()

    async def __aenter__(self) -> OrderSagaCoordinator:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Payment intent
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        cart: CartSnapshot,
        customer_info: CustomerInfo,
        provider: PaymentProvider | str | None = None,
        payment_mode: PaymentMode = PaymentMode.PREPAID,
        return_url: str | None = None,
    ) -> Order:
        """
        Create an order and its provider payment session.

        Provider errors surface immediately; intent creation is never retried.

        Raises:
            InvalidAmount: Amount is not a positive integer of minor units
            InvalidRequest: Empty cart, incomplete customer info or unknown provider
            ProviderError: The gateway refused or failed
        """
        if not cart.items:
            msg = "Cart is empty"
            raise InvalidRequest(msg)
        for item in cart.items:
            if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
                msg = f"Invalid quantity for {item.product_id}"
                raise InvalidRequest(msg, details={"quantity": repr(item.quantity)})
            validate_amount(item.unit_price)

        amount = validate_amount(cart.amount if cart.amount is not None else cart.items_total)
        validate_customer(customer_info)

        gateway = self._gateway(provider or self.config.default_provider)
        order_id = generate_order_id()
        currency = self.config.currency

        with order_log_context(order_id=order_id, provider=gateway.name):
            provider_order = await call_with_timeout(
                gateway.create_order(
                    amount,
                    currency,
                    order_id,
                    customer_info,
                    cart.items,
                    return_url=return_url or self.config.return_url or None,
                ),
                self.config.provider_timeout_seconds,
            )

            now = self.clock()
            order = Order(
                order_id=order_id,
                amount=amount,
                currency=currency,
                payment_provider=gateway.provider,
                provider_order_id=provider_order.provider_order_id,
                client_session_token=provider_order.client_session_token,
                customer_info=customer_info,
                items=tuple(cart.items),
                payment_mode=payment_mode,
                created_at=now,
                updated_at=now,
            )
            await self.storage.orders.insert(order)
            await self._audit(
                order,
                "intent.created",
                None,
                PaymentState.CREATED.value,
                source="checkout",
                details={"amount": amount, "currency": currency},
            )
            logger.info(
                f"Payment intent created: {order_id} -> {gateway.name}:{order.provider_order_id} "
                f"({amount} {currency})"
            )
        return order

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def confirm_verification(
        self,
        order_id: str,
        provider_order_id: str,
        payment_id: str | None = None,
        signature: str | None = None,
    ) -> Order:
        """
        Client-initiated verification after checkout.

        Raises:
            OrderNotFound: Unknown order
            InvalidRequest: provider_order_id does not belong to the order
            InvalidSignature: Checkout signature mismatch
            VerificationUnavailable: Provider unreachable after all retries
            AmountMismatch: Provider confirmed a different amount; order is FAILED
        """
        order = await self._require(order_id)
        if order.provider_order_id != provider_order_id:
            msg = "provider_order_id does not belong to this order"
            raise InvalidRequest(msg, details={"order_id": order_id})

        if order.payment_state.is_terminal:
            if (
                order.payment_state == PaymentState.VERIFIED
                and order.shipment_state == ShipmentState.NOT_REQUESTED
                and self.config.auto_book_shipment
            ):
                logger.info(f"Order {order_id} verified without a shipment, booking now")
                return await self.book_shipment(order_id)
            return order

        gateway = self._gateway(order.payment_provider)
        with order_log_context(order_id=order_id, provider_order_id=provider_order_id, provider=gateway.name):
            if signature and gateway.supports_checkout_signature:
                gateway.verify_checkout_signature(provider_order_id, payment_id, signature)

            status = await self._fetch_status(gateway, provider_order_id)
            order, _ = await self._apply_status(
                order_id,
                status.status,
                amount=status.amount,
                currency=status.currency,
                payment_id=payment_id or status.payment_id,
                signature=signature,
                source="verification",
            )
        return order

    async def ingest_webhook(
        self,
        provider: PaymentProvider | str,
        raw_body: bytes,
        headers: Mapping[str, str],
        book_inline: bool = True,
    ) -> WebhookAck:
        """
        Authenticate, deduplicate and apply a provider notification.

        Args:
            book_inline: Book the shipment before returning when this delivery
                verified the payment; otherwise ``ack.shipment_pending`` tells
                the caller to schedule ``book_shipment`` itself

        Raises:
            InvalidSignature: 401, nothing applied
            InvalidRequest: 400
            Exception: Processing failed (500); the provider should redeliver
        """
        ack = await self.webhooks.ingest(provider, raw_body, headers)
        if ack.shipment_pending and book_inline and ack.order_id:
            await self.book_shipment(ack.order_id)
            return WebhookAck(
                accepted=ack.accepted,
                order_id=ack.order_id,
                payment_state=ack.payment_state,
                message=ack.message,
            )
        return ack

    async def apply_event(self, event: WebhookEvent) -> tuple[Order | None, bool]:
        """Apply an authenticated webhook event; booking is left to the caller."""
        order = await self.storage.orders.get_by_provider_order_id(
            event.provider.value, event.provider_order_id
        )
        if order is None:
            return None, False

        amount, currency = event.amount, event.currency
        if event.status == ProviderStatus.PAID and amount is None:
            # Notification without an amount: ask the provider before trusting it
            status = await self._fetch_status(self._gateway(order.payment_provider), event.provider_order_id)
            amount, currency = status.amount, status.currency

        with order_log_context(order_id=order.order_id):
            return await self._apply_status(
                order.order_id,
                event.status,
                amount=amount,
                currency=currency,
                payment_id=event.payment_id,
                signature=None,
                source=f"webhook:{event.provider.value}",
                auto_book=False,
            )

    async def _fetch_status(self, gateway: PaymentGateway, provider_order_id: str) -> ProviderOrderStatus:
        try:
            return await self.retry_policy.run(gateway.get_order, provider_order_id)
        except RetryExhausted as e:
            logger.error(f"Verification unavailable for {provider_order_id}: {e.last_error}")
            raise VerificationUnavailable(provider_order_id, e.attempts, e.last_error) from e

    async def _apply_status(
        self,
        order_id: str,
        status: ProviderStatus,
        amount: int | None,
        currency: str | None,
        payment_id: str | None,
        signature: str | None,
        source: str,
        auto_book: bool = True,
    ) -> tuple[Order, bool]:
        """
        Move the payment state according to a provider status.

        Returns:
            The order and whether this call performed the VERIFIED transition
        """
        newly_verified = False
        async with self._locks.hold(order_id):
            order = await self._require(order_id)

            if status == ProviderStatus.PAID:
                order, newly_verified = await self._verify_locked(
                    order, amount, currency, payment_id, signature, source
                )
            elif status == ProviderStatus.ACTIVE:
                if order.payment_state == PaymentState.CREATED:
                    order = await self._commit(
                        order, self.state_machine.transition_payment(order, PaymentState.PENDING), source
                    )
            elif status in (ProviderStatus.EXPIRED, ProviderStatus.CANCELLED):
                if not order.payment_state.is_terminal:
                    target = PaymentState.EXPIRED if status == ProviderStatus.EXPIRED else PaymentState.FAILED
                    reason = "provider_expired" if status == ProviderStatus.EXPIRED else "provider_cancelled"
                    order = await self._commit(
                        order,
                        self.state_machine.transition_payment(order, target, failure_reason=reason),
                        source,
                    )
            else:
                logger.info(f"Ignoring provider status {status.value} for {order_id}")

        if newly_verified and auto_book and self.config.auto_book_shipment:
            order = await self.book_shipment(order_id)
        return order, newly_verified

    async def _verify_locked(
        self,
        order: Order,
        amount: int | None,
        currency: str | None,
        payment_id: str | None,
        signature: str | None,
        source: str,
    ) -> tuple[Order, bool]:
        if order.payment_state == PaymentState.VERIFIED:
            return order, False

        if order.payment_state in (PaymentState.FAILED, PaymentState.EXPIRED):
            logger.error(
                f"Late payment for {order.order_id} in state {order.payment_state.value}: "
                f"provider reports PAID ({amount} {currency}); manual refund required"
            )
            await self._audit(
                order,
                "late_payment",
                order.payment_state.value,
                order.payment_state.value,
                source=source,
                details={"amount": amount, "currency": currency, "payment_id": payment_id},
            )
            return order, False

        key = DedupKey(order.provider_order_id, VERIFIED_EVENT_KIND)
        existing = await self.storage.dedup.claim(
            key, stale_after_seconds=self.config.claim_timeout_seconds
        )
        if existing is not None:
            record_duplicate(VERIFIED_EVENT_KIND)
            current = await self._require(order.order_id)
            if existing.is_completed or current.payment_state.is_terminal:
                return current, False
            raise InvalidStateTransition(
                order.order_id,
                current.payment_state,
                PaymentState.VERIFIED,
                reason="verification in progress elsewhere",
            )

        try:
            if amount != order.amount or (
                currency is not None and currency.upper() != order.currency.upper()
            ):
                await self._fail_for_mismatch(order, amount, currency, source)
                await self.storage.dedup.complete(key, "amount_mismatch")
                raise AmountMismatch(order.order_id, order.amount, amount, order.currency, currency)

            await self.storage.payments.record(
                PaymentRecord(
                    order_id=order.order_id,
                    provider_order_id=order.provider_order_id,
                    payment_id=payment_id,
                    signature=signature,
                    recorded_at=self.clock(),
                )
            )

            for step in self.state_machine.path_to(order.payment_state, PaymentState.VERIFIED):
                changes = {"payment_id": payment_id or order.payment_id} if step == PaymentState.VERIFIED else {}
                order = await self._commit(
                    order, self.state_machine.transition_payment(order, step, **changes), source
                )

            await self.storage.dedup.complete(key, "verified")
        except AmountMismatch:
            raise
        except Exception:
            await self.storage.dedup.release(key)
            raise

        logger.info(f"Payment verified: {order.order_id} ({order.amount} {order.currency}) via {source}")
        return order, True

    async def _fail_for_mismatch(
        self, order: Order, amount: int | None, currency: str | None, source: str
    ) -> Order:
        logger.error(
            f"Amount mismatch for {order.order_id}: expected {order.amount} {order.currency}, "
            f"provider reported {amount} {currency}"
        )
        failed = self.state_machine.transition_payment(
            order, PaymentState.FAILED, failure_reason="amount_mismatch"
        )
        return await self._commit(
            order,
            failed,
            source,
            details={
                "expected_amount": order.amount,
                "actual_amount": amount,
                "expected_currency": order.currency,
                "actual_currency": currency,
            },
        )

    # ------------------------------------------------------------------
    # Shipment
    # ------------------------------------------------------------------

    async def book_shipment(self, order_id: str) -> Order:
        """
        Book the shipment for a verified order, at most once.

        Returns the order unchanged when it is already BOOKED or BOOKING_FAILED;
        a failed booking is only retried through ``retry_booking``.

        Raises:
            InvalidStateTransition: Payment is not VERIFIED
        """
        async with self._locks.hold(order_id):
            order = await self._require(order_id)
            self._require_verified(order)
            if order.shipment_state != ShipmentState.NOT_REQUESTED:
                return order
            return await self._attempt_booking(order, source="auto")

    async def retry_booking(self, order_id: str) -> Order:
        """
        Operator action: book again after BOOKING_FAILED.

        Raises:
            InvalidStateTransition: Payment is not VERIFIED
        """
        async with self._locks.hold(order_id):
            order = await self._require(order_id)
            self._require_verified(order)
            if order.shipment_state == ShipmentState.BOOKED:
                return order
            logger.info(f"Operator retry of shipment booking for {order_id}")
            return await self._attempt_booking(order, source="operator")

    def _require_verified(self, order: Order) -> None:
        if order.payment_state != PaymentState.VERIFIED:
            raise InvalidStateTransition(
                order.order_id,
                order.shipment_state,
                ShipmentState.BOOKED,
                reason=f"payment is {order.payment_state.value}, not verified",
            )

    async def _attempt_booking(self, order: Order, source: str) -> Order:
        attempt = order.shipment_attempts + 1
        key = DedupKey(order.provider_order_id, f"shipment.attempt.{attempt}")
        existing = await self.storage.dedup.claim(
            key, stale_after_seconds=self.config.claim_timeout_seconds
        )
        if existing is not None:
            record_duplicate(key.event_kind)
            logger.warning(f"Booking attempt {attempt} for {order.order_id} already claimed")
            return await self._require(order.order_id)

        request = self._shipment_request(order)

        with order_log_context(order_id=order.order_id, provider_order_id=order.provider_order_id):
            try:
                if self.config.check_serviceability_before_booking:
                    await self._ensure_serviceable(request)
                booking = await call_with_timeout(
                    self.carrier.create_shipment(request), self.config.provider_timeout_seconds
                )
            except OrderSagaError as e:
                logger.error(f"Shipment booking failed for {order.order_id} (attempt {attempt}): {e}")
                failed = self.state_machine.transition_shipment(
                    order,
                    ShipmentState.BOOKING_FAILED,
                    shipment_error=e.message,
                    shipment_attempts=attempt,
                )
                order = await self._commit(order, failed, source, details={"error": e.message})
                await self.storage.dedup.complete(key, "booking_failed")
                record_booking("failed")
                return order
            except Exception:
                await self.storage.dedup.release(key)
                raise

            booked = self.state_machine.transition_shipment(
                order,
                ShipmentState.BOOKED,
                waybill=booking.waybill,
                carrier_order_id=booking.carrier_order_id,
                shipment_error=None,
                shipment_attempts=attempt,
            )
            order = await self._commit(order, booked, source, details={"waybill": booking.waybill})
            await self.storage.dedup.complete(key, f"booked:{booking.waybill}")
            record_booking("booked")
            logger.info(f"Shipment booked for {order.order_id}: waybill {booking.waybill}")
        return order

    def _shipment_request(self, order: Order) -> ShipmentRequest:
        return ShipmentRequest(
            order_reference=order.provider_order_id,
            customer=order.customer_info,
            items=order.items,
            payment_mode=order.payment_mode,
            total_amount=order.amount,
            weight_kg=shipment_weight(order.items, self.config.item_weight_kg),
            currency=order.currency,
        )

    async def _ensure_serviceable(self, request: ShipmentRequest) -> None:
        result = await call_with_timeout(
            self.carrier.check_serviceability(
                request.customer.postal_code,
                request.weight_kg,
                cod=request.payment_mode == PaymentMode.COD,
            ),
            self.config.provider_timeout_seconds,
        )
        if not result.serviceable:
            raise ProviderRejected(
                result.error or "Pincode is not serviceable",
                service=self.carrier.name,
                pincode=request.customer.postal_code,
            )

    async def check_serviceability(
        self, pincode: str, weight_kg: float = 0.5, cod: bool = False
    ) -> Serviceability:
        """
        Read-only carrier check under the retry policy.

        Raises:
            InvalidRequest: Malformed pincode
            BookingUnavailable: Carrier unreachable after all retries
        """
        try:
            return await self.retry_policy.run(self.carrier.check_serviceability, pincode, weight_kg, cod)
        except RetryExhausted as e:
            raise BookingUnavailable("check_serviceability", e.attempts, e.last_error) from e

    async def track_shipment(self, order_id: str) -> TrackingInfo:
        """
        Latest carrier scan for an order's waybill.

        Raises:
            InvalidStateTransition: The order has no waybill yet
            BookingUnavailable: Carrier unreachable after all retries
        """
        order = await self._require(order_id)
        if not order.waybill:
            raise InvalidStateTransition(
                order_id, order.shipment_state, "tracking", reason="shipment is not booked"
            )
        try:
            return await self.retry_policy.run(self.carrier.track, order.waybill)
        except RetryExhausted as e:
            raise BookingUnavailable("track", e.attempts, e.last_error) from e

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        return await self._require(order_id)

    async def list_orders(
        self,
        payment_state: PaymentState | None = None,
        shipment_state: ShipmentState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Order]:
        return await self.storage.orders.list(payment_state, shipment_state, limit, offset)

    async def order_history(self, order_id: str) -> list[OrderEvent]:
        await self._require(order_id)
        return await self.storage.orders.list_events(order_id)

    async def list_payments(self, limit: int = 100, offset: int = 0) -> list[PaymentRecord]:
        return await self.storage.payments.list_records(limit, offset)

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def expire_stale_orders(self, now: datetime | None = None) -> list[Order]:
        """
        Expire orders still unverified after the payment window.

        The provider is asked once per stale order first: a PAID answer
        verifies the order instead, and an unreachable provider leaves the
        order for the next sweep. A provider that rejects the lookup
        outright does not hold the order back. One order failing to
        reconcile never stops the rest of the pass.

        Returns:
            Orders whose state changed
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.config.payment_expiry_seconds)
        changed: list[Order] = []

        for stale in await self.storage.orders.list_stale(cutoff):
            with order_log_context(order_id=stale.order_id, provider_order_id=stale.provider_order_id):
                try:
                    result = await self._reconcile_stale(stale)
                except Exception as e:
                    logger.warning(f"Expiry of {stale.order_id} skipped this pass: {e}", exc_info=True)
                    continue
            if result is not None:
                changed.append(result)

        if changed:
            logger.info(f"Expiry sweep changed {len(changed)} order(s)")
        return changed

    async def _reconcile_stale(self, order: Order) -> Order | None:
        try:
            gateway = self._gateway(order.payment_provider)
            status = await call_with_timeout(
                gateway.get_order(order.provider_order_id), self.config.provider_timeout_seconds
            )
        except (ProviderUnavailable, ConfigurationError, InvalidRequest) as e:
            logger.warning(f"Cannot reconcile {order.order_id} before expiry, will retry: {e}")
            return None
        except ProviderRejected as e:
            logger.warning(f"Provider rejected lookup of {order.order_id}, expiring: {e}")
            return await self._expire(
                order.order_id,
                "provider_lookup_rejected",
                details={"status_code": e.status_code, "error": e.message},
            )

        if status.status == ProviderStatus.PAID:
            try:
                updated, _ = await self._apply_status(
                    order.order_id,
                    ProviderStatus.PAID,
                    amount=status.amount,
                    currency=status.currency,
                    payment_id=status.payment_id,
                    signature=None,
                    source="sweeper",
                )
            except AmountMismatch:
                updated = await self._require(order.order_id)
            return updated

        return await self._expire(order.order_id, "payment_window_elapsed")

    async def _expire(
        self, order_id: str, failure_reason: str, details: dict[str, Any] | None = None
    ) -> Order | None:
        async with self._locks.hold(order_id):
            current = await self._require(order_id)
            if current.payment_state.is_terminal:
                return None
            expired = self.state_machine.transition_payment(
                current, PaymentState.EXPIRED, failure_reason=failure_reason
            )
            return await self._commit(current, expired, "sweeper", details=details)

    async def cleanup_dedup(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        return await self.storage.dedup.cleanup(now - timedelta(days=self.config.dedup_retention_days))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _gateway(self, provider: PaymentProvider | str) -> PaymentGateway:
        try:
            provider = PaymentProvider(provider)
        except ValueError:
            msg = f"Unknown payment provider: {provider}"
            raise InvalidRequest(msg) from None
        gateway = self.gateways.get(provider)
        if gateway is None:
            msg = f"Payment provider not configured: {provider.value}"
            raise ConfigurationError(msg)
        return gateway

    async def _require(self, order_id: str) -> Order:
        order = await self.storage.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def _commit(
        self, old: Order, new: Order, source: str, details: dict[str, Any] | None = None
    ) -> Order:
        """Compare-and-set, then append the audit entry for the transition."""
        stored = await self.storage.orders.compare_and_set(new, old.version)

        if old.payment_state != new.payment_state:
            kind, from_state, to_state = "payment", old.payment_state.value, new.payment_state.value
        else:
            kind, from_state, to_state = "shipment", old.shipment_state.value, new.shipment_state.value

        event_details = dict(details or {})
        if new.failure_reason and new.failure_reason != old.failure_reason:
            event_details.setdefault("reason", new.failure_reason)
        await self._audit(stored, f"{kind}.{to_state}", from_state, to_state, source, event_details)
        return stored

    async def _audit(
        self,
        order: Order,
        kind: str,
        from_state: str | None,
        to_state: str | None,
        source: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self.storage.orders.append_event(
            OrderEvent(
                order_id=order.order_id,
                kind=kind,
                from_state=from_state,
                to_state=to_state,
                source=source,
                details=details or {},
                created_at=self.clock(),
            )
        )

    def _on_transition(self, order: Order, kind: str, from_state: Any, to_state: Any) -> None:
        record_transition(kind, from_state, to_state)
        logger.info(f"Order {order.order_id} {kind}: {from_state.value} -> {to_state.value}")
