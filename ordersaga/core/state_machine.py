"""
Order State Machine - Manages payment and shipment lifecycle transitions.

Ensures orders move through valid states only and provides a hook for
metrics and audit logging.

Payment:

    ┌─────────┐
    │ CREATED │ ───────────────────────────┐
    └────┬────┘                            │ amount mismatch / cancelled / expiry
         │ provider reports ACTIVE/PAID     │
         ▼                                 ▼
    ┌─────────┐                  ┌──────────────────┐
    │ PENDING │ ───────────────► │ FAILED / EXPIRED │
    └────┬────┘                  └──────────────────┘
         │ PAID, amount matches
         ▼
    ┌──────────┐
    │ VERIFIED │  (only predecessor of shipment booking)
    └──────────┘

Shipment (after VERIFIED):

    NOT_REQUESTED ──► BOOKED
          │
          └────────► BOOKING_FAILED ──(operator retry)──► BOOKED
"""

from collections.abc import Callable
from typing import Any

from ordersaga.core.exceptions import InvalidStateTransition
from ordersaga.types import Order, PaymentState, ShipmentState, utcnow


class OrderStateMachine:
    """
    State machine for the order lifecycle.

    Transitions return a new Order with ``version`` bumped; the caller
    persists it with a compare-and-set on the previous version.

    Usage:
        >>> sm = OrderStateMachine()
        >>> order = sm.transition_payment(order, PaymentState.PENDING)
        >>> order = sm.transition_payment(order, PaymentState.VERIFIED, payment_id="pay_1")
    """

    # Valid transitions: from_state -> [to_state, ...]
    PAYMENT_TRANSITIONS = {
        PaymentState.CREATED: [PaymentState.PENDING, PaymentState.FAILED, PaymentState.EXPIRED],
        PaymentState.PENDING: [PaymentState.VERIFIED, PaymentState.FAILED, PaymentState.EXPIRED],
        PaymentState.VERIFIED: [],  # Terminal state
        PaymentState.FAILED: [],  # Terminal state
        PaymentState.EXPIRED: [],  # Terminal state
    }

    SHIPMENT_TRANSITIONS = {
        ShipmentState.NOT_REQUESTED: [ShipmentState.BOOKED, ShipmentState.BOOKING_FAILED],
        ShipmentState.BOOKING_FAILED: [ShipmentState.BOOKED, ShipmentState.BOOKING_FAILED],
        ShipmentState.BOOKED: [],  # Terminal state
    }

    def __init__(self, on_transition: Callable[[Order, str, Any, Any], Any] | None = None):
        """
        Initialize the state machine.

        Args:
            on_transition: Optional callback(order, kind, from_state, to_state)
        """
        self._on_transition = on_transition

    def can_transition_payment(self, order: Order, target: PaymentState) -> bool:
        return target in self.PAYMENT_TRANSITIONS.get(order.payment_state, [])

    def can_transition_shipment(self, order: Order, target: ShipmentState) -> bool:
        if order.payment_state != PaymentState.VERIFIED:
            return False
        return target in self.SHIPMENT_TRANSITIONS.get(order.shipment_state, [])

    def transition_payment(self, order: Order, target: PaymentState, **changes: Any) -> Order:
        """
        Move the payment state.

        Raises:
            InvalidStateTransition: If target is not reachable from the current state
        """
        if not self.can_transition_payment(order, target):
            raise InvalidStateTransition(order.order_id, order.payment_state, target)

        now = utcnow()
        if target == PaymentState.VERIFIED:
            changes.setdefault("verified_at", now)

        updated = order.evolve(
            payment_state=target, version=order.version + 1, updated_at=now, **changes
        )
        if self._on_transition:
            self._on_transition(updated, "payment", order.payment_state, target)
        return updated

    def transition_shipment(self, order: Order, target: ShipmentState, **changes: Any) -> Order:
        """
        Move the shipment state.

        Raises:
            InvalidStateTransition: If payment is not VERIFIED or target unreachable
        """
        if order.payment_state != PaymentState.VERIFIED:
            raise InvalidStateTransition(
                order.order_id,
                order.shipment_state,
                target,
                reason=f"payment is {order.payment_state.value}, not verified",
            )
        if not self.can_transition_shipment(order, target):
            raise InvalidStateTransition(order.order_id, order.shipment_state, target)

        now = utcnow()
        if target == ShipmentState.BOOKED:
            changes.setdefault("booked_at", now)

        updated = order.evolve(
            shipment_state=target, version=order.version + 1, updated_at=now, **changes
        )
        if self._on_transition:
            self._on_transition(updated, "shipment", order.shipment_state, target)
        return updated

    def path_to(self, current: PaymentState, target: PaymentState) -> list[PaymentState]:
        """
        Shortest legal path of payment states from current to target.

        A PAID signal on a CREATED order walks CREATED → PENDING → VERIFIED.

        Returns:
            States to visit in order (empty if already there or unreachable)
        """
        if current == target:
            return []
        if target in self.PAYMENT_TRANSITIONS.get(current, []):
            return [target]
        for step in self.PAYMENT_TRANSITIONS.get(current, []):
            if target in self.PAYMENT_TRANSITIONS.get(step, []):
                return [step, target]
        return []
