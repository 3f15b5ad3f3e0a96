# ============================================
# FILE: ordersaga/core/exceptions.py
# ============================================

"""
All order-saga exceptions

Every error carries the HTTP status the web layer answers with, so route
handlers never need their own mapping table.
"""

from typing import Any


class OrderSagaError(Exception):
    """Base order saga error"""

    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ConfigurationError(OrderSagaError):
    """Missing credentials or unknown backend"""


class InvalidRequest(OrderSagaError):
    """Malformed or missing required fields; never retried"""

    http_status = 400


class InvalidAmount(InvalidRequest):
    """Amount is not a positive integer number of minor units"""

    def __init__(self, value: Any):
        super().__init__(
            "Amount must be a positive integer in minor currency units",
            details={"amount": repr(value)},
        )
        self.value = value


class OrderNotFound(InvalidRequest):
    """No order with the given id"""

    http_status = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", details={"order_id": order_id})
        self.order_id = order_id


class InvalidStateTransition(InvalidRequest):
    """Transition not allowed from the order's current state"""

    http_status = 409

    def __init__(self, order_id: str, from_state: Any, to_state: Any, reason: str | None = None):
        from_value = getattr(from_state, "value", from_state)
        to_value = getattr(to_state, "value", to_state)
        message = f"Invalid transition for order {order_id}: {from_value} → {to_value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.order_id = order_id
        self.from_state = from_state
        self.to_state = to_state


class ProviderError(OrderSagaError):
    """A call to a SaaS dependency failed"""

    http_status = 502

    def __init__(
        self,
        message: str,
        service: str | None = None,
        status_code: int | None = None,
        **details: Any,
    ):
        super().__init__(message, details={"service": service, "status_code": status_code, **details})
        self.service = service
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Transient network error, timeout or 5xx; safe to retry"""

    http_status = 503


class ProviderRejected(ProviderError):
    """Provider refused the request (4xx); retrying will not help"""


class VerificationUnavailable(OrderSagaError):
    """Payment verification kept failing after all retries"""

    http_status = 503

    def __init__(self, provider_order_id: str, attempts: int, cause: Exception | None = None):
        super().__init__(
            f"Payment verification unavailable for {provider_order_id} after {attempts} attempts",
            details={"provider_order_id": provider_order_id, "attempts": attempts},
        )
        self.cause = cause


class BookingUnavailable(OrderSagaError):
    """Carrier kept failing after all retries"""

    http_status = 503

    def __init__(self, operation: str, attempts: int, cause: Exception | None = None):
        super().__init__(
            f"Carrier unavailable for {operation} after {attempts} attempts",
            details={"operation": operation, "attempts": attempts},
        )
        self.cause = cause


class AmountMismatch(OrderSagaError):
    """
    Verified amount differs from the amount captured at intent time.

    Fatal: the order is marked FAILED and needs manual review.
    """

    http_status = 422

    def __init__(
        self,
        order_id: str,
        expected: int,
        actual: int | None,
        expected_currency: str | None = None,
        actual_currency: str | None = None,
    ):
        super().__init__(
            f"Amount mismatch for order {order_id}: expected {expected} "
            f"{expected_currency or ''}, provider reported {actual} {actual_currency or ''}".rstrip(),
            details={
                "order_id": order_id,
                "expected": expected,
                "actual": actual,
                "expected_currency": expected_currency,
                "actual_currency": actual_currency,
            },
        )
        self.order_id = order_id
        self.expected = expected
        self.actual = actual


class DuplicateEvent(OrderSagaError):
    """
    Event was already applied.

    Acknowledged silently; never reported to the caller as a failure.
    """

    http_status = 200

    def __init__(self, key: Any, outcome: str | None = None):
        super().__init__(f"Duplicate event: {key}", details={"outcome": outcome})
        self.key = key
        self.outcome = outcome


class InvalidSignature(OrderSagaError):
    """Webhook or checkout signature failed the authenticity check"""

    http_status = 401

    def __init__(self, provider: str, reason: str = "signature mismatch"):
        super().__init__(f"Invalid {provider} signature: {reason}", details={"provider": provider})
        self.provider = provider
        self.reason = reason
