"""
Tests for the exception hierarchy and its HTTP mapping.
"""

import pytest

from ordersaga.core.exceptions import (
    AmountMismatch,
    BookingUnavailable,
    ConfigurationError,
    DuplicateEvent,
    InvalidAmount,
    InvalidRequest,
    InvalidSignature,
    InvalidStateTransition,
    OrderNotFound,
    OrderSagaError,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    VerificationUnavailable,
)
from ordersaga.types import DedupKey, PaymentState


class TestHttpStatus:
    """Every error knows the status the web layer answers with"""

    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (InvalidRequest("bad"), 400),
            (InvalidAmount(-1), 400),
            (InvalidSignature("cashfree"), 401),
            (OrderNotFound("ORDER_1"), 404),
            (InvalidStateTransition("ORDER_1", PaymentState.CREATED, PaymentState.VERIFIED), 409),
            (AmountMismatch("ORDER_1", 100, 50), 422),
            (ProviderRejected("no", service="delhivery"), 502),
            (ProviderUnavailable("down", service="cashfree"), 503),
            (VerificationUnavailable("cf_1", 4), 503),
            (BookingUnavailable("track", 4), 503),
            (ConfigurationError("missing key"), 500),
        ],
    )
    def test_status(self, error, status):
        assert error.http_status == status
        assert isinstance(error, OrderSagaError)


class TestErrorDetails:
    """Tests for messages and serialized details"""

    def test_to_dict(self):
        error = OrderNotFound("ORDER_1")

        assert error.to_dict() == {
            "error": "OrderNotFound",
            "message": "Order ORDER_1 not found",
            "details": {"order_id": "ORDER_1"},
        }

    def test_invalid_amount_keeps_repr(self):
        assert InvalidAmount(12.5).details == {"amount": "12.5"}

    def test_invalid_transition_message(self):
        error = InvalidStateTransition(
            "ORDER_1", PaymentState.FAILED, PaymentState.VERIFIED, reason="order already failed"
        )

        assert "failed → verified" in error.message
        assert "order already failed" in str(error)

    def test_amount_mismatch_fields(self):
        error = AmountMismatch("ORDER_1", 499900, 1000, "INR", "INR")

        assert error.expected == 499900
        assert error.actual == 1000
        assert error.details["actual_currency"] == "INR"

    def test_provider_error_details(self):
        error = ProviderRejected("Pincode not serviceable", service="delhivery", status_code=400, pincode="999999")

        assert isinstance(error, ProviderError)
        assert error.service == "delhivery"
        assert error.status_code == 400
        assert error.details["pincode"] == "999999"

    def test_duplicate_event(self):
        error = DuplicateEvent(DedupKey("cf_1", "webhook.order.paid", "evt_1"), outcome="verified")

        assert error.outcome == "verified"
        assert "cf_1:webhook.order.paid:evt_1" in error.message

    def test_invalid_signature_reason(self):
        error = InvalidSignature("razorpay", "missing signature header")

        assert error.provider == "razorpay"
        assert error.reason == "missing signature header"
