"""
Tests for the ordersaga operator CLI against a SQLite database.
"""

import asyncio
import json
import logging

import pytest
from click.testing import CliRunner
from rich.console import Console

from ordersaga.cli import app as cli_app
from ordersaga.cli.app import cli
from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.factory import build_coordinator


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Rich wraps tables to the terminal width; keep order ids on one line."""
    monkeypatch.setattr(cli_app, "console", Console(width=200))


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI configures the ordersaga logger on every invocation."""
    root = logging.getLogger("ordersaga")
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def cli_config(tmp_path):
    return OrderSagaConfig(
        storage_url=f"sqlite:///{tmp_path}/orders.db",
        default_provider="memory",
        carrier="memory",
        provider_timeout_seconds=1.0,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )


@pytest.fixture
def invoke(cli_config):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, list(args), obj={"config": cli_config})

    return _invoke


def _seed(config, cart, customer, pay=False, unserviceable=False):
    """Create one order; optionally pay it, with the carrier refusing the pincode."""

    async def seed():
        async with build_coordinator(config) as coordinator:
            order = await coordinator.create_intent(cart, customer)
            if pay:
                if unserviceable:
                    coordinator.carrier.unserviceable.add(customer.postal_code)
                coordinator.gateways[order.payment_provider].mark_paid(order.provider_order_id)
                order = await coordinator.confirm_verification(order.order_id, order.provider_order_id)
            return order

    return asyncio.run(seed())


class TestOrdersCommands:
    """Tests for `ordersaga orders`"""

    def test_list_empty(self, invoke):
        result = invoke("orders", "list")

        assert result.exit_code == 0
        assert "No orders found" in result.output

    def test_list(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer)

        result = invoke("orders", "list")

        assert result.exit_code == 0
        assert order.order_id in result.output
        assert "4,999.00 INR" in result.output
        assert "1 order(s)" in result.output

    def test_list_filter(self, invoke, cli_config, cart, customer):
        _seed(cli_config, cart, customer)

        result = invoke("orders", "list", "--payment-state", "verified")

        assert "No orders found" in result.output

    def test_show_json(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer, pay=True)

        result = invoke("orders", "show", order.order_id, "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["payment_state"] == "verified"
        assert data["shipment_state"] == "booked"
        assert data["waybill"] == "1000000001"

    def test_show_table(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer)

        result = invoke("orders", "show", order.order_id)

        assert "Asha Rao <asha@example.com>" in result.output
        assert "Silk Saree x1, Blouse Piece x2" in result.output

    def test_show_unknown(self, invoke):
        result = invoke("orders", "show", "ORDER_missing")

        assert result.exit_code == 1
        assert "Order ORDER_missing not found" in result.output

    def test_history(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer, pay=True)

        result = invoke("orders", "history", order.order_id)

        assert result.exit_code == 0
        assert "intent.created" in result.output
        assert "payment.verified" in result.output
        assert "shipment.booked" in result.output


class TestOperatorCommands:
    """Tests for retry-booking, sweep, check-pincode and payments"""

    def test_retry_booking(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer, pay=True, unserviceable=True)
        assert order.shipment_state.value == "booking_failed"

        result = invoke("retry-booking", order.order_id)

        assert result.exit_code == 0
        assert "Booked" in result.output

    def test_retry_booking_unpaid(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer)

        result = invoke("retry-booking", order.order_id)

        assert result.exit_code == 1
        assert "not verified" in result.output

    def test_sweep_nothing_stale(self, invoke, cli_config, cart, customer):
        _seed(cli_config, cart, customer)

        result = invoke("sweep")

        assert result.exit_code == 0
        assert "0 order(s) updated, 0 dedup marker(s) removed" in result.output

    def test_check_pincode(self, invoke):
        result = invoke("check-pincode", "560001", "--weight", "1.0")

        assert result.exit_code == 0
        assert "560001 is serviceable" in result.output
        assert "prepaid ₹80" in result.output

    def test_check_pincode_invalid(self, invoke):
        result = invoke("check-pincode", "56")

        assert result.exit_code == 1
        assert "6-digit pincode" in result.output

    def test_payments(self, invoke, cli_config, cart, customer):
        order = _seed(cli_config, cart, customer, pay=True)

        result = invoke("payments")

        assert result.exit_code == 0
        assert order.order_id in result.output
        assert "1 payment(s)" in result.output


def test_help_lists_commands():
    result = CliRunner().invoke(cli, ["--help"], obj={"config": OrderSagaConfig()})

    assert result.exit_code == 0
    for command in ("serve", "orders", "retry-booking", "sweep", "check-pincode", "payments"):
        assert command in result.output
