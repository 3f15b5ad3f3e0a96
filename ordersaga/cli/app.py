"""
ordersaga CLI Application - Built with Click.

Operator commands against the configured storage and providers:

    ordersaga serve                      # FastAPI app + expiry sweeper (uvicorn)
    ordersaga orders list --payment-state verified
    ordersaga orders show ORDER_...      # --json for machine-readable output
    ordersaga orders history ORDER_...
    ordersaga retry-booking ORDER_...    # after BOOKING_FAILED
    ordersaga sweep                      # one expiry pass
    ordersaga check-pincode 110001 --cod
    ordersaga payments

Configuration comes from the environment (.env is loaded) or --config FILE.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.coordinator import OrderSagaCoordinator
from ordersaga.core.exceptions import OrderSagaError
from ordersaga.core.factory import build_coordinator
from ordersaga.monitoring.logging import configure_logging
from ordersaga.storage.errors import StorageError
from ordersaga.types import Order, PaymentState, ShipmentState

console = Console()

T = TypeVar("T")

_STATE_STYLES = {
    "verified": "green",
    "booked": "green",
    "pending": "yellow",
    "created": "yellow",
    "failed": "red",
    "expired": "red",
    "booking_failed": "red",
}


# ============================================================================
# CLI Group
# ============================================================================


class OrderedGroup(click.Group):
    """Click Group that lists commands in the order they were added."""

    def list_commands(self, ctx):
        return list(self.commands.keys())


@click.group(cls=OrderedGroup)
@click.version_option(package_name="ordersaga", prog_name="ordersaga")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML configuration file (default: environment variables)",
)
@click.option("--storage-url", help="Override ORDERSAGA_STORAGE_URL")
@click.option("--log-level", default="WARNING", show_default=True, help="Log level")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, config_path: str | None, storage_url: str | None, log_level: str, json_logs: bool):
    """
    ordersaga - Order fulfillment saga operations.

    \b
    Commands:
      serve            Run the HTTP API and expiry sweeper
      orders           Inspect orders and their audit trail
      retry-booking    Book again after a carrier failure
      sweep            Expire stale unverified orders once
      check-pincode    Ask the carrier about a pincode
      payments         List verified payment records
    """
    configure_logging(getattr(logging, log_level.upper(), logging.WARNING), json_format=json_logs)

    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        config = (
            OrderSagaConfig.from_file(config_path) if config_path else OrderSagaConfig.from_env()
        )
        if storage_url:
            config.storage_url = storage_url
        ctx.obj["config"] = config


def _run(ctx: click.Context, operation: Callable[[OrderSagaCoordinator], Awaitable[T]]) -> T:
    """Build a coordinator, run one operation, close everything."""

    async def runner() -> T:
        coordinator = build_coordinator(ctx.obj["config"])
        async with coordinator:
            return await operation(coordinator)

    try:
        return asyncio.run(runner())
    except (OrderSagaError, StorageError) as e:
        raise click.ClickException(str(e)) from e


def _styled(value: str) -> str:
    style = _STATE_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:,.2f} {currency}"


# ============================================================================
# ordersaga serve
# ============================================================================


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--no-sweeper", is_flag=True, help="Do not run the expiry sweeper")
@click.option("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
@click.pass_context
def serve_cmd(ctx, host: str, port: int, no_sweeper: bool, metrics_port: int | None):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from ordersaga.integrations.fastapi import create_app
    from ordersaga.monitoring.metrics import start_metrics_server

    if metrics_port:
        start_metrics_server(metrics_port)

    app = create_app(ctx.obj["config"], run_sweeper=not no_sweeper)
    console.print(f"[bold green]ordersaga[/bold green] listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


# ============================================================================
# ordersaga orders
# ============================================================================


@cli.group("orders")
def orders_group():
    """Inspect orders."""


@orders_group.command("list")
@click.option(
    "--payment-state",
    type=click.Choice([s.value for s in PaymentState]),
    help="Filter by payment state",
)
@click.option(
    "--shipment-state",
    type=click.Choice([s.value for s in ShipmentState]),
    help="Filter by shipment state",
)
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def orders_list(ctx, payment_state: str | None, shipment_state: str | None, limit: int):
    """List orders, newest first."""
    orders = _run(
        ctx,
        lambda c: c.list_orders(
            PaymentState(payment_state) if payment_state else None,
            ShipmentState(shipment_state) if shipment_state else None,
            limit=limit,
        ),
    )

    if not orders:
        console.print("[yellow]No orders found[/yellow]")
        return

    table = Table(title="Orders")
    table.add_column("Order", style="cyan", no_wrap=True)
    table.add_column("Provider")
    table.add_column("Amount", justify="right")
    table.add_column("Payment")
    table.add_column("Shipment")
    table.add_column("Waybill")
    table.add_column("Created", style="dim")

    for order in orders:
        table.add_row(
            order.order_id,
            order.payment_provider.value,
            _format_amount(order.amount, order.currency),
            _styled(order.payment_state.value),
            _styled(order.shipment_state.value),
            order.waybill or "-",
            order.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)
    console.print(f"{len(orders)} order(s)")


@orders_group.command("show")
@click.argument("order_id")
@click.option("--json", "as_json", is_flag=True, help="Print the order as JSON")
@click.pass_context
def orders_show(ctx, order_id: str, as_json: bool):
    """Show one order."""
    order = _run(ctx, lambda c: c.get_order(order_id))

    if as_json:
        click.echo(json.dumps(order.to_dict(), indent=2))
        return
    _print_order(order)


def _print_order(order: Order) -> None:
    table = Table(title=f"Order {order.order_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Provider", f"{order.payment_provider.value} ({order.provider_order_id})")
    table.add_row("Amount", _format_amount(order.amount, order.currency))
    table.add_row("Customer", f"{order.customer_info.full_name} <{order.customer_info.email}>")
    table.add_row("Items", ", ".join(f"{i.product_name} x{i.quantity}" for i in order.items))
    table.add_row("Payment", _styled(order.payment_state.value))
    table.add_row("Shipment", _styled(order.shipment_state.value))
    if order.payment_id:
        table.add_row("Payment ID", order.payment_id)
    if order.waybill:
        table.add_row("Waybill", order.waybill)
    if order.failure_reason:
        table.add_row("Failure", f"[red]{order.failure_reason}[/red]")
    if order.shipment_error:
        table.add_row("Shipment error", f"[red]{order.shipment_error}[/red]")
    table.add_row("Version", str(order.version))
    table.add_row("Created", order.created_at.isoformat())
    table.add_row("Updated", order.updated_at.isoformat())
    console.print(table)


@orders_group.command("history")
@click.argument("order_id")
@click.pass_context
def orders_history(ctx, order_id: str):
    """Show the audit trail of one order."""
    events = _run(ctx, lambda c: c.order_history(order_id))

    table = Table(title=f"History of {order_id}")
    table.add_column("#", style="dim")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Event", style="green")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Source", style="yellow")
    table.add_column("Details", style="dim")

    for index, event in enumerate(events, 1):
        table.add_row(
            str(index),
            event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.kind,
            event.from_state or "-",
            event.to_state or "-",
            event.source,
            json.dumps(event.details) if event.details else "",
        )

    console.print(table)


# ============================================================================
# Operator actions
# ============================================================================


@cli.command("retry-booking")
@click.argument("order_id")
@click.pass_context
def retry_booking_cmd(ctx, order_id: str):
    """Book the shipment again for a verified order."""
    order = _run(ctx, lambda c: c.retry_booking(order_id))

    if order.shipment_state == ShipmentState.BOOKED:
        console.print(f"[bold green]Booked[/bold green] {order_id}: waybill {order.waybill}")
    else:
        console.print(f"[bold red]Booking failed[/bold red] {order_id}: {order.shipment_error}")
        ctx.exit(1)


@cli.command("sweep")
@click.pass_context
def sweep_cmd(ctx):
    """Expire stale unverified orders (one pass)."""

    async def sweep(coordinator: OrderSagaCoordinator) -> tuple[list[Order], int]:
        changed = await coordinator.expire_stale_orders()
        removed = await coordinator.cleanup_dedup()
        return changed, removed

    changed, removed = _run(ctx, sweep)

    for order in changed:
        console.print(f"  {order.order_id} → {_styled(order.payment_state.value)}")
    console.print(f"{len(changed)} order(s) updated, {removed} dedup marker(s) removed")


@cli.command("check-pincode")
@click.argument("pincode")
@click.option("--weight", "weight_kg", default=0.5, show_default=True, type=float)
@click.option("--cod", is_flag=True, help="Cash on delivery")
@click.pass_context
def check_pincode_cmd(ctx, pincode: str, weight_kg: float, cod: bool):
    """Check carrier serviceability for a pincode."""
    result = _run(ctx, lambda c: c.check_serviceability(pincode, weight_kg, cod))

    if not result.serviceable:
        console.print(f"[bold red]{pincode} is not serviceable[/bold red]: {result.error or ''}")
        ctx.exit(1)

    console.print(f"[bold green]{pincode} is serviceable[/bold green]")
    if result.delivery_time:
        console.print(f"Estimated delivery: {result.delivery_time}")
    if result.charges:
        charges = ", ".join(f"{mode} ₹{value / 100:.0f}" for mode, value in result.charges.items())
        console.print(f"Charges: {charges}")


@cli.command("payments")
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def payments_cmd(ctx, limit: int):
    """List recorded payments."""
    records = _run(ctx, lambda c: c.list_payments(limit=limit))

    table = Table(title="Payment records")
    table.add_column("Order", style="cyan", no_wrap=True)
    table.add_column("Provider order", no_wrap=True)
    table.add_column("Payment ID")
    table.add_column("Recorded", style="dim")
    for record in records:
        table.add_row(
            record.order_id,
            record.provider_order_id,
            record.payment_id or "-",
            record.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)
    console.print(f"{len(records)} payment(s)")


def main(args: list[str] | None = None) -> Any:
    """Main entry point for the ordersaga CLI."""
    return cli(args=args, obj={})


if __name__ == "__main__":
    main()
