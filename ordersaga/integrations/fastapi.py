"""
FastAPI integration for ordersaga.

Provides:
- Router factory with the checkout, webhook, order and shipping endpoints
- Lifespan hook that initializes storage and runs the expiry sweeper
- Middleware for correlation ID propagation (X-Correlation-ID)
- Error handlers mapping ``OrderSagaError.http_status`` to JSON responses

Example:
    from ordersaga.integrations.fastapi import create_app

    app = create_app()  # OrderSagaConfig.from_env()
    # uvicorn myapp:app

    # Or mount the routes on an existing application
    app.include_router(create_router(coordinator), prefix="/api")
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ordersaga.core.config import OrderSagaConfig
from ordersaga.core.coordinator import OrderSagaCoordinator
from ordersaga.core.exceptions import OrderSagaError
from ordersaga.core.factory import build_coordinator
from ordersaga.core.logger import get_logger
from ordersaga.core.sweeper import ExpirySweeper
from ordersaga.integrations._base import CORRELATION_HEADER, correlation_scope
from ordersaga.storage.errors import ConcurrencyError
from ordersaga.types import (
    CartSnapshot,
    CustomerInfo,
    OrderItem,
    PaymentMode,
    PaymentState,
    ShipmentState,
)

logger = get_logger(__name__)

__all__ = [
    "CustomerModel",
    "IntentRequest",
    "ItemModel",
    "ServiceabilityRequest",
    "VerifyRequest",
    "create_app",
    "create_router",
    "install_error_handlers",
]


# =============================================================================
# Request models
# =============================================================================


class CustomerModel(BaseModel):
    first_name: str
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "India"

    def to_customer(self) -> CustomerInfo:
        return CustomerInfo(**self.model_dump())


class ItemModel(BaseModel):
    product_id: str
    product_name: str = ""
    unit_price: int
    quantity: int = 1
    image_url: str = ""

    def to_item(self) -> OrderItem:
        return OrderItem(**self.model_dump())


class IntentRequest(BaseModel):
    """Checkout request; ``amount`` is validated by the coordinator (minor units)"""

    customer: CustomerModel
    items: list[ItemModel] = Field(default_factory=list)
    amount: Any = None
    provider: str | None = None
    payment_mode: PaymentMode = PaymentMode.PREPAID
    return_url: str | None = None


class VerifyRequest(BaseModel):
    order_id: str
    provider_order_id: str
    payment_id: str | None = None
    signature: str | None = None


class ServiceabilityRequest(BaseModel):
    pincode: str
    weight_kg: float = 0.5
    cod: bool = False


# =============================================================================
# Router
# =============================================================================


async def _book_after_ack(coordinator: OrderSagaCoordinator, order_id: str) -> None:
    """Book a shipment after the webhook response has been sent."""
    try:
        await coordinator.book_shipment(order_id)
    except Exception as e:
        # Order stays VERIFIED/NOT_REQUESTED; an operator can trigger the booking
        logger.error(f"Background booking for {order_id} failed: {e}", exc_info=True)


def create_router(coordinator: OrderSagaCoordinator) -> APIRouter:
    """
    Create the ordersaga router.

    Args:
        coordinator: The coordinator every endpoint delegates to

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    @router.post("/checkout/intents", status_code=201, tags=["checkout"])
    async def create_intent(body: IntentRequest):
        cart = CartSnapshot(items=tuple(item.to_item() for item in body.items), amount=body.amount)
        order = await coordinator.create_intent(
            cart,
            body.customer.to_customer(),
            provider=body.provider,
            payment_mode=body.payment_mode,
            return_url=body.return_url,
        )
        return {
            "order_id": order.order_id,
            "provider": order.payment_provider.value,
            "provider_order_id": order.provider_order_id,
            "client_session_token": order.client_session_token,
            "amount": order.amount,
            "currency": order.currency,
            "payment_state": order.payment_state.value,
        }

    @router.post("/checkout/verify", tags=["checkout"])
    async def verify_payment(body: VerifyRequest):
        order = await coordinator.confirm_verification(
            body.order_id,
            body.provider_order_id,
            payment_id=body.payment_id,
            signature=body.signature,
        )
        return {
            "success": order.payment_state == PaymentState.VERIFIED,
            "order": order.to_dict(),
        }

    @router.post("/webhooks/{provider}", tags=["webhooks"])
    async def receive_webhook(provider: str, request: Request, background_tasks: BackgroundTasks):
        """
        Provider notification endpoint.

        The raw body is read untouched; signatures are computed over it.
        """
        raw_body = await request.body()
        ack = await coordinator.ingest_webhook(
            provider, raw_body, dict(request.headers), book_inline=False
        )
        if ack.shipment_pending and ack.order_id:
            background_tasks.add_task(_book_after_ack, coordinator, ack.order_id)
        return ack.to_dict()

    @router.get("/webhooks/{provider}", tags=["webhooks"])
    async def webhook_liveness(provider: str):
        coordinator.webhooks.gateway_for(provider)
        return {"status": "ok", "message": f"{provider} webhook endpoint is active"}

    @router.get("/orders", tags=["orders"])
    async def list_orders(
        payment_state: PaymentState | None = None,
        shipment_state: ShipmentState | None = None,
        limit: int = 50,
        offset: int = 0,
    ):
        orders = await coordinator.list_orders(payment_state, shipment_state, limit, offset)
        return {"orders": [order.to_dict() for order in orders], "count": len(orders)}

    @router.get("/orders/{order_id}", tags=["orders"])
    async def get_order(order_id: str):
        order = await coordinator.get_order(order_id)
        return order.to_dict()

    @router.get("/orders/{order_id}/history", tags=["orders"])
    async def order_history(order_id: str):
        events = await coordinator.order_history(order_id)
        return {"order_id": order_id, "events": [event.to_dict() for event in events]}

    @router.post("/orders/{order_id}/shipment", tags=["shipping"])
    async def book_shipment(order_id: str):
        order = await coordinator.book_shipment(order_id)
        return order.to_dict()

    @router.post("/orders/{order_id}/shipment/retry", tags=["shipping"])
    async def retry_booking(order_id: str):
        order = await coordinator.retry_booking(order_id)
        return order.to_dict()

    @router.get("/orders/{order_id}/tracking", tags=["shipping"])
    async def track_shipment(order_id: str):
        tracking = await coordinator.track_shipment(order_id)
        return {"success": True, "tracking": tracking.to_dict()}

    @router.post("/shipping/serviceability", tags=["shipping"])
    async def check_serviceability(body: ServiceabilityRequest):
        result = await coordinator.check_serviceability(body.pincode, body.weight_kg, body.cod)
        return result.to_dict()

    return router


# =============================================================================
# Application
# =============================================================================


def install_error_handlers(app: FastAPI) -> None:
    """Map saga and storage errors to JSON responses."""

    @app.exception_handler(OrderSagaError)
    async def saga_error_handler(request: Request, exc: OrderSagaError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(ConcurrencyError)
    async def concurrency_error_handler(request: Request, exc: ConcurrencyError):
        logger.warning(f"Concurrent update on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=409,
            content={"error": "ConcurrencyError", "message": str(exc), "details": {}},
        )


def create_app(
    config: OrderSagaConfig | None = None,
    coordinator: OrderSagaCoordinator | None = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration (``OrderSagaConfig.from_env()`` when None)
        coordinator: Pre-built coordinator (built from config when None)
        run_sweeper: Run the expiry sweeper for the application's lifetime
    """
    if coordinator is None:
        coordinator = build_coordinator(config or OrderSagaConfig.from_env())

    sweeper = ExpirySweeper(coordinator)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await coordinator.initialize()
        if run_sweeper:
            sweeper.start_background()
        logger.info("ordersaga API started")
        try:
            yield
        finally:
            if run_sweeper:
                await sweeper.stop()
            await coordinator.close()
            logger.info("ordersaga API shutdown complete")

    app = FastAPI(title="ordersaga", lifespan=lifespan)
    app.state.coordinator = coordinator
    app.state.sweeper = sweeper

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        with correlation_scope(request.headers.get(CORRELATION_HEADER)) as correlation_id:
            response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    install_error_handlers(app)
    app.include_router(create_router(coordinator))

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "sweeper_running": sweeper.running}

    return app
