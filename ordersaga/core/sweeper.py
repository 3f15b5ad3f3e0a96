"""
Expiry Sweeper - periodically expires unverified orders.

Each pass:
    1. Lists orders still CREATED/PENDING past the payment window
    2. Asks the provider once per order (PAID → verify, else → EXPIRED)
    3. Drops dedup markers older than the retention window
    4. Sleeps until the next interval or shutdown

Usage:
    >>> sweeper = ExpirySweeper(coordinator, interval_seconds=60)
    >>> sweeper.start_background()
    >>> ...
    >>> await sweeper.stop()
"""

from __future__ import annotations

import asyncio
import signal
import uuid
from typing import TYPE_CHECKING, Any

from ordersaga.core.logger import get_logger

if TYPE_CHECKING:
    from ordersaga.core.coordinator import OrderSagaCoordinator

logger = get_logger(__name__)


class ExpirySweeper:
    """Background loop around ``OrderSagaCoordinator.expire_stale_orders``."""

    def __init__(
        self,
        coordinator: OrderSagaCoordinator,
        interval_seconds: float | None = None,
        sweeper_id: str | None = None,
    ):
        self.coordinator = coordinator
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else coordinator.config.sweep_interval_seconds
        )
        self.sweeper_id = sweeper_id or f"sweeper-{uuid.uuid4().hex[:8]}"

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._task: asyncio.Task | None = None

        self._passes = 0
        self._orders_changed = 0
        self._dedup_removed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> int:
        """
        One sweep pass.

        Returns:
            Number of orders whose state changed
        """
        changed = await self.coordinator.expire_stale_orders()
        removed = await self.coordinator.cleanup_dedup()

        self._passes += 1
        self._orders_changed += len(changed)
        self._dedup_removed += removed
        if removed:
            logger.info(f"Sweeper {self.sweeper_id} removed {removed} old dedup markers")
        return len(changed)

    async def start(self, install_signal_handlers: bool = False) -> None:
        """
        Run until stop() is called.

        Args:
            install_signal_handlers: Stop on SIGTERM/SIGINT (standalone use only)
        """
        self._running = True
        self._shutdown_event.clear()
        if install_signal_handlers:
            self._setup_signal_handlers()
        await self._run_loop()

    async def _run_loop(self) -> None:
        logger.info(f"Expiry sweeper {self.sweeper_id} starting (every {self.interval_seconds}s)")
        try:
            while self._running:
                await self._iteration()
        finally:
            self._running = False
            logger.info(f"Expiry sweeper {self.sweeper_id} stopped")

    def start_background(self) -> asyncio.Task:
        """Start the loop as a task on the running event loop."""
        if self._task is None or self._task.done():
            self._running = True
            self._shutdown_event.clear()
            self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def _iteration(self) -> None:
        try:
            await self.run_once()
        except asyncio.CancelledError:
            self._running = False
            raise
        except Exception as e:
            logger.error(f"Sweeper {self.sweeper_id} pass failed: {e}", exc_info=True)

        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
        except TimeoutError:
            pass  # Interval elapsed, sweep again

    async def stop(self) -> None:
        """Stop the loop and wait for the current pass to finish."""
        logger.info(f"Stopping sweeper {self.sweeper_id}")
        self._running = False
        self._shutdown_event.set()
        if self._task is not None and not self._task.done():
            await self._task
        self._task = None

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:  # pragma: no cover
                pass  # Windows doesn't support add_signal_handler

    def _handle_shutdown(self) -> None:
        logger.info(f"Shutdown signal received for sweeper {self.sweeper_id}")
        self._running = False
        self._shutdown_event.set()

    def get_stats(self) -> dict[str, Any]:
        return {
            "sweeper_id": self.sweeper_id,
            "running": self._running,
            "passes": self._passes,
            "orders_changed": self._orders_changed,
            "dedup_removed": self._dedup_removed,
        }
