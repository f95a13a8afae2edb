import asyncio
from typing import List

import structlog

from .config import SecurityEventType, SecuritySeverity

logger = structlog.get_logger()


class BackgroundTaskManager:
    """Runs the periodic price refresh, breaker evaluation and the live stream"""

    def __init__(self, services):
        self.services = services
        self.is_running = False
        self.tasks: List[asyncio.Task] = []
        self.refresh_interval = services.settings.PRICE_REFRESH_INTERVAL_SECONDS
        self.breaker_interval = services.settings.BREAKER_CHECK_INTERVAL_SECONDS
        self.refresh_cycles = 0
        self.breaker_checks = 0

    async def start(self):
        """Start all background tasks"""
        if self.is_running:
            logger.warning("Background tasks already running")
            return

        self.is_running = True
        logger.info("Starting background tasks")

        self.tasks.append(asyncio.create_task(self._price_refresh_loop()))
        self.tasks.append(asyncio.create_task(self._circuit_breaker_loop()))

        if self.services.stream is not None:
            self.services.stream.start()

        self.services.security.emit(
            SecurityEventType.BACKGROUND_TASKS_STARTED,
            SecuritySeverity.LOW,
            "Background tasks started",
            task_count=len(self.tasks),
            refresh_interval_seconds=self.refresh_interval,
            breaker_interval_seconds=self.breaker_interval,
        )

    async def stop(self):
        """Stop all background tasks"""
        if not self.is_running:
            return

        logger.info("Stopping background tasks")
        self.is_running = False

        for task in self.tasks:
            task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()

        if self.services.stream is not None:
            await self.services.stream.stop()

    async def _price_refresh_loop(self):
        """Refresh enabled assets so prices and the stream's tracking set stay current"""
        while self.is_running:
            try:
                prices = await self.services.refresh_prices()
                self.refresh_cycles += 1
                logger.debug("Price refresh cycle completed", resolved=len(prices),
                             cycle=self.refresh_cycles)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in price refresh loop", error=str(e))

            await asyncio.sleep(self.refresh_interval)

    async def _circuit_breaker_loop(self):
        while self.is_running:
            try:
                state = await self.services.circuit_breaker.evaluate()
                self.breaker_checks += 1
                if state.tripped:
                    logger.warning("Circuit breaker is tripped", reason=state.reason)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in circuit breaker loop", error=str(e))
                self.services.security.emit(
                    SecurityEventType.CIRCUIT_BREAKER_METRICS_FAILED,
                    SecuritySeverity.HIGH,
                    "Circuit breaker evaluation loop failed",
                    error=str(e),
                )

            await asyncio.sleep(self.breaker_interval)

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "tasks": len(self.tasks),
            "refresh_cycles": self.refresh_cycles,
            "breaker_checks": self.breaker_checks,
        }
