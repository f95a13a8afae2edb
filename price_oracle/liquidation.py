"""
Liquidation threshold checks driven by accepted prices
"""
import asyncio
import math
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set

import httpx
import structlog

from .config import SecurityEventType, SecuritySeverity
from .error_handling import DataIntegrityError
from .models import LiquidationThresholdEvent, OpenPosition, PriceRecord, epoch_ms
from .providers import BaseAPIClient

logger = structlog.get_logger()


def _is_positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


class LiquidationExecutor(Protocol):
    async def liquidate(self, position: OpenPosition, event: LiquidationThresholdEvent) -> Dict: ...


class HttpLiquidationExecutor(BaseAPIClient):
    """Hands positions to the liquidation service that builds and signs transactions"""
    provider_name = "liquidator"

    def __init__(self, base_url: str, token: Optional[str] = None, *,
                 timeout: float = 8.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(base_url, headers, timeout=timeout, transport=transport)

    async def liquidate(self, position: OpenPosition, event: LiquidationThresholdEvent) -> Dict:
        payload = {
            "position_id": position.position_id,
            "asset_id": position.asset_id,
            "trigger_price": event.native_price,
            "liquidation_price": event.liquidation_price,
            "reason": "price_threshold",
        }
        data = await self._make_request("POST", "/liquidations", json=payload)
        if not isinstance(data, dict) or not data.get("success"):
            raise DataIntegrityError(
                f"Liquidation of {position.position_id} was not accepted: {data}",
                provider=self.provider_name,
            )
        return data


class LiquidationTrigger:
    """Compares each accepted price with the liquidation price of open positions.

    Breached positions are handed to the executor in independent tasks. A
    position is never dispatched twice while in flight, nor again within
    ``completed_ttl_ms`` of a successful liquidation. At most ``max_completed``
    completions are remembered.
    """

    def __init__(
        self,
        store,
        executor: Optional[LiquidationExecutor],
        *,
        native_price_source: Callable[[], Awaitable[Optional[float]]],
        security_monitor=None,
        completed_ttl_ms: int = 24 * 60 * 60 * 1000,
        max_completed: int = 10_000,
        clock: Callable[[], int] = epoch_ms,
    ):
        self._store = store
        self._executor = executor
        self._native_price_source = native_price_source
        self._security = security_monitor
        self._clock = clock
        self._in_flight: Set[str] = set()
        # position_id -> completion time, oldest first
        self._completed: "OrderedDict[str, int]" = OrderedDict()
        self.completed_ttl_ms = completed_ttl_ms
        self.max_completed = max_completed
        self._pending: Set[asyncio.Task] = set()
        self.triggered_count = 0
        self.failed_count = 0

    async def to_native_price(self, record: PriceRecord) -> Optional[float]:
        if _is_positive(record.native_price):
            return record.native_price
        native_usd = await self._native_price_source()
        if not _is_positive(native_usd):
            return None
        return record.usd_price / native_usd

    async def check_price(self, record: PriceRecord) -> List[LiquidationThresholdEvent]:
        try:
            native_price = await self.to_native_price(record)
            if native_price is None:
                logger.warning("Skipping liquidation check, native reference unavailable",
                               asset_id=record.asset_id)
                return []
            positions = await self._store.get_open_positions(record.asset_id)
        except Exception as e:
            logger.error("Liquidation threshold check failed", asset_id=record.asset_id, error=str(e))
            self._emit(
                SecurityEventType.PRICE_LIQUIDATION_CHECK_FAILED,
                SecuritySeverity.HIGH,
                f"Liquidation check failed for {record.asset_id}",
                asset_id=record.asset_id,
                error=str(e),
            )
            return []

        events = []
        for position in positions:
            if position.entry_price is not None and position.liquidation_price > position.entry_price:
                logger.warning("Skipping position with liquidation price above entry price",
                               position_id=position.position_id,
                               liquidation_price=position.liquidation_price,
                               entry_price=position.entry_price)
                self._emit(
                    SecurityEventType.LIQUIDATION_SKIPPED,
                    SecuritySeverity.MEDIUM,
                    f"Position {position.position_id} has a liquidation price above its entry price",
                    position_id=position.position_id,
                    asset_id=position.asset_id,
                )
                continue

            event = LiquidationThresholdEvent(
                position_id=position.position_id,
                asset_id=record.asset_id,
                native_price=native_price,
                liquidation_price=position.liquidation_price,
                observed_at_ms=record.observed_at_ms,
            )
            events.append(event)
            if event.breached:
                self._dispatch(position, event)
        return events

    def _dispatch(self, position: OpenPosition, event: LiquidationThresholdEvent) -> None:
        position_id = position.position_id
        self._prune_completed(self._clock())
        if position_id in self._in_flight or position_id in self._completed:
            logger.debug("Liquidation already handled", position_id=position_id)
            return

        if self._executor is None:
            self._emit(
                SecurityEventType.LIQUIDATION_EXECUTOR_MISSING,
                SecuritySeverity.CRITICAL,
                f"Position {position_id} breached its liquidation price but no executor is configured",
                position_id=position_id,
                asset_id=position.asset_id,
                native_price=event.native_price,
                liquidation_price=event.liquidation_price,
            )
            return

        self._in_flight.add(position_id)
        task = asyncio.create_task(self._liquidate(position, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _liquidate(self, position: OpenPosition, event: LiquidationThresholdEvent) -> None:
        self.triggered_count += 1
        self._emit(
            SecurityEventType.LIQUIDATION_TRIGGERED,
            SecuritySeverity.CRITICAL,
            f"Liquidation triggered for position {position.position_id}",
            position_id=position.position_id,
            asset_id=position.asset_id,
            native_price=event.native_price,
            liquidation_price=event.liquidation_price,
        )
        try:
            result = await self._executor.liquidate(position, event)
        except Exception as e:
            self.failed_count += 1
            logger.error("Liquidation failed", position_id=position.position_id, error=str(e))
            self._emit(
                SecurityEventType.LIQUIDATION_FAILED,
                SecuritySeverity.HIGH,
                f"Liquidation failed for position {position.position_id}",
                position_id=position.position_id,
                asset_id=position.asset_id,
                error=str(e),
            )
        else:
            self._mark_completed(position.position_id)
            logger.info("Liquidation submitted", position_id=position.position_id, result=result)
        finally:
            self._in_flight.discard(position.position_id)

    def _mark_completed(self, position_id: str) -> None:
        now_ms = self._clock()
        self._completed[position_id] = now_ms
        self._completed.move_to_end(position_id)
        self._prune_completed(now_ms)

    def _prune_completed(self, now_ms: int) -> None:
        while self._completed:
            oldest_id, completed_at_ms = next(iter(self._completed.items()))
            if len(self._completed) <= self.max_completed and now_ms - completed_at_ms < self.completed_ttl_ms:
                break
            del self._completed[oldest_id]

    def get_status(self) -> dict:
        return {
            "executor_configured": self._executor is not None,
            "in_flight": sorted(self._in_flight),
            "completed": len(self._completed),
            "triggered": self.triggered_count,
            "failed": self.failed_count,
        }

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _emit(self, event_type: str, severity: str, message: str, **details) -> None:
        if self._security is not None:
            self._security.emit(event_type, severity, message, **details)
