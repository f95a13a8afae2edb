"""
Live price stream over WebSocket.

State machine: DISCONNECTED -> CONNECTING -> SUBSCRIBED -> DISCONNECTED, with
reconnects after exponential backoff until the retry policy is exhausted
(GAVE_UP). The tracked asset set is additive and re-subscribed on every
connect.
"""
import asyncio
import json
import math
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

import structlog
from websockets.asyncio.client import connect

from .cache import PriceCache
from .config import PriceSource, SecurityEventType, SecuritySeverity
from .error_handling import DataIntegrityError, RetryPolicy
from .models import PriceRecord, epoch_ms, validate_usd_price

logger = structlog.get_logger()


def parse_timestamp_ms(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return int(value)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    GAVE_UP = "gave_up"
    STOPPED = "stopped"


def websocket_connector(url: str, headers: Dict[str, str]):
    return connect(url, additional_headers=headers, open_timeout=10, ping_interval=20)


class LivePriceStream:
    def __init__(
        self,
        url: str,
        api_key: Optional[str],
        cache: PriceCache,
        *,
        trigger=None,
        security_monitor=None,
        retry_policy: Optional[RetryPolicy] = None,
        max_price_usd: float = 1_000_000.0,
        extreme_move_threshold: float = 0.5,
        connector: Callable[[str, Dict[str, str]], Any] = websocket_connector,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.url = url
        self._api_key = api_key
        self.cache = cache
        self._trigger = trigger
        self._security = security_monitor
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=30.0)
        self.max_price_usd = max_price_usd
        self.extreme_move_threshold = extreme_move_threshold
        self._connector = connector
        self._sleep = sleep
        self._clock = clock

        self.state = StreamState.DISCONNECTED
        self._tracked: Set[str] = set()
        self._connection = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.reconnect_attempts = 0
        self.updates_received = 0
        self.updates_rejected = 0
        self.last_message_at_ms: Optional[int] = None

    @property
    def tracked_assets(self) -> frozenset:
        return frozenset(self._tracked)

    async def track_assets(self, asset_ids: Iterable[str]) -> Set[str]:
        """Add assets to the tracking set; subscribes immediately when connected"""
        new_assets = set(asset_ids) - self._tracked
        if not new_assets:
            return new_assets
        self._tracked.update(new_assets)
        if self.state == StreamState.SUBSCRIBED and self._connection is not None:
            try:
                await self._subscribe(new_assets)
            except Exception as e:
                # the full set is re-sent on the next connect
                logger.warning("Incremental price stream subscribe failed", error=str(e))
        return new_assets

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self.reconnect_attempts = 0
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stopping = True
        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception as e:
                logger.debug("Error closing price stream", error=str(e))
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self.state = StreamState.STOPPED
        logger.info("Price stream stopped")

    async def run(self) -> None:
        """Connection loop; returns after stop() or once reconnects are exhausted"""
        while not self._stopping:
            self.state = StreamState.CONNECTING
            try:
                async with self._connector(self.url, self._headers()) as connection:
                    self._connection = connection
                    await self._on_open()
                    async for message in connection:
                        await self.handle_message(message)
                self._on_close(None)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._on_close(e)
            finally:
                self._connection = None

            if self._stopping:
                break
            self.state = StreamState.DISCONNECTED
            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.retry_policy.max_attempts:
                self.state = StreamState.GAVE_UP
                logger.error("Price stream gave up reconnecting, relying on polling",
                             attempts=self.reconnect_attempts - 1)
                self._emit(
                    SecurityEventType.PRICE_STREAM_GAVE_UP,
                    SecuritySeverity.HIGH,
                    "Price stream exhausted reconnect attempts, falling back to polling",
                    attempts=self.reconnect_attempts - 1,
                )
                return

            delay = self.retry_policy.delay_for(self.reconnect_attempts)
            logger.info("Reconnecting price stream", attempt=self.reconnect_attempts, delay_seconds=delay)
            await self._sleep(delay)

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self._api_key} if self._api_key else {}

    async def _on_open(self) -> None:
        if self._tracked:
            await self._subscribe(self._tracked)
        self.state = StreamState.SUBSCRIBED
        self.reconnect_attempts = 0
        logger.info("Price stream connected", tracked=len(self._tracked))
        self._emit(
            SecurityEventType.PRICE_STREAM_CONNECTED,
            SecuritySeverity.LOW,
            "Price stream connected",
            tracked=len(self._tracked),
        )

    def _on_close(self, error: Optional[Exception]) -> None:
        if self._stopping:
            return
        if error is None:
            logger.warning("Price stream disconnected")
            self._emit(
                SecurityEventType.PRICE_STREAM_DISCONNECTED,
                SecuritySeverity.MEDIUM,
                "Price stream disconnected",
            )
        else:
            logger.error("Price stream error", error=str(error), error_type=type(error).__name__)
            self._emit(
                SecurityEventType.PRICE_STREAM_ERROR,
                SecuritySeverity.HIGH,
                "Price stream connection error",
                error=str(error),
                error_type=type(error).__name__,
            )

    async def _subscribe(self, asset_ids: Iterable[str]) -> None:
        message = {"method": "subscribe", "params": {"ids": sorted(asset_ids)}}
        await self._connection.send(json.dumps(message))

    async def handle_message(self, raw: Any) -> None:
        self.last_message_at_ms = self._clock()
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            self.updates_rejected += 1
            logger.warning("Unparseable price stream message")
            return

        updates = payload if isinstance(payload, list) else [payload]
        for update in updates:
            if not isinstance(update, dict) or "id" not in update or "price" not in update:
                logger.debug("Ignoring non-price stream message")
                continue
            try:
                await self.handle_price_update(
                    str(update["id"]), update["price"], parse_timestamp_ms(update.get("timestamp"))
                )
            except Exception as e:
                self.updates_rejected += 1
                logger.error("Failed to apply stream price update",
                             asset_id=str(update["id"]), error=str(e), exc_info=True)

    async def handle_price_update(self, asset_id: str, raw_price: Any,
                                  timestamp_ms: Optional[int] = None) -> Optional[PriceRecord]:
        """Validate, cache, then run the liquidation check before returning"""
        self.updates_received += 1
        try:
            usd_price = validate_usd_price(raw_price, self.max_price_usd)
        except DataIntegrityError as e:
            self.updates_rejected += 1
            self._emit(
                SecurityEventType.PRICE_INVALID_DATA,
                SecuritySeverity.MEDIUM,
                f"Rejected invalid stream price for {asset_id}",
                asset_id=asset_id,
                raw_price=str(raw_price),
                error=str(e),
            )
            return None

        previous = self.cache.peek(asset_id)
        if previous is not None:
            previous_price = previous.record.usd_price
            change = abs(usd_price - previous_price) / previous_price
            if change > self.extreme_move_threshold:
                self._emit(
                    SecurityEventType.PRICE_EXTREME_MOVEMENT,
                    SecuritySeverity.HIGH,
                    f"Price of {asset_id} moved {change:.0%} in one update",
                    asset_id=asset_id,
                    previous_price=previous_price,
                    new_price=usd_price,
                    change=round(change, 4),
                )

        record = PriceRecord(
            asset_id=asset_id,
            usd_price=usd_price,
            source=PriceSource.PRICE_STREAM,
            observed_at_ms=timestamp_ms or self._clock(),
        )
        # stream updates always replace the cached value, whatever its timestamp
        await self.cache.store(record, force=True)

        if self._trigger is not None:
            await self._trigger.check_price(record)
        return record

    def get_status(self) -> dict:
        return {
            "state": self.state.value,
            "tracked_assets": len(self._tracked),
            "reconnect_attempts": self.reconnect_attempts,
            "updates_received": self.updates_received,
            "updates_rejected": self.updates_rejected,
            "last_message_at_ms": self.last_message_at_ms,
        }

    def _emit(self, event_type: str, severity: str, message: str, **details) -> None:
        if self._security is not None:
            self._security.emit(event_type, severity, message, **details)
