"""
Price aggregation: cache, provider waterfall, history persistence
"""
import asyncio
import re
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog

from .cache import PriceCache
from .config import SecurityEventType, SecuritySeverity
from .error_handling import (
    FailureKind, InvalidAssetListError, PriceUnavailableError, TransientUpstreamError
)
from .models import PriceRecord, epoch_ms
from .providers import PriceProvider, ProviderResult

logger = structlog.get_logger()

# base58 Solana public key
ASSET_ID_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

DAY_MS = 24 * 60 * 60 * 1000

HISTORY_INTERVALS_MS = {
    "1h": 60 * 60 * 1000,
    "4h": 4 * 60 * 60 * 1000,
    "1d": DAY_MS,
}
HISTORY_DEFAULT_WINDOW_MS = 7 * DAY_MS

PriceListener = Callable[[PriceRecord], Awaitable[object]]


def group_price_history(records: Iterable[PriceRecord], interval: str) -> List[PriceRecord]:
    """Keep the latest record of each interval bucket, ordered by bucket"""
    interval_ms = HISTORY_INTERVALS_MS[interval]
    buckets: Dict[int, PriceRecord] = {}
    for record in records:
        bucket = record.observed_at_ms // interval_ms * interval_ms
        current = buckets.get(bucket)
        if current is None or record.observed_at_ms > current.observed_at_ms:
            buckets[bucket] = record
    return [buckets[bucket] for bucket in sorted(buckets)]


class PriceHistoryRecorder:
    """Appends accepted prices to history, skipping moves below ``min_change``"""

    def __init__(self, store, min_change: float = 0.001):
        self._store = store
        self.min_change = min_change
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def record(self, record: PriceRecord) -> bool:
        # serialised per asset so two close observations cannot both pass the check
        async with self._locks[record.asset_id]:
            last_price = await self._store.get_last_price(record.asset_id)
            if last_price:
                change = abs(record.usd_price - last_price) / last_price
                if change < self.min_change:
                    return False
            await self._store.append_price_history(record)
            return True


class PriceAggregator:
    """Resolves prices through the cache and a strict provider waterfall.

    Order: cache, batched primary provider, then the per-asset providers in
    the order given. Assets no provider resolves are omitted from the result.
    """

    def __init__(
        self,
        cache: PriceCache,
        batch_provider: PriceProvider,
        per_asset_providers: List[PriceProvider],
        *,
        native_asset_id: str,
        store=None,
        history: Optional[PriceHistoryRecorder] = None,
        security_monitor=None,
        stale_after_ms: int = 60_000,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.cache = cache
        self.batch_provider = batch_provider
        self.per_asset_providers = list(per_asset_providers)
        self.native_asset_id = native_asset_id
        self._store = store
        self._history = history
        self._security = security_monitor
        self.stale_after_ms = stale_after_ms
        self._clock = clock
        self._listeners: List[PriceListener] = []
        self._pending: Set[asyncio.Task] = set()
        self.requests_served = 0
        self.unresolved_total = 0

    def add_listener(self, listener: PriceListener) -> None:
        """Register a coroutine called with every newly accepted price"""
        self._listeners.append(listener)

    @staticmethod
    def normalize_asset_ids(asset_ids: Iterable[str]) -> List[str]:
        """Deduplicate and validate ids; raises only when none are valid"""
        valid: List[str] = []
        invalid: List[str] = []
        seen: Set[str] = set()
        for raw in asset_ids:
            asset_id = (raw or "").strip()
            if not asset_id or asset_id in seen:
                continue
            seen.add(asset_id)
            if ASSET_ID_PATTERN.match(asset_id):
                valid.append(asset_id)
            else:
                invalid.append(asset_id)

        if invalid:
            logger.warning("Ignoring invalid asset ids", invalid=invalid)
        if not valid:
            raise InvalidAssetListError("No valid asset ids requested", invalid_ids=invalid)
        return valid

    async def get_prices(self, asset_ids: Iterable[str]) -> Dict[str, PriceRecord]:
        requested = self.normalize_asset_ids(asset_ids)
        self.requests_served += 1

        results = await self.cache.fetch(requested)
        missing = [asset_id for asset_id in requested if asset_id not in results]
        if not missing:
            return results

        attempted: Dict[str, List[str]] = defaultdict(list)
        accepted: List[PriceRecord] = []

        outcome = await self._query(self.batch_provider, set(missing))
        missing = await self._merge(self.batch_provider, outcome, missing, results, attempted, accepted)

        for provider in self.per_asset_providers:
            if not missing:
                break
            for asset_id in list(missing):
                outcome = await self._query(provider, {asset_id})
                missing = await self._merge(provider, outcome, missing, results, attempted, accepted)

        if missing:
            self.unresolved_total += len(missing)
            logger.warning("No provider resolved price", assets=missing)
            self._emit(
                SecurityEventType.PRICE_UNAVAILABLE,
                SecuritySeverity.HIGH,
                f"No price source resolved {len(missing)} asset(s)",
                assets=missing,
                providers_tried=sorted({name for names in attempted.values() for name in names}),
            )

        for record in accepted:
            self._after_accept(record)
        return results

    async def _query(self, provider: PriceProvider, asset_ids: Set[str]) -> ProviderResult:
        try:
            return await provider.fetch_prices(asset_ids)
        except Exception as e:
            # adapters are expected to report failures in the result
            logger.error("Price provider raised", provider=provider.name, error=str(e), exc_info=True)
            return ProviderResult(error=TransientUpstreamError(str(e), provider=provider.name))

    async def _merge(self, provider: PriceProvider, outcome: ProviderResult, missing: List[str],
                     results: Dict[str, PriceRecord], attempted: Dict[str, List[str]],
                     accepted: List[PriceRecord]) -> List[str]:
        still_missing = []
        for asset_id in missing:
            record = outcome.prices.get(asset_id)
            if record is None:
                still_missing.append(asset_id)
                attempted[asset_id].append(provider.name)
                continue

            results[asset_id] = record
            await self.cache.store(record)
            accepted.append(record)
            if attempted.get(asset_id):
                self._emit(
                    SecurityEventType.PRICE_SOURCE_FAILOVER,
                    SecuritySeverity.MEDIUM,
                    f"Price for {asset_id} resolved by fallback provider {provider.name}",
                    asset_id=asset_id,
                    failed_providers=attempted[asset_id],
                    provider=provider.name,
                )

        if outcome.error is not None and outcome.error.kind is not FailureKind.UNAVAILABLE:
            self._emit(
                SecurityEventType.PRICE_PROVIDER_ERROR,
                SecuritySeverity.MEDIUM,
                f"Price provider {provider.name} failed",
                provider=provider.name,
                error=outcome.error.to_dict(),
                resolved=len(outcome.prices),
            )
        return still_missing

    def _after_accept(self, record: PriceRecord) -> None:
        if self._history is not None:
            self._spawn(self._persist(record))
        for listener in self._listeners:
            self._spawn(self._notify(listener, record))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, record: PriceRecord) -> None:
        try:
            await self._history.record(record)
        except Exception as e:
            logger.error("Failed to persist price history", asset_id=record.asset_id, error=str(e))

    async def _notify(self, listener: PriceListener, record: PriceRecord) -> None:
        try:
            await listener(record)
        except Exception as e:
            logger.error("Price listener failed", asset_id=record.asset_id, error=str(e), exc_info=True)

    async def get_price(self, asset_id: str) -> Optional[PriceRecord]:
        return (await self.get_prices([asset_id])).get(asset_id)

    async def get_current_price(self, asset_id: str) -> PriceRecord:
        """Price for a risk decision; missing or stale data is audited"""
        record = await self.get_price(asset_id)
        if record is None:
            self._emit(
                SecurityEventType.PRICE_STALE_DATA,
                SecuritySeverity.HIGH,
                f"No price available for {asset_id}",
                asset_id=asset_id,
            )
            raise PriceUnavailableError(f"No price available for {asset_id}")

        age_ms = self._clock() - record.observed_at_ms
        if age_ms > self.stale_after_ms:
            self._emit(
                SecurityEventType.PRICE_STALE_DATA,
                SecuritySeverity.MEDIUM,
                f"Price for {asset_id} is {age_ms // 1000}s old",
                asset_id=asset_id,
                age_ms=age_ms,
                source=record.source,
            )
        return record

    async def get_native_usd_price(self) -> Optional[float]:
        """Native asset USD reference from the cache or the batched provider"""
        cached = await self.cache.fetch([self.native_asset_id])
        if self.native_asset_id in cached:
            return cached[self.native_asset_id].usd_price

        outcome = await self._query(self.batch_provider, {self.native_asset_id})
        record = outcome.prices.get(self.native_asset_id)
        if record is None:
            logger.warning("Native USD reference unavailable",
                           error=str(outcome.error) if outcome.error else None)
            return None
        await self.cache.store(record)
        self._after_accept(record)
        return record.usd_price

    async def get_price_24h_ago(self, asset_id: str) -> Optional[float]:
        if self._store is None:
            return None
        return await self._store.get_price_near(asset_id, self._clock() - DAY_MS)

    async def get_price_history(self, asset_id: str, interval: str = "1h",
                                from_ms: Optional[int] = None,
                                to_ms: Optional[int] = None) -> List[PriceRecord]:
        """Stored history bucketed by ``interval``; defaults to the last seven days"""
        if interval not in HISTORY_INTERVALS_MS:
            raise ValueError(f"Unsupported history interval {interval!r}")
        if self._store is None:
            return []
        to_ms = to_ms if to_ms is not None else self._clock()
        from_ms = from_ms if from_ms is not None else to_ms - HISTORY_DEFAULT_WINDOW_MS
        records = await self._store.get_price_history(asset_id, from_ms, to_ms)
        return group_price_history(records, interval)

    def clear_cache(self, asset_ids: Optional[Iterable[str]] = None) -> int:
        removed = self.cache.clear(asset_ids)
        logger.info("Price cache cleared", removed=removed)
        return removed

    def get_cache_stats(self) -> dict:
        return self.cache.stats()

    def get_service_status(self) -> dict:
        return {
            "providers": [self.batch_provider.name] + [p.name for p in self.per_asset_providers],
            "native_asset_id": self.native_asset_id,
            "cache": self.cache.stats(),
            "requests_served": self.requests_served,
            "unresolved_total": self.unresolved_total,
            "pending_tasks": len(self._pending),
        }

    async def drain(self) -> None:
        """Wait for queued history writes and listener calls"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _emit(self, event_type: str, severity: str, message: str, **details) -> None:
        if self._security is not None:
            self._security.emit(event_type, severity, message, **details)
