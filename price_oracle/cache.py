"""
TTL-bounded price cache with an optional Redis tier
"""
import json
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
import structlog

from .models import PriceRecord, epoch_ms

logger = structlog.get_logger()


@dataclass(frozen=True)
class CacheEntry:
    record: PriceRecord
    inserted_at_ms: int

    def is_fresh(self, now_ms: int, ttl_ms: int) -> bool:
        return now_ms < self.inserted_at_ms + ttl_ms


class PriceCache:
    """Short-lived price cache.

    An entry inserted at T is fresh for reads strictly before T + ttl and never
    after. Stale entries are only returned when the caller passes
    ``allow_stale=True``. Writes are last-writer-wins by observation time.
    """

    def __init__(
        self,
        ttl_ms: int = 3000,
        *,
        redis_client: Optional[aioredis.Redis] = None,
        redis_ttl_seconds: int = 10,
        key_prefix: str = "price:",
        clock: Callable[[], int] = epoch_ms,
    ):
        self.ttl_ms = ttl_ms
        self._redis = redis_client
        self._redis_ttl_seconds = redis_ttl_seconds
        self._key_prefix = key_prefix
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.distributed_hits = 0

    def peek(self, asset_id: str) -> Optional[CacheEntry]:
        """Raw entry regardless of freshness"""
        return self._entries.get(asset_id)

    def get(self, asset_id: str, allow_stale: bool = False) -> Optional[PriceRecord]:
        entry = self._entries.get(asset_id)
        if entry is None:
            self.misses += 1
            return None
        if allow_stale or entry.is_fresh(self._clock(), self.ttl_ms):
            self.hits += 1
            return entry.record
        self.misses += 1
        return None

    def put(self, record: PriceRecord, force: bool = False) -> bool:
        """Insert into the in-process tier; an older observation never replaces a newer one unless forced"""
        existing = self._entries.get(record.asset_id)
        if not force and existing is not None and existing.record.observed_at_ms > record.observed_at_ms:
            return False
        self._entries[record.asset_id] = CacheEntry(record=record, inserted_at_ms=self._clock())
        return True

    async def store(self, record: PriceRecord, force: bool = False) -> bool:
        accepted = self.put(record, force=force)
        if accepted and self._redis is not None:
            payload = json.dumps({
                "record": record.model_dump(),
                "inserted_at_ms": self._entries[record.asset_id].inserted_at_ms,
            })
            try:
                await self._redis.setex(
                    f"{self._key_prefix}{record.asset_id}", self._redis_ttl_seconds, payload
                )
            except Exception as e:
                logger.warning("Redis price cache write failed", asset_id=record.asset_id, error=str(e))
        return accepted

    async def _get_distributed(self, asset_id: str) -> Optional[PriceRecord]:
        try:
            raw = await self._redis.get(f"{self._key_prefix}{asset_id}")
        except Exception as e:
            logger.warning("Redis price cache read failed", asset_id=asset_id, error=str(e))
            return None
        if not raw:
            return None

        try:
            payload = json.loads(raw)
            entry = CacheEntry(
                record=PriceRecord(**payload["record"]),
                inserted_at_ms=int(payload["inserted_at_ms"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding malformed Redis price entry", asset_id=asset_id, error=str(e))
            return None

        if not entry.is_fresh(self._clock(), self.ttl_ms):
            return None

        existing = self._entries.get(asset_id)
        if existing is None or existing.record.observed_at_ms <= entry.record.observed_at_ms:
            self._entries[asset_id] = entry
        self.distributed_hits += 1
        return entry.record

    async def fetch(self, asset_ids: Iterable[str]) -> Dict[str, PriceRecord]:
        """Fresh records for the given assets, consulting Redis for local misses"""
        results: Dict[str, PriceRecord] = {}
        for asset_id in asset_ids:
            record = self.get(asset_id)
            if record is None and self._redis is not None:
                record = await self._get_distributed(asset_id)
            if record is not None:
                results[asset_id] = record
        return results

    def clear(self, asset_ids: Optional[Iterable[str]] = None) -> int:
        """Drop entries from the in-process tier; returns the number removed"""
        if asset_ids is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        removed = 0
        for asset_id in asset_ids:
            if self._entries.pop(asset_id, None) is not None:
                removed += 1
        return removed

    def stats(self) -> dict:
        now = self._clock()
        fresh: List[str] = [
            asset_id for asset_id, entry in self._entries.items()
            if entry.is_fresh(now, self.ttl_ms)
        ]
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "fresh_entries": len(fresh),
            "ttl_ms": self.ttl_ms,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "distributed_enabled": self._redis is not None,
            "distributed_hits": self.distributed_hits,
        }
