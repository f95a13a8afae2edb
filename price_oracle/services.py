"""
Construction and wiring of the oracle components
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
import redis.asyncio as aioredis
import structlog

from .aggregator import PriceAggregator, PriceHistoryRecorder
from .cache import PriceCache
from .circuit_breaker import ProtocolCircuitBreaker
from .endpoint_pool import EndpointPool
from .error_handling import RetryPolicy
from .liquidation import HttpLiquidationExecutor, LiquidationTrigger
from .models import PriceRecord, epoch_ms
from .price_stream import LivePriceStream, websocket_connector
from .providers import (
    BondingCurveProvider, ChainStateReader, LiquidityAggregatorClient,
    LiquidityAggregatorProvider, QuoteApiProvider
)
from .security import AuditForwarder, SecurityMonitor

logger = structlog.get_logger()


@dataclass
class OracleServices:
    settings: Any
    store: Any
    security: SecurityMonitor
    endpoint_pool: EndpointPool
    cache: PriceCache
    quote_provider: QuoteApiProvider
    bonding_curve_provider: BondingCurveProvider
    liquidity_provider: LiquidityAggregatorProvider
    aggregator: PriceAggregator
    liquidation_trigger: LiquidationTrigger
    circuit_breaker: ProtocolCircuitBreaker
    stream: Optional[LivePriceStream] = None
    executor: Optional[HttpLiquidationExecutor] = None
    db_manager: Any = None

    async def refresh_prices(self, asset_ids: Optional[Iterable[str]] = None) -> Dict[str, PriceRecord]:
        """Refresh enabled (or given) assets and add them to the stream's tracking set"""
        if asset_ids is None:
            assets: List[str] = list(await self.store.get_enabled_assets())
        else:
            assets = list(asset_ids)

        native = self.settings.NATIVE_ASSET_ID
        if native not in assets:
            assets.insert(0, native)

        prices = await self.aggregator.get_prices(assets)
        if self.stream is not None:
            await self.stream.track_assets(prices.keys())
        logger.info("Price refresh completed", requested=len(assets), resolved=len(prices))
        return prices

    def get_service_status(self) -> dict:
        return {
            "aggregator": self.aggregator.get_service_status(),
            "endpoints": {
                "total": len(self.endpoint_pool),
                "healthy": self.endpoint_pool.healthy_count(),
            },
            "stream": self.stream.get_status() if self.stream else {"state": "disabled"},
            "liquidations": self.liquidation_trigger.get_status(),
            "circuit_breaker": self.circuit_breaker.get_status().model_dump(),
            "security_events": self.security.get_stats(),
        }

    async def drain(self) -> None:
        await self.aggregator.drain()
        await self.liquidation_trigger.drain()
        await self.security.drain()

    async def aclose(self) -> None:
        if self.stream is not None:
            await self.stream.stop()
        await self.drain()
        await self.quote_provider.aclose()
        await self.bonding_curve_provider.reader.aclose()
        await self.liquidity_provider.client.aclose()
        if self.executor is not None:
            await self.executor.aclose()
        await self.security.aclose()


def build_services(
    settings,
    store,
    *,
    redis_client: Optional[aioredis.Redis] = None,
    db_manager: Any = None,
    clock: Callable[[], int] = epoch_ms,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    stream_connector: Callable = websocket_connector,
) -> OracleServices:
    forwarder = AuditForwarder(
        settings.AUDIT_SINK_URL,
        rate_limit_ms=settings.ALERT_RATE_LIMIT_SECONDS * 1000,
        clock=clock,
        transport=transport,
    )
    security = SecurityMonitor(
        store,
        forwarder,
        alert_min_severity=settings.ALERT_MIN_SEVERITY,
        max_events=settings.SECURITY_EVENT_BUFFER_SIZE,
        clock=clock,
    )
    retry_policy = RetryPolicy.from_settings(settings)

    pool = EndpointPool.from_settings(settings, clock=clock, security_monitor=security)
    cache = PriceCache(
        int(settings.PRICE_CACHE_TTL_SECONDS * 1000),
        redis_client=redis_client,
        redis_ttl_seconds=settings.PRICE_REDIS_TTL_SECONDS,
        clock=clock,
    )

    quote_provider = QuoteApiProvider(
        pool,
        settings.QUOTE_API_BASE_URL,
        batch_size=settings.QUOTE_BATCH_SIZE,
        timeout=settings.QUOTE_REQUEST_TIMEOUT_SECONDS,
        endpoint_retry_delay=settings.QUOTE_ENDPOINT_RETRY_DELAY_SECONDS,
        max_price_usd=settings.MAX_PLAUSIBLE_PRICE_USD,
        clock=clock,
        transport=transport,
    )
    bonding_curve_provider = BondingCurveProvider(
        ChainStateReader(
            settings.SOLANA_RPC_URL,
            retry_policy=retry_policy,
            timeout=settings.QUOTE_REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        ),
        program_id=settings.BONDING_CURVE_PROGRAM_ID,
        token_decimals=settings.BONDING_CURVE_TOKEN_DECIMALS,
        native_decimals=settings.NATIVE_DECIMALS,
        max_price_usd=settings.MAX_PLAUSIBLE_PRICE_USD,
        clock=clock,
    )
    liquidity_provider = LiquidityAggregatorProvider(
        LiquidityAggregatorClient(
            settings.LIQUIDITY_API_BASE_URL,
            timeout=settings.LIQUIDITY_REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        ),
        native_asset_id=settings.NATIVE_ASSET_ID,
        retry_policy=retry_policy,
        max_price_usd=settings.MAX_PLAUSIBLE_PRICE_USD,
        clock=clock,
    )

    aggregator = PriceAggregator(
        cache,
        quote_provider,
        [bonding_curve_provider, liquidity_provider],
        native_asset_id=settings.NATIVE_ASSET_ID,
        store=store,
        history=PriceHistoryRecorder(store, settings.HISTORY_MIN_CHANGE),
        security_monitor=security,
        stale_after_ms=settings.STALE_PRICE_SECONDS * 1000,
        clock=clock,
    )
    bonding_curve_provider.bind_native_price_source(aggregator.get_native_usd_price)

    executor = None
    if settings.LIQUIDATOR_SERVICE_URL:
        executor = HttpLiquidationExecutor(
            settings.LIQUIDATOR_SERVICE_URL,
            settings.LIQUIDATOR_SERVICE_TOKEN,
            transport=transport,
        )
    else:
        logger.warning("No liquidation service configured - breached positions will only be reported")

    trigger = LiquidationTrigger(
        store,
        executor,
        native_price_source=aggregator.get_native_usd_price,
        security_monitor=security,
        clock=clock,
    )
    aggregator.add_listener(trigger.check_price)

    stream = None
    if settings.ENABLE_PRICE_STREAM:
        stream_key = pool.endpoints[0].api_key if len(pool) else None
        stream = LivePriceStream(
            settings.QUOTE_STREAM_URL,
            stream_key,
            cache,
            trigger=trigger,
            security_monitor=security,
            retry_policy=RetryPolicy.for_stream(settings),
            max_price_usd=settings.MAX_PLAUSIBLE_PRICE_USD,
            extreme_move_threshold=settings.EXTREME_MOVE_THRESHOLD,
            connector=stream_connector,
            clock=clock,
        )

    breaker = ProtocolCircuitBreaker.from_settings(
        settings, store, security_monitor=security, clock=clock
    )

    return OracleServices(
        settings=settings,
        store=store,
        security=security,
        endpoint_pool=pool,
        cache=cache,
        quote_provider=quote_provider,
        bonding_curve_provider=bonding_curve_provider,
        liquidity_provider=liquidity_provider,
        aggregator=aggregator,
        liquidation_trigger=trigger,
        circuit_breaker=breaker,
        stream=stream,
        executor=executor,
        db_manager=db_manager,
    )
