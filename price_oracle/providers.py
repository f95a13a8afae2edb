"""
Provider adapters: quote API (batched, endpoint pool), on-chain bonding curves,
and a liquidity aggregator API.

Every adapter exposes ``fetch_prices(asset_ids) -> ProviderResult`` and never
raises; partial results are returned together with the last failure seen.
"""
import asyncio
import base64
import math
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set

import httpx
import structlog
from solders.pubkey import Pubkey

from .config import PriceSource
from .endpoint_pool import Endpoint, EndpointPool
from .error_handling import (
    DataIntegrityError, PriceUnavailableError, ProviderError, RetryPolicy,
    TransientUpstreamError, error_for_status
)
from .models import PriceRecord, epoch_ms, validate_usd_price

logger = structlog.get_logger()

BONDING_CURVE_SEED = b"bonding-curve"
BONDING_CURVE_MIN_LENGTH = 49


@dataclass
class ProviderResult:
    prices: Dict[str, PriceRecord] = field(default_factory=dict)
    error: Optional[ProviderError] = None


class PriceProvider(Protocol):
    name: str

    async def fetch_prices(self, asset_ids: Set[str]) -> ProviderResult:
        ...


def chunked(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class BaseAPIClient:
    """httpx client wrapper that maps failures onto the provider error taxonomy"""
    provider_name = "upstream"

    def __init__(self, base_url: str, headers: Optional[Dict] = None, *,
                 timeout: float = 8.0, proxy: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout
        self.proxy = proxy
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            options = {
                "base_url": self.base_url,
                "headers": self.default_headers,
                "timeout": self.timeout,
                "limits": httpx.Limits(max_keepalive_connections=20, max_connections=100),
            }
            if self.proxy:
                options["proxy"] = self.proxy
            if self.transport is not None:
                options["transport"] = self.transport
            self.client = httpx.AsyncClient(**options)
        return self.client

    async def __aenter__(self):
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make an HTTP request and decode the JSON body"""
        try:
            response = await self._get_client().request(method, endpoint, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.warning(f"HTTP error {status_code} for {method} {endpoint}",
                           provider=self.provider_name, status_code=status_code)
            raise error_for_status(
                status_code, f"{self.provider_name} returned {status_code}", self.provider_name
            ) from e
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(
                f"{self.provider_name} timed out", provider=self.provider_name
            ) from e
        except httpx.RequestError as e:
            raise TransientUpstreamError(
                f"{self.provider_name} network error: {e}", provider=self.provider_name
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise DataIntegrityError(
                f"{self.provider_name} returned invalid JSON", provider=self.provider_name
            ) from e


# Quote API

class QuoteApiClient(BaseAPIClient):
    provider_name = PriceSource.QUOTE_API

    def __init__(self, base_url: str, api_key: str, **kwargs):
        super().__init__(base_url, {"x-api-key": api_key, "Accept": "application/json"}, **kwargs)

    async def get_prices(self, asset_ids: List[str]) -> Dict[str, Any]:
        data = await self._make_request("GET", "", params={"ids": ",".join(asset_ids)})
        if not isinstance(data, dict):
            raise DataIntegrityError("Quote API returned a non-object body", provider=self.provider_name)
        return data


class QuoteApiProvider:
    """Primary batched provider; rotates through the endpoint pool"""
    name = PriceSource.QUOTE_API

    def __init__(
        self,
        pool: EndpointPool,
        base_url: str,
        *,
        batch_size: int = 50,
        timeout: float = 8.0,
        endpoint_retry_delay: float = 0.1,
        max_price_usd: float = 1_000_000.0,
        clock: Callable[[], int] = epoch_ms,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.pool = pool
        self.base_url = base_url
        self.batch_size = batch_size
        self.timeout = timeout
        self.endpoint_retry_delay = endpoint_retry_delay
        self.max_price_usd = max_price_usd
        self._clock = clock
        self._transport = transport
        self._clients: Dict[str, QuoteApiClient] = {}

    def _client_for(self, endpoint: Endpoint) -> QuoteApiClient:
        client = self._clients.get(endpoint.id)
        if client is None:
            client = QuoteApiClient(
                self.base_url, endpoint.api_key,
                timeout=self.timeout, proxy=endpoint.proxy, transport=self._transport,
            )
            self._clients[endpoint.id] = client
        return client

    async def fetch_prices(self, asset_ids: Set[str]) -> ProviderResult:
        result = ProviderResult()
        for chunk in chunked(sorted(asset_ids), self.batch_size):
            try:
                result.prices.update(await self._fetch_chunk(chunk))
            except ProviderError as e:
                logger.warning("Quote API chunk failed", assets=len(chunk), error=str(e), kind=e.kind.value)
                result.error = e
        return result

    async def _fetch_chunk(self, chunk: List[str]) -> Dict[str, PriceRecord]:
        """Try each endpoint at most once for this chunk"""
        tried: Set[str] = set()
        last_error: Optional[ProviderError] = None

        for attempt in range(len(self.pool)):
            endpoint = self.pool.select_endpoint()
            if endpoint is None or endpoint.id in tried:
                break
            tried.add(endpoint.id)
            if attempt > 0 and self.endpoint_retry_delay:
                await asyncio.sleep(self.endpoint_retry_delay)

            started = time.monotonic()
            try:
                data = await self._client_for(endpoint).get_prices(chunk)
            except ProviderError as e:
                self.pool.record_failure(endpoint, e.status_code)
                last_error = e
                logger.info("Quote endpoint failed, rotating", endpoint=endpoint.id,
                            status_code=e.status_code, kind=e.kind.value)
                continue

            self.pool.record_success(endpoint, (time.monotonic() - started) * 1000)
            return self._parse(data, chunk)

        if last_error is not None:
            raise last_error
        raise PriceUnavailableError("No quote endpoint available", provider=self.name)

    def _parse(self, data: Dict[str, Any], chunk: List[str]) -> Dict[str, PriceRecord]:
        observed_at = self._clock()
        prices = {}
        for asset_id in chunk:
            entry = data.get(asset_id)
            if not isinstance(entry, dict):
                continue
            try:
                usd_price = validate_usd_price(entry.get("usdPrice"), self.max_price_usd)
            except DataIntegrityError as e:
                logger.warning("Rejected quote API price", asset_id=asset_id, error=str(e))
                continue
            decimals = entry.get("decimals")
            prices[asset_id] = PriceRecord(
                asset_id=asset_id,
                usd_price=usd_price,
                price_change_24h=_as_float(entry.get("priceChange24h")),
                source=self.name,
                observed_at_ms=observed_at,
                decimals=int(decimals) if isinstance(decimals, int) else None,
            )
        return prices

    async def test_endpoint(self, endpoint_id: str, asset_id: str) -> Dict[str, Any]:
        """Operator check: query a single endpoint outside the rotation"""
        endpoint = self.pool.get(endpoint_id)
        if endpoint is None:
            return {"endpoint": endpoint_id, "success": False, "error": "unknown endpoint"}

        started = time.monotonic()
        try:
            data = await self._client_for(endpoint).get_prices([asset_id])
        except ProviderError as e:
            self.pool.record_failure(endpoint, e.status_code)
            return {"endpoint": endpoint_id, "success": False, "error": e.to_dict()}

        latency_ms = (time.monotonic() - started) * 1000
        self.pool.record_success(endpoint, latency_ms)
        prices = self._parse(data, [asset_id])
        return {
            "endpoint": endpoint_id,
            "success": asset_id in prices,
            "latency_ms": round(latency_ms, 2),
            "usd_price": prices[asset_id].usd_price if asset_id in prices else None,
        }

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()


# Bonding curve

class ChainStateReader(BaseAPIClient):
    """Reads raw account bytes over Solana JSON-RPC"""
    provider_name = "solana_rpc"

    def __init__(self, rpc_url: str, *, retry_policy: Optional[RetryPolicy] = None, **kwargs):
        super().__init__(rpc_url, {"Content-Type": "application/json"}, **kwargs)
        self.retry_policy = retry_policy or RetryPolicy()

    async def get_account_data(self, address: str) -> Optional[bytes]:
        payload = {
            "id": 1,
            "jsonrpc": "2.0",
            "method": "getAccountInfo",
            "params": [address, {"encoding": "base64", "commitment": "confirmed"}],
        }
        data = await self.retry_policy.call(self._make_request, "POST", "", json=payload)

        if "error" in data:
            raise TransientUpstreamError(
                f"RPC error: {data['error']}", provider=self.provider_name
            )
        value = (data.get("result") or {}).get("value")
        if value is None:
            return None
        try:
            return base64.b64decode(value["data"][0])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DataIntegrityError(
                f"Malformed account data for {address}", provider=self.provider_name
            ) from e


def derive_bonding_curve_address(asset_id: str, program_id: str) -> str:
    address, _bump = Pubkey.find_program_address(
        [BONDING_CURVE_SEED, bytes(Pubkey.from_string(asset_id))],
        Pubkey.from_string(program_id),
    )
    return str(address)


@dataclass(frozen=True)
class BondingCurveState:
    virtual_token_reserves: int
    virtual_native_reserves: int
    real_token_reserves: int
    real_native_reserves: int
    token_total_supply: int
    complete: bool

    @classmethod
    def decode(cls, data: bytes) -> "BondingCurveState":
        # 8-byte discriminator, five little-endian u64 fields, then the complete flag
        if len(data) < BONDING_CURVE_MIN_LENGTH:
            raise DataIntegrityError(
                f"Bonding curve account too short: {len(data)} bytes",
                provider=PriceSource.BONDING_CURVE,
            )
        reserves = struct.unpack_from("<5Q", data, 8)
        return cls(*reserves, complete=data[48] != 0)

    def native_price(self, token_decimals: int, native_decimals: int) -> float:
        if self.virtual_token_reserves == 0 or self.virtual_native_reserves == 0:
            raise DataIntegrityError("Bonding curve has empty reserves",
                                     provider=PriceSource.BONDING_CURVE)
        native = self.virtual_native_reserves / 10 ** native_decimals
        tokens = self.virtual_token_reserves / 10 ** token_decimals
        return native / tokens


class BondingCurveProvider:
    """Derives prices from bonding-curve reserve ratios.

    Depends on a native-to-USD reference supplied by the aggregator; without
    it the adapter reports a typed failure instead of guessing.
    """
    name = PriceSource.BONDING_CURVE

    def __init__(
        self,
        reader: ChainStateReader,
        *,
        program_id: str,
        native_price_source: Optional[Callable[[], Awaitable[Optional[float]]]] = None,
        token_decimals: int = 6,
        native_decimals: int = 9,
        max_price_usd: float = 1_000_000.0,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.reader = reader
        self.program_id = program_id
        self._native_price_source = native_price_source
        self.token_decimals = token_decimals
        self.native_decimals = native_decimals
        self.max_price_usd = max_price_usd
        self._clock = clock

    def bind_native_price_source(self, source: Callable[[], Awaitable[Optional[float]]]) -> None:
        self._native_price_source = source

    async def fetch_prices(self, asset_ids: Set[str]) -> ProviderResult:
        result = ProviderResult()
        native_usd = None
        if self._native_price_source is not None:
            native_usd = await self._native_price_source()
        if not native_usd:
            result.error = PriceUnavailableError(
                "Native USD reference price unavailable", provider=self.name
            )
            return result

        for asset_id in sorted(asset_ids):
            try:
                record = await self._fetch_one(asset_id, native_usd)
            except ProviderError as e:
                logger.info("Bonding curve price unavailable", asset_id=asset_id, error=str(e))
                result.error = e
                continue
            except ValueError as e:
                # not a valid public key
                result.error = DataIntegrityError(str(e), provider=self.name)
                continue
            result.prices[asset_id] = record
        return result

    async def _fetch_one(self, asset_id: str, native_usd: float) -> PriceRecord:
        address = derive_bonding_curve_address(asset_id, self.program_id)
        data = await self.reader.get_account_data(address)
        if data is None:
            raise PriceUnavailableError(f"No bonding curve for {asset_id}", provider=self.name)

        state = BondingCurveState.decode(data)
        if state.complete:
            raise PriceUnavailableError(
                f"Bonding curve for {asset_id} is complete", provider=self.name
            )
        native_price = state.native_price(self.token_decimals, self.native_decimals)
        usd_price = validate_usd_price(native_price * native_usd, self.max_price_usd)
        return PriceRecord(
            asset_id=asset_id,
            usd_price=usd_price,
            native_price=native_price,
            source=self.name,
            observed_at_ms=self._clock(),
            decimals=self.token_decimals,
        )


# Liquidity aggregator

class LiquidityAggregatorClient(BaseAPIClient):
    provider_name = PriceSource.LIQUIDITY_AGGREGATOR

    def __init__(self, base_url: str, **kwargs):
        super().__init__(base_url, {"Accept": "application/json"}, **kwargs)

    async def get_token_pairs(self, asset_id: str) -> List[Dict[str, Any]]:
        data = await self._make_request("GET", f"/tokens/{asset_id}")
        if not isinstance(data, dict):
            raise DataIntegrityError(
                f"Unexpected pairs response for {asset_id}", provider=self.provider_name
            )
        pairs = data.get("pairs")
        if pairs is None:
            return []
        if not isinstance(pairs, list):
            raise DataIntegrityError(
                f"Malformed pairs list for {asset_id}", provider=self.provider_name
            )
        return pairs


def _field(pair: Dict[str, Any], section: str, key: str) -> Any:
    value = pair.get(section)
    return value.get(key) if isinstance(value, dict) else None


def pair_liquidity_usd(pair: Dict[str, Any]) -> float:
    liquidity = _as_float(_field(pair, "liquidity", "usd"))
    if liquidity is None or not math.isfinite(liquidity) or liquidity < 0:
        return 0.0
    return liquidity


def select_best_pair(pairs: List[Any]) -> Optional[Dict[str, Any]]:
    """Pair with the greatest USD liquidity; ties keep the first seen, non-dict entries are skipped"""
    best = None
    best_liquidity = 0.0
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        liquidity = pair_liquidity_usd(pair)
        if best is None or liquidity > best_liquidity:
            best = pair
            best_liquidity = liquidity
    return best


class LiquidityAggregatorProvider:
    name = PriceSource.LIQUIDITY_AGGREGATOR

    def __init__(
        self,
        client: LiquidityAggregatorClient,
        *,
        native_asset_id: str,
        retry_policy: Optional[RetryPolicy] = None,
        max_price_usd: float = 1_000_000.0,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.client = client
        self.native_asset_id = native_asset_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_price_usd = max_price_usd
        self._clock = clock

    async def fetch_prices(self, asset_ids: Set[str]) -> ProviderResult:
        result = ProviderResult()
        for asset_id in sorted(asset_ids):
            try:
                pairs = await self.retry_policy.call(self.client.get_token_pairs, asset_id)
                record = self._to_record(asset_id, pairs)
            except ProviderError as e:
                logger.info("Liquidity aggregator price unavailable", asset_id=asset_id, error=str(e))
                result.error = e
                continue
            result.prices[asset_id] = record
        return result

    def _to_record(self, asset_id: str, pairs: List[Any]) -> PriceRecord:
        pair = select_best_pair(pairs)
        if pair is None:
            raise PriceUnavailableError(f"No trading pairs for {asset_id}", provider=self.name)

        usd_price = validate_usd_price(pair.get("priceUsd"), self.max_price_usd)
        native_price = None
        if _field(pair, "quoteToken", "address") == self.native_asset_id:
            try:
                native_price = validate_usd_price(pair.get("priceNative"), self.max_price_usd)
            except DataIntegrityError as e:
                logger.warning("Discarding invalid native price from liquidity aggregator",
                               asset_id=asset_id, error=str(e))

        change_24h = _as_float(_field(pair, "priceChange", "h24"))
        return PriceRecord(
            asset_id=asset_id,
            usd_price=usd_price,
            native_price=native_price,
            price_change_24h=change_24h if change_24h is not None and math.isfinite(change_24h) else None,
            liquidity_usd=pair_liquidity_usd(pair) or None,
            source=self.name,
            observed_at_ms=self._clock(),
        )
