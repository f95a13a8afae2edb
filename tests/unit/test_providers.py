import base64
import struct
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from conftest import JUP, NATIVE_ASSET, USDC
from price_oracle.endpoint_pool import Endpoint, EndpointPool
from price_oracle.error_handling import (
    DataIntegrityError, PriceUnavailableError, RetryPolicy, TransientUpstreamError
)
from price_oracle.providers import (
    BondingCurveProvider, BondingCurveState, ChainStateReader, LiquidityAggregatorClient,
    LiquidityAggregatorProvider, QuoteApiProvider, derive_bonding_curve_address, select_best_pair
)

PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


def curve_bytes(virtual_tokens, virtual_native, complete=False):
    discriminator = b"\x17\xb7\xf8\x37\x60\xd8\xac\x60"
    reserves = struct.pack("<5Q", virtual_tokens, virtual_native, 0, 0, 10 ** 15)
    return discriminator + reserves + bytes([1 if complete else 0])


def make_pool(clock, count=3):
    return EndpointPool(
        [Endpoint(id=f"endpoint-{i}", api_key=f"test-key-{i}") for i in range(1, count + 1)],
        clock=clock,
    )


class TestQuoteApiProvider:

    @pytest.fixture
    def pool(self, clock):
        return make_pool(clock)

    def make_provider(self, pool, clock, handler, **kwargs):
        return QuoteApiProvider(
            pool, "https://quote.test/price/v3",
            endpoint_retry_delay=0, clock=clock,
            transport=httpx.MockTransport(handler), **kwargs,
        )

    @pytest.mark.asyncio
    async def test_parses_prices(self, pool, clock):
        def handler(request):
            assert request.url.params["ids"] == f"{USDC},{JUP}"
            return httpx.Response(200, json={
                USDC: {"usdPrice": 0.9998, "priceChange24h": 0.01, "decimals": 6},
                JUP: {"usdPrice": "0.52", "decimals": 6},
            })

        provider = self.make_provider(pool, clock, handler)
        result = await provider.fetch_prices({USDC, JUP})

        assert result.error is None
        assert result.prices[USDC].usd_price == 0.9998
        assert result.prices[USDC].price_change_24h == 0.01
        assert result.prices[JUP].usd_price == 0.52
        assert result.prices[JUP].observed_at_ms == clock()
        assert result.prices[JUP].source == "quote_api"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_rejects_invalid_and_unrequested_entries(self, pool, clock):
        def handler(request):
            return httpx.Response(200, json={
                USDC: {"usdPrice": "NaN"},
                JUP: {"usdPrice": -3},
                NATIVE_ASSET: {"usdPrice": 150.0},
            })

        provider = self.make_provider(pool, clock, handler)
        result = await provider.fetch_prices({USDC, JUP})

        assert result.prices == {}

    @pytest.mark.asyncio
    async def test_rotates_past_rate_limited_endpoint(self, pool, clock):
        """A 429 from one endpoint is answered by the next within the same call"""
        seen_keys = []

        def handler(request):
            seen_keys.append(request.headers["x-api-key"])
            if request.headers["x-api-key"] == "test-key-1":
                return httpx.Response(429, json={"error": "rate limited"})
            return httpx.Response(200, json={USDC: {"usdPrice": 1.0}})

        provider = self.make_provider(pool, clock, handler)
        result = await provider.fetch_prices({USDC})

        assert result.prices[USDC].usd_price == 1.0
        assert seen_keys == ["test-key-1", "test-key-2"]
        assert pool.get("endpoint-1").health.cooldown_until == clock() + 30_000
        assert pool.get("endpoint-2").health.total_requests == 1

    @pytest.mark.asyncio
    async def test_each_endpoint_tried_once_per_chunk(self, pool, clock):
        calls = []

        def handler(request):
            calls.append(request.headers["x-api-key"])
            return httpx.Response(503)

        provider = self.make_provider(pool, clock, handler)
        result = await provider.fetch_prices({USDC})

        assert result.prices == {}
        assert isinstance(result.error, TransientUpstreamError)
        assert sorted(calls) == ["test-key-1", "test-key-2", "test-key-3"]

    @pytest.mark.asyncio
    async def test_network_errors_are_transient(self, pool, clock):
        def handler(request):
            if request.headers["x-api-key"] == "test-key-1":
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(200, json={USDC: {"usdPrice": 1.0}})

        provider = self.make_provider(pool, clock, handler)
        result = await provider.fetch_prices({USDC})

        assert USDC in result.prices
        assert pool.get("endpoint-1").health.total_failures == 1

    @pytest.mark.asyncio
    async def test_requests_are_batched(self, pool, clock):
        batches = []

        def handler(request):
            ids = request.url.params["ids"].split(",")
            batches.append(len(ids))
            return httpx.Response(200, json={asset_id: {"usdPrice": 1} for asset_id in ids})

        asset_ids = {f"asset{i:03d}" for i in range(120)}
        provider = self.make_provider(pool, clock, handler, batch_size=50)
        result = await provider.fetch_prices(asset_ids)

        assert batches == [50, 50, 20]
        assert set(result.prices) == asset_ids

    @pytest.mark.asyncio
    async def test_failed_chunk_keeps_partial_results(self, pool, clock):
        def handler(request):
            ids = request.url.params["ids"].split(",")
            if "asset000" in ids:
                return httpx.Response(500)
            return httpx.Response(200, json={asset_id: {"usdPrice": 2} for asset_id in ids})

        provider = self.make_provider(pool, clock, handler, batch_size=2)
        result = await provider.fetch_prices({"asset000", "asset001", "asset002", "asset003"})

        assert set(result.prices) == {"asset002", "asset003"}
        assert result.error is not None

    @pytest.mark.asyncio
    async def test_single_endpoint_check(self, pool, clock):
        def handler(request):
            return httpx.Response(200, json={NATIVE_ASSET: {"usdPrice": 151.2}})

        provider = self.make_provider(pool, clock, handler)
        outcome = await provider.test_endpoint("endpoint-3", NATIVE_ASSET)

        assert outcome["success"] is True
        assert outcome["usd_price"] == 151.2
        assert pool.get("endpoint-3").health.total_requests == 1
        assert (await provider.test_endpoint("endpoint-7", NATIVE_ASSET))["success"] is False


class TestBondingCurve:

    def test_decode_layout(self):
        state = BondingCurveState.decode(curve_bytes(1_000_000_000_000, 30_000_000_000))

        assert state.virtual_token_reserves == 1_000_000_000_000
        assert state.virtual_native_reserves == 30_000_000_000
        assert state.token_total_supply == 10 ** 15
        assert state.complete is False
        assert state.native_price(6, 9) == pytest.approx(3e-5)

    def test_decode_rejects_short_account(self):
        with pytest.raises(DataIntegrityError):
            BondingCurveState.decode(b"\x00" * 40)

    def test_empty_reserves_rejected(self):
        state = BondingCurveState.decode(curve_bytes(0, 30_000_000_000))
        with pytest.raises(DataIntegrityError):
            state.native_price(6, 9)

    def test_address_derivation_is_deterministic(self):
        first = derive_bonding_curve_address(USDC, PROGRAM_ID)
        assert first == derive_bonding_curve_address(USDC, PROGRAM_ID)
        assert first != derive_bonding_curve_address(JUP, PROGRAM_ID)

    @pytest.fixture
    def reader(self):
        reader = MagicMock()
        reader.get_account_data = AsyncMock(return_value=curve_bytes(1_000_000_000_000, 30_000_000_000))
        return reader

    @pytest.mark.asyncio
    async def test_price_from_reserves(self, reader, clock):
        provider = BondingCurveProvider(
            reader, program_id=PROGRAM_ID,
            native_price_source=AsyncMock(return_value=150.0), clock=clock,
        )
        result = await provider.fetch_prices({USDC})

        record = result.prices[USDC]
        assert record.native_price == pytest.approx(3e-5)
        assert record.usd_price == pytest.approx(0.0045)
        assert record.source == "bonding_curve"
        reader.get_account_data.assert_awaited_once_with(derive_bonding_curve_address(USDC, PROGRAM_ID))

    @pytest.mark.asyncio
    async def test_missing_native_reference_is_typed_failure(self, reader):
        provider = BondingCurveProvider(reader, program_id=PROGRAM_ID,
                                        native_price_source=AsyncMock(return_value=None))
        result = await provider.fetch_prices({USDC})

        assert result.prices == {}
        assert isinstance(result.error, PriceUnavailableError)
        reader.get_account_data.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_complete_curve_has_no_price(self, reader):
        reader.get_account_data.return_value = curve_bytes(1_000_000_000_000, 30_000_000_000, complete=True)
        provider = BondingCurveProvider(reader, program_id=PROGRAM_ID,
                                        native_price_source=AsyncMock(return_value=150.0))
        result = await provider.fetch_prices({USDC})

        assert result.prices == {}
        assert isinstance(result.error, PriceUnavailableError)

    @pytest.mark.asyncio
    async def test_missing_account(self, reader):
        reader.get_account_data.return_value = None
        provider = BondingCurveProvider(reader, program_id=PROGRAM_ID,
                                        native_price_source=AsyncMock(return_value=150.0))
        result = await provider.fetch_prices({USDC, JUP})

        assert result.prices == {}
        assert reader.get_account_data.await_count == 2


class TestChainStateReader:

    @pytest.mark.asyncio
    async def test_decodes_account_data(self):
        raw = curve_bytes(1, 1)

        def handler(request):
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": 1,
                "result": {"context": {"slot": 1}, "value": {"data": [base64.b64encode(raw).decode(), "base64"]}},
            })

        reader = ChainStateReader("https://rpc.test", retry_policy=NO_WAIT,
                                  transport=httpx.MockTransport(handler))
        assert await reader.get_account_data(USDC) == raw
        await reader.aclose()

    @pytest.mark.asyncio
    async def test_missing_account_is_none(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                             "result": {"context": {}, "value": None}})

        reader = ChainStateReader("https://rpc.test", retry_policy=NO_WAIT,
                                  transport=httpx.MockTransport(handler))
        assert await reader.get_account_data(USDC) is None

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        responses = [httpx.Response(503), httpx.Response(200, json={"result": {"value": None}})]

        def handler(request):
            return responses.pop(0)

        reader = ChainStateReader("https://rpc.test", retry_policy=NO_WAIT,
                                  transport=httpx.MockTransport(handler))
        assert await reader.get_account_data(USDC) is None
        assert responses == []


class TestLiquidityAggregator:

    def test_select_best_pair_by_liquidity(self):
        pairs = [
            {"pairAddress": "a", "liquidity": {"usd": 1_000}},
            {"pairAddress": "b", "liquidity": {"usd": 50_000}},
            {"pairAddress": "c"},
        ]
        assert select_best_pair(pairs)["pairAddress"] == "b"

    def test_select_best_pair_tie_keeps_first(self):
        pairs = [
            {"pairAddress": "a", "liquidity": {"usd": 5_000}},
            {"pairAddress": "b", "liquidity": {"usd": 5_000}},
        ]
        assert select_best_pair(pairs)["pairAddress"] == "a"

    def test_select_best_pair_empty(self):
        assert select_best_pair([]) is None

    def test_select_best_pair_skips_malformed_entries(self):
        pairs = [
            "oops",
            None,
            {"pairAddress": "a", "liquidity": "deep"},
            {"pairAddress": "b", "liquidity": {"usd": 10}},
        ]
        assert select_best_pair(pairs)["pairAddress"] == "b"
        assert select_best_pair(["oops", 42]) is None

    def make_provider(self, handler, clock):
        client = LiquidityAggregatorClient("https://dex.test/latest/dex",
                                           transport=httpx.MockTransport(handler))
        return LiquidityAggregatorProvider(client, native_asset_id=NATIVE_ASSET,
                                           retry_policy=NO_WAIT, clock=clock)

    @pytest.mark.asyncio
    async def test_uses_deepest_pair(self, clock):
        def handler(request):
            assert request.url.path == f"/latest/dex/tokens/{JUP}"
            return httpx.Response(200, json={"pairs": [
                {"priceUsd": "0.80", "priceNative": "0.0053",
                 "quoteToken": {"address": NATIVE_ASSET}, "liquidity": {"usd": 1_000}},
                {"priceUsd": "0.81", "priceNative": "0.81",
                 "quoteToken": {"address": USDC}, "liquidity": {"usd": 50_000},
                 "priceChange": {"h24": -2.5}},
            ]})

        result = await self.make_provider(handler, clock).fetch_prices({JUP})

        record = result.prices[JUP]
        assert record.usd_price == 0.81
        assert record.native_price is None
        assert record.price_change_24h == -2.5
        assert record.liquidity_usd == 50_000

    @pytest.mark.asyncio
    async def test_native_price_only_for_native_quoted_pairs(self, clock):
        def handler(request):
            return httpx.Response(200, json={"pairs": [
                {"priceUsd": "0.80", "priceNative": "0.0053",
                 "quoteToken": {"address": NATIVE_ASSET}, "liquidity": {"usd": 9_000}},
            ]})

        result = await self.make_provider(handler, clock).fetch_prices({JUP})
        assert result.prices[JUP].native_price == 0.0053

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, clock):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(404)

        result = await self.make_provider(handler, clock).fetch_prices({JUP})

        assert result.prices == {}
        assert isinstance(result.error, PriceUnavailableError)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_no_pairs(self, clock):
        result = await self.make_provider(lambda request: httpx.Response(200, json={"pairs": None}),
                                          clock).fetch_prices({JUP})
        assert isinstance(result.error, PriceUnavailableError)

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, clock):
        responses = [
            httpx.Response(502),
            httpx.Response(200, json={"pairs": [{"priceUsd": "1.5", "liquidity": {"usd": 10}}]}),
        ]
        result = await self.make_provider(lambda request: responses.pop(0), clock).fetch_prices({JUP})
        assert result.prices[JUP].usd_price == 1.5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price_native", ["-1", "NaN", "abc", "0", None, 5_000_000])
    async def test_invalid_native_price_is_dropped(self, clock, price_native):
        def handler(request):
            return httpx.Response(200, json={"pairs": [
                {"priceUsd": "0.80", "priceNative": price_native,
                 "quoteToken": {"address": NATIVE_ASSET}, "liquidity": {"usd": 9_000}},
            ]})

        result = await self.make_provider(handler, clock).fetch_prices({JUP})

        assert result.prices[JUP].usd_price == 0.80
        assert result.prices[JUP].native_price is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [["oops"], {"pairs": {"pairAddress": "a"}}, {"pairs": "oops"}])
    async def test_malformed_pairs_body_is_data_integrity_failure(self, clock, body):
        result = await self.make_provider(lambda request: httpx.Response(200, json=body),
                                          clock).fetch_prices({JUP, USDC})

        assert result.prices == {}
        assert isinstance(result.error, DataIntegrityError)

    @pytest.mark.asyncio
    async def test_non_dict_pair_entries_do_not_escape(self, clock):
        def handler(request):
            if request.url.path.endswith(JUP):
                return httpx.Response(200, json={"pairs": ["oops"]})
            return httpx.Response(200, json={"pairs": [
                "oops", {"priceUsd": "1.0", "liquidity": {"usd": 10}, "priceChange": "n/a"},
            ]})

        result = await self.make_provider(handler, clock).fetch_prices({JUP, USDC})

        assert list(result.prices) == [USDC]
        assert result.prices[USDC].price_change_24h is None
        assert isinstance(result.error, PriceUnavailableError)
