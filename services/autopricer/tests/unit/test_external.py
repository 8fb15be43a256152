"""
Unit tests for external price sources.

Tests cover:
- BaselineFeed: payload loading, lookups and refresh failure handling
- Market price parsing and dynamic margins
- SteamMarketClient with a mocked HTTP client
- RateLimitedFallback pacing and concurrency cap
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from services.autopricer.core.constants import KEY_ITEM_ID, KEY_ITEM_NAME
from services.autopricer.core.currency import KeyPivotRate
from services.autopricer.core.errors import BaselineUnavailableError, ExternalPriceError
from services.autopricer.pricing.external import (
    BaselineFeed,
    RateLimitedFallback,
    SteamMarketClient,
    dynamic_margins,
    parse_market_price,
)


BASELINE_PAYLOAD = {
    "items": [
        {"sku": "5021;6", "name": KEY_ITEM_NAME, "buy": {"metal": 62.11}, "sell": {"metal": 62.55}},
        {"sku": "378;6", "name": "Team Captain", "buy": {"keys": 1, "metal": 5}, "sell": {"keys": 1, "metal": 10}},
        {"name": "No Sku"},
    ]
}


def market_response(payload: dict) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = payload
    return response


# =============================================================================
# Baseline Tests
# =============================================================================

class TestBaselineFeed:
    """Test the in-memory baseline snapshot."""

    def test_load(self):
        feed = BaselineFeed(None)
        assert feed.load(BASELINE_PAYLOAD) == 2

        quote = feed.get("378;6")
        assert quote.buy.keys == 1
        assert quote.sell.metal == 10
        assert len(feed) == 2
        assert feed.last_refresh is not None

    def test_require_missing(self):
        feed = BaselineFeed(None)
        with pytest.raises(BaselineUnavailableError):
            feed.require("378;6")

    def test_invalid_side_becomes_zero(self):
        feed = BaselineFeed(None)
        feed.load({"items": [{"sku": "1;6", "buy": {"metal": -1}, "sell": None}]})

        quote = feed.require("1;6")
        assert quote.buy.is_zero()
        assert quote.sell.is_zero()

    @pytest.mark.asyncio
    async def test_refresh_without_url(self):
        feed = BaselineFeed(None)
        assert await feed.refresh() == 0

    @pytest.mark.asyncio
    async def test_refresh(self):
        feed = BaselineFeed("http://baseline.test/prices")
        client = MagicMock()
        client.get = AsyncMock(return_value=market_response(BASELINE_PAYLOAD))
        feed._get_client = AsyncMock(return_value=client)

        assert await feed.refresh() == 2
        client.get.assert_awaited_once_with("http://baseline.test/prices")

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_snapshot(self):
        feed = BaselineFeed("http://baseline.test/prices")
        feed.load(BASELINE_PAYLOAD)
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        feed._get_client = AsyncMock(return_value=client)

        assert await feed.refresh() == 2
        assert feed.get(KEY_ITEM_ID) is not None


# =============================================================================
# Secondary Market Tests
# =============================================================================

class TestParseMarketPrice:
    """Test market price string parsing."""

    @pytest.mark.parametrize("text,expected", [
        ("$1,234.56", 1234.56),
        ("$2.49", 2.49),
        ("2,49€", 2.49),
        ("£0.03", 0.03),
    ])
    def test_parses(self, text, expected):
        assert parse_market_price(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", [None, "", "free"])
    def test_unparseable(self, text):
        assert parse_market_price(text) is None


class TestDynamicMargins:
    """Test market-derived price margins."""

    def test_base_margins(self):
        buy, sell = dynamic_margins(10, buy_count=10, sell_count=10)
        assert buy == pytest.approx(0.08)
        assert sell == pytest.approx(0.12)

    def test_expensive_thin_volatile_item_is_clamped(self):
        buy, sell = dynamic_margins(100, buy_count=1, sell_count=1, volatility=0.5)
        assert buy == pytest.approx(0.20)
        assert sell == pytest.approx(0.30)

    def test_cheap_liquid_item(self):
        buy, sell = dynamic_margins(2, buy_count=15, sell_count=15)
        assert buy == pytest.approx(0.04)
        assert sell == pytest.approx(0.06)


class TestSteamMarketClient:
    """Test secondary market lookups."""

    def make_client(self, prices: dict) -> SteamMarketClient:
        client = SteamMarketClient(KeyPivotRate(60))
        http = MagicMock()

        async def get(url, params):
            name = params["market_hash_name"]
            if name not in prices:
                return market_response({"success": False})
            return market_response({"success": True, "lowest_price": prices[name]})

        http.get = AsyncMock(side_effect=get)
        client._get_client = AsyncMock(return_value=http)
        return client

    @pytest.mark.asyncio
    async def test_get_price_converts_through_key(self):
        """Item and key both at $2.00 means the item is worth one key."""
        client = self.make_client({"Team Captain": "$2.00", KEY_ITEM_NAME: "$2.00"})

        buy, sell = await client.get_price("Team Captain")

        # 60 ref with margins 0.16 / 0.25 (expensive, thin)
        assert buy.keys == 0
        assert buy.metal == pytest.approx(50.44)
        assert sell.metal == pytest.approx(75.0)

    @pytest.mark.asyncio
    async def test_key_price_is_looked_up_once_per_pass(self):
        client = self.make_client({"Team Captain": "$2.00", "Bill's Hat": "$1.00", KEY_ITEM_NAME: "$2.00"})
        http = await client._get_client()

        def key_lookups() -> int:
            return sum(1 for c in http.get.await_args_list if c.kwargs["params"]["market_hash_name"] == KEY_ITEM_NAME)

        await client.get_price("Team Captain")
        await client.get_price("Bill's Hat")
        assert key_lookups() == 1

        client.forget_key_price()
        await client.get_price("Team Captain")
        assert key_lookups() == 2

    @pytest.mark.asyncio
    async def test_missing_key_price_is_not_cached(self):
        client = self.make_client({"Team Captain": "$2.00"})

        with pytest.raises(ExternalPriceError):
            await client.get_price("Team Captain")

        assert client._key_price is None

    @pytest.mark.asyncio
    async def test_missing_item_price(self):
        client = self.make_client({KEY_ITEM_NAME: "$2.00"})

        with pytest.raises(ExternalPriceError):
            await client.get_price("Team Captain")

    @pytest.mark.asyncio
    async def test_key_is_never_priced(self):
        client = self.make_client({KEY_ITEM_NAME: "$2.00"})

        with pytest.raises(ExternalPriceError):
            await client.get_price(KEY_ITEM_NAME)
        with pytest.raises(ExternalPriceError):
            await client.get_price("Anything", item_id=KEY_ITEM_ID)

    @pytest.mark.asyncio
    async def test_lowest_price_http_error(self):
        client = SteamMarketClient(KeyPivotRate(60))
        http = MagicMock()
        http.get = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        client._get_client = AsyncMock(return_value=http)

        assert await client.lowest_price("Team Captain") is None

    def test_currency_code(self):
        assert SteamMarketClient(KeyPivotRate(60), currency="eur").currency_code == 3
        assert SteamMarketClient(KeyPivotRate(60), currency="XYZ").currency_code == 1


class TestRateLimitedFallback:
    """Test batched fan-out."""

    @pytest.mark.asyncio
    async def test_batches_are_delayed_and_errors_returned(self):
        fallback = RateLimitedFallback(batch_size=2, batch_delay=1.5, concurrency=2)

        async def lookup(x):
            if x == 3:
                raise ExternalPriceError("no price")
            return x * 2

        with patch("services.autopricer.pricing.external.asyncio.sleep", new=AsyncMock()) as sleep:
            results = await fallback.run([1, 2, 3, 4, 5], lookup)

        assert results[:2] == [2, 4]
        assert isinstance(results[2], ExternalPriceError)
        assert results[3:] == [8, 10]
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)

    @pytest.mark.asyncio
    async def test_direct_calls_are_paced(self):
        fallback = RateLimitedFallback(batch_size=2, batch_delay=1.5, concurrency=3)
        lookup = AsyncMock(return_value="ok")

        with patch("services.autopricer.pricing.external.asyncio.sleep", new=AsyncMock()) as sleep:
            results = [await fallback.call(lookup, "Team Captain", item_id="378;6") for _ in range(4)]

        assert results == ["ok"] * 4
        lookup.assert_awaited_with("Team Captain", item_id="378;6")
        assert sleep.await_count == 1
        assert fallback.started == 4

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        fallback = RateLimitedFallback(batch_size=100, batch_delay=0, concurrency=3)
        state = {"in_flight": 0, "peak": 0}

        async def lookup(x):
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0.01)
            state["in_flight"] -= 1
            return x

        results = await fallback.run(list(range(10)), lookup)

        assert results == list(range(10))
        assert state["peak"] == 3

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await RateLimitedFallback().run([], AsyncMock()) == []
