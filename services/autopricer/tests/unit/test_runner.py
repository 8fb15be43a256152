"""
Unit tests for the pricing pass runner.

Tests cover:
- Eviction, item selection and batched persistence
- Store outage aborting a pass
- Allow-list fallback through the secondary market and the baseline
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from services.autopricer.core.constants import KEY_ITEM_ID, KEY_ITEM_NAME
from services.autopricer.core.currency import KeyPivotRate
from services.autopricer.core.errors import ExternalPriceError, StoreUnavailableError
from services.autopricer.core.types import Currencies, PricedItem, PriceHistoryEntry, PriceSource
from services.autopricer.pricing.external import BaselineQuote, RateLimitedFallback
from services.autopricer.pricing.runner import PricingRunner
from services.autopricer.pricing.stages import PipelineResult, PricingStage


NOW = 1704067200


def priced(item_id: str, name: str, buy: float = 9.0, sell: float = 10.0, source=PriceSource.DISCOVERY) -> PricedItem:
    return PricedItem(
        item_id=item_id,
        name=name,
        buy=Currencies(metal=buy),
        sell=Currencies(metal=sell),
        time=NOW,
        source=source,
    )


def emitted(item_id: str, name: str) -> PipelineResult:
    return PipelineResult(
        item_id=item_id,
        name=name,
        stage=PricingStage.EMIT,
        item=priced(item_id, name),
        history=PriceHistoryEntry(item_id=item_id, buy_metal=9.0, sell_metal=10.0, timestamp=NOW),
    )


def discarded(item_id: str, name: str, stage=PricingStage.SWING_CHECK) -> PipelineResult:
    return PipelineResult(item_id=item_id, name=name, stage=stage, reason="rejected")


async def emit_all(name: str, item_id: str) -> PipelineResult:
    return emitted(item_id, name)


async def discard_all(name: str, item_id: str) -> PipelineResult:
    return discarded(item_id, name)


async def store_down(name: str, item_id: str) -> PipelineResult:
    raise StoreUnavailableError("connection lost")


def make_runner(price_item, pricable=None, touched=None, allowed=None, steam=None, baseline=None, listed=None):
    pipeline = MagicMock()
    pipeline.price_item = AsyncMock(side_effect=price_item)

    listing_repo = MagicMock()
    listing_repo.delete_stale = AsyncMock(return_value=(2, {"378;6"}))
    stats_repo = MagicMock()
    stats_repo.refresh = AsyncMock()
    stats_repo.get_pricable_items = AsyncMock(return_value=pricable or [])
    history_repo = MagicMock()
    history_repo.insert_batch = AsyncMock()
    pricelist_repo = MagicMock()
    pricelist_repo.upsert_batch = AsyncMock()
    pricelist_repo.get_all = AsyncMock(return_value=listed or [])
    sink = MagicMock()

    return PricingRunner(
        pipeline,
        listing_repo,
        stats_repo,
        history_repo,
        pricelist_repo,
        KeyPivotRate(60),
        baseline=baseline,
        steam=steam,
        fallback=RateLimitedFallback(batch_delay=0),
        touched_source=(lambda: dict(touched)) if touched else None,
        sink=sink,
        allowed_items=allowed,
        concurrency=2,
    )


class TestRunPass:
    """Test a full pricing pass."""

    @pytest.mark.asyncio
    async def test_pass_prices_pricable_and_touched_items(self):
        async def price_item(name, item_id):
            if item_id == "378;6":
                return emitted(item_id, name)
            return discarded(item_id, name)

        runner = make_runner(
            price_item,
            pricable=[("378;6", "Team Captain"), ("5021;6", KEY_ITEM_NAME)],
            touched={"30743;6": "Patriot Peak", "378;6": "Team Captain"},
        )

        summary = await runner.run_pass()

        assert summary.evicted == 2
        assert summary.attempted == 3
        assert summary.emitted == 1
        assert summary.discarded == 2
        assert summary.discarded_by_stage == {"swing_check": 2}
        assert not summary.aborted
        assert runner.last_summary is summary

        runner.stats_repo.refresh.assert_awaited_once_with("378;6")
        runner.pricelist_repo.upsert_batch.assert_awaited_once()
        written = runner.pricelist_repo.upsert_batch.await_args.args[0]
        assert [item.item_id for item in written] == ["378;6"]
        runner.history_repo.insert_batch.assert_awaited_once()
        runner.sink.publish.assert_called_once_with(written[0])

    @pytest.mark.asyncio
    async def test_nothing_emitted_writes_nothing(self):
        runner = make_runner(discard_all, pricable=[("378;6", "Team Captain")])

        summary = await runner.run_pass()

        assert summary.emitted == 0
        runner.pricelist_repo.upsert_batch.assert_not_awaited()
        runner.sink.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_item_error_does_not_abort_pass(self):
        async def price_item(name, item_id):
            if item_id == "1;6":
                raise RuntimeError("boom")
            return emitted(item_id, name)

        runner = make_runner(price_item, pricable=[("1;6", "Bad"), ("378;6", "Team Captain")])

        summary = await runner.run_pass()

        assert summary.errors == 1
        assert summary.emitted == 1

    @pytest.mark.asyncio
    async def test_pass_refreshes_market_key_price(self):
        steam = MagicMock()
        runner = make_runner(discard_all, pricable=[("378;6", "Team Captain")], steam=steam)

        await runner.run_pass()

        steam.forget_key_price.assert_called_once()

    @pytest.mark.asyncio
    async def test_store_outage_aborts_pass(self):
        runner = make_runner(
            store_down,
            pricable=[("378;6", "Team Captain"), ("30743;6", "Patriot Peak")],
        )

        with pytest.raises(StoreUnavailableError):
            await runner.run_pass()

        assert runner.last_summary.aborted
        runner.pricelist_repo.upsert_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_eviction_failure_aborts_pass(self):
        runner = make_runner(emit_all, pricable=[("378;6", "Team Captain")])
        runner.listing_repo.delete_stale = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(StoreUnavailableError):
            await runner.run_pass()

        runner.pipeline.price_item.assert_not_awaited()


class TestAllowListFallback:
    """Test pricing of allow-listed items missing from the price list."""

    @pytest.mark.asyncio
    async def test_secondary_market_prices_missing_items(self):
        steam = MagicMock()
        steam.get_price = AsyncMock(return_value=(Currencies(metal=9.0), Currencies(metal=10.0)))
        runner = make_runner(
            discard_all,
            allowed={"378;6": "Team Captain", KEY_ITEM_ID: KEY_ITEM_NAME, "111;6": "Listed Hat"},
            steam=steam,
            listed=[priced("111;6", "Listed Hat")],
        )

        count = await runner.price_missing_allowed(set())

        assert count == 1
        steam.get_price.assert_awaited_once_with("Team Captain", item_id="378;6")
        written = runner.pricelist_repo.upsert_batch.await_args.args[0]
        assert written[0].source == PriceSource.STEAM_MARKET
        runner.history_repo.insert_batch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_baseline_used_when_market_fails(self):
        steam = MagicMock()
        steam.get_price = AsyncMock(side_effect=ExternalPriceError("no price"))
        baseline = MagicMock()
        baseline.get.return_value = BaselineQuote(
            item_id="378;6", name="Team Captain", buy=Currencies(metal=10), sell=Currencies(metal=12)
        )
        runner = make_runner(discard_all, allowed={"378;6": "Team Captain"}, steam=steam, baseline=baseline)

        count = await runner.price_missing_allowed(set())

        assert count == 1
        item = runner.pricelist_repo.upsert_batch.await_args.args[0][0]
        assert item.source == PriceSource.BASELINE
        # 25% under and over the baseline
        assert item.buy.metal == 7.55
        assert item.sell.metal == 15.0

    @pytest.mark.asyncio
    async def test_emitted_items_are_skipped(self):
        steam = MagicMock()
        steam.get_price = AsyncMock()
        runner = make_runner(discard_all, allowed={"378;6": "Team Captain"}, steam=steam)

        assert await runner.price_missing_allowed({"378;6"}) == 0
        steam.get_price.assert_not_awaited()

    def test_baseline_quote_without_baseline(self):
        runner = make_runner(discard_all)
        assert runner.baseline_quote("378;6", "Team Captain", NOW) is None
