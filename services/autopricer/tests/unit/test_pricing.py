"""
Unit tests for the pricing tiers and per-item pipeline.

Tests cover:
- Tier selection and fall-through order
- Tier 1..4 pricing rules
- Margin enforcement, item bounds and the swing guard
- Pipeline stage chain with mocked repositories and external sources
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.autopricer.core.constants import KEY_ITEM_ID, KEY_ITEM_NAME
from services.autopricer.core.currency import KeyPivotRate
from services.autopricer.core.errors import ExternalPriceError, StoreUnavailableError
from services.autopricer.core.types import (
    Currencies,
    HistorySample,
    ItemBounds,
    Listing,
    PriceHistoryEntry,
    PriceSource,
    Side,
)
from services.autopricer.discovery import DiscoveryResult, PriceDiscoveryEngine
from services.autopricer.pricing.bounds import DynamicBoundsCalculator
from services.autopricer.pricing.external import BaselineQuote, RateLimitedFallback
from services.autopricer.pricing.pipeline import (
    PipelineConfig,
    PricingPipeline,
    apply_item_bounds,
    check_swing,
    enforce_margin,
)
from services.autopricer.pricing.stages import PricingStage
from services.autopricer.pricing.tiers import TierInput, TierPricer, select_tier, tiers_from


NOW = 1704067200


def make_listing(metal: float, side: Side, owner: str, name: str = "Team Captain", item_id: str = "378;6") -> Listing:
    return Listing(
        name=name,
        item_id=item_id,
        side=side,
        currencies=Currencies(keys=0, metal=metal),
        owner_id=owner,
        updated=NOW,
    )


def make_tier_input(buy_prices=(), sell_prices=(), history=(), item_id="378;6") -> TierInput:
    buys = [make_listing(p, Side.BUY, f"b{i}") for i, p in enumerate(buy_prices)]
    sells = [make_listing(p, Side.SELL, f"s{i}") for i, p in enumerate(sell_prices)]
    return TierInput(
        item_id=item_id,
        name="Team Captain",
        buy_listings=buys,
        sell_listings=sells,
        buy_prices=list(buy_prices),
        sell_prices=list(sell_prices),
        history=list(history),
        key_rate=KeyPivotRate(60),
        now=NOW,
    )


def make_pricer(engine=None) -> TierPricer:
    return TierPricer(engine or PriceDiscoveryEngine(), DynamicBoundsCalculator())


# =============================================================================
# Tier Selection Tests
# =============================================================================

class TestSelectTier:
    """Test tier selection by listing and history counts."""

    @pytest.mark.parametrize("buys,sells,history,expected", [
        (3, 3, 0, PricingStage.TIER1),
        (10, 8, 20, PricingStage.TIER1),
        (5, 1, 0, PricingStage.TIER2),
        (1, 5, 0, PricingStage.TIER2),
        (1, 0, 5, PricingStage.TIER3),
        (2, 2, 5, PricingStage.TIER3),
        (1, 1, 0, PricingStage.TIER4),
        (0, 0, 3, PricingStage.TIER4),
        (1, 0, 0, None),
        (0, 0, 0, None),
    ])
    def test_select_tier(self, buys, sells, history, expected):
        assert select_tier(buys, sells, history) == expected

    def test_tiers_fall_through_in_order(self):
        assert tiers_from(PricingStage.TIER2) == [
            PricingStage.TIER2,
            PricingStage.TIER3,
            PricingStage.TIER4,
        ]


# =============================================================================
# Tier Tests
# =============================================================================

class TestTier1:
    """Test discovery-backed pricing."""

    def test_balanced_book(self):
        data = make_tier_input([9, 9.25, 9.5], [9.75, 10, 10.25])
        outcome = make_pricer().run(PricingStage.TIER1, data)

        assert outcome.ok
        assert outcome.source == PriceSource.DISCOVERY
        assert 9.2 <= outcome.buy_metal < outcome.sell_metal <= 10.0

    def test_low_confidence_fails(self):
        engine = MagicMock()
        engine.discover_price.return_value = DiscoveryResult(buy_price=9.3, sell_price=9.9, confidence=0.5)

        outcome = make_pricer(engine).run(PricingStage.TIER1, make_tier_input([9, 9, 9], [10, 10, 10]))

        assert not outcome.ok
        assert "confidence" in outcome.reason

    def test_no_consensus_fails(self):
        engine = MagicMock()
        engine.discover_price.return_value = DiscoveryResult(buy_price=None, sell_price=None, confidence=0.0)

        outcome = make_pricer(engine).run(PricingStage.TIER1, make_tier_input([9, 9, 9], [10, 10, 10]))

        assert not outcome.ok
        assert outcome.reason == "no discovery consensus"

    def test_needs_three_per_side(self):
        outcome = make_pricer().run(PricingStage.TIER1, make_tier_input([9, 9], [10, 10, 10]))
        assert not outcome.ok


class TestTier2:
    """Test asymmetric book pricing."""

    def test_strong_buy_side_synthesizes_sell(self):
        data = make_tier_input([10, 10, 10, 10, 10], [11])
        outcome = make_pricer().run(PricingStage.TIER2, data)

        assert outcome.ok
        assert outcome.source == PriceSource.TIER2
        assert outcome.buy_metal == pytest.approx(10.0)
        # spread hint 0.10 -> (1.12 + 1.10) / 2
        assert outcome.sell_metal == pytest.approx(11.1)

    def test_strong_sell_side_synthesizes_buy(self):
        data = make_tier_input([9], [10, 10, 10, 10, 10])
        outcome = make_pricer().run(PricingStage.TIER2, data)

        assert outcome.ok
        assert outcome.sell_metal == pytest.approx(10.0)
        # spread hint 0.10 -> (0.92 + 0.90) / 2
        assert outcome.buy_metal == pytest.approx(9.1)

    def test_synthesize_competitive_factor(self):
        pricer = make_pricer()
        assert pricer.synthesize(10, Side.SELL, 0.1, competitive=True) == pytest.approx(10 * (1.08 + 1.1) / 2)
        assert pricer.synthesize(10, Side.BUY, 0.1, competitive=True) == pytest.approx(10 * (0.88 + 0.9) / 2)


class TestTier3:
    """Test trend pricing from history."""

    def test_linear_trend(self):
        history = [
            HistorySample(value=10 + i, side=Side.BUY, timestamp=1000 * (i + 1))
            for i in reversed(range(6))
        ]
        data = make_tier_input([10], [], history)
        data.now = 7000

        outcome = make_pricer().run(PricingStage.TIER3, data)

        assert outcome.ok
        assert outcome.buy_metal == pytest.approx(16 * 0.85)
        assert outcome.sell_metal == pytest.approx(16 * 1.15)

    def test_weak_fit_fails(self):
        values = [10, 12, 10, 12, 10, 12]
        history = [HistorySample(value=v, side=Side.BUY, timestamp=i) for i, v in enumerate(values)]

        outcome = make_pricer().run(PricingStage.TIER3, make_tier_input([10], [], history))

        assert not outcome.ok
        assert "r2" in outcome.reason


class TestTier4:
    """Test minimum viable pricing."""

    def test_buy_side_only(self):
        outcome = make_pricer().run(PricingStage.TIER4, make_tier_input([10, 9.5, 9, 8], []))

        assert outcome.buy_metal == pytest.approx(9.5)
        assert outcome.sell_metal == pytest.approx(9.5 * 1.18)

    def test_sell_side_only(self):
        outcome = make_pricer().run(PricingStage.TIER4, make_tier_input([], [12, 13]))

        assert outcome.buy_metal == pytest.approx(12 * 0.85)
        assert outcome.sell_metal == 12

    def test_history_only(self):
        history = [HistorySample(value=10, side=Side.BUY, timestamp=NOW - i) for i in range(4)]
        outcome = make_pricer().run(PricingStage.TIER4, make_tier_input([], [], history))

        assert outcome.buy_metal == pytest.approx(9.2)
        assert outcome.sell_metal == pytest.approx(10.8)

    def test_inverted_quote_is_rejected(self):
        outcome = make_pricer().run(PricingStage.TIER4, make_tier_input([10, 10, 10], [9]))

        assert not outcome.ok
        assert "invalid quote" in outcome.reason


# =============================================================================
# Post-processing Tests
# =============================================================================

class TestEnforceMargin:
    """Test rounding and the sell-above-buy guarantee."""

    def test_inverted_quote_gets_margin(self):
        buy, sell = enforce_margin(Currencies(metal=10.0), Currencies(metal=9.5), 60, 0.11)

        assert buy.metal == 10.0
        assert sell.metal == pytest.approx(10.11)

    def test_equal_quote_gets_margin_in_keys(self):
        buy, sell = enforce_margin(Currencies(keys=1, metal=5.0), Currencies(keys=1, metal=5.0), 60, 0.11)

        assert sell.keys == 1
        assert sell.metal == pytest.approx(5.11)

    def test_valid_quote_is_rounded(self):
        buy, sell = enforce_margin(Currencies(metal=10.02), Currencies(metal=11.0), 60, 0.11)

        assert buy.metal == 10.0
        assert sell.metal == 11.0

    def test_sell_rounding_onto_buy_gets_margin(self):
        """9.37 rounds to 9.33, which would equal the buy side."""
        buy, sell = enforce_margin(Currencies(metal=9.33), Currencies(metal=9.37), 60, 0.11)

        assert buy.metal == pytest.approx(9.33)
        assert sell.metal == pytest.approx(9.44)

    def test_forced_sell_rolls_over_into_keys(self):
        buy, sell = enforce_margin(Currencies(keys=1, metal=9.9), Currencies(keys=1, metal=5), 10, 0.11)

        assert buy.metal == pytest.approx(9.88)
        assert sell.keys == 2
        assert sell.metal == pytest.approx(0)

    def test_pure_metal_quote_stays_in_metal(self):
        buy, sell = enforce_margin(Currencies(metal=60.0), Currencies(metal=59.0), 60, 0.11, pure_metal=True)

        assert sell.keys == 0
        assert sell.metal == pytest.approx(60.11)


class TestItemBounds:
    """Test operator-configured per-item limits."""

    def test_clamps_each_denomination(self):
        bounds = ItemBounds(max_sell_metal=20, min_buy_keys=1)
        buy, sell = apply_item_bounds(Currencies(keys=0, metal=10), Currencies(keys=2, metal=25), bounds)

        assert buy.keys == 1
        assert buy.metal == 10
        assert sell.keys == 2
        assert sell.metal == 20


class TestSwingGuard:
    """Test rejection of large jumps against recent history."""

    def test_buy_increase_over_limit_is_rejected(self):
        reason = check_swing(11.5, 13.0, [10] * 5, [12] * 5, 0.10, 0.10)
        assert reason is not None
        assert "buy" in reason

    def test_buy_increase_within_limit_is_accepted(self):
        assert check_swing(10.9, 12.0, [10] * 5, [12] * 5, 0.10, 0.10) is None

    def test_sell_drop_over_limit_is_rejected(self):
        reason = check_swing(10.0, 10.5, [10] * 5, [12] * 5, 0.10, 0.10)
        assert reason is not None
        assert "sell" in reason

    def test_no_history_is_accepted(self):
        assert check_swing(100, 200, [], []) is None


# =============================================================================
# Pipeline Tests
# =============================================================================

def make_pipeline(
    buy_prices=(9, 9.25, 9.5),
    sell_prices=(9.75, 10, 10.25),
    baseline_quote=None,
    steam=None,
    recent=None,
    config=None,
    name="Team Captain",
    item_id="378;6",
    key_rate=None,
    limiter=None,
):
    buys = [make_listing(p, Side.BUY, f"b{i}", name, item_id) for i, p in enumerate(buy_prices)]
    sells = [make_listing(p, Side.SELL, f"s{i}", name, item_id) for i, p in enumerate(sell_prices)]

    listing_repo = MagicMock()
    listing_repo.get_listings = AsyncMock(
        side_effect=lambda n, side: list(buys if side == Side.BUY else sells) if n == name else []
    )
    history_repo = MagicMock()
    history_repo.get_window = AsyncMock(return_value=[])
    history_repo.get_recent = AsyncMock(return_value=recent or [])
    key_price_repo = MagicMock()
    key_price_repo.insert = AsyncMock()
    baseline = MagicMock()
    baseline.get.return_value = baseline_quote

    return PricingPipeline(
        listing_repo=listing_repo,
        history_repo=history_repo,
        key_price_repo=key_price_repo,
        baseline=baseline,
        steam=steam,
        tier_pricer=TierPricer(PriceDiscoveryEngine(), DynamicBoundsCalculator()),
        bounds=DynamicBoundsCalculator(),
        key_rate=key_rate or KeyPivotRate(60),
        config=config,
        limiter=limiter,
    )


def quote(buy: float, sell: float, item_id: str = "378;6") -> BaselineQuote:
    return BaselineQuote(item_id=item_id, name="", buy=Currencies(metal=buy), sell=Currencies(metal=sell))


class TestPricingPipeline:
    """Test the per-item stage chain."""

    @pytest.mark.asyncio
    async def test_balanced_book_is_emitted(self):
        """Three listings per side agreeing with the baseline are priced by discovery."""
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9))

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert result.emitted
        assert result.stage == PricingStage.EMIT
        assert result.item.source == PriceSource.DISCOVERY
        assert result.item.buy.metal == pytest.approx(9.33)
        assert result.item.sell.metal == pytest.approx(9.88)
        assert result.history.buy_metal < result.history.sell_metal
        assert result.history.timestamp == NOW

    @pytest.mark.asyncio
    async def test_baseline_disagreement_discards_without_fallback(self):
        pipeline = make_pipeline(baseline_quote=quote(8.0, 9.9))

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert not result.emitted
        assert result.stage == PricingStage.EXTERNAL_FALLBACK

    @pytest.mark.asyncio
    async def test_baseline_disagreement_falls_back_onto_baseline(self):
        pipeline = make_pipeline(
            baseline_quote=quote(8.0, 9.9),
            config=PipelineConfig(fallback_onto_baseline=True),
        )

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert result.emitted
        assert result.item.source == PriceSource.BASELINE

    @pytest.mark.asyncio
    async def test_missing_baseline_uses_secondary_market(self):
        steam = MagicMock()
        steam.get_price = AsyncMock(return_value=(Currencies(metal=9.0), Currencies(metal=10.0)))
        pipeline = make_pipeline(baseline_quote=None, steam=steam)

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert result.emitted
        assert result.item.source == PriceSource.STEAM_MARKET
        assert result.item.buy.metal == 9.0
        assert result.item.sell.metal == 10.0

    @pytest.mark.asyncio
    async def test_secondary_market_lookups_share_concurrency_cap(self):
        """Fifteen items without a baseline never hold more than three market lookups at once."""
        state = {"in_flight": 0, "peak": 0}

        async def slow_price(name, **kwargs):
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0.01)
            state["in_flight"] -= 1
            return Currencies(metal=9.0), Currencies(metal=10.0)

        steam = MagicMock()
        steam.get_price = AsyncMock(side_effect=slow_price)
        limiter = RateLimitedFallback(batch_size=100, batch_delay=0, concurrency=3)
        pipeline = make_pipeline(baseline_quote=None, steam=steam, limiter=limiter)

        results = await asyncio.gather(
            *(pipeline.price_item("Team Captain", "378;6", now=NOW) for _ in range(15))
        )

        assert all(r.emitted for r in results)
        assert steam.get_price.await_count == 15
        assert state["peak"] == 3
        assert limiter.started == 15

    @pytest.mark.asyncio
    async def test_missing_baseline_and_market_discards(self):
        steam = MagicMock()
        steam.get_price = AsyncMock(side_effect=ExternalPriceError("No market price"))
        pipeline = make_pipeline(baseline_quote=None, steam=steam)

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert not result.emitted
        assert result.stage == PricingStage.CHECK_BASELINE

    @pytest.mark.asyncio
    async def test_zero_baseline_is_unusable(self):
        pipeline = make_pipeline(baseline_quote=quote(0, 0))

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert result.stage == PricingStage.CHECK_BASELINE

    @pytest.mark.asyncio
    async def test_key_without_baseline_is_discarded(self):
        steam = MagicMock()
        steam.get_price = AsyncMock()
        pipeline = make_pipeline(
            baseline_quote=None, steam=steam, name=KEY_ITEM_NAME, item_id=KEY_ITEM_ID
        )

        result = await pipeline.price_item(KEY_ITEM_NAME, KEY_ITEM_ID, now=NOW)

        assert result.stage == PricingStage.CHECK_BASELINE
        steam.get_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_key_pricing_moves_pivot_rate(self):
        key_rate = KeyPivotRate(60)
        pipeline = make_pipeline(
            buy_prices=(59, 59.5, 60),
            sell_prices=(60.5, 61, 61.5),
            baseline_quote=quote(59.5, 61, KEY_ITEM_ID),
            name=KEY_ITEM_NAME,
            item_id=KEY_ITEM_ID,
            key_rate=key_rate,
        )

        result = await pipeline.price_item(KEY_ITEM_NAME, KEY_ITEM_ID, now=NOW)

        assert result.emitted
        assert result.item.buy.keys == 0
        assert result.item.sell.keys == 0
        assert key_rate.metal == result.item.sell.metal
        pipeline.key_price_repo.insert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_swing_guard_rejects_jump(self):
        recent = [
            PriceHistoryEntry(item_id="378;6", buy_metal=8.0, sell_metal=8.5, timestamp=NOW - i * 900)
            for i in range(5)
        ]
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9), recent=recent)

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert not result.emitted
        assert result.stage == PricingStage.SWING_CHECK

    @pytest.mark.asyncio
    async def test_item_bounds_by_name(self):
        config = PipelineConfig(item_bounds={"Team Captain": ItemBounds(max_buy_metal=9.0)})
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9), config=config)

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert result.emitted
        assert result.item.buy.metal == 9.0

    @pytest.mark.asyncio
    async def test_item_bound_rounding_onto_buy_keeps_margin(self):
        """A sell ceiling of 9.37 rounds to the 9.33 buy price and is pushed up."""
        config = PipelineConfig(item_bounds={"378;6": ItemBounds(max_sell_metal=9.37)})
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9), config=config)

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert result.emitted
        assert result.item.buy.metal == pytest.approx(9.33)
        assert result.item.sell.metal == pytest.approx(9.44)
        assert result.history.buy_metal < result.history.sell_metal

    @pytest.mark.asyncio
    async def test_excluded_owner_listings_are_ignored(self):
        """Dropping one buy leaves two, so tier 1 no longer applies."""
        config = PipelineConfig(excluded_owners={"b0"})
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9), config=config)

        book = await pipeline.fetch_listings("Team Captain")

        assert len(book.buy_listings) == 2
        assert book.buy_prices == [9.5, 9.25]

    @pytest.mark.asyncio
    async def test_trusted_owners_sort_first(self):
        config = PipelineConfig(trusted_owners={"b0"})
        pipeline = make_pipeline(config=config)

        book = await pipeline.fetch_listings("Team Captain")

        assert book.buy_listings[0].owner_id == "b0"
        assert book.sell_listings[0].owner_id == "s0"

    @pytest.mark.asyncio
    async def test_missing_side_is_synthesized(self):
        pipeline = make_pipeline(buy_prices=(), sell_prices=(10, 11, 12, 13))

        book = await pipeline.fetch_listings("Team Captain")

        assert book.buy_listings == []
        assert book.buy_prices == [pytest.approx(11 * 0.85)]

    @pytest.mark.asyncio
    async def test_prefixed_name_is_retried(self):
        pipeline = make_pipeline(name="The Team Captain")

        book = await pipeline.fetch_listings("Team Captain")

        assert len(book.buy_listings) == 3
        assert len(book.sell_listings) == 3

    @pytest.mark.asyncio
    async def test_store_outage_propagates(self):
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9))
        pipeline.listing_repo.get_listings = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(StoreUnavailableError):
            await pipeline.price_item("Team Captain", "378;6", now=NOW)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_tagged_with_stage(self):
        pipeline = make_pipeline(baseline_quote=quote(9.3, 9.9))
        pipeline.history_repo.get_window = AsyncMock(side_effect=RuntimeError("boom"))

        result = await pipeline.price_item("Team Captain", "378;6", now=NOW)

        assert not result.emitted
        assert result.stage == PricingStage.FETCH_LISTINGS
        assert "boom" in result.reason
