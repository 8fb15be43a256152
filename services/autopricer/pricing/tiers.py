"""
Pricing Tiers

Fallback rungs selected by how much listing data an item has:

    Tier 1  >=3 buy AND >=3 sell        full price discovery, bound-aware
    Tier 2  >=5 one side, >=1 other     strong side direct, weak side synthesized
    Tier 3  any listing, >=5 history    linear trend over history +/- margin
    Tier 4  >=2 listings (any split)    whatever exists, fixed offsets

A failing tier falls through to the next lower one.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..core.constants import (
    COMPETITIVE_LISTING_COUNT,
    DISCOVERY_MIN_CONFIDENCE,
    SYNTHETIC_BUY_FACTOR,
    SYNTHETIC_BUY_FACTOR_COMPETITIVE,
    SYNTHETIC_SELL_FACTOR,
    SYNTHETIC_SELL_FACTOR_COMPETITIVE,
    TIER1_MIN_PER_SIDE,
    TIER2_MIN_STRONG_SIDE,
    TIER2_MIN_WEAK_SIDE,
    TIER2_SPREAD_OFFSET,
    TIER3_MIN_HISTORY,
    TIER4_BUY_FROM_SELL,
    TIER4_HISTORY_BUY,
    TIER4_HISTORY_SELL,
    TIER4_MIN_TOTAL,
    TIER4_SELL_FROM_BUY,
    TREND_MARGIN,
    TREND_MIN_R2,
)
from ..core.currency import KeyPivotRate
from ..core.robust_estimators import adaptive_robust_mean, linear_regression
from ..core.types import HistorySample, Listing, Side
from ..discovery.engine import PriceDiscoveryEngine
from .bounds import DynamicBoundsCalculator
from .stages import PricingStage, StageOutcome, TIER_SOURCES, TIER_STAGES

logger = logging.getLogger(__name__)


@dataclass
class TierInput:
    """
    Everything a tier needs for one item.

    Listings are pre-sorted: trusted owners first, then best price first
    (highest buy, lowest sell). The *_prices lists are the same listings
    in metal, in the same order.
    """

    item_id: str
    name: str
    buy_listings: list[Listing]
    sell_listings: list[Listing]
    buy_prices: list[float]
    sell_prices: list[float]
    history: list[HistorySample]
    key_rate: KeyPivotRate
    now: int = field(default_factory=lambda: int(time.time()))

    @property
    def buy_count(self) -> int:
        return len(self.buy_prices)

    @property
    def sell_count(self) -> int:
        return len(self.sell_prices)


def select_tier(buy_count: int, sell_count: int, history_count: int) -> Optional[PricingStage]:
    """
    Highest tier the listing and history counts qualify for.

    Returns None when there is nothing to price from.
    """
    total = buy_count + sell_count

    if buy_count >= TIER1_MIN_PER_SIDE and sell_count >= TIER1_MIN_PER_SIDE:
        return PricingStage.TIER1
    if (buy_count >= TIER2_MIN_STRONG_SIDE and sell_count >= TIER2_MIN_WEAK_SIDE) or (
        sell_count >= TIER2_MIN_STRONG_SIDE and buy_count >= TIER2_MIN_WEAK_SIDE
    ):
        return PricingStage.TIER2
    if total >= 1 and history_count >= TIER3_MIN_HISTORY:
        return PricingStage.TIER3
    if total >= TIER4_MIN_TOTAL or (total == 0 and history_count > 0):
        return PricingStage.TIER4
    return None


def tiers_from(start: PricingStage) -> list[PricingStage]:
    """The starting tier followed by every lower tier."""
    return list(TIER_STAGES[TIER_STAGES.index(start):])


class TierPricer:
    """
    Runs individual pricing tiers.

    Usage:
        pricer = TierPricer(engine, bounds)
        outcome = pricer.run(PricingStage.TIER1, tier_input)
    """

    def __init__(
        self,
        engine: PriceDiscoveryEngine,
        bounds: DynamicBoundsCalculator,
        min_discovery_confidence: float = DISCOVERY_MIN_CONFIDENCE,
        spread_offset: float = TIER2_SPREAD_OFFSET,
    ):
        self.engine = engine
        self.bounds = bounds
        self.min_discovery_confidence = min_discovery_confidence
        self.spread_offset = spread_offset

    def run(self, tier: PricingStage, data: TierInput) -> StageOutcome:
        handlers = {
            PricingStage.TIER1: self.tier1,
            PricingStage.TIER2: self.tier2,
            PricingStage.TIER3: self.tier3,
            PricingStage.TIER4: self.tier4,
        }
        try:
            outcome = handlers[tier](data)
        except (ValueError, ZeroDivisionError) as e:
            return StageOutcome.failure(tier, f"error: {e}")

        if outcome.ok and not (0 < outcome.buy_metal < outcome.sell_metal):
            return StageOutcome.failure(
                tier, f"invalid quote buy={outcome.buy_metal:.3f} sell={outcome.sell_metal:.3f}"
            )
        return outcome

    def _success(self, tier: PricingStage, buy: float, sell: float, reason: str = "") -> StageOutcome:
        return StageOutcome.success(tier, buy, sell, TIER_SOURCES[tier], reason)

    # =========================================================================
    # Tier 1: price discovery
    # =========================================================================

    def tier1(self, data: TierInput) -> StageOutcome:
        if data.buy_count < TIER1_MIN_PER_SIDE or data.sell_count < TIER1_MIN_PER_SIDE:
            return StageOutcome.failure(PricingStage.TIER1, "not enough listings on both sides")

        result = self.engine.discover_price(
            data.buy_listings, data.sell_listings, data.history, data.key_rate
        )
        if not result.has_consensus:
            return StageOutcome.failure(PricingStage.TIER1, "no discovery consensus")
        if result.confidence < self.min_discovery_confidence:
            return StageOutcome.failure(
                PricingStage.TIER1,
                f"discovery confidence {result.confidence:.2f} below {self.min_discovery_confidence:.2f}",
            )

        buy, sell = result.buy_price, result.sell_price

        # Keep the quote inside the market-aware envelope
        history_values = [h.value for h in reversed(data.history)]
        bounds = self.bounds.calculate(
            base_price=(buy + sell) / 2,
            history_values=history_values,
            buy_count=data.buy_count,
            sell_count=data.sell_count,
            item_id=data.item_id,
        )
        buy = max(buy, bounds.buy.min)
        sell = min(sell, bounds.sell.max)

        methods = ",".join(m.value for m in result.methods_used)
        return self._success(
            PricingStage.TIER1,
            buy,
            sell,
            f"confidence={result.confidence:.2f} agreement={result.agreement:.2f} methods={methods}",
        )

    # =========================================================================
    # Tier 2: asymmetric book
    # =========================================================================

    def synthesize(self, strong_price: float, missing: Side, spread_hint: float, competitive: bool) -> float:
        """Synthetic price for the missing side from the strong side's price."""
        if missing == Side.SELL:
            factor = SYNTHETIC_SELL_FACTOR_COMPETITIVE if competitive else SYNTHETIC_SELL_FACTOR
            return strong_price * (factor + (1 + spread_hint)) / 2
        factor = SYNTHETIC_BUY_FACTOR_COMPETITIVE if competitive else SYNTHETIC_BUY_FACTOR
        return strong_price * (factor + (1 - spread_hint)) / 2

    def tier2(self, data: TierInput) -> StageOutcome:
        if data.buy_count >= TIER2_MIN_STRONG_SIDE and data.sell_count >= TIER2_MIN_WEAK_SIDE:
            strong_side, strong, weak = Side.BUY, data.buy_prices, data.sell_prices
        elif data.sell_count >= TIER2_MIN_STRONG_SIDE and data.buy_count >= TIER2_MIN_WEAK_SIDE:
            strong_side, strong, weak = Side.SELL, data.sell_prices, data.buy_prices
        else:
            return StageOutcome.failure(PricingStage.TIER2, "book is not asymmetric")

        strong_price = adaptive_robust_mean(strong).value
        observed_spread = abs(strong_price - weak[0]) / strong_price
        spread_hint = max(self.spread_offset, observed_spread)
        competitive = len(strong) >= COMPETITIVE_LISTING_COUNT

        if strong_side == Side.BUY:
            buy = strong_price
            sell = self.synthesize(strong_price, Side.SELL, spread_hint, competitive)
        else:
            sell = strong_price
            buy = self.synthesize(strong_price, Side.BUY, spread_hint, competitive)

        return self._success(
            PricingStage.TIER2,
            buy,
            sell,
            f"strong={strong_side.value} spread_hint={spread_hint:.3f}",
        )

    # =========================================================================
    # Tier 3: historical trend
    # =========================================================================

    def tier3(self, data: TierInput) -> StageOutcome:
        if len(data.history) < TIER3_MIN_HISTORY:
            return StageOutcome.failure(PricingStage.TIER3, f"only {len(data.history)} history points")

        fit = linear_regression([(h.timestamp, h.value) for h in data.history])
        if fit is None or abs(fit.r2) <= TREND_MIN_R2:
            r2 = fit.r2 if fit else 0.0
            return StageOutcome.failure(PricingStage.TIER3, f"trend fit too weak (r2={r2:.3f})")

        trend_price = fit.predict(data.now)
        if trend_price <= 0:
            return StageOutcome.failure(PricingStage.TIER3, f"trend projects non-positive price {trend_price:.3f}")

        return self._success(
            PricingStage.TIER3,
            trend_price * (1 - TREND_MARGIN),
            trend_price * (1 + TREND_MARGIN),
            f"r2={fit.r2:.3f}",
        )

    # =========================================================================
    # Tier 4: minimum viable
    # =========================================================================

    def tier4(self, data: TierInput) -> StageOutcome:
        buy: Optional[float] = None
        sell: Optional[float] = None

        if data.buy_prices:
            top = data.buy_prices[:3]
            buy = sum(top) / len(top)
        if data.sell_prices:
            sell = data.sell_prices[0]

        if buy is None and sell is not None:
            buy = sell * TIER4_BUY_FROM_SELL
        elif sell is None and buy is not None:
            sell = buy * TIER4_SELL_FROM_BUY
        elif buy is None and sell is None:
            if not data.history:
                return StageOutcome.failure(PricingStage.TIER4, "no listings and no history")
            recent = data.history[:10]
            average = sum(h.value for h in recent) / len(recent)
            buy = average * TIER4_HISTORY_BUY
            sell = average * TIER4_HISTORY_SELL

        return self._success(PricingStage.TIER4, buy, sell)
