"""
Price Discovery Methods

Independent estimation strategies over one item's current listings and
recent price history. Every strategy returns the same MethodResult shape so
the engine can combine them with a single weighting function; adding a
method means adding one DiscoveryMethod member and one strategy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..core.order_book import OrderBookAnalysis
from ..core.robust_estimators import (
    adaptive_robust_mean,
    coefficient_of_variation,
    mad,
    mean,
    median,
    remove_outliers,
)
from ..core.types import HistorySample, Side

logger = logging.getLogger(__name__)


class DiscoveryMethod(str, Enum):
    """Closed set of discovery strategies."""
    ROBUST = "robust"
    ORDER_BOOK = "order_book"
    TRADITIONAL = "traditional"
    CONSENSUS = "consensus"
    ADAPTIVE = "adaptive"


@dataclass
class MethodResult:
    """Output of one discovery strategy (metal prices)."""

    method: DiscoveryMethod
    buy_price: Optional[float]
    sell_price: Optional[float]
    confidence: float
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.buy_price is not None and self.sell_price is not None


@dataclass
class DiscoveryContext:
    """Inputs shared by every strategy for one discovery run."""

    buy_prices: list[float]
    sell_prices: list[float]
    history: list[HistorySample]
    key_price: float
    order_book: Optional[OrderBookAnalysis] = None

    @property
    def total_listings(self) -> int:
        return len(self.buy_prices) + len(self.sell_prices)

    def prices(self, side: Side) -> list[float]:
        return self.buy_prices if side == Side.BUY else self.sell_prices

    def history_values(self, side: Side) -> list[float]:
        return [h.value for h in self.history if h.side == side]


class DiscoveryStrategy(ABC):
    """Base class for discovery strategies."""

    method: DiscoveryMethod

    @abstractmethod
    def estimate(
        self,
        ctx: DiscoveryContext,
        prior: dict[DiscoveryMethod, MethodResult],
    ) -> Optional[MethodResult]:
        """
        Produce an estimate, or None when the inputs don't support one.

        Args:
            ctx: Listing prices, history and order book for the item
            prior: Results of strategies that already ran in this discovery
        """


# =============================================================================
# Robust
# =============================================================================

class RobustStrategy(DiscoveryStrategy):
    """Adaptive robust mean per side after one pass of outlier removal."""

    method = DiscoveryMethod.ROBUST

    def estimate(self, ctx, prior):
        prices: dict[Side, Optional[float]] = {}
        confidences = []
        outliers = 0
        samples = 0

        for side in (Side.BUY, Side.SELL):
            values = ctx.prices(side)
            if not values:
                prices[side] = None
                continue

            cleaned, removed = remove_outliers(values)
            outliers += len(removed)
            samples += len(values)

            estimate = adaptive_robust_mean(cleaned or values)
            prices[side] = estimate.value
            confidences.append(estimate.confidence)

        if not confidences:
            return None

        outlier_ratio = outliers / samples if samples else 0.0
        confidence = max(0.0, sum(confidences) / len(confidences) - outlier_ratio * 0.3)

        return MethodResult(
            method=self.method,
            buy_price=prices[Side.BUY],
            sell_price=prices[Side.SELL],
            confidence=confidence,
            detail={"outliers_removed": outliers, "outlier_ratio": outlier_ratio},
        )


# =============================================================================
# Order Book
# =============================================================================

class OrderBookStrategy(DiscoveryStrategy):
    """
    Quotes derived from best bid/ask and volume imbalance.

    A directional book shifts both quotes toward the pressured side; a
    neutral book quotes halfway between each touch and the mid.
    """

    method = DiscoveryMethod.ORDER_BOOK

    def estimate(self, ctx, prior):
        book = ctx.order_book
        if book is None:
            return None

        if book.direction == "bullish":
            buy = book.best_bid * 1.02
            sell = book.best_ask * 1.01
        elif book.direction == "bearish":
            buy = book.best_bid * 0.99
            sell = book.best_ask * 0.98
        else:
            buy = (book.best_bid + book.mid_price) / 2
            sell = (book.mid_price + book.best_ask) / 2

        confidence = (book.liquidity_score + book.stability_score) / 2

        return MethodResult(
            method=self.method,
            buy_price=buy,
            sell_price=sell,
            confidence=confidence,
            detail={
                "direction": book.direction,
                "imbalance": book.imbalance,
                "spread_bps": book.spread_bps,
            },
        )


# =============================================================================
# Traditional
# =============================================================================

class TraditionalStrategy(DiscoveryStrategy):
    """
    Adaptive robust mean scored by sample size and cross-sample consistency.

    Same location estimate as RobustStrategy without the outlier pass; the
    independent scoring keeps the ensemble diverse.
    """

    method = DiscoveryMethod.TRADITIONAL

    def estimate(self, ctx, prior):
        prices: dict[Side, Optional[float]] = {}
        estimate_confidence = 0.0
        consistency = 1.0
        any_side = False

        for side in (Side.BUY, Side.SELL):
            values = ctx.prices(side)
            if not values:
                prices[side] = None
                continue
            any_side = True

            if len(values) >= 3:
                estimate = adaptive_robust_mean(values)
                prices[side] = estimate.value
                estimate_confidence += estimate.confidence * 0.5
            else:
                prices[side] = mean(values)
                estimate_confidence += 0.3

            center = median(values)
            if center > 0:
                consistency *= max(0.0, 1 - mad(values) / center)

        if not any_side:
            return None

        sample_confidence = min(1.0, ctx.total_listings / 10)
        confidence = min(1.0, (estimate_confidence + sample_confidence + consistency) / 3)

        return MethodResult(
            method=self.method,
            buy_price=prices[Side.BUY],
            sell_price=prices[Side.SELL],
            confidence=confidence,
            detail={"sample_confidence": sample_confidence, "consistency": consistency},
        )


# =============================================================================
# Historical Consensus
# =============================================================================

class ConsensusStrategy(DiscoveryStrategy):
    """Blend current listing averages (70%) with the trailing history (30%)."""

    method = DiscoveryMethod.CONSENSUS

    CURRENT_WEIGHT = 0.7
    HISTORICAL_WEIGHT = 0.3

    def estimate(self, ctx, prior):
        if not ctx.history:
            return None

        prices: dict[Side, Optional[float]] = {}
        consistencies = []

        for side in (Side.BUY, Side.SELL):
            current = ctx.prices(side)
            historical = ctx.history_values(side)
            if not current or not historical:
                prices[side] = None
                continue

            current_avg = mean(current)
            historical_avg = mean(historical)
            prices[side] = current_avg * self.CURRENT_WEIGHT + historical_avg * self.HISTORICAL_WEIGHT

            if historical_avg > 0:
                consistencies.append(max(0.0, 1 - abs(current_avg - historical_avg) / historical_avg))

        if not consistencies:
            return None

        return MethodResult(
            method=self.method,
            buy_price=prices[Side.BUY],
            sell_price=prices[Side.SELL],
            confidence=sum(consistencies) / len(consistencies),
            detail={"history_points": len(ctx.history)},
        )


# =============================================================================
# Adaptive Selection
# =============================================================================

class AdaptiveStrategy(DiscoveryStrategy):
    """
    Select one of the other results based on market conditions.

    Preference: high volatility -> robust; low liquidity -> consensus;
    high order book quality -> order_book; otherwise traditional. If the
    preferred result is unavailable, traditional then robust are used.
    """

    method = DiscoveryMethod.ADAPTIVE

    HIGH_VOLATILITY_CV = 0.15
    MEDIUM_VOLATILITY_CV = 0.08
    HIGH_LIQUIDITY = 15
    MEDIUM_LIQUIDITY = 8
    HIGH_QUALITY = 0.7

    def assess(self, ctx: DiscoveryContext) -> dict[str, str]:
        """Classify volatility, liquidity and order book quality."""
        volatility = "low"
        if len(ctx.history) > 10:
            cv = coefficient_of_variation([h.value for h in ctx.history[:10]])
            if cv > self.HIGH_VOLATILITY_CV:
                volatility = "high"
            elif cv > self.MEDIUM_VOLATILITY_CV:
                volatility = "medium"

        total = ctx.total_listings
        if total > self.HIGH_LIQUIDITY:
            liquidity = "high"
        elif total > self.MEDIUM_LIQUIDITY:
            liquidity = "medium"
        else:
            liquidity = "low"

        quality = "low"
        if ctx.order_book is not None and ctx.order_book.quality_score > self.HIGH_QUALITY:
            quality = "high"

        return {"volatility": volatility, "liquidity": liquidity, "quality": quality}

    def estimate(self, ctx, prior):
        conditions = self.assess(ctx)

        if conditions["volatility"] == "high":
            preferred, reason = DiscoveryMethod.ROBUST, "high volatility"
        elif conditions["liquidity"] == "low":
            preferred, reason = DiscoveryMethod.CONSENSUS, "low liquidity"
        elif conditions["quality"] == "high":
            preferred, reason = DiscoveryMethod.ORDER_BOOK, "high order book quality"
        else:
            preferred, reason = DiscoveryMethod.TRADITIONAL, "normal conditions"

        selected = prior.get(preferred)
        if selected is None or not selected.complete:
            for fallback in (DiscoveryMethod.TRADITIONAL, DiscoveryMethod.ROBUST):
                candidate = prior.get(fallback)
                if candidate is not None and candidate.complete:
                    logger.debug(f"Adaptive: {preferred.value} unavailable, using {fallback.value}")
                    selected, reason = candidate, f"{reason}; {preferred.value} unavailable"
                    break
            else:
                return None

        logger.debug(f"Adaptive selected {selected.method.value} ({reason})")

        return MethodResult(
            method=self.method,
            buy_price=selected.buy_price,
            sell_price=selected.sell_price,
            confidence=selected.confidence,
            detail={"selected": selected.method.value, "reason": reason, **conditions},
        )


# Execution order; adaptive must run last since it selects among the others
DEFAULT_STRATEGIES: list[DiscoveryStrategy] = [
    RobustStrategy(),
    OrderBookStrategy(),
    TraditionalStrategy(),
    ConsensusStrategy(),
    AdaptiveStrategy(),
]
