"""
Price Discovery Engine

Runs every discovery strategy over an item's listings and history, then
combines the complete results into one consensus quote.

Combination:
    weight_i     = confidence_i * method_weight_i
    price        = sum(weight_i * price_i) / sum(weight_i)
    agreement    = mean over buy/sell of max(0, 1 - CV(method prices))
    confidence   = (mean(confidence_i) + agreement) / 2
                   * (1 + 0.2 * agreement)   when more than one method
                   * 0.8                     when fewer than two
                   capped at 1.0
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..core.constants import DEFAULT_METHOD_WEIGHTS, UNKNOWN_METHOD_WEIGHT
from ..core.currency import KeyPivotRate, to_metal
from ..core.order_book import analyze_order_book
from ..core.robust_estimators import coefficient_of_variation
from ..core.types import HistorySample, Listing
from .methods import (
    DEFAULT_STRATEGIES,
    DiscoveryContext,
    DiscoveryMethod,
    DiscoveryStrategy,
    MethodResult,
)

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    """Consensus of the discovery methods (metal prices)."""

    buy_price: Optional[float]
    sell_price: Optional[float]
    confidence: float
    methods_used: list[DiscoveryMethod] = field(default_factory=list)
    agreement: float = 0.0
    method_results: dict[DiscoveryMethod, MethodResult] = field(default_factory=dict)

    @property
    def has_consensus(self) -> bool:
        return self.buy_price is not None and self.sell_price is not None


class PriceDiscoveryEngine:
    """
    Multi-method price discovery with weighted consensus.

    Usage:
        engine = PriceDiscoveryEngine()
        result = engine.discover_price(buys, sells, history, key_rate)
        if result.has_consensus and result.confidence >= 0.6:
            ...
    """

    def __init__(
        self,
        method_weights: Optional[dict[str, float]] = None,
        strategies: Optional[list[DiscoveryStrategy]] = None,
    ):
        self.method_weights = dict(DEFAULT_METHOD_WEIGHTS)
        if method_weights:
            self.method_weights.update(method_weights)
        self.strategies = strategies if strategies is not None else DEFAULT_STRATEGIES

    def weight_for(self, method: DiscoveryMethod) -> float:
        return self.method_weights.get(method.value, UNKNOWN_METHOD_WEIGHT)

    def discover_price(
        self,
        buy_listings: Sequence[Listing],
        sell_listings: Sequence[Listing],
        history: Sequence[HistorySample],
        key_rate: KeyPivotRate,
    ) -> DiscoveryResult:
        """
        Estimate buy and sell prices for one item.

        Args:
            buy_listings: Current buy listings
            sell_listings: Current sell listings
            history: Recent side-tagged history samples, newest first
            key_rate: Shared pivot rate handle

        Returns:
            DiscoveryResult; buy/sell are None when no method produced a
            complete quote
        """
        key_price = key_rate.metal
        ctx = DiscoveryContext(
            buy_prices=[to_metal(l.currencies, key_price) for l in buy_listings],
            sell_prices=[to_metal(l.currencies, key_price) for l in sell_listings],
            history=list(history),
            key_price=key_price,
            order_book=analyze_order_book(buy_listings, sell_listings, key_price),
        )

        results: dict[DiscoveryMethod, MethodResult] = {}
        for strategy in self.strategies:
            try:
                result = strategy.estimate(ctx, results)
            except (ValueError, ZeroDivisionError) as e:
                logger.warning(f"Discovery method {strategy.method.value} failed: {e}")
                continue
            if result is not None:
                results[strategy.method] = result

        return self.combine(results)

    def combine(self, results: dict[DiscoveryMethod, MethodResult]) -> DiscoveryResult:
        """Confidence-weighted consensus over complete method results."""
        contributing = [
            r for r in results.values()
            if r.complete and r.confidence > 0
        ]

        if not contributing:
            return DiscoveryResult(
                buy_price=None,
                sell_price=None,
                confidence=0.0,
                method_results=results,
            )

        weights = [r.confidence * self.weight_for(r.method) for r in contributing]
        total_weight = sum(weights)
        if total_weight <= 0:
            return DiscoveryResult(
                buy_price=None,
                sell_price=None,
                confidence=0.0,
                method_results=results,
            )

        buy = sum(w * r.buy_price for w, r in zip(weights, contributing)) / total_weight
        sell = sum(w * r.sell_price for w, r in zip(weights, contributing)) / total_weight

        buy_agreement = max(0.0, 1 - coefficient_of_variation([r.buy_price for r in contributing]))
        sell_agreement = max(0.0, 1 - coefficient_of_variation([r.sell_price for r in contributing]))
        agreement = (buy_agreement + sell_agreement) / 2

        average_confidence = sum(r.confidence for r in contributing) / len(contributing)
        confidence = (average_confidence + agreement) / 2
        if len(contributing) > 1:
            confidence *= 1 + agreement * 0.2
        else:
            confidence *= 0.8
        confidence = min(1.0, confidence)

        methods = [r.method for r in contributing]
        logger.debug(
            f"Discovery consensus from {len(methods)} methods: buy={buy:.3f} sell={sell:.3f} "
            f"confidence={confidence:.2f} agreement={agreement:.2f}"
        )

        return DiscoveryResult(
            buy_price=buy,
            sell_price=sell,
            confidence=confidence,
            methods_used=methods,
            agreement=agreement,
            method_results=results,
        )
