"""
Order Book Analysis

Derives best bid/ask, depth, imbalance, liquidity, stability and quality
scores from the current listing snapshot of one item. Each listing counts as
one unit of volume.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .currency import to_metal
from .types import Listing


# Imbalance beyond which the book is considered directional
IMBALANCE_THRESHOLD = 0.2
# Depth levels kept per side
MAX_DEPTH_LEVELS = 5


@dataclass
class DepthLevel:
    price: float
    count: int


@dataclass
class OrderBookAnalysis:
    """Snapshot analysis of one item's order book (metal prices)."""

    best_bid: float
    best_ask: float
    mid_price: float
    spread: float
    spread_bps: float
    buy_volume: int
    sell_volume: int
    imbalance: float
    direction: str  # "bullish", "bearish", "neutral"
    strength: float
    liquidity_score: float
    stability_score: float
    quality_score: float
    bid_levels: list[DepthLevel] = field(default_factory=list)
    ask_levels: list[DepthLevel] = field(default_factory=list)

    @property
    def total_volume(self) -> int:
        return self.buy_volume + self.sell_volume

    @property
    def crossed(self) -> bool:
        return self.best_bid >= self.best_ask


def _depth(prices: Sequence[float], descending: bool) -> list[DepthLevel]:
    grouped = Counter(round(p, 2) for p in prices)
    ordered = sorted(grouped.items(), key=lambda kv: kv[0], reverse=descending)
    return [DepthLevel(price=p, count=c) for p, c in ordered[:MAX_DEPTH_LEVELS]]


def _price_rationality(buy_prices: Sequence[float], sell_prices: Sequence[float]) -> float:
    max_buy = max(buy_prices)
    min_sell = min(sell_prices)

    if max_buy >= min_sell:
        return 0.3
    if max_buy > 0 and (min_sell - max_buy) / max_buy > 0.5:
        return 0.6

    everything = list(buy_prices) + list(sell_prices)
    average = sum(everything) / len(everything)
    if average > 0 and (max(everything) - min(everything)) / average > 2:
        return 0.7
    return 1.0


def _size_consistency(levels: list[DepthLevel]) -> float:
    sizes = [level.count for level in levels]
    if not sizes:
        return 0.0
    average = sum(sizes) / len(sizes)
    variance = sum((s - average) ** 2 for s in sizes) / len(sizes)
    return max(0.0, 1 - variance ** 0.5 / average)


def analyze_order_book(
    buy_listings: Sequence[Listing],
    sell_listings: Sequence[Listing],
    key_price: float,
) -> Optional[OrderBookAnalysis]:
    """
    Analyze an item's order book.

    Returns:
        OrderBookAnalysis, or None if either side is empty
    """
    if not buy_listings or not sell_listings:
        return None

    buy_prices = [to_metal(l.currencies, key_price) for l in buy_listings]
    sell_prices = [to_metal(l.currencies, key_price) for l in sell_listings]

    best_bid = max(buy_prices)
    best_ask = min(sell_prices)
    mid = (best_bid + best_ask) / 2
    spread = best_ask - best_bid
    spread_bps = spread / mid * 10_000 if mid > 0 else 0.0

    buy_volume = len(buy_prices)
    sell_volume = len(sell_prices)
    total = buy_volume + sell_volume
    imbalance = (buy_volume - sell_volume) / total

    if imbalance > IMBALANCE_THRESHOLD:
        direction = "bullish"
    elif imbalance < -IMBALANCE_THRESHOLD:
        direction = "bearish"
    else:
        direction = "neutral"
    strength = abs(imbalance)

    # Liquidity: tight spread and deep book
    spread_score = max(0.0, 1 - spread_bps / 500)
    depth_score = min(1.0, total / 20)
    liquidity = (spread_score + depth_score) / 2

    # Stability
    if spread_bps < 200:
        spread_stability = 1.0
    else:
        spread_stability = max(0.0, 1 - (spread_bps - 200) / 300)
    volume_stability = min(1.0, total / 10)
    stability = (spread_stability + volume_stability + (1 - strength) + liquidity) / 4

    bid_levels = _depth(buy_prices, descending=True)
    ask_levels = _depth(sell_prices, descending=False)

    # Quality
    listings = list(buy_listings) + list(sell_listings)
    complete = sum(1 for l in listings if l.owner_id and not l.currencies.is_zero())
    completeness = complete / len(listings)
    consistency = _size_consistency(bid_levels + ask_levels)
    rationality = _price_rationality(buy_prices, sell_prices)
    quality = (completeness + consistency + rationality) / 3

    return OrderBookAnalysis(
        best_bid=best_bid,
        best_ask=best_ask,
        mid_price=mid,
        spread=spread,
        spread_bps=spread_bps,
        buy_volume=buy_volume,
        sell_volume=sell_volume,
        imbalance=imbalance,
        direction=direction,
        strength=strength,
        liquidity_score=liquidity,
        stability_score=stability,
        quality_score=quality,
        bid_levels=bid_levels,
        ask_levels=ask_levels,
    )
