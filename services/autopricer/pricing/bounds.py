"""
Dynamic Price Bounds

Computes per-item clamping bounds around a base price. The base margin is
widened or tightened by volatility, liquidity, trend, item quality, time of
day and season:

    multiplier = vol * 0.30 + liq * 0.20 + trend * 0.25
                 + quality * 0.10 + time * 0.05 + seasonal * 0.05
                 + (1 - 0.30 - 0.20 - 0.25 - 0.20)

    buy  in [base * (1 - m_buy),       base * (1 + m_buy / 2)]
    sell in [base * (1 - m_sell / 2),  base * (1 + m_sell)]
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from ..core.constants import (
    BOUNDS_BASE_MARGIN,
    BOUNDS_LIQUIDITY_WEIGHT,
    BOUNDS_QUALITY_WEIGHT,
    BOUNDS_SEASONAL_WEIGHT,
    BOUNDS_TIME_WEIGHT,
    BOUNDS_TREND_WEIGHT,
    BOUNDS_VOLATILITY_WEIGHT,
    QUALITY_MULTIPLIERS,
    quality_of,
)
from ..core.robust_estimators import (
    adaptive_robust_mean,
    linear_regression,
    mad,
)

logger = logging.getLogger(__name__)

VOLATILITY_WINDOW = 24
TREND_MIN_POINTS = 10
TREND_WINDOW = 20


@dataclass
class TrendAdjustment:
    buy_multiplier: float = 1.0
    sell_multiplier: float = 1.0
    strength: float = 0.0
    direction: str = "sideways"


@dataclass
class PriceRange:
    min: float
    max: float
    margin: float

    def clamp(self, value: float) -> float:
        return max(self.min, min(self.max, value))


@dataclass
class BoundsResult:
    buy: PriceRange
    sell: PriceRange
    confidence: float
    data_quality: str
    factors: dict[str, float] = field(default_factory=dict)


class DynamicBoundsCalculator:
    """
    Market-aware bounds for candidate buy/sell prices.

    Usage:
        calc = DynamicBoundsCalculator()
        bounds = calc.calculate(base, history_values, buy_count=4, sell_count=6, item_id="5021;6")
        buy = bounds.buy.clamp(buy)
    """

    def __init__(
        self,
        base_margin: float = BOUNDS_BASE_MARGIN,
        volatility_weight: float = BOUNDS_VOLATILITY_WEIGHT,
        liquidity_weight: float = BOUNDS_LIQUIDITY_WEIGHT,
        trend_weight: float = BOUNDS_TREND_WEIGHT,
    ):
        self.base_margin = base_margin
        self.volatility_weight = volatility_weight
        self.liquidity_weight = liquidity_weight
        self.trend_weight = trend_weight

    # =========================================================================
    # Factors
    # =========================================================================

    def volatility_factor(self, values: Sequence[float]) -> float:
        """1.0 .. 2.0 from the robust CV of the last 24 values."""
        if len(values) < VOLATILITY_WINDOW:
            return 1.0

        recent = list(values[-VOLATILITY_WINDOW:])
        center = adaptive_robust_mean(recent).value
        if center <= 0:
            return 1.0
        cv = mad(recent) / center
        return min(2.0, 1.0 + cv * 2)

    def liquidity_factor(self, buy_count: int, sell_count: int, avg_volume: float = 1.0) -> float:
        """1.0 .. 1.8; thinner books get wider bounds."""
        total = buy_count + sell_count
        balance = min(buy_count, sell_count) / total if total > 0 else 0.0

        score = min(1.0, total / 10) * 0.4
        score += balance * 0.3
        score += min(1.0, avg_volume / 5) * 0.3

        return 1.0 + (1.0 - score) * 0.8

    def trend_adjustment(self, values: Sequence[float]) -> TrendAdjustment:
        """
        Asymmetric per-side multipliers from a linear fit of recent values.

        An uptrend tightens the sell side and widens the buy side; a
        downtrend does the opposite.
        """
        if len(values) < TREND_MIN_POINTS:
            return TrendAdjustment()

        recent = list(values[-TREND_WINDOW:])
        fit = linear_regression([(i, v) for i, v in enumerate(recent)])
        if fit is None:
            return TrendAdjustment()

        average = sum(recent) / len(recent)
        strength = abs(fit.slope) * fit.r2
        normalized = fit.slope / average if average > 0 else 0.0

        adjustment = TrendAdjustment(strength=strength)
        if normalized > 0.01:
            adjustment.direction = "up"
        elif normalized < -0.01:
            adjustment.direction = "down"

        if strength > 0.1:
            if adjustment.direction == "up":
                adjustment.sell_multiplier = max(0.7, 1.0 - strength * 0.3)
                adjustment.buy_multiplier = min(1.3, 1.0 + strength * 0.3)
            elif adjustment.direction == "down":
                adjustment.buy_multiplier = max(0.7, 1.0 - strength * 0.3)
                adjustment.sell_multiplier = min(1.3, 1.0 + strength * 0.3)

        return adjustment

    def quality_factor(self, item_id: Optional[str]) -> float:
        if not item_id:
            return 1.0
        quality = quality_of(item_id)
        return QUALITY_MULTIPLIERS.get(quality, 1.0) if quality is not None else 1.0

    def time_factor(self, now: datetime) -> float:
        """Wider off-peak (02-10 UTC), tighter at peak (14-22 UTC)."""
        hour = now.astimezone(timezone.utc).hour
        if 2 <= hour <= 10:
            return 1.15
        if 14 <= hour <= 22:
            return 0.9
        return 1.0

    def seasonal_factor(self, now: datetime) -> float:
        factor = 1.0
        if now.month in (6, 7, 8):
            factor *= 1.05
        if now.month == 12:
            factor *= 0.95
        if now.weekday() >= 5:
            factor *= 1.1
        return factor

    # =========================================================================
    # Confidence
    # =========================================================================

    def confidence(
        self,
        history_len: int,
        buy_count: int,
        sell_count: int,
        latest_timestamp: Optional[int],
        now: datetime,
    ) -> float:
        score = 0.0

        if history_len >= 50:
            score += 0.3
        elif history_len >= 20:
            score += 0.2
        elif history_len >= 10:
            score += 0.1

        total = buy_count + sell_count
        if total >= 20:
            score += 0.3
        elif total >= 10:
            score += 0.2
        elif total >= 5:
            score += 0.1

        if total > 0:
            score += min(buy_count, sell_count) / total * 0.2

        if latest_timestamp is not None:
            age_hours = (now.timestamp() - latest_timestamp) / 3600
            if age_hours <= 2:
                score += 0.2
            elif age_hours <= 12:
                score += 0.1

        return min(1.0, score)

    def data_quality(self, history_len: int, buy_count: int, sell_count: int) -> str:
        total = buy_count + sell_count
        history_score = min(1.0, history_len / 30)
        liquidity_score = min(1.0, total / 15)
        balance_score = min(buy_count, sell_count) / total if total > 0 else 0.0
        overall = (history_score + liquidity_score + balance_score) / 3

        if overall >= 0.8:
            return "excellent"
        if overall >= 0.6:
            return "good"
        if overall >= 0.4:
            return "fair"
        if overall >= 0.2:
            return "poor"
        return "very_poor"

    # =========================================================================
    # Bounds
    # =========================================================================

    def calculate(
        self,
        base_price: float,
        history_values: Sequence[float],
        buy_count: int,
        sell_count: int,
        item_id: Optional[str] = None,
        latest_timestamp: Optional[int] = None,
        avg_volume: float = 1.0,
        now: Optional[datetime] = None,
    ) -> BoundsResult:
        """
        Compute buy and sell ranges around base_price.

        Args:
            base_price: Reference price in metal (typically the candidate mid)
            history_values: Historical prices, oldest first
            buy_count: Current buy listing count
            sell_count: Current sell listing count
            item_id: Item id, used for the quality multiplier
            latest_timestamp: Unix time of the newest history row
            avg_volume: Average traded volume proxy
            now: Evaluation time (defaults to current UTC time)
        """
        now = now or datetime.now(timezone.utc)

        volatility = self.volatility_factor(history_values)
        liquidity = self.liquidity_factor(buy_count, sell_count, avg_volume)
        trend = self.trend_adjustment(history_values)
        quality = self.quality_factor(item_id)
        time_of_day = self.time_factor(now)
        seasonal = self.seasonal_factor(now)

        fixed = (
            volatility * self.volatility_weight
            + liquidity * self.liquidity_weight
            + quality * BOUNDS_QUALITY_WEIGHT
            + time_of_day * BOUNDS_TIME_WEIGHT
            + seasonal * BOUNDS_SEASONAL_WEIGHT
            + (1.0 - self.volatility_weight - self.liquidity_weight - self.trend_weight
               - BOUNDS_QUALITY_WEIGHT - BOUNDS_TIME_WEIGHT - BOUNDS_SEASONAL_WEIGHT)
        )
        buy_margin = self.base_margin * (fixed + trend.buy_multiplier * self.trend_weight)
        sell_margin = self.base_margin * (fixed + trend.sell_multiplier * self.trend_weight)

        return BoundsResult(
            buy=PriceRange(
                min=base_price * (1 - buy_margin),
                max=base_price * (1 + buy_margin * 0.5),
                margin=buy_margin,
            ),
            sell=PriceRange(
                min=base_price * (1 - sell_margin * 0.5),
                max=base_price * (1 + sell_margin),
                margin=sell_margin,
            ),
            confidence=self.confidence(len(history_values), buy_count, sell_count, latest_timestamp, now),
            data_quality=self.data_quality(len(history_values), buy_count, sell_count),
            factors={
                "volatility": volatility,
                "liquidity": liquidity,
                "trend_buy": trend.buy_multiplier,
                "trend_sell": trend.sell_multiplier,
                "quality": quality,
                "time": time_of_day,
                "seasonal": seasonal,
            },
        )
