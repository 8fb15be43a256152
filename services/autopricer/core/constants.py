"""
Autopricer Constants

Central thresholds, intervals and tables used by ingestion, retention and
pricing. Operator-tunable values are mirrored in app.config.Settings; the
values here are the defaults.
"""

from typing import Optional


# =============================================================================
# Pivot Currency
# =============================================================================

# The key is both a priced item and the pivot between the two denominations
KEY_ITEM_ID: str = "5021;6"
KEY_ITEM_NAME: str = "Mann Co. Supply Crate Key"

# Smallest tradable metal increment (one scrap = 1/9 refined)
SCRAP_INCREMENT: float = 0.11


# =============================================================================
# Retention Bands
# =============================================================================

class RetentionBand:
    """Activity band: listings older than max_age_seconds are evicted."""
    def __init__(self, name: str, min_avg_count: float, max_age_seconds: int):
        self.name = name
        self.min_avg_count = min_avg_count
        self.max_age_seconds = max_age_seconds

    def __repr__(self) -> str:
        return f"RetentionBand({self.name}, >{self.min_avg_count}, {self.max_age_seconds}s)"


# Ordered most active first; an item falls into the first band whose
# threshold its moving average strictly exceeds. `rare` catches the rest.
RETENTION_BANDS: list[RetentionBand] = [
    RetentionBand("veryActive", 10, 35 * 60),
    RetentionBand("active", 8, 2 * 3600),
    RetentionBand("moderatelyActive", 6, 6 * 3600),
    RetentionBand("somewhatActive", 4, 24 * 3600),
    RetentionBand("lowActive", 2, 3 * 86400),
]
RARE_BAND: RetentionBand = RetentionBand("rare", float("-inf"), 5 * 86400)

# Any listing older than this is deleted regardless of band
RETENTION_FAILSAFE_SECONDS: int = 5 * 86400


# Moving-average smoothing factor for listing_stats
MOVING_AVERAGE_ALPHA: float = 0.35


# =============================================================================
# Stream Ingestion
# =============================================================================

STREAM_URL: str = "wss://ws.backpack.tf/events/"

# Reconnect backoff (ms)
RECONNECT_INITIAL_DELAY_MS: int = 1_000
RECONNECT_MAX_DELAY_MS: int = 30_000
RECONNECT_BACKOFF_MULTIPLIER: float = 1.3
RECONNECT_JITTER_FRACTION: float = 0.2

# Liveness monitor
LIVENESS_CHECK_INTERVAL_SECONDS: float = 30.0
LIVENESS_TIMEOUT_SECONDS: float = 120.0

# Batched writer flush cadence
BATCH_FLUSH_INTERVAL_SECONDS: float = 10.0


# =============================================================================
# Robust Estimation
# =============================================================================

# Scale factor that makes MAD a consistent estimator of sigma for normal data
MAD_SCALE: float = 1.4826
OUTLIER_THRESHOLD: float = 2.5
EXTREME_OUTLIER_MULTIPLIER: float = 1.5


# =============================================================================
# Price Discovery
# =============================================================================

DEFAULT_METHOD_WEIGHTS: dict[str, float] = {
    "robust": 0.30,
    "order_book": 0.25,
    "traditional": 0.20,
    "consensus": 0.15,
    "adaptive": 0.10,
}
UNKNOWN_METHOD_WEIGHT: float = 0.1

# Minimum consensus confidence for Tier 1 to accept a discovery result
DISCOVERY_MIN_CONFIDENCE: float = 0.6

# History window read by discovery
HISTORY_WINDOW_DAYS: int = 7
HISTORY_WINDOW_LIMIT: int = 100


# =============================================================================
# Pricing Pipeline
# =============================================================================

# Tier thresholds (listing counts)
TIER1_MIN_PER_SIDE: int = 3
TIER2_MIN_STRONG_SIDE: int = 5
TIER2_MIN_WEAK_SIDE: int = 1
TIER3_MIN_HISTORY: int = 5
TIER4_MIN_TOTAL: int = 2

# Tier 2 synthetic side factors
TIER2_SPREAD_OFFSET: float = 0.10
SYNTHETIC_BUY_FACTOR: float = 0.92
SYNTHETIC_BUY_FACTOR_COMPETITIVE: float = 0.88
SYNTHETIC_SELL_FACTOR: float = 1.12
SYNTHETIC_SELL_FACTOR_COMPETITIVE: float = 1.08
COMPETITIVE_LISTING_COUNT: int = 10

# Tier 3 trend fit
TREND_MIN_R2: float = 0.3
TREND_MARGIN: float = 0.15

# Tier 4 fixed offsets
TIER4_BUY_FROM_SELL: float = 0.85
TIER4_SELL_FROM_BUY: float = 1.18
TIER4_HISTORY_BUY: float = 0.92
TIER4_HISTORY_SELL: float = 1.08

# One empty side before tiering gets a synthetic counterpart
SYNTHETIC_BUY_FROM_SELLS: float = 0.85
SYNTHETIC_SELL_FROM_BUYS: float = 1.15

# Swing guard
SWING_HISTORY_ROWS: int = 5
MAX_BUY_INCREASE: float = 0.10
MAX_SELL_DECREASE: float = 0.10

# Margin between buy and sell (metal)
MIN_SELL_MARGIN: float = 0.11

# Baseline-agreement tolerances (percent)
MAX_BUY_DIFFERENCE_PCT: float = 5.0
MAX_SELL_DIFFERENCE_PCT: float = 8.0

# Baseline fallback spread when pricing unpriced items from the baseline
BASELINE_FALLBACK_BUY_DISCOUNT: float = 0.25
BASELINE_FALLBACK_SELL_PREMIUM: float = 0.25

# Bounded concurrency per pass
PRICING_CONCURRENCY: int = 15


# =============================================================================
# Secondary External Market (Steam Community Market)
# =============================================================================

STEAM_MARKET_PRICE_URL: str = "https://steamcommunity.com/market/priceoverview/"
STEAM_APP_ID: int = 440
STEAM_CURRENCY_CODES: dict[str, int] = {
    "USD": 1,
    "GBP": 2,
    "EUR": 3,
}
STEAM_FALLBACK_BATCH_SIZE: int = 10
STEAM_FALLBACK_BATCH_DELAY_SECONDS: float = 1.5
STEAM_FALLBACK_CONCURRENCY: int = 3

STEAM_BASE_BUY_MARGIN: float = 0.08
STEAM_BASE_SELL_MARGIN: float = 0.12
STEAM_BUY_MARGIN_RANGE: tuple[float, float] = (0.02, 0.20)
STEAM_SELL_MARGIN_RANGE: tuple[float, float] = (0.05, 0.30)


# =============================================================================
# Dynamic Bounds
# =============================================================================

BOUNDS_BASE_MARGIN: float = 0.15
BOUNDS_VOLATILITY_WEIGHT: float = 0.30
BOUNDS_LIQUIDITY_WEIGHT: float = 0.20
BOUNDS_TREND_WEIGHT: float = 0.25
BOUNDS_QUALITY_WEIGHT: float = 0.10
BOUNDS_TIME_WEIGHT: float = 0.05
BOUNDS_SEASONAL_WEIGHT: float = 0.05

# Rarity-tier multipliers keyed by item quality id
QUALITY_MULTIPLIERS: dict[int, float] = {
    5: 1.5,   # Unusual
    14: 2.0,  # Collector's
    11: 1.2,  # Strange
    1: 0.8,   # Genuine
    3: 0.9,   # Vintage
}


def quality_of(item_id: str) -> Optional[int]:
    """Extract the quality id from an `defindex;quality;...` item id."""
    parts = item_id.split(";")
    if len(parts) < 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def is_key(item_id: str) -> bool:
    return item_id == KEY_ITEM_ID