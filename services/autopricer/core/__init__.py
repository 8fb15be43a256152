# Autopricer Core Modules
"""
Core types and pure computations shared by ingestion and pricing.

Modules:
- types: Canonical type definitions (Pydantic models)
- constants: Thresholds, intervals and retention bands
- currency: Two-denomination math and the shared key pivot rate
- robust_estimators: Median/MAD/trimmed means and adaptive selection
- order_book: Order book depth, imbalance and quality scores
- item_schema: Name <-> item id translation interface
- errors: Exceptions crossing module boundaries
"""

from .types import (
    ConnectionState,
    Currencies,
    EventType,
    HistorySample,
    IngestionStats,
    ItemBounds,
    Listing,
    ListingActivityStats,
    PricedItem,
    PriceHistoryEntry,
    PriceSource,
    Side,
)

from .constants import (
    KEY_ITEM_ID,
    KEY_ITEM_NAME,
    RETENTION_BANDS,
    RETENTION_FAILSAFE_SECONDS,
    is_key,
)

from .currency import (
    KeyPivotRate,
    from_metal,
    normalize,
    round_metal,
    to_metal,
)

from .robust_estimators import (
    RobustEstimate,
    adaptive_robust_mean,
    detect_outliers,
    interquartile_mean,
    mad,
    median,
    trimmed_mean,
)

from .errors import (
    AutopricerError,
    BaselineUnavailableError,
    ExternalPriceError,
    InsufficientDataError,
    StoreUnavailableError,
)

__all__ = [
    # Types
    "ConnectionState",
    "Currencies",
    "EventType",
    "HistorySample",
    "IngestionStats",
    "ItemBounds",
    "Listing",
    "ListingActivityStats",
    "PricedItem",
    "PriceHistoryEntry",
    "PriceSource",
    "Side",
    # Constants
    "KEY_ITEM_ID",
    "KEY_ITEM_NAME",
    "RETENTION_BANDS",
    "RETENTION_FAILSAFE_SECONDS",
    "is_key",
    # Currency
    "KeyPivotRate",
    "from_metal",
    "normalize",
    "round_metal",
    "to_metal",
    # Estimators
    "RobustEstimate",
    "adaptive_robust_mean",
    "detect_outliers",
    "interquartile_mean",
    "mad",
    "median",
    "trimmed_mean",
    # Errors
    "AutopricerError",
    "BaselineUnavailableError",
    "ExternalPriceError",
    "InsufficientDataError",
    "StoreUnavailableError",
]
