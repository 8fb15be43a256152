# Autopricer Persistence
# PostgreSQL storage for listings, stats, history and the price list

"""
Persistence module.

Components:
- ListingRepository: current listing snapshot and retention eviction
- ListingStatsRepository: per-item activity counters
- PriceHistoryRepository: append-only pricing history
- PriceListRepository: published price list
- KeyPriceRepository: key price samples behind the pivot rate
- DatabasePool: Connection pool management
"""

from .repository import (
    KeyPriceRepository,
    ListingRepository,
    ListingStatsRepository,
    PriceHistoryRepository,
    PriceListRepository,
)
from .pool import DatabasePool

__all__ = [
    "KeyPriceRepository",
    "ListingRepository",
    "ListingStatsRepository",
    "PriceHistoryRepository",
    "PriceListRepository",
    "DatabasePool",
]
