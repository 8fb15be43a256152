"""
Autopricer Core Types

Canonical type definitions shared by ingestion, persistence and pricing.

SERIALIZATION CONTRACT:
    Internal Python code uses snake_case (Pythonic convention).
    API responses and broadcast events use camelCase to match the price-list
    consumers (trading bots).
    This is achieved via Pydantic's `alias_generator` and `populate_by_name`.

    Example:
        Internal: stats.moving_avg_buy_count
        API JSON: {"movingAvgBuyCount": 4.2}
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase for API serialization."""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


# =============================================================================
# Core Enums
# =============================================================================

class Side(str, Enum):
    """Listing intent. The upstream feed calls this `intent`."""
    BUY = "buy"
    SELL = "sell"


class EventType(str, Enum):
    """Upstream event kinds consumed by the stream ingestor."""
    LISTING_UPDATE = "listing-update"
    LISTING_DELETE = "listing-delete"


class ConnectionState(str, Enum):
    """Connection state of the upstream stream."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PriceSource(str, Enum):
    """Where an emitted price came from."""
    DISCOVERY = "discovery"
    TIER2 = "tier2"
    TIER3 = "tier3"
    TIER4 = "tier4"
    STEAM_MARKET = "steam_market"
    BASELINE = "baseline"


# =============================================================================
# Currency & Listing Types
# =============================================================================

class Currencies(BaseModel):
    """
    Two-denomination price: whole/partial keys plus refined metal.

    Converting to a single scalar needs the current key pivot rate,
    see core.currency.to_metal().
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    keys: float = Field(default=0.0, ge=0, description="Key units")
    metal: float = Field(default=0.0, ge=0, description="Refined metal units")

    def is_zero(self) -> bool:
        """True if neither denomination carries value."""
        return self.keys == 0 and self.metal == 0


class Listing(BaseModel):
    """
    A single posted buy or sell order.

    Unique on (name, item_id, side, owner_id); upserts are last-write-wins
    on currencies and updated.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    name: str = Field(..., description="Item name as shown on the marketplace")
    item_id: str = Field(..., description="Stable item identifier from the item schema")
    side: Side = Field(..., description="buy or sell")
    currencies: Currencies = Field(..., description="Listed price")
    owner_id: str = Field(..., description="Owner account id (steamid)")
    updated: int = Field(..., description="Last update (unix seconds)")


class ListingActivityStats(BaseModel):
    """Per-item activity counters that drive retention and tier selection."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    item_id: str
    current_buy_count: int = 0
    current_sell_count: int = 0
    moving_avg_buy_count: float = 0.0
    moving_avg_sell_count: float = 0.0

    @property
    def total_current(self) -> int:
        return self.current_buy_count + self.current_sell_count


# =============================================================================
# Price History & Output Types
# =============================================================================

class PriceHistoryEntry(BaseModel):
    """Append-only record of one successful pricing of one item."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    item_id: str
    buy_metal: float = Field(..., description="Buy price expressed in metal")
    sell_metal: float = Field(..., description="Sell price expressed in metal")
    timestamp: int = Field(..., description="Unix seconds")


class HistorySample(BaseModel):
    """One side-tagged row of the rolling history window."""

    value: float
    side: Side
    timestamp: int


class PricedItem(BaseModel):
    """
    Final price record, persisted to the price list and broadcast.

    Emitted only when to_metal(buy) < to_metal(sell).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    item_id: str = Field(..., description="Stable item identifier")
    name: str = Field(..., description="Canonical item name")
    buy: Currencies
    sell: Currencies
    time: int = Field(..., description="Emission time (unix seconds)")
    source: PriceSource = Field(..., description="Stage that produced the price")


class ItemBounds(BaseModel):
    """Optional per-item price limits configured by the operator."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    min_buy_keys: Optional[float] = None
    max_buy_keys: Optional[float] = None
    min_buy_metal: Optional[float] = None
    max_buy_metal: Optional[float] = None
    min_sell_keys: Optional[float] = None
    max_sell_keys: Optional[float] = None
    min_sell_metal: Optional[float] = None
    max_sell_metal: Optional[float] = None


# =============================================================================
# Telemetry Types
# =============================================================================

class IngestionStats(BaseModel):
    """Health counters exposed by the stream ingestor."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    message_count: int = 0
    last_message_time: Optional[int] = Field(None, description="ms since epoch")
    time_since_last_message: Optional[int] = Field(None, description="ms")
    is_connected: bool = False
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_count: int = 0
    accepted_updates: int = 0
    accepted_deletes: int = 0
    dropped: dict[str, int] = Field(default_factory=dict, description="Drop counts by reason")
