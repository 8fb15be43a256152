"""
Autopricer Configuration

Pydantic Settings for the autopricer service.
Loads from environment variables with sensible defaults.
"""

import json
import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from ..core import constants
from ..core.types import ItemBounds

logger = logging.getLogger(__name__)


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseSettings):
    """Autopricer service configuration."""

    # Service identity
    service_name: str = Field(default="autopricer", description="Service name for logging/metrics")
    environment: Literal["local", "staging", "production"] = Field(default="local")
    service_version: str = Field(default="0.1.0")
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(default="", description="PostgreSQL connection string")
    db_pool_min_size: int = Field(default=2)
    db_pool_max_size: int = Field(default=10)

    # Listing stream
    stream_enabled: bool = Field(default=True)
    stream_url: str = Field(default=constants.STREAM_URL)
    batch_interval_seconds: float = Field(default=constants.BATCH_FLUSH_INTERVAL_SECONDS)
    liveness_interval_seconds: float = Field(default=constants.LIVENESS_CHECK_INTERVAL_SECONDS)
    liveness_timeout_seconds: float = Field(default=constants.LIVENESS_TIMEOUT_SECONDS)
    reconnect_initial_delay_ms: int = Field(default=constants.RECONNECT_INITIAL_DELAY_MS)
    reconnect_max_delay_ms: int = Field(default=constants.RECONNECT_MAX_DELAY_MS)
    reconnect_backoff_multiplier: float = Field(default=constants.RECONNECT_BACKOFF_MULTIPLIER)

    # Item schema
    item_schema_path: str = Field(default="item_schema.json", description="JSON name -> item id table")

    # Pricing pass
    pricing_concurrency: int = Field(default=constants.PRICING_CONCURRENCY)
    pricing_interval_seconds: float = Field(default=15 * 60)
    moving_average_interval_seconds: float = Field(default=15 * 60)
    baseline_refresh_interval_seconds: float = Field(default=30 * 60)
    key_price_cleanup_interval_seconds: float = Field(default=30 * 60)
    key_price_retention_days: int = Field(default=30)
    ingestion_log_interval_seconds: float = Field(default=60)
    shutdown_grace_seconds: float = Field(default=30)

    # Discovery method weights, JSON object e.g. {"robust": 0.4}
    method_weights: str = Field(default="", description="JSON overrides for discovery method weights")

    # Pricing policy
    max_buy_increase: float = Field(default=constants.MAX_BUY_INCREASE)
    max_sell_decrease: float = Field(default=constants.MAX_SELL_DECREASE)
    min_sell_margin: float = Field(default=constants.MIN_SELL_MARGIN)
    max_buy_difference_pct: float = Field(default=constants.MAX_BUY_DIFFERENCE_PCT)
    max_sell_difference_pct: float = Field(default=constants.MAX_SELL_DIFFERENCE_PCT)
    fallback_onto_baseline: bool = Field(default=False)
    use_steam_market: bool = Field(default=True)

    # Source filters
    trusted_owners: str = Field(default="", description="Comma-separated owner ids preferred when pricing")
    excluded_owners: str = Field(default="", description="Comma-separated owner ids ignored entirely")
    excluded_descriptions: str = Field(default="", description="Comma-separated listing description terms")
    blocked_attributes: str = Field(default="", description='JSON object, e.g. {"Australium Gold": 15185211}')
    allowed_items: str = Field(default="", description="Comma-separated item names; empty allows all")
    item_bounds: str = Field(default="", description="JSON object of item name or id -> bounds")

    # External sources
    baseline_url: str = Field(default="", description="Baseline reference price list URL")
    steam_currency: str = Field(default="USD")
    default_key_price: float = Field(default=60.0, description="Key pivot rate (metal) when nothing else is known")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"

    @property
    def trusted_owner_set(self) -> set[str]:
        return set(_split(self.trusted_owners))

    @property
    def excluded_owner_set(self) -> set[str]:
        return set(_split(self.excluded_owners))

    @property
    def excluded_description_list(self) -> list[str]:
        return _split(self.excluded_descriptions)

    @property
    def allowed_item_names(self) -> set[str]:
        return set(_split(self.allowed_items))

    @property
    def blocked_attribute_map(self) -> dict[str, str]:
        return self._parse_json_object("blocked_attributes", self.blocked_attributes)

    @property
    def method_weight_map(self) -> dict[str, float]:
        return {k: float(v) for k, v in self._parse_json_object("method_weights", self.method_weights).items()}

    @property
    def item_bounds_map(self) -> dict[str, ItemBounds]:
        raw = self._parse_json_object("item_bounds", self.item_bounds)
        return {key: ItemBounds.model_validate(value) for key, value in raw.items()}

    @staticmethod
    def _parse_json_object(field_name: str, value: str) -> dict:
        if not value:
            return {}
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring invalid JSON in {field_name}: {e}")
            return {}
        if not isinstance(parsed, dict):
            logger.warning(f"Ignoring {field_name}: expected a JSON object")
            return {}
        return parsed


# Global settings instance
settings = Settings()
