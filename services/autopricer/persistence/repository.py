"""
Autopricer Repositories

CRUD operations over the listing snapshot, per-item activity stats, price
history, the published price list and key price samples.

The listing store owns `listings` and `listing_stats`; the pricing pipeline
owns `price_history`, `pricelist` and `key_prices`.
"""

import json
import logging
import time
from typing import Optional

from ..core.constants import (
    HISTORY_WINDOW_DAYS,
    HISTORY_WINDOW_LIMIT,
    MOVING_AVERAGE_ALPHA,
    RARE_BAND,
    RETENTION_BANDS,
    RETENTION_FAILSAFE_SECONDS,
    TIER4_MIN_TOTAL,
)
from ..core.metrics import record_db_write
from ..core.types import (
    Currencies,
    HistorySample,
    Listing,
    ListingActivityStats,
    PricedItem,
    PriceHistoryEntry,
    PriceSource,
    Side,
)
from .pool import DatabasePool


logger = logging.getLogger(__name__)


def _decode_json(value) -> dict:
    """asyncpg returns json/jsonb columns as text unless a codec is set."""
    if isinstance(value, str):
        return json.loads(value)
    return value or {}


def _retention_case_sql(avg_column: str) -> str:
    """CASE expression mapping a moving-average column to a max age (seconds)."""
    branches = "\n".join(
        f"                WHEN {avg_column} > {band.min_avg_count} THEN {band.max_age_seconds}"
        for band in RETENTION_BANDS
    )
    return f"CASE\n{branches}\n                ELSE {RARE_BAND.max_age_seconds}\n            END"


# =============================================================================
# Listings
# =============================================================================

class ListingRepository:
    """
    Repository for the current listing snapshot.

    Usage:
        repo = ListingRepository(pool)
        await repo.upsert_batch(listings)
        buys = await repo.get_listings("Team Captain", Side.BUY)
    """

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    def _row_to_listing(self, row) -> Listing:
        return Listing(
            name=row["name"],
            item_id=row["item_id"],
            side=Side(row["intent"]),
            currencies=Currencies(**_decode_json(row["currencies"])),
            owner_id=row["owner_id"],
            updated=row["updated"],
        )

    async def get_listings(self, name: str, side: Side) -> list[Listing]:
        """All current listings for an item name on one side."""
        rows = await self.pool.fetch(
            """
            SELECT name, item_id, currencies, intent, updated, owner_id
            FROM listings
            WHERE name = $1 AND intent = $2
            """,
            name,
            side.value,
        )
        return [self._row_to_listing(row) for row in rows]

    async def upsert_batch(self, listings: list[Listing]) -> int:
        """
        Insert or update many listings with a single statement.

        Rows are keyed on (name, item_id, intent, owner_id); conflicting rows
        take the new currencies and timestamp. The batch must not contain the
        same key twice (see BatchWriter, which collapses duplicates).

        Returns:
            Number of rows written
        """
        if not listings:
            return 0

        start_time = time.time()
        try:
            await self.pool.execute(
                """
                INSERT INTO listings (name, item_id, currencies, intent, updated, owner_id)
                SELECT name, item_id, currencies::jsonb, intent, updated, owner_id
                FROM unnest($1::text[], $2::text[], $3::text[], $4::text[], $5::bigint[], $6::text[])
                    AS t(name, item_id, currencies, intent, updated, owner_id)
                ON CONFLICT (name, item_id, intent, owner_id) DO UPDATE SET
                    currencies = EXCLUDED.currencies,
                    updated = EXCLUDED.updated
                """,
                [l.name for l in listings],
                [l.item_id for l in listings],
                [json.dumps({"keys": l.currencies.keys, "metal": l.currencies.metal}) for l in listings],
                [l.side.value for l in listings],
                [l.updated for l in listings],
                [l.owner_id for l in listings],
            )
            record_db_write("listings", success=True, latency_seconds=time.time() - start_time)
            logger.debug(f"Upserted {len(listings)} listings")
            return len(listings)

        except Exception as e:
            record_db_write("listings", success=False, latency_seconds=time.time() - start_time)
            logger.error(f"Failed to upsert listing batch of {len(listings)}: {e}")
            raise

    async def delete(self, owner_id: str, name: str, side: Side) -> Optional[str]:
        """
        Delete one owner's listing for an item.

        The item id is looked up first so the caller can refresh its stats.

        Returns:
            The item id of the deleted listing, or None if nothing matched
        """
        item_id = await self.pool.fetchval(
            "SELECT item_id FROM listings WHERE owner_id = $1 AND name = $2 AND intent = $3 LIMIT 1",
            owner_id,
            name,
            side.value,
        )
        if item_id is None:
            return None

        await self.pool.execute(
            "DELETE FROM listings WHERE owner_id = $1 AND name = $2 AND intent = $3",
            owner_id,
            name,
            side.value,
        )
        return item_id

    async def delete_stale(self, now: Optional[int] = None) -> tuple[int, set[str]]:
        """
        Evict listings older than their activity band allows.

        Each side of an item is banded independently by its moving-average
        count; items without stats fall into the rare band. A failsafe pass
        then removes anything older than five days.

        Returns:
            (rows deleted, item ids affected)
        """
        now = now if now is not None else int(time.time())

        rows = await self.pool.fetch(
            f"""
            WITH aged AS (
                SELECT l.id,
                       l.item_id,
                       $1 - l.updated AS age,
                       COALESCE(
                           CASE WHEN l.intent = 'buy'
                                THEN s.moving_avg_buy_count
                                ELSE s.moving_avg_sell_count
                           END, 0
                       ) AS avg_count
                FROM listings l
                LEFT JOIN listing_stats s ON s.item_id = l.item_id
            )
            DELETE FROM listings
            WHERE id IN (
                SELECT id FROM aged
                WHERE age >= {_retention_case_sql("avg_count")}
            )
            RETURNING item_id
            """,
            now,
        )
        failsafe_rows = await self.pool.fetch(
            "DELETE FROM listings WHERE $1 - updated >= $2 RETURNING item_id",
            now,
            RETENTION_FAILSAFE_SECONDS,
        )

        affected = {row["item_id"] for row in rows} | {row["item_id"] for row in failsafe_rows}
        deleted = len(rows) + len(failsafe_rows)
        if deleted:
            logger.info(
                f"Retention: deleted {len(rows)} banded + {len(failsafe_rows)} failsafe listings "
                f"across {len(affected)} items"
            )
        return deleted, affected


# =============================================================================
# Listing Stats
# =============================================================================

class ListingStatsRepository:
    """Repository for per-item activity counters."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def refresh(self, item_id: str) -> None:
        """
        Recount current listings for one item.

        A new row starts its moving averages at the current counts.
        """
        await self.pool.execute(
            """
            INSERT INTO listing_stats (
                item_id, current_buy_count, current_sell_count,
                moving_avg_buy_count, moving_avg_sell_count, last_updated
            )
            SELECT $1, buys, sells, buys, sells, NOW()
            FROM (
                SELECT COUNT(*) FILTER (WHERE intent = 'buy') AS buys,
                       COUNT(*) FILTER (WHERE intent = 'sell') AS sells
                FROM listings
                WHERE item_id = $1
            ) counts
            ON CONFLICT (item_id) DO UPDATE SET
                current_buy_count = EXCLUDED.current_buy_count,
                current_sell_count = EXCLUDED.current_sell_count,
                last_updated = NOW()
            """,
            item_id,
        )

    async def update_moving_averages(self, alpha: float = MOVING_AVERAGE_ALPHA) -> int:
        """Blend current counts into the moving averages (EMA)."""
        status = await self.pool.execute(
            """
            UPDATE listing_stats SET
                moving_avg_buy_count = $1 * current_buy_count + (1 - $1) * moving_avg_buy_count,
                moving_avg_sell_count = $1 * current_sell_count + (1 - $1) * moving_avg_sell_count
            """,
            alpha,
        )
        updated = int(status.split()[-1]) if status else 0
        logger.debug(f"Moving averages updated for {updated} items (alpha={alpha})")
        return updated

    async def get(self, item_id: str) -> Optional[ListingActivityStats]:
        row = await self.pool.fetchrow(
            """
            SELECT item_id, current_buy_count, current_sell_count,
                   moving_avg_buy_count, moving_avg_sell_count
            FROM listing_stats WHERE item_id = $1
            """,
            item_id,
        )
        if not row:
            return None
        return ListingActivityStats(**dict(row))

    async def get_pricable_items(self, min_total: int = TIER4_MIN_TOTAL) -> list[tuple[str, str]]:
        """
        Items with enough current listings to attempt pricing.

        Returns:
            (item_id, name) pairs
        """
        rows = await self.pool.fetch(
            """
            SELECT s.item_id, MIN(l.name) AS name
            FROM listing_stats s
            JOIN listings l ON l.item_id = s.item_id
            WHERE s.current_buy_count + s.current_sell_count >= $1
            GROUP BY s.item_id
            """,
            min_total,
        )
        return [(row["item_id"], row["name"]) for row in rows]


# =============================================================================
# Price History
# =============================================================================

class PriceHistoryRepository:
    """Repository for append-only price history."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def insert_batch(self, entries: list[PriceHistoryEntry]) -> int:
        if not entries:
            return 0

        start_time = time.time()
        try:
            await self.pool.executemany(
                "INSERT INTO price_history (item_id, buy_metal, sell_metal, timestamp) VALUES ($1, $2, $3, $4)",
                [(e.item_id, e.buy_metal, e.sell_metal, e.timestamp) for e in entries],
            )
            record_db_write("price_history", success=True, latency_seconds=time.time() - start_time)
            return len(entries)
        except Exception as e:
            record_db_write("price_history", success=False, latency_seconds=time.time() - start_time)
            logger.error(f"Failed to insert {len(entries)} price history rows: {e}")
            raise

    async def get_recent(self, item_id: str, limit: int) -> list[PriceHistoryEntry]:
        """Most recent rows for an item, newest first."""
        rows = await self.pool.fetch(
            """
            SELECT item_id, buy_metal, sell_metal, timestamp
            FROM price_history
            WHERE item_id = $1
            ORDER BY timestamp DESC
            LIMIT $2
            """,
            item_id,
            limit,
        )
        return [PriceHistoryEntry(**dict(row)) for row in rows]

    async def get_window(
        self,
        item_id: str,
        days: int = HISTORY_WINDOW_DAYS,
        limit: int = HISTORY_WINDOW_LIMIT,
    ) -> list[HistorySample]:
        """
        Rolling history window as side-tagged samples, newest first.

        Each history row yields one buy and one sell sample.
        """
        since = int(time.time()) - days * 86400
        rows = await self.pool.fetch(
            """
            SELECT buy_metal AS value, 'buy' AS side, timestamp FROM price_history
            WHERE item_id = $1 AND timestamp > $2
            UNION ALL
            SELECT sell_metal AS value, 'sell' AS side, timestamp FROM price_history
            WHERE item_id = $1 AND timestamp > $2
            ORDER BY timestamp DESC
            LIMIT $3
            """,
            item_id,
            since,
            limit,
        )
        return [
            HistorySample(value=float(row["value"]), side=Side(row["side"]), timestamp=row["timestamp"])
            for row in rows
        ]


# =============================================================================
# Price List
# =============================================================================

class PriceListRepository:
    """Repository for the published price list (one row per item)."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    def _row_to_item(self, row) -> PricedItem:
        return PricedItem(
            item_id=row["item_id"],
            name=row["name"],
            buy=Currencies(**_decode_json(row["buy"])),
            sell=Currencies(**_decode_json(row["sell"])),
            time=row["time"],
            source=PriceSource(row["source"]),
        )

    async def upsert_batch(self, items: list[PricedItem]) -> int:
        """Replace price list entries by item id."""
        if not items:
            return 0

        start_time = time.time()
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(
                        """
                        INSERT INTO pricelist (item_id, name, buy, sell, time, source)
                        VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6)
                        ON CONFLICT (item_id) DO UPDATE SET
                            name = EXCLUDED.name,
                            buy = EXCLUDED.buy,
                            sell = EXCLUDED.sell,
                            time = EXCLUDED.time,
                            source = EXCLUDED.source
                        """,
                        [
                            (
                                item.item_id,
                                item.name,
                                item.buy.model_dump_json(include={"keys", "metal"}),
                                item.sell.model_dump_json(include={"keys", "metal"}),
                                item.time,
                                item.source.value,
                            )
                            for item in items
                        ],
                    )
            record_db_write("pricelist", success=True, latency_seconds=time.time() - start_time)
            logger.debug(f"Price list updated with {len(items)} items")
            return len(items)

        except Exception as e:
            record_db_write("pricelist", success=False, latency_seconds=time.time() - start_time)
            logger.error(f"Failed to write {len(items)} price list entries: {e}")
            raise

    async def get(self, item_id: str) -> Optional[PricedItem]:
        row = await self.pool.fetchrow(
            "SELECT item_id, name, buy, sell, time, source FROM pricelist WHERE item_id = $1",
            item_id,
        )
        return self._row_to_item(row) if row else None

    async def get_all(self) -> list[PricedItem]:
        rows = await self.pool.fetch(
            "SELECT item_id, name, buy, sell, time, source FROM pricelist ORDER BY name"
        )
        return [self._row_to_item(row) for row in rows]


# =============================================================================
# Key Prices
# =============================================================================

class KeyPriceRepository:
    """Repository for key price samples that back the pivot rate."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def insert(self, buy_metal: float, sell_metal: float) -> None:
        await self.pool.execute(
            "INSERT INTO key_prices (buy_metal, sell_metal, created_at) VALUES ($1, $2, $3)",
            buy_metal,
            sell_metal,
            int(time.time()),
        )

    async def latest(self) -> Optional[tuple[float, float]]:
        """Most recent (buy_metal, sell_metal), or None."""
        row = await self.pool.fetchrow(
            "SELECT buy_metal, sell_metal FROM key_prices ORDER BY created_at DESC LIMIT 1"
        )
        if not row:
            return None
        return float(row["buy_metal"]), float(row["sell_metal"])

    async def cleanup(self, older_than_days: int = 30) -> int:
        cutoff = int(time.time()) - older_than_days * 86400
        status = await self.pool.execute("DELETE FROM key_prices WHERE created_at < $1", cutoff)
        deleted = int(status.split()[-1]) if status else 0
        if deleted:
            logger.info(f"Key price cleanup: deleted {deleted} rows older than {older_than_days} days")
        return deleted
