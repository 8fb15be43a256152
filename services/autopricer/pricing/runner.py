"""
Pricing Pass Runner

One pass:
    1. Evict stale listings and refresh stats of the affected items
    2. Select items: pricable items from listing_stats plus items touched by
       the stream since the previous pass
    3. Price them with bounded concurrency
    4. Write emitted items to the price list and history in one batch each
    5. Price allow-listed items that are still missing through the
       rate-limited secondary market, then the baseline

Only a store outage aborts a pass; per-item failures are logged and counted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from ..core.constants import (
    BASELINE_FALLBACK_BUY_DISCOUNT,
    BASELINE_FALLBACK_SELL_PREMIUM,
    MIN_SELL_MARGIN,
    PRICING_CONCURRENCY,
    is_key,
)
from ..core.currency import KeyPivotRate, from_metal, to_metal
from ..core.errors import ExternalPriceError, StoreUnavailableError
from ..core.metrics import PRICING_PASS_DURATION, STALE_LISTINGS_DELETED, record_pricing_outcome
from ..core.types import PricedItem, PriceHistoryEntry, PriceSource
from ..persistence.repository import (
    ListingRepository,
    ListingStatsRepository,
    PriceHistoryRepository,
    PriceListRepository,
)
from .external import BaselineFeed, RateLimitedFallback, SteamMarketClient
from .pipeline import PricingPipeline, enforce_margin
from .stages import PipelineResult, PricingStage

logger = logging.getLogger(__name__)


class PriceSink(Protocol):
    """Receives every item written to the price list."""

    def publish(self, item: PricedItem) -> None:
        ...


@dataclass
class PassSummary:
    """Outcome counters of one pricing pass."""

    started_at: int
    duration_seconds: float = 0.0
    evicted: int = 0
    attempted: int = 0
    emitted: int = 0
    discarded: int = 0
    errors: int = 0
    fallback_emitted: int = 0
    aborted: bool = False
    discarded_by_stage: dict[str, int] = field(default_factory=dict)


class PricingRunner:
    """
    Runs full pricing passes.

    Usage:
        runner = PricingRunner(pipeline, listing_repo, stats_repo, history_repo, pricelist_repo)
        summary = await runner.run_pass()
    """

    def __init__(
        self,
        pipeline: PricingPipeline,
        listing_repo: ListingRepository,
        stats_repo: ListingStatsRepository,
        history_repo: PriceHistoryRepository,
        pricelist_repo: PriceListRepository,
        key_rate: KeyPivotRate,
        baseline: Optional[BaselineFeed] = None,
        steam: Optional[SteamMarketClient] = None,
        fallback: Optional[RateLimitedFallback] = None,
        touched_source: Optional[Callable[[], dict[str, str]]] = None,
        sink: Optional[PriceSink] = None,
        allowed_items: Optional[dict[str, str]] = None,
        concurrency: int = PRICING_CONCURRENCY,
        min_sell_margin: float = MIN_SELL_MARGIN,
    ):
        self.pipeline = pipeline
        self.listing_repo = listing_repo
        self.stats_repo = stats_repo
        self.history_repo = history_repo
        self.pricelist_repo = pricelist_repo
        self.key_rate = key_rate
        self.baseline = baseline
        self.steam = steam
        self.fallback = fallback or RateLimitedFallback()
        self.touched_source = touched_source
        self.sink = sink
        self.allowed_items = allowed_items or {}
        self.concurrency = concurrency
        self.min_sell_margin = min_sell_margin
        self.last_summary: Optional[PassSummary] = None

    # =========================================================================
    # Pass
    # =========================================================================

    async def run_pass(self) -> PassSummary:
        """
        Run one full pricing pass.

        Raises:
            StoreUnavailableError: the store went away; remaining items were
                skipped
        """
        start = time.time()
        summary = PassSummary(started_at=int(start))
        if self.steam is not None:
            self.steam.forget_key_price()

        try:
            summary.evicted = await self.evict_stale()
            items = await self.select_items()
            summary.attempted = len(items)
            logger.info(f"[pricing] Pass started: {len(items)} items")

            results = await self._price_all(items, summary)
            emitted = [r for r in results if r.emitted]
            await self._persist(emitted)
            summary.emitted = len(emitted)

            emitted_ids = {r.item_id for r in emitted}
            summary.fallback_emitted = await self.price_missing_allowed(emitted_ids)

        except StoreUnavailableError:
            summary.aborted = True
            logger.error("[pricing] Pass aborted: store unavailable")
            raise
        finally:
            summary.duration_seconds = time.time() - start
            PRICING_PASS_DURATION.observe(summary.duration_seconds)
            self.last_summary = summary

        logger.info(
            f"[pricing] Pass complete in {summary.duration_seconds:.1f}s: "
            f"{summary.emitted}/{summary.attempted} emitted, {summary.discarded} discarded, "
            f"{summary.errors} errors, {summary.fallback_emitted} via fallback, "
            f"{summary.evicted} listings evicted"
        )
        return summary

    async def evict_stale(self) -> int:
        deleted, affected = await self.listing_repo.delete_stale()
        for item_id in affected:
            await self.stats_repo.refresh(item_id)
        if deleted:
            STALE_LISTINGS_DELETED.inc(deleted)
        return deleted

    async def select_items(self) -> dict[str, str]:
        """item_id -> name for everything to price this pass."""
        items = dict(await self.stats_repo.get_pricable_items())
        if self.touched_source is not None:
            for item_id, name in self.touched_source().items():
                items.setdefault(item_id, name)
        return items

    async def _price_all(self, items: dict[str, str], summary: PassSummary) -> list[PipelineResult]:
        semaphore = asyncio.Semaphore(self.concurrency)
        store_down = asyncio.Event()

        async def price_one(item_id: str, name: str) -> Optional[PipelineResult]:
            if store_down.is_set():
                return None
            async with semaphore:
                if store_down.is_set():
                    return None
                try:
                    return await self.pipeline.price_item(name, item_id)
                except StoreUnavailableError:
                    store_down.set()
                    raise

        outcomes = await asyncio.gather(
            *(price_one(item_id, name) for item_id, name in items.items()),
            return_exceptions=True,
        )

        results: list[PipelineResult] = []
        store_error: Optional[StoreUnavailableError] = None
        for (item_id, _), outcome in zip(items.items(), outcomes):
            if isinstance(outcome, StoreUnavailableError):
                store_error = outcome
            elif isinstance(outcome, Exception):
                summary.errors += 1
                logger.error(f"[pricing] item={item_id} failed: {type(outcome).__name__}: {outcome}")
            elif outcome is not None:
                results.append(outcome)
                if not outcome.emitted:
                    summary.discarded += 1
                    stage = outcome.stage.value
                    summary.discarded_by_stage[stage] = summary.discarded_by_stage.get(stage, 0) + 1

        if store_error is not None:
            raise store_error
        return results

    async def _persist(self, results: list[PipelineResult]) -> None:
        items = [r.item for r in results if r.item is not None]
        entries = [r.history for r in results if r.history is not None]
        if not items:
            return

        await self.pricelist_repo.upsert_batch(items)
        await self.history_repo.insert_batch(entries)
        if self.sink is not None:
            for item in items:
                self.sink.publish(item)

    # =========================================================================
    # Allow-list fallback
    # =========================================================================

    def baseline_quote(self, item_id: str, name: str, now: int) -> Optional[PricedItem]:
        """Baseline price widened by the fallback spread."""
        if self.baseline is None:
            return None
        quote = self.baseline.get(item_id)
        if quote is None:
            return None

        key_price = self.key_rate.metal
        buy_metal = to_metal(quote.buy, key_price) * (1 - BASELINE_FALLBACK_BUY_DISCOUNT)
        sell_metal = to_metal(quote.sell, key_price) * (1 + BASELINE_FALLBACK_SELL_PREMIUM)
        if buy_metal <= 0 or sell_metal <= 0:
            return None

        buy, sell = enforce_margin(
            from_metal(buy_metal, key_price),
            from_metal(sell_metal, key_price),
            key_price,
            self.min_sell_margin,
        )
        return PricedItem(item_id=item_id, name=name, buy=buy, sell=sell, time=now, source=PriceSource.BASELINE)

    async def _fallback_price(self, entry: tuple[str, str]) -> Optional[PricedItem]:
        item_id, name = entry
        now = int(time.time())
        if self.steam is not None:
            try:
                buy, sell = await self.steam.get_price(name, item_id=item_id)
                return PricedItem(
                    item_id=item_id, name=name, buy=buy, sell=sell, time=now, source=PriceSource.STEAM_MARKET
                )
            except ExternalPriceError as e:
                logger.debug(f"[fallback] item={item_id} secondary market unavailable: {e}")
        return self.baseline_quote(item_id, name, now)

    async def price_missing_allowed(self, emitted_ids: set[str]) -> int:
        """
        Price allow-listed items that have no price-list entry.

        Returns:
            Number of items written
        """
        if not self.allowed_items:
            return 0

        listed = {item.item_id for item in await self.pricelist_repo.get_all()}
        missing = [
            (item_id, name)
            for item_id, name in self.allowed_items.items()
            if item_id not in emitted_ids and item_id not in listed and not is_key(item_id)
        ]
        if not missing:
            return 0

        logger.info(f"[fallback] Pricing {len(missing)} allow-listed items without a price")
        outcomes = await self.fallback.run(missing, self._fallback_price)

        priced: list[PricedItem] = []
        for (item_id, _), outcome in zip(missing, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"[fallback] item={item_id} failed: {type(outcome).__name__}: {outcome}")
            elif outcome is not None:
                priced.append(outcome)
                record_pricing_outcome(PricingStage.EXTERNAL_FALLBACK.value, "emitted")

        if priced:
            key_price = self.key_rate.metal
            await self.pricelist_repo.upsert_batch(priced)
            await self.history_repo.insert_batch([
                PriceHistoryEntry(
                    item_id=item.item_id,
                    buy_metal=to_metal(item.buy, key_price),
                    sell_metal=to_metal(item.sell, key_price),
                    timestamp=item.time,
                )
                for item in priced
            ])
            if self.sink is not None:
                for item in priced:
                    self.sink.publish(item)
        return len(priced)
