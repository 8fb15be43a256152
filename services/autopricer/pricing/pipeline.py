"""
Per-Item Pricing Pipeline

    FETCH_LISTINGS -> CHECK_BASELINE -> TIER1..TIER4 -> BASELINE_AGREEMENT
        -> (EXTERNAL_FALLBACK) -> BOUND -> SWING_CHECK -> EMIT | DISCARD

Each stage produces a StageOutcome. A failed tier falls through to the next
lower tier; when every tier fails, or the winner disagrees too strongly with
the baseline, the secondary market and then (if enabled) the baseline itself
are tried. An item that cannot be priced keeps its previous price-list entry.

Persisting emitted items is the caller's job (see pricing.runner); the
pipeline only reads from the store, except for key price samples.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..core.constants import (
    MAX_BUY_DIFFERENCE_PCT,
    MAX_BUY_INCREASE,
    MAX_SELL_DECREASE,
    MAX_SELL_DIFFERENCE_PCT,
    MIN_SELL_MARGIN,
    SWING_HISTORY_ROWS,
    SYNTHETIC_BUY_FROM_SELLS,
    SYNTHETIC_SELL_FROM_BUYS,
    is_key,
)
from ..core.currency import KeyPivotRate, from_metal, normalize, percentage_difference, round_metal, to_metal
from ..core.errors import ExternalPriceError, StoreUnavailableError
from ..core.metrics import KEY_PIVOT_RATE, record_pricing_outcome
from ..core.robust_estimators import adaptive_robust_mean
from ..core.types import (
    Currencies,
    ItemBounds,
    Listing,
    PricedItem,
    PriceHistoryEntry,
    PriceSource,
    Side,
)
from ..persistence.repository import (
    KeyPriceRepository,
    ListingRepository,
    PriceHistoryRepository,
)
from .bounds import DynamicBoundsCalculator
from .external import BaselineFeed, BaselineQuote, RateLimitedFallback, SteamMarketClient
from .stages import PipelineResult, PricingStage, StageOutcome
from .tiers import TierInput, TierPricer, select_tier, tiers_from

logger = logging.getLogger(__name__)

BOUNDS_HISTORY_ROWS = 50
LOW_BOUNDS_CONFIDENCE = 0.6


@dataclass
class PipelineConfig:
    """Operator policy applied by the pipeline."""

    trusted_owners: set[str] = field(default_factory=set)
    excluded_owners: set[str] = field(default_factory=set)
    item_bounds: dict[str, ItemBounds] = field(default_factory=dict)
    max_buy_difference_pct: float = MAX_BUY_DIFFERENCE_PCT
    max_sell_difference_pct: float = MAX_SELL_DIFFERENCE_PCT
    max_buy_increase: float = MAX_BUY_INCREASE
    max_sell_decrease: float = MAX_SELL_DECREASE
    min_sell_margin: float = MIN_SELL_MARGIN
    swing_history_rows: int = SWING_HISTORY_ROWS
    fallback_onto_baseline: bool = False
    use_steam_market: bool = True


@dataclass
class _Candidate:
    buy: float
    sell: float
    source: PriceSource


@dataclass
class _FetchedBook:
    buy_listings: list[Listing]
    sell_listings: list[Listing]
    buy_prices: list[float]
    sell_prices: list[float]


def _clamp(value: float, low: Optional[float], high: Optional[float]) -> float:
    if low is not None and value < low:
        return low
    if high is not None and value > high:
        return high
    return value


def apply_item_bounds(buy: Currencies, sell: Currencies, bounds: ItemBounds) -> tuple[Currencies, Currencies]:
    """Clamp each denomination of each side to operator-configured limits."""
    return (
        Currencies(
            keys=_clamp(buy.keys, bounds.min_buy_keys, bounds.max_buy_keys),
            metal=_clamp(buy.metal, bounds.min_buy_metal, bounds.max_buy_metal),
        ),
        Currencies(
            keys=_clamp(sell.keys, bounds.min_sell_keys, bounds.max_sell_keys),
            metal=_clamp(sell.metal, bounds.min_sell_metal, bounds.max_sell_metal),
        ),
    )


def enforce_margin(
    buy: Currencies,
    sell: Currencies,
    key_price: float,
    margin: float,
    pure_metal: bool = False,
) -> tuple[Currencies, Currencies]:
    """
    Round both sides to the scrap increment and force sell above buy.

    Sides are compared after rounding. An inverted or equal quote gets a
    sell side of buy + margin, re-expressed so its metal stays below one key
    unless the quote is pure metal (the key item itself).
    """
    buy = Currencies(keys=buy.keys, metal=round_metal(buy.metal))
    sell = Currencies(keys=sell.keys, metal=round_metal(sell.metal))
    if to_metal(buy, key_price) < to_metal(sell, key_price):
        return buy, sell

    forced = Currencies(keys=buy.keys, metal=round_metal(buy.metal + margin))
    if pure_metal or key_price <= 0:
        return buy, forced
    return buy, normalize(forced, key_price)


def check_swing(
    next_buy: float,
    next_sell: float,
    previous_buys: list[float],
    previous_sells: list[float],
    max_buy_increase: float = MAX_BUY_INCREASE,
    max_sell_decrease: float = MAX_SELL_DECREASE,
) -> Optional[str]:
    """
    Reject jumps relative to the robust average of recent history.

    Returns:
        None if the quote is acceptable, else the reason it is not
    """
    if previous_buys:
        avg_buy = adaptive_robust_mean(previous_buys).value
        if avg_buy > 0 and next_buy > avg_buy and (next_buy - avg_buy) / avg_buy > max_buy_increase:
            return f"buy {next_buy:.2f} exceeds recent average {avg_buy:.2f} by more than {max_buy_increase:.0%}"
    if previous_sells:
        avg_sell = adaptive_robust_mean(previous_sells).value
        if avg_sell > 0 and next_sell < avg_sell and (avg_sell - next_sell) / avg_sell > max_sell_decrease:
            return f"sell {next_sell:.2f} undercuts recent average {avg_sell:.2f} by more than {max_sell_decrease:.0%}"
    return None


class PricingPipeline:
    """
    Prices one item end to end.

    Usage:
        pipeline = PricingPipeline(listing_repo, history_repo, key_price_repo,
                                   baseline, steam, tier_pricer, bounds, key_rate, config, limiter)
        result = await pipeline.price_item("Team Captain", "378;6")
        if result.emitted:
            ...
    """

    def __init__(
        self,
        listing_repo: ListingRepository,
        history_repo: PriceHistoryRepository,
        key_price_repo: KeyPriceRepository,
        baseline: BaselineFeed,
        steam: Optional[SteamMarketClient],
        tier_pricer: TierPricer,
        bounds: DynamicBoundsCalculator,
        key_rate: KeyPivotRate,
        config: Optional[PipelineConfig] = None,
        limiter: Optional[RateLimitedFallback] = None,
    ):
        self.listing_repo = listing_repo
        self.history_repo = history_repo
        self.key_price_repo = key_price_repo
        self.baseline = baseline
        self.steam = steam
        self.tier_pricer = tier_pricer
        self.bounds = bounds
        self.key_rate = key_rate
        self.config = config or PipelineConfig()
        self.limiter = limiter or RateLimitedFallback()

    async def price_item(self, name: str, item_id: str, now: Optional[int] = None) -> PipelineResult:
        """
        Run the full stage chain for one item.

        Per-item errors are turned into a DISCARD result naming the stage that
        was running. Store outages propagate.
        """
        now = now if now is not None else int(time.time())
        progress = [PricingStage.FETCH_LISTINGS]
        try:
            result = await self._run(name, item_id, now, progress)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.error(
                f"[pricing] item={item_id} stage={progress[-1].value} "
                f"unexpected error: {type(e).__name__}: {e}"
            )
            result = PipelineResult(
                item_id=item_id,
                name=name,
                stage=progress[-1],
                reason=f"{type(e).__name__}: {e}",
            )

        status = "emitted" if result.emitted else "discarded"
        record_pricing_outcome(result.stage.value, status)
        return result

    # =========================================================================
    # Stage chain
    # =========================================================================

    async def _run(self, name: str, item_id: str, now: int, progress: list[PricingStage]) -> PipelineResult:
        key_item = is_key(item_id)

        def discard(stage: PricingStage, reason: str) -> PipelineResult:
            logger.info(f"[pricing] item={item_id} stage={stage.value} discarded: {reason}")
            return PipelineResult(item_id=item_id, name=name, stage=stage, reason=reason)

        book = await self.fetch_listings(name)
        history = await self.history_repo.get_window(item_id)

        progress.append(PricingStage.CHECK_BASELINE)
        baseline = self.baseline.get(item_id)
        candidate: Optional[_Candidate] = None

        if not self._baseline_usable(baseline):
            if key_item:
                return discard(PricingStage.CHECK_BASELINE, "baseline unavailable for the key")
            progress.append(PricingStage.EXTERNAL_FALLBACK)
            outcome = await self.secondary_market(name, item_id, book)
            if not outcome.ok:
                return discard(PricingStage.CHECK_BASELINE, f"baseline unavailable; {outcome.reason}")
            candidate = _Candidate(outcome.buy_metal, outcome.sell_metal, outcome.source)
        else:
            candidate = await self._run_tiers(name, item_id, book, history, baseline, now, progress)
            if candidate is None:
                progress.append(PricingStage.EXTERNAL_FALLBACK)
                candidate = await self._external_fallback(name, item_id, book, baseline, key_item)
                if candidate is None:
                    return discard(PricingStage.EXTERNAL_FALLBACK, "no tier or external source produced a price")

        progress.append(PricingStage.BOUND)
        buy, sell = await self.bound(item_id, name, candidate, book)

        progress.append(PricingStage.SWING_CHECK)
        key_price = self.key_rate.metal
        buy_metal = to_metal(buy, key_price)
        sell_metal = to_metal(sell, key_price)
        if not key_item:
            recent = await self.history_repo.get_recent(item_id, self.config.swing_history_rows)
            if recent:
                reason = check_swing(
                    buy_metal,
                    sell_metal,
                    [r.buy_metal for r in recent],
                    [r.sell_metal for r in recent],
                    self.config.max_buy_increase,
                    self.config.max_sell_decrease,
                )
                if reason:
                    return discard(PricingStage.SWING_CHECK, reason)

        progress.append(PricingStage.EMIT)
        if not buy_metal < sell_metal:
            return discard(PricingStage.EMIT, f"inverted quote buy={buy_metal} sell={sell_metal}")

        item = PricedItem(item_id=item_id, name=name, buy=buy, sell=sell, time=now, source=candidate.source)
        entry = PriceHistoryEntry(item_id=item_id, buy_metal=buy_metal, sell_metal=sell_metal, timestamp=now)

        if key_item:
            await self._update_key_rate(buy_metal, sell_metal)

        logger.info(
            f"[pricing] item={item_id} emitted via {candidate.source.value}: "
            f"buy={buy.keys}k+{buy.metal}ref sell={sell.keys}k+{sell.metal}ref"
        )
        return PipelineResult(item_id=item_id, name=name, stage=PricingStage.EMIT, item=item, history=entry)

    # =========================================================================
    # FETCH_LISTINGS
    # =========================================================================

    def _order(self, listings: list[Listing], side: Side, key_price: float) -> list[Listing]:
        """Drop excluded owners; trusted owners first, then best price first."""
        kept = [l for l in listings if l.owner_id not in self.config.excluded_owners]
        sign = -1 if side == Side.BUY else 1
        return sorted(
            kept,
            key=lambda l: (
                l.owner_id not in self.config.trusted_owners,
                sign * to_metal(l.currencies, key_price),
            ),
        )

    async def fetch_listings(self, name: str) -> _FetchedBook:
        """
        Current listings for both sides, ordered and converted to metal.

        Items whose canonical name drops a leading "The " are retried under
        the prefixed name when a side comes back empty. A side missing
        entirely gets one synthetic price derived from the other side.
        """
        key_price = self.key_rate.metal
        buys = await self.listing_repo.get_listings(name, Side.BUY)
        sells = await self.listing_repo.get_listings(name, Side.SELL)

        if (not buys or not sells) and not name.startswith("The "):
            alt = f"The {name}"
            if not buys:
                buys = await self.listing_repo.get_listings(alt, Side.BUY)
            if not sells:
                sells = await self.listing_repo.get_listings(alt, Side.SELL)

        buys = self._order(buys, Side.BUY, key_price)
        sells = self._order(sells, Side.SELL, key_price)
        buy_prices = [to_metal(l.currencies, key_price) for l in buys]
        sell_prices = [to_metal(l.currencies, key_price) for l in sells]

        if not buy_prices and sell_prices:
            lowest = sorted(sell_prices)[:3]
            buy_prices = [sum(lowest) / len(lowest) * SYNTHETIC_BUY_FROM_SELLS]
        elif not sell_prices and buy_prices:
            highest = sorted(buy_prices, reverse=True)[:3]
            sell_prices = [sum(highest) / len(highest) * SYNTHETIC_SELL_FROM_BUYS]

        return _FetchedBook(buys, sells, buy_prices, sell_prices)

    # =========================================================================
    # Tiers and baseline agreement
    # =========================================================================

    def _baseline_usable(self, quote: Optional[BaselineQuote]) -> bool:
        if quote is None:
            return False
        key_price = self.key_rate.metal
        return to_metal(quote.buy, key_price) > 0 and to_metal(quote.sell, key_price) > 0

    def check_agreement(self, outcome: StageOutcome, baseline: BaselineQuote) -> Optional[str]:
        """
        Compare a tier's quote with the baseline.

        Returns:
            None if it agrees, else the reason it does not
        """
        key_price = self.key_rate.metal
        buy_diff = percentage_difference(to_metal(baseline.buy, key_price), outcome.buy_metal)
        sell_diff = percentage_difference(to_metal(baseline.sell, key_price), outcome.sell_metal)

        if buy_diff > self.config.max_buy_difference_pct:
            return f"buy is {buy_diff:.1f}% above baseline (limit {self.config.max_buy_difference_pct}%)"
        if sell_diff < -self.config.max_sell_difference_pct:
            return f"sell is {-sell_diff:.1f}% below baseline (limit {self.config.max_sell_difference_pct}%)"
        return None

    async def _run_tiers(
        self,
        name: str,
        item_id: str,
        book: _FetchedBook,
        history,
        baseline: BaselineQuote,
        now: int,
        progress: list[PricingStage],
    ) -> Optional[_Candidate]:
        start = select_tier(len(book.buy_prices), len(book.sell_prices), len(history))
        if start is None:
            logger.debug(f"[pricing] item={item_id} no tier applies")
            return None

        data = TierInput(
            item_id=item_id,
            name=name,
            buy_listings=book.buy_listings,
            sell_listings=book.sell_listings,
            buy_prices=book.buy_prices,
            sell_prices=book.sell_prices,
            history=history,
            key_rate=self.key_rate,
            now=now,
        )

        for tier in tiers_from(start):
            progress.append(tier)
            outcome = self.tier_pricer.run(tier, data)
            if not outcome.ok:
                logger.debug(f"[pricing] item={item_id} stage={tier.value} failed: {outcome.reason}")
                continue

            progress.append(PricingStage.BASELINE_AGREEMENT)
            disagreement = self.check_agreement(outcome, baseline)
            if disagreement:
                logger.info(f"[pricing] item={item_id} stage={tier.value} rejected by baseline: {disagreement}")
                return None
            return _Candidate(outcome.buy_metal, outcome.sell_metal, outcome.source)

        return None

    # =========================================================================
    # EXTERNAL_FALLBACK
    # =========================================================================

    async def secondary_market(self, name: str, item_id: str, book: _FetchedBook) -> StageOutcome:
        stage = PricingStage.EXTERNAL_FALLBACK
        if self.steam is None or not self.config.use_steam_market:
            return StageOutcome.failure(stage, "secondary market disabled")
        if is_key(item_id):
            return StageOutcome.failure(stage, "the key is not priced from the secondary market")
        try:
            buy, sell = await self.limiter.call(
                self.steam.get_price,
                name,
                item_id=item_id,
                buy_count=len(book.buy_listings),
                sell_count=len(book.sell_listings),
            )
        except ExternalPriceError as e:
            return StageOutcome.failure(stage, str(e))

        key_price = self.key_rate.metal
        return StageOutcome.success(
            stage, to_metal(buy, key_price), to_metal(sell, key_price), PriceSource.STEAM_MARKET
        )

    async def _external_fallback(
        self,
        name: str,
        item_id: str,
        book: _FetchedBook,
        baseline: BaselineQuote,
        key_item: bool,
    ) -> Optional[_Candidate]:
        if not key_item:
            outcome = await self.secondary_market(name, item_id, book)
            if outcome.ok:
                return _Candidate(outcome.buy_metal, outcome.sell_metal, outcome.source)
            logger.debug(f"[pricing] item={item_id} secondary market unavailable: {outcome.reason}")

        if self.config.fallback_onto_baseline:
            key_price = self.key_rate.metal
            return _Candidate(
                to_metal(baseline.buy, key_price),
                to_metal(baseline.sell, key_price),
                PriceSource.BASELINE,
            )
        return None

    # =========================================================================
    # BOUND
    # =========================================================================

    async def bound(
        self,
        item_id: str,
        name: str,
        candidate: _Candidate,
        book: _FetchedBook,
    ) -> tuple[Currencies, Currencies]:
        """
        Dynamic bounds, denomination split, per-item limits and margin.

        The key is always quoted in pure metal.
        """
        key_price = self.key_rate.metal
        buy_metal, sell_metal = candidate.buy, candidate.sell

        recent = await self.history_repo.get_recent(item_id, BOUNDS_HISTORY_ROWS)
        history_values = [(r.buy_metal + r.sell_metal) / 2 for r in reversed(recent)]
        bounds = self.bounds.calculate(
            base_price=(buy_metal + sell_metal) / 2,
            history_values=history_values,
            buy_count=len(book.buy_listings),
            sell_count=len(book.sell_listings),
            item_id=item_id,
            latest_timestamp=recent[0].timestamp if recent else None,
        )
        clamped_buy = bounds.buy.clamp(buy_metal)
        clamped_sell = bounds.sell.clamp(sell_metal)
        if clamped_buy != buy_metal or clamped_sell != sell_metal:
            logger.debug(
                f"[pricing] item={item_id} bounds applied: buy {buy_metal:.3f} -> {clamped_buy:.3f}, "
                f"sell {sell_metal:.3f} -> {clamped_sell:.3f}"
            )
        if bounds.confidence < LOW_BOUNDS_CONFIDENCE:
            logger.debug(
                f"[pricing] item={item_id} low confidence bounds ({bounds.confidence:.2f}), "
                f"data quality {bounds.data_quality}"
            )

        if is_key(item_id):
            buy = Currencies(keys=0, metal=round_metal(clamped_buy))
            sell = Currencies(keys=0, metal=round_metal(clamped_sell))
        else:
            buy = from_metal(clamped_buy, key_price)
            sell = from_metal(clamped_sell, key_price)

        item_bounds = self.config.item_bounds.get(item_id) or self.config.item_bounds.get(name)
        if item_bounds is not None:
            buy, sell = apply_item_bounds(buy, sell, item_bounds)

        return enforce_margin(buy, sell, key_price, self.config.min_sell_margin, pure_metal=is_key(item_id))

    # =========================================================================
    # EMIT
    # =========================================================================

    async def _update_key_rate(self, buy_metal: float, sell_metal: float) -> None:
        """Repricing the key moves the pivot for every later conversion."""
        if self.key_rate.update(sell_metal, source="pricing"):
            KEY_PIVOT_RATE.set(sell_metal)
        await self.key_price_repo.insert(buy_metal, sell_metal)
