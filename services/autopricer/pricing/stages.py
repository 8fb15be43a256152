"""
Pricing Stages and Results

Explicit result types for the per-item pricing state machine. A stage either
produces a candidate quote or a failure tagged with the stage that failed and
why; the pipeline advances on success and falls through to the next named
stage on failure.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.types import PricedItem, PriceHistoryEntry, PriceSource


class PricingStage(str, Enum):
    """Stages of the per-item pricing state machine."""
    FETCH_LISTINGS = "fetch_listings"
    CHECK_BASELINE = "check_baseline"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"
    TIER4 = "tier4"
    BASELINE_AGREEMENT = "baseline_agreement"
    EXTERNAL_FALLBACK = "external_fallback"
    BOUND = "bound"
    SWING_CHECK = "swing_check"
    EMIT = "emit"
    DISCARD = "discard"


TIER_STAGES: tuple[PricingStage, ...] = (
    PricingStage.TIER1,
    PricingStage.TIER2,
    PricingStage.TIER3,
    PricingStage.TIER4,
)

TIER_SOURCES: dict[PricingStage, PriceSource] = {
    PricingStage.TIER1: PriceSource.DISCOVERY,
    PricingStage.TIER2: PriceSource.TIER2,
    PricingStage.TIER3: PriceSource.TIER3,
    PricingStage.TIER4: PriceSource.TIER4,
}


@dataclass
class StageOutcome:
    """
    Result of one stage: a candidate quote in metal, or a tagged failure.

    Use the success()/failure() constructors rather than building directly.
    """

    stage: PricingStage
    ok: bool
    buy_metal: Optional[float] = None
    sell_metal: Optional[float] = None
    source: Optional[PriceSource] = None
    reason: str = ""

    @classmethod
    def success(
        cls,
        stage: PricingStage,
        buy_metal: float,
        sell_metal: float,
        source: PriceSource,
        reason: str = "",
    ) -> "StageOutcome":
        return cls(stage=stage, ok=True, buy_metal=buy_metal, sell_metal=sell_metal, source=source, reason=reason)

    @classmethod
    def failure(cls, stage: PricingStage, reason: str) -> "StageOutcome":
        return cls(stage=stage, ok=False, reason=reason)


@dataclass
class PipelineResult:
    """
    Terminal outcome of pricing one item in one pass.

    `item` is set only when the item was emitted; otherwise `stage` names the
    stage that ended the run and `reason` says why.
    """

    item_id: str
    name: str
    stage: PricingStage
    item: Optional[PricedItem] = None
    history: Optional[PriceHistoryEntry] = None
    reason: str = ""

    @property
    def emitted(self) -> bool:
        return self.item is not None
