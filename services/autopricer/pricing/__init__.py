# Autopricer Pricing
# Per-item pricing pipeline and the scheduled pricing pass

"""
Pricing module.

Components:
- PricingPipeline: per-item stage chain (baseline check, tiers, fallback,
  bounds, swing guard)
- PricingRunner: full pass over all pricable items
- TierPricer: the four fallback tiers
- DynamicBoundsCalculator: market-aware clamping bounds
- BaselineFeed / SteamMarketClient: lower-trust external sources
"""

from .bounds import BoundsResult, DynamicBoundsCalculator
from .external import BaselineFeed, BaselineQuote, RateLimitedFallback, SteamMarketClient
from .pipeline import PipelineConfig, PricingPipeline
from .runner import PassSummary, PricingRunner
from .stages import PipelineResult, PricingStage, StageOutcome
from .tiers import TierInput, TierPricer, select_tier

__all__ = [
    "BaselineFeed",
    "BaselineQuote",
    "BoundsResult",
    "DynamicBoundsCalculator",
    "PassSummary",
    "PipelineConfig",
    "PipelineResult",
    "PricingPipeline",
    "PricingRunner",
    "PricingStage",
    "RateLimitedFallback",
    "StageOutcome",
    "SteamMarketClient",
    "TierInput",
    "TierPricer",
    "select_tier",
]
