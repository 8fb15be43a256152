# Autopricer Price Discovery
"""
Multi-method price discovery.

Components:
- PriceDiscoveryEngine: runs strategies and combines them into a consensus
- DiscoveryMethod / MethodResult: the closed set of strategy variants
"""

from .engine import DiscoveryResult, PriceDiscoveryEngine
from .methods import DiscoveryMethod, MethodResult

__all__ = [
    "DiscoveryMethod",
    "DiscoveryResult",
    "MethodResult",
    "PriceDiscoveryEngine",
]
