"""
Two-Denomination Currency Math

Prices are quoted in keys plus refined metal. Anything that compares or
averages prices converts to a single metal scalar first, which requires the
current key pivot rate.

The pivot rate is shared mutable state: it changes whenever the key itself is
repriced. Components receive a KeyPivotRate handle and read `.metal` at the
point of use instead of copying the value.
"""

import logging
import math
import time
from typing import Optional

from .constants import SCRAP_INCREMENT
from .types import Currencies

logger = logging.getLogger(__name__)


# =============================================================================
# Pivot Rate
# =============================================================================

class KeyPivotRate:
    """
    Process-wide handle on the metal value of one key.

    Readers call `.metal` every time they need the rate; a long pricing pass
    may observe the value change part way through, which is acceptable.
    """

    def __init__(self, metal: float, source: str = "default"):
        if metal <= 0:
            raise ValueError(f"Key pivot rate must be positive, got {metal}")
        self._metal = float(metal)
        self.source = source
        self.updated_at: int = int(time.time())

    @property
    def metal(self) -> float:
        return self._metal

    def update(self, metal: float, source: str) -> bool:
        """
        Replace the pivot rate.

        Returns:
            True if the value changed, False if rejected or unchanged
        """
        if metal is None or metal <= 0 or math.isnan(metal):
            logger.warning(f"Rejected key pivot update from {source}: {metal}")
            return False

        previous = self._metal
        self._metal = float(metal)
        self.source = source
        self.updated_at = int(time.time())

        if previous != self._metal:
            logger.info(f"Key pivot rate {previous} -> {self._metal} ref ({source})")
            return True
        return False

    def __repr__(self) -> str:
        return f"KeyPivotRate({self._metal} ref, source={self.source})"


# =============================================================================
# Conversion
# =============================================================================

def round_metal(value: float) -> float:
    """
    Round a metal amount to the nearest tradable scrap increment.

    Fractions are expressed in steps of 0.11 ref; nine scrap roll over into
    the next whole refined.

    Examples:
        >>> round_metal(1.5)
        1.55
        >>> round_metal(2.98)
        3.0
    """
    whole = math.floor(value)
    scrap = math.floor((value - whole) / SCRAP_INCREMENT + 0.5)
    if scrap >= 9:
        return float(whole + 1)
    return round(whole + scrap * SCRAP_INCREMENT, 2)


def to_metal(currencies: Currencies, key_price: float) -> float:
    """Convert keys + metal into a single metal value."""
    return currencies.keys * key_price + currencies.metal


def from_metal(metal: float, key_price: float) -> Currencies:
    """
    Express a metal value as whole keys plus metal remainder.

    A non-positive key price yields an all-metal quote.
    """
    if metal <= 0:
        return Currencies(keys=0, metal=0)
    if key_price <= 0:
        return Currencies(keys=0, metal=round_metal(metal))

    keys = math.trunc(metal / key_price)
    remainder = round_metal(metal - keys * key_price)

    # Rounding can push the remainder up to a whole key
    if remainder >= key_price:
        keys += 1
        remainder = round_metal(remainder - key_price)

    return Currencies(keys=keys, metal=max(0.0, remainder))


def normalize(currencies: Currencies, key_price: float) -> Currencies:
    """Re-express a quote so that its metal part is below one key."""
    return from_metal(to_metal(currencies, key_price), key_price)


def parse_currencies(raw: Optional[dict]) -> Optional[Currencies]:
    """
    Build Currencies from an upstream payload.

    Returns None unless the payload carries a numeric, non-negative keys or
    metal field and at least one of them is positive.
    """
    if not isinstance(raw, dict):
        return None

    values = {}
    for field_name in ("keys", "metal"):
        value = raw.get(field_name, 0)
        if value is None:
            value = 0
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if math.isnan(value) or value < 0:
            return None
        values[field_name] = float(value)

    currencies = Currencies(**values)
    if currencies.is_zero():
        return None
    return currencies


def percentage_difference(reference: float, value: float) -> float:
    """Signed percent change from reference to value."""
    if reference == 0:
        return 0.0 if value == 0 else 100.0
    return (value - reference) / abs(reference) * 100
