"""
Robust Estimators

Pure statistical primitives over price samples (metal scalars):
- median / MAD (scaled to approximate a standard deviation)
- trimmed mean and interquartile mean
- MAD-score outlier detection
- contamination-adaptive mean selection

No single estimator is safe across liquidity regimes, so
adaptive_robust_mean() picks one based on how many outliers the sample
actually contains.
"""

import math
import statistics
from dataclasses import dataclass
from typing import Optional, Sequence

from .constants import EXTREME_OUTLIER_MULTIPLIER, MAD_SCALE, OUTLIER_THRESHOLD
from .errors import InsufficientDataError


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class RobustEstimate:
    """Estimate produced by adaptive_robust_mean()."""

    value: float
    method: str
    confidence: float
    sample_size: int
    outlier_count: int = 0


@dataclass
class Outlier:
    """A sample flagged by detect_outliers()."""

    index: int
    value: float
    score: float
    extreme: bool


@dataclass
class RegressionFit:
    """Ordinary least squares fit y = slope * x + intercept."""

    slope: float
    intercept: float
    r2: float

    def predict(self, x: float) -> float:
        return self.slope * x + self.intercept


# =============================================================================
# Location & Scale
# =============================================================================

def median(samples: Sequence[float]) -> float:
    if not samples:
        raise InsufficientDataError("median of empty sample")
    return statistics.median(samples)


def mad(samples: Sequence[float]) -> float:
    """Median absolute deviation, scaled by 1.4826."""
    center = median(samples)
    deviations = [abs(x - center) for x in samples]
    return statistics.median(deviations) * MAD_SCALE


def mean(samples: Sequence[float]) -> float:
    if not samples:
        raise InsufficientDataError("mean of empty sample")
    return sum(samples) / len(samples)


def trimmed_mean(samples: Sequence[float], trim_fraction: float) -> float:
    """
    Drop trim_fraction of the samples from each tail and average the rest.

    The per-tail trim count is floored. If nothing remains, the median is
    returned instead.
    """
    if not samples:
        raise InsufficientDataError("trimmed mean of empty sample")
    if not 0 <= trim_fraction < 0.5:
        raise ValueError(f"trim_fraction must be in [0, 0.5), got {trim_fraction}")

    ordered = sorted(samples)
    trim = int(math.floor(len(ordered) * trim_fraction))
    kept = ordered[trim:len(ordered) - trim]
    if not kept:
        return median(ordered)
    return sum(kept) / len(kept)


def interquartile_mean(samples: Sequence[float]) -> float:
    """
    Mean of the sorted samples from the first to the third quartile index,
    both ends included (median for n <= 4).
    """
    if not samples:
        raise InsufficientDataError("interquartile mean of empty sample")

    n = len(samples)
    if n <= 4:
        return median(samples)

    ordered = sorted(samples)
    middle = ordered[n // 4:(3 * n) // 4 + 1]
    return sum(middle) / len(middle)


def coefficient_of_variation(samples: Sequence[float]) -> float:
    """Population standard deviation over mean; 0 for degenerate input."""
    if len(samples) < 2:
        return 0.0
    avg = mean(samples)
    if avg == 0:
        return 0.0
    return statistics.pstdev(samples) / abs(avg)


def robust_coefficient_of_variation(samples: Sequence[float]) -> float:
    """MAD over median; resistant counterpart of coefficient_of_variation()."""
    if len(samples) < 2:
        return 0.0
    center = median(samples)
    if center == 0:
        return 0.0
    return mad(samples) / abs(center)


# =============================================================================
# Outliers
# =============================================================================

def detect_outliers(
    samples: Sequence[float],
    threshold: float = OUTLIER_THRESHOLD,
) -> list[Outlier]:
    """
    Flag samples whose MAD-score exceeds threshold.

    Returns an empty list for fewer than 4 samples or when MAD is zero
    (all-equal samples can't have outliers).
    """
    if len(samples) < 4:
        return []

    center = median(samples)
    spread = mad(samples)
    if spread == 0:
        return []

    outliers = []
    for index, value in enumerate(samples):
        score = abs(value - center) / spread
        if score > threshold:
            outliers.append(Outlier(
                index=index,
                value=value,
                score=score,
                extreme=score > threshold * EXTREME_OUTLIER_MULTIPLIER,
            ))
    return outliers


def remove_outliers(
    samples: Sequence[float],
    threshold: float = OUTLIER_THRESHOLD,
) -> tuple[list[float], list[Outlier]]:
    """One pass of outlier removal. Returns (cleaned, removed)."""
    outliers = detect_outliers(samples, threshold)
    flagged = {o.index for o in outliers}
    cleaned = [x for i, x in enumerate(samples) if i not in flagged]
    return cleaned, outliers


# =============================================================================
# Adaptive Mean
# =============================================================================

def adaptive_robust_mean(samples: Sequence[float]) -> RobustEstimate:
    """
    Pick an estimator by measured contamination.

    Decision table:
        1 sample            -> the sample itself (confidence 1.0)
        < 5 samples         -> median (0.7)
        outliers > 20%      -> interquartile mean (0.75)
        outliers > 10%      -> 15% trimmed mean (0.85)
        outliers > 5%       -> 5% trimmed mean (0.9)
        otherwise           -> arithmetic mean (0.95)

    Raises:
        ValueError: if samples is empty
    """
    n = len(samples)
    if n == 0:
        raise InsufficientDataError("adaptive robust mean of empty sample")

    if n == 1:
        return RobustEstimate(value=float(samples[0]), method="single", confidence=1.0, sample_size=1)

    if n < 5:
        return RobustEstimate(value=median(samples), method="median", confidence=0.7, sample_size=n)

    outlier_count = len(detect_outliers(samples))
    ratio = outlier_count / n

    if ratio > 0.2:
        value, method, confidence = interquartile_mean(samples), "interquartile_mean", 0.75
    elif ratio > 0.1:
        value, method, confidence = trimmed_mean(samples, 0.15), "trimmed_mean_15", 0.85
    elif ratio > 0.05:
        value, method, confidence = trimmed_mean(samples, 0.05), "trimmed_mean_5", 0.9
    else:
        value, method, confidence = mean(samples), "mean", 0.95

    return RobustEstimate(
        value=value,
        method=method,
        confidence=confidence,
        sample_size=n,
        outlier_count=outlier_count,
    )


# =============================================================================
# Trend
# =============================================================================

def linear_regression(points: Sequence[tuple[float, float]]) -> Optional[RegressionFit]:
    """
    Least squares fit over (x, y) points.

    Returns None for fewer than 2 points or when every x is identical.
    """
    n = len(points)
    if n < 2:
        return None

    mean_x = sum(p[0] for p in points) / n
    mean_y = sum(p[1] for p in points) / n
    sxx = sum((p[0] - mean_x) ** 2 for p in points)
    if sxx == 0:
        return None
    sxy = sum((p[0] - mean_x) * (p[1] - mean_y) for p in points)

    slope = sxy / sxx
    intercept = mean_y - slope * mean_x

    ss_tot = sum((p[1] - mean_y) ** 2 for p in points)
    ss_res = sum((p[1] - (slope * p[0] + intercept)) ** 2 for p in points)
    r2 = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return RegressionFit(slope=slope, intercept=intercept, r2=r2)
