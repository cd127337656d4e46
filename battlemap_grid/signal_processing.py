"""
One-dimensional signal stages of grid detection.

Everything here operates on edge projections (one value per image column
or row):

1. High-pass filtering and min-max normalisation (conditioning)
2. Normalised autocorrelation over a bounded lag range
3. Peak picking on the autocorrelation curve
4. Combining the X and Y estimates into one period
5. Estimating the phase (offset) of the grid along an axis
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import numpy as np

from .config import (
    AXIS_AGREEMENT_TOLERANCE,
    HIGH_PASS_DIVISOR,
    HIGH_PASS_MIN_WINDOW,
    MAX_LAG_CAP,
    MIN_LAG_DIVISOR,
    MIN_LAG_FLOOR,
    NEGATIVE_RESIDUAL_GAIN,
    TOP_PEAK_COUNT,
)


@dataclass
class PeriodCandidate:
    """A candidate grid period for one axis."""
    value: int     # lag in scaled pixels
    score: float   # autocorrelation coefficient at that lag


@dataclass
class AutocorrelationCurve:
    """Autocorrelation values for consecutive lags."""
    lags: np.ndarray
    values: np.ndarray

    def __len__(self) -> int:
        return int(self.lags.size)

    def __iter__(self) -> Iterator[Tuple[int, float]]:
        for lag, value in zip(self.lags, self.values):
            yield int(lag), float(value)

    def value_at(self, lag: int) -> Optional[float]:
        """Return the coefficient at ``lag`` or None if it is out of range."""
        if not len(self):
            return None
        index = lag - int(self.lags[0])
        if 0 <= index < len(self):
            return float(self.values[index])
        return None


# ---------------------------------------------------------------------------
# Conditioning
# ---------------------------------------------------------------------------


def high_pass_window(
    dimension: int,
    min_window: int = HIGH_PASS_MIN_WINDOW,
    divisor: int = HIGH_PASS_DIVISOR,
) -> int:
    return max(min_window, dimension // divisor)


def high_pass_filter(
    signal: np.ndarray,
    window_size: int,
    negative_gain: float = NEGATIVE_RESIDUAL_GAIN,
) -> np.ndarray:
    """
    Subtract a centred moving average from ``signal``.

    The window spans ``window_size // 2`` samples on each side and shrinks
    at the boundaries.  Negative residuals are scaled by ``negative_gain``
    since grid lines show up as positive edge peaks.

    Args:
        signal: 1D input signal
        window_size: Averaging window, clamped to at least 3

    Returns:
        Filtered signal (float64, same length)
    """
    values = np.asarray(signal, dtype=np.float64)
    length = values.size
    if length == 0:
        return values.copy()

    half = max(3, int(window_size)) // 2

    # Running sum via prefix sums: window total = prefix[end] - prefix[start]
    prefix = np.concatenate(([0.0], np.cumsum(values)))
    index = np.arange(length)
    start = np.maximum(0, index - half)
    end = np.minimum(length, index + half + 1)
    local_mean = (prefix[end] - prefix[start]) / (end - start)

    filtered = values - local_mean
    negative = filtered < 0
    filtered[negative] *= negative_gain
    return filtered


def normalize_signal(signal: np.ndarray) -> np.ndarray:
    """Min-max rescale to [0, 1]; a flat signal maps to all zeros."""
    values = np.asarray(signal, dtype=np.float64)
    if values.size == 0:
        return values.copy()
    min_value = float(values.min())
    value_range = float(values.max()) - min_value
    if value_range == 0:
        value_range = 1.0
    return (values - min_value) / value_range


def condition_projection(
    projection: np.ndarray,
    dimension: int,
    min_window: int = HIGH_PASS_MIN_WINDOW,
    divisor: int = HIGH_PASS_DIVISOR,
    negative_gain: float = NEGATIVE_RESIDUAL_GAIN,
) -> np.ndarray:
    """High-pass filter then normalise an edge projection."""
    window = high_pass_window(dimension, min_window, divisor)
    return normalize_signal(high_pass_filter(projection, window, negative_gain))


# ---------------------------------------------------------------------------
# Autocorrelation
# ---------------------------------------------------------------------------


def lag_bounds(
    dimension: int,
    min_floor: int = MIN_LAG_FLOOR,
    min_divisor: int = MIN_LAG_DIVISOR,
    max_cap: int = MAX_LAG_CAP,
) -> Tuple[int, int]:
    """Return ``(min_lag, max_lag)`` for a signal spanning ``dimension`` pixels."""
    min_lag = max(min_floor, dimension // min_divisor)
    max_lag = min(dimension // 2, max_cap)
    return min_lag, max_lag


def compute_autocorrelation(signal: np.ndarray, min_lag: int, max_lag: int) -> AutocorrelationCurve:
    """
    Normalised autocorrelation of ``signal`` for every lag in [min_lag, max_lag].

    The numerator sums ``(s[i] - mean) * (s[i + lag] - mean)`` over the
    overlapping samples; the denominator is the whole-signal sum of squared
    deviations, computed once and shared by every lag.

    Args:
        signal: Conditioned 1D signal
        min_lag: Smallest lag to evaluate
        max_lag: Largest lag to evaluate (inclusive)

    Returns:
        AutocorrelationCurve (empty if the lag range is empty)
    """
    values = np.asarray(signal, dtype=np.float64)
    length = values.size

    min_lag = max(1, int(min_lag))
    max_lag = min(int(max_lag), length - 1)
    if length == 0 or max_lag < min_lag:
        return AutocorrelationCurve(
            lags=np.zeros(0, dtype=np.int64),
            values=np.zeros(0, dtype=np.float64),
        )

    deviation = values - values.mean()
    denominator = float(np.dot(deviation, deviation))
    if denominator == 0:
        denominator = 1.0

    lags = np.arange(min_lag, max_lag + 1, dtype=np.int64)
    numerators = np.array(
        [np.dot(deviation[:-lag], deviation[lag:]) for lag in lags],
        dtype=np.float64,
    )
    return AutocorrelationCurve(lags=lags, values=numerators / denominator)


# ---------------------------------------------------------------------------
# Period selection
# ---------------------------------------------------------------------------


def find_local_maxima(values: np.ndarray) -> np.ndarray:
    """
    Indices of interior local maxima.

    A peak must be strictly above its left neighbour and at least equal to
    its right neighbour, so a plateau reports its first sample.
    """
    values = np.asarray(values, dtype=np.float64)
    if values.size < 3:
        return np.zeros(0, dtype=np.int64)
    centre = values[1:-1]
    is_peak = (centre > values[:-2]) & (centre >= values[2:])
    return np.flatnonzero(is_peak) + 1


def pick_period(curve: AutocorrelationCurve, top_k: int = TOP_PEAK_COUNT) -> Optional[PeriodCandidate]:
    """
    Choose the grid period from an autocorrelation curve.

    Harmonics of the true period (2x, 3x, ...) also correlate strongly, so
    among the ``top_k`` strongest peaks the one with the smallest lag wins.

    Returns:
        PeriodCandidate, or None if the curve has no local maximum
    """
    if not len(curve):
        return None

    peaks = find_local_maxima(curve.values)
    if not peaks.size:
        return None

    by_strength = peaks[np.argsort(-curve.values[peaks], kind="stable")]
    strongest = by_strength[:top_k]
    best = strongest[np.argmin(curve.lags[strongest])]

    return PeriodCandidate(value=int(curve.lags[best]), score=float(curve.values[best]))


def combine_periods(
    period_x: Optional[PeriodCandidate],
    period_y: Optional[PeriodCandidate],
    tolerance: float = AXIS_AGREEMENT_TOLERANCE,
) -> Optional[float]:
    """
    Merge the per-axis candidates into one period.

    Agreeing axes (within ``tolerance`` pixels) are averaged; otherwise the
    higher-scoring axis wins, X on ties.
    """
    if period_x is not None and period_y is not None:
        if abs(period_x.value - period_y.value) <= tolerance:
            return (period_x.value + period_y.value) / 2
        return float(period_x.value if period_x.score >= period_y.score else period_y.value)

    if period_x is not None:
        return float(period_x.value)
    if period_y is not None:
        return float(period_y.value)
    return None


# ---------------------------------------------------------------------------
# Offset
# ---------------------------------------------------------------------------


def estimate_offset(signal: np.ndarray, period: int) -> int:
    """
    Find the phase in [0, period) at which periodic edge energy peaks.

    Args:
        signal: Conditioned projection for one axis
        period: Grid period in the same pixel space

    Returns:
        Offset of the grid lines along this axis
    """
    period = int(period)
    if period < 2:
        return 0

    values = np.asarray(signal, dtype=np.float64)
    max_value = float(values.max()) if values.size else 0.0
    normalizer = 1.0 / max_value if max_value else 1.0

    best_offset = 0
    best_score = -np.inf
    for offset in range(period):
        samples = values[offset::period]
        score = float(samples.mean()) * normalizer if samples.size else -np.inf
        if score > best_score:
            best_score = score
            best_offset = offset

    return best_offset
