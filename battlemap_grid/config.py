"""Detection configuration: algorithm constants and tunable parameters."""

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Tuple, Union


# ---------------------------------------------------------------------------
# Processing resolution
# ---------------------------------------------------------------------------
# Images are downscaled so that their longest side is at most this many
# pixels before any signal processing happens.
MAX_PROCESSING_DIMENSION = 1600

# Periods shorter than this (in scaled pixels) are treated as noise.
MIN_VALID_PERIOD = 6


# ---------------------------------------------------------------------------
# Luminance
# ---------------------------------------------------------------------------
LUMA_WEIGHTS: Tuple[float, float, float] = (0.299, 0.587, 0.114)


# ---------------------------------------------------------------------------
# Signal conditioning
# ---------------------------------------------------------------------------
HIGH_PASS_MIN_WINDOW = 3
HIGH_PASS_DIVISOR = 50
NEGATIVE_RESIDUAL_GAIN = 0.2


# ---------------------------------------------------------------------------
# Autocorrelation lag range
# ---------------------------------------------------------------------------
MIN_LAG_FLOOR = 8
MIN_LAG_DIVISOR = 200
MAX_LAG_CAP = 1024


# ---------------------------------------------------------------------------
# Period selection
# ---------------------------------------------------------------------------
TOP_PEAK_COUNT = 5
AXIS_AGREEMENT_TOLERANCE = 2


@dataclass(frozen=True)
class DetectionConfig:
    """Parameters for one grid detection run.

    The defaults reproduce the tuned behaviour; they only need changing
    for experiments or unusually large/small maps.
    """

    # --- Resolution ---
    max_processing_dimension: int = MAX_PROCESSING_DIMENSION
    min_valid_period: float = MIN_VALID_PERIOD

    # --- High-pass filter ---
    high_pass_min_window: int = HIGH_PASS_MIN_WINDOW
    high_pass_divisor: int = HIGH_PASS_DIVISOR
    negative_residual_gain: float = NEGATIVE_RESIDUAL_GAIN

    # --- Lag range ---
    min_lag_floor: int = MIN_LAG_FLOOR
    min_lag_divisor: int = MIN_LAG_DIVISOR
    max_lag_cap: int = MAX_LAG_CAP

    # --- Peak picking / axis consensus ---
    top_peak_count: int = TOP_PEAK_COUNT
    axis_agreement_tolerance: float = AXIS_AGREEMENT_TOLERANCE

    def __post_init__(self):
        if self.max_processing_dimension < 1:
            raise ValueError("max_processing_dimension must be >= 1")
        if self.min_valid_period <= 0:
            raise ValueError("min_valid_period must be positive")
        if self.high_pass_min_window < 1 or self.high_pass_divisor < 1:
            raise ValueError("high-pass window parameters must be >= 1")
        if self.min_lag_floor < 1 or self.min_lag_divisor < 1 or self.max_lag_cap < 1:
            raise ValueError("lag range parameters must be >= 1")
        if self.top_peak_count < 1:
            raise ValueError("top_peak_count must be >= 1")
        if self.axis_agreement_tolerance < 0:
            raise ValueError("axis_agreement_tolerance must be >= 0")

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, d: dict) -> "DetectionConfig":
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


def load_config(path: Union[str, Path]) -> DetectionConfig:
    """Read a JSON object of overrides from ``path``."""
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return DetectionConfig.from_dict(data)
