"""Public interface for battlemap grid detection."""

from __future__ import annotations

from .config import DetectionConfig, load_config
from .detector import (
    DetectionTrace,
    GridDetectionResult,
    GridDetector,
    detect_grid,
    estimate_from_manual_points,
)
from .errors import GridDetectionError, ImageDecodeError, InsufficientSignalError
from .scene import GridSettings, auto_detect_grid_settings, grid_settings_from_result

__all__ = [
    "DetectionConfig",
    "DetectionTrace",
    "GridDetectionError",
    "GridDetectionResult",
    "GridDetector",
    "GridSettings",
    "ImageDecodeError",
    "InsufficientSignalError",
    "auto_detect_grid_settings",
    "detect_grid",
    "estimate_from_manual_points",
    "grid_settings_from_result",
    "load_config",
]
