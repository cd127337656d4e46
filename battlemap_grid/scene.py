"""Turn detection results into scene grid settings.

This is the caller side of detection: it decides whether a dropped file
should be analysed at all, honours the user's "no grid" preference, and
swallows detection failures so the import can continue without a grid.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Optional, Sequence

from .detector import GridDetectionResult, GridDetector
from .errors import GridDetectionError

logger = logging.getLogger(__name__)

# Scene grid types
GRID_TYPE_GRIDLESS = 0
GRID_TYPE_SQUARE = 1

DEFAULT_GRID_DISTANCE = 5
DEFAULT_GRID_UNITS = "ft"
DEFAULT_GRID_COLOR = "#000000"
DEFAULT_GRID_ALPHA = 0.2

VIDEO_EXTENSIONS = {".webm", ".mp4", ".mov", ".m4v", ".avi", ".mkv", ".ogv", ".ogg"}


@dataclass
class GridSettings:
    """Grid configuration for a scene built from a battlemap."""
    size: int
    type: int = GRID_TYPE_SQUARE
    distance: float = DEFAULT_GRID_DISTANCE
    units: str = DEFAULT_GRID_UNITS
    color: str = DEFAULT_GRID_COLOR
    alpha: float = DEFAULT_GRID_ALPHA
    shift_x: int = 0
    shift_y: int = 0

    def to_dict(self) -> dict:
        return {
            "grid": {
                "size": self.size,
                "type": self.type,
                "distance": self.distance,
                "units": self.units,
                "alpha": self.alpha,
                "color": self.color,
            },
            "shiftX": self.shift_x,
            "shiftY": self.shift_y,
        }


def grid_settings_from_result(
    result: GridDetectionResult,
    *,
    no_grid: bool = False,
    distance: float = DEFAULT_GRID_DISTANCE,
    units: str = DEFAULT_GRID_UNITS,
    color: str = DEFAULT_GRID_COLOR,
    alpha: float = DEFAULT_GRID_ALPHA,
) -> GridSettings:
    """Round a detection result to whole pixels; ``no_grid`` makes the scene gridless."""
    return GridSettings(
        size=int(round(result.grid_size)),
        type=GRID_TYPE_GRIDLESS if no_grid else GRID_TYPE_SQUARE,
        distance=distance,
        units=units,
        color=color,
        alpha=alpha,
        shift_x=int(round(result.x_offset or 0)),
        shift_y=int(round(result.y_offset or 0)),
    )


def is_detectable_media(name: Optional[str] = None, mime_type: Optional[str] = None) -> bool:
    """Only still images are analysed; videos and unknown MIME types are skipped."""
    mime_type = (mime_type or "").lower()
    if mime_type.startswith("video/"):
        return False
    if name and PurePath(name).suffix.lower() in VIDEO_EXTENSIONS:
        return False
    if mime_type and not mime_type.startswith("image/"):
        return False
    return True


def auto_detect_grid_settings(
    source: Any,
    *,
    name: Optional[str] = None,
    mime_type: Optional[str] = None,
    no_grid: bool = False,
    manual_points: Optional[Sequence[Any]] = None,
    detector: Optional[GridDetector] = None,
) -> Optional[GridSettings]:
    """
    Detect grid settings for a dropped map, or return None.

    None means "no automatic grid": the user chose a gridless scene, the
    media is not a still image, or detection failed.
    """
    if no_grid:
        return None

    if name is None and isinstance(source, (str, os.PathLike)):
        name = os.fspath(source)
    if not is_detectable_media(name, mime_type):
        logger.debug("Skipping grid detection for %s", name or "<media>")
        return None

    detector = detector or GridDetector()
    try:
        result = detector.detect(source, manual_points)
    except GridDetectionError as exc:
        logger.warning("Auto grid detection failed for %s: %s", name or "<image>", exc)
        return None

    if result.grid_size <= 0:
        return None

    settings = grid_settings_from_result(result)
    logger.info(
        "Auto-detected grid for %s: size=%d shift=(%d, %d)",
        name or "<image>", settings.size, settings.shift_x, settings.shift_y,
    )
    return settings
