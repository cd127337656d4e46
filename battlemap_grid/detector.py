"""
Battlemap grid detection pipeline.

Recovers the cell size and offset of a square grid drawn over a map
image, without any metadata:

1. Decode the image and downscale it for processing
2. Convert to luminance and compute Sobel edge magnitude
3. Project edge energy onto the X and Y axes
4. Condition each projection and find its period by autocorrelation
5. Combine the per-axis periods and estimate the grid offset
6. Rescale the result to original image coordinates

Manually placed calibration points are used as a fallback when no
periodic signal is found.
"""

import io
import logging
import math
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image

from .config import LUMA_WEIGHTS, DetectionConfig
from .errors import ImageDecodeError, InsufficientSignalError
from .signal_processing import (
    AutocorrelationCurve,
    PeriodCandidate,
    combine_periods,
    compute_autocorrelation,
    condition_projection,
    estimate_offset,
    lag_bounds,
    pick_period,
)

logger = logging.getLogger(__name__)

Point = Tuple[float, float]

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)


@dataclass
class GridDetectionResult:
    """Detected grid in original image pixel coordinates."""
    grid_size: float
    x_offset: float
    y_offset: float
    method: str = "auto"   # "auto" or "manual"

    def to_dict(self) -> dict:
        return {
            "grid_size": self.grid_size,
            "x_offset": self.x_offset,
            "y_offset": self.y_offset,
            "method": self.method,
        }


@dataclass
class AxisAnalysis:
    """Intermediate products for one axis of one detection run."""
    axis: str                      # "x" (columns) or "y" (rows)
    projection: np.ndarray
    signal: np.ndarray
    curve: AutocorrelationCurve
    candidate: Optional[PeriodCandidate]


@dataclass
class DetectionTrace:
    """Everything computed by a detection run before the period is accepted."""
    width: int
    height: int
    scaled_width: int
    scaled_height: int
    scale_factor: float
    x: AxisAnalysis
    y: AxisAnalysis
    period: Optional[float]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Image access
# ---------------------------------------------------------------------------


@contextmanager
def open_raster(source: Any) -> Iterator[Image.Image]:
    """
    Open ``source`` as a Pillow image for the duration of the block.

    Images opened here are closed on every exit path; a caller-provided
    ``PIL.Image.Image`` is passed through untouched.

    Pillow refuses rasters above twice ``PIL.Image.MAX_IMAGE_PIXELS``
    (about 179 megapixels by default). Callers that trust their maps can
    raise that module setting before detecting.

    Raises:
        ImageDecodeError: if the source cannot be opened or decoded, or
            exceeds Pillow's pixel limit
    """
    if isinstance(source, Image.Image):
        yield source
        return

    if isinstance(source, (bytes, bytearray, memoryview)):
        source = io.BytesIO(bytes(source))
    elif isinstance(source, os.PathLike):
        source = os.fspath(source)

    try:
        image = Image.open(source)
    except Image.DecompressionBombError as exc:
        raise ImageDecodeError(f"Image exceeds the decoder pixel limit: {exc}") from exc
    except _DECODE_ERRORS as exc:
        raise ImageDecodeError(f"Could not open image: {exc}") from exc

    try:
        try:
            image.load()
        except _DECODE_ERRORS as exc:
            raise ImageDecodeError(f"Could not decode image: {exc}") from exc
        yield image
    finally:
        image.close()


def _as_pixel_dtype(pixels: np.ndarray) -> np.ndarray:
    """Bring an array to a dtype OpenCV resamples: uint8, float32 or float64."""
    if pixels.dtype == np.uint8 or pixels.dtype in (np.float32, np.float64):
        return pixels
    if pixels.dtype == np.bool_:
        return pixels.astype(np.uint8) * 255
    if np.issubdtype(pixels.dtype, np.integer) or np.issubdtype(pixels.dtype, np.floating):
        return pixels.astype(np.float32)
    raise ImageDecodeError(f"Unsupported pixel array dtype: {pixels.dtype}")


def _as_rgba(pixels: np.ndarray) -> np.ndarray:
    """Promote a grey, RGB or RGBA array to RGBA."""
    pixels = _as_pixel_dtype(pixels)
    if pixels.ndim == 2:
        alpha = np.full(pixels.shape, 255, dtype=pixels.dtype)
        return np.dstack([pixels, pixels, pixels, alpha])
    if pixels.ndim == 3 and pixels.shape[2] == 3:
        alpha = np.full(pixels.shape[:2], 255, dtype=pixels.dtype)
        return np.dstack([pixels, alpha])
    if pixels.ndim == 3 and pixels.shape[2] == 4:
        return pixels
    raise ImageDecodeError(f"Unsupported pixel array shape: {pixels.shape}")


def load_rgba(source: Any) -> np.ndarray:
    """
    Decode ``source`` into an RGBA array of shape (height, width, 4).

    Args:
        source: Path, bytes, binary file object, PIL image or numpy array

    Returns:
        RGBA pixel array; an RGBA uint8 or float array is returned as is
    """
    if isinstance(source, np.ndarray):
        return _as_rgba(source)

    with open_raster(source) as image:
        if image.mode != "RGBA":
            converted = image.convert("RGBA")
            pixels = np.array(converted)
            converted.close()
        else:
            pixels = np.array(image)
    return pixels


def downscale_image(pixels: np.ndarray, max_dimension: int) -> Tuple[np.ndarray, float]:
    """
    Shrink ``pixels`` so its longest side is at most ``max_dimension``.

    Returns:
        Tuple of (scaled pixels, scale factor); the factor is 1.0 and the
        input is returned unchanged when no shrinking is needed
    """
    height, width = pixels.shape[:2]
    scale_factor = min(1.0, max_dimension / max(width, height))
    if scale_factor >= 1.0:
        return pixels, 1.0

    scaled_width = max(1, _round_half_up(width * scale_factor))
    scaled_height = max(1, _round_half_up(height * scale_factor))
    scaled = cv2.resize(pixels, (scaled_width, scaled_height), interpolation=cv2.INTER_AREA)
    return scaled, scale_factor


# ---------------------------------------------------------------------------
# Image stages
# ---------------------------------------------------------------------------


def to_grayscale(pixels: np.ndarray) -> np.ndarray:
    """Luminance ``0.299R + 0.587G + 0.114B``; alpha is ignored."""
    if pixels.ndim == 2:
        return pixels.astype(np.float64)
    rgb = pixels[..., :3].astype(np.float64)
    return rgb @ np.asarray(LUMA_WEIGHTS, dtype=np.float64)


def sobel_magnitude(gray: np.ndarray) -> np.ndarray:
    """
    Gradient magnitude from 3x3 Sobel kernels.

    Border pixels replicate their nearest in-bounds neighbour rather than
    reading zeros, so the image frame itself does not register as an edge.
    """
    gray = np.ascontiguousarray(gray, dtype=np.float64)
    if gray.size == 0:
        return np.zeros_like(gray)
    grad_x = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
    grad_y = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
    return np.hypot(grad_x, grad_y)


def project_edges(magnitude: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Collapse the edge map onto both axes.

    Returns:
        Tuple of (column sums of length width, row sums of length height)
    """
    projection_x = magnitude.sum(axis=0)
    projection_y = magnitude.sum(axis=1)
    return projection_x, projection_y


# ---------------------------------------------------------------------------
# Manual fallback
# ---------------------------------------------------------------------------


def _coerce_point(point: Any) -> Point:
    if isinstance(point, Mapping):
        return float(point["x"]), float(point["y"])
    if hasattr(point, "x") and hasattr(point, "y"):
        return float(point.x), float(point.y)
    x, y = point
    return float(x), float(y)


def coerce_points(points: Optional[Sequence[Any]]) -> List[Point]:
    """Normalise manual points given as (x, y) pairs, mappings or objects."""
    if points is None:
        return []
    return [_coerce_point(point) for point in points]


def estimate_from_manual_points(points: Sequence[Any]) -> GridDetectionResult:
    """
    Estimate the grid from user-placed points in original image coordinates.

    The points are assumed to be an evenly spaced run, so the spacing is
    the span on each axis divided by the number of gaps.

    Raises:
        InsufficientSignalError: for fewer than two points, malformed or
            non-finite coordinates, or a zero span
    """
    try:
        coords = coerce_points(points)
    except (KeyError, TypeError, ValueError) as exc:
        raise InsufficientSignalError(f"Malformed manual grid point: {exc!r}") from exc
    if len(coords) < 2:
        raise InsufficientSignalError("At least two manual grid points are required.")
    if not all(math.isfinite(x) and math.isfinite(y) for x, y in coords):
        raise InsufficientSignalError("Manual grid points must have finite coordinates.")

    xs = [x for x, _ in coords]
    ys = [y for _, y in coords]
    gaps = len(coords) - 1
    spacing_x = (max(xs) - min(xs)) / gaps
    spacing_y = (max(ys) - min(ys)) / gaps
    grid_size = _round_half_up((spacing_x + spacing_y) / 2)
    if grid_size <= 0:
        raise InsufficientSignalError("Manual grid points do not span a grid cell.")

    return GridDetectionResult(
        grid_size=float(grid_size),
        x_offset=min(xs) % grid_size,
        y_offset=min(ys) % grid_size,
        method="manual",
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class GridDetector:
    """
    Stateless grid detector.

    A detector only holds its configuration, so one instance can serve any
    number of images, including from several threads at once.
    """

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()

    def _analyze_axis(self, axis: str, projection: np.ndarray, dimension: int) -> AxisAnalysis:
        cfg = self.config
        signal = condition_projection(
            projection,
            dimension,
            min_window=cfg.high_pass_min_window,
            divisor=cfg.high_pass_divisor,
            negative_gain=cfg.negative_residual_gain,
        )
        min_lag, max_lag = lag_bounds(
            dimension,
            min_floor=cfg.min_lag_floor,
            min_divisor=cfg.min_lag_divisor,
            max_cap=cfg.max_lag_cap,
        )
        curve = compute_autocorrelation(signal, min_lag, max_lag)
        candidate = pick_period(curve, top_k=cfg.top_peak_count)
        logger.debug("Axis %s: lags %d-%d, candidate %s", axis, min_lag, max_lag, candidate)
        return AxisAnalysis(
            axis=axis,
            projection=projection,
            signal=signal,
            curve=curve,
            candidate=candidate,
        )

    def analyze(self, image_source: Any) -> DetectionTrace:
        """
        Run the signal pipeline up to the combined period.

        Raises:
            ImageDecodeError: if the image cannot be decoded
            InsufficientSignalError: if the image has no pixels
        """
        pixels = load_rgba(image_source)
        height, width = pixels.shape[:2]
        if width == 0 or height == 0:
            raise InsufficientSignalError("Image has no pixels.")

        scaled, scale_factor = downscale_image(pixels, self.config.max_processing_dimension)
        scaled_height, scaled_width = scaled.shape[:2]
        logger.debug(
            "Processing %dx%d image at %dx%d (scale %.4f)",
            width, height, scaled_width, scaled_height, scale_factor,
        )

        magnitude = sobel_magnitude(to_grayscale(scaled))
        projection_x, projection_y = project_edges(magnitude)

        axis_x = self._analyze_axis("x", projection_x, scaled_width)
        axis_y = self._analyze_axis("y", projection_y, scaled_height)
        period = combine_periods(
            axis_x.candidate,
            axis_y.candidate,
            tolerance=self.config.axis_agreement_tolerance,
        )
        logger.debug("Combined period: %s", period)

        return DetectionTrace(
            width=width,
            height=height,
            scaled_width=scaled_width,
            scaled_height=scaled_height,
            scale_factor=scale_factor,
            x=axis_x,
            y=axis_y,
            period=period,
        )

    def is_valid_period(self, period: Optional[float]) -> bool:
        return (
            period is not None
            and math.isfinite(period)
            and period >= self.config.min_valid_period
        )

    def build_result(self, trace: DetectionTrace) -> GridDetectionResult:
        """Estimate offsets for an accepted period and rescale to the original image."""
        period = trace.period
        rounded = _round_half_up(period)
        offset_x = estimate_offset(trace.x.signal, rounded)
        offset_y = estimate_offset(trace.y.signal, rounded)
        inverse_scale = 1.0 / trace.scale_factor
        return GridDetectionResult(
            grid_size=period * inverse_scale,
            x_offset=offset_x * inverse_scale,
            y_offset=offset_y * inverse_scale,
            method="auto",
        )

    def detect(self, image_source: Any, manual_points: Optional[Sequence[Any]] = None) -> GridDetectionResult:
        """
        Detect the grid in ``image_source``.

        Args:
            image_source: Path, bytes, binary file object, PIL image or numpy array
            manual_points: Optional calibration points in original image
                coordinates, used only when automatic detection fails

        Returns:
            GridDetectionResult in original image coordinates

        Raises:
            ImageDecodeError: if the image cannot be decoded
            InsufficientSignalError: if no grid is found and the manual
                points cannot stand in
        """
        try:
            trace = self.analyze(image_source)
        except InsufficientSignalError as exc:
            return self.fallback(manual_points, exc)

        return self.resolve(trace, manual_points)

    def resolve(self, trace: DetectionTrace, manual_points: Optional[Sequence[Any]] = None) -> GridDetectionResult:
        """Accept the traced period or fall back to the manual points."""
        if self.is_valid_period(trace.period):
            return self.build_result(trace)
        return self.fallback(manual_points, InsufficientSignalError())

    def fallback(
        self,
        manual_points: Optional[Sequence[Any]],
        error: InsufficientSignalError,
    ) -> GridDetectionResult:
        """
        Estimate from the manual points, or raise ``error`` when there are
        fewer than two of them.

        Points are only inspected here, so malformed points never affect a
        successful automatic detection.
        """
        points = list(manual_points) if manual_points is not None else []
        if len(points) < 2:
            raise error
        logger.debug("No usable periodic signal (%s); using %d manual points", error, len(points))
        return estimate_from_manual_points(points)


def detect_grid(
    image_source: Any,
    manual_points: Optional[Sequence[Any]] = None,
    *,
    config: Optional[DetectionConfig] = None,
) -> GridDetectionResult:
    """Detect the grid in one image with an optional manual-point fallback."""
    return GridDetector(config).detect(image_source, manual_points)
