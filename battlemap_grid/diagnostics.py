"""Visual diagnostics for grid detection.

  - Debug plots of the edge projections and autocorrelation curves
  - The detected grid drawn over the source image
"""

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .detector import DetectionTrace, GridDetectionResult

logger = logging.getLogger(__name__)

GRID_COLOR = (255, 0, 0)


def plot_detection_trace(
    trace: DetectionTrace,
    save_path: Optional[Union[str, Path]] = None,
    title: Optional[str] = None,
):
    """
    Plot the conditioned projections and autocorrelation curves of a run.

    Args:
        trace: Result of ``GridDetector.analyze``
        save_path: If given, the figure is written there and closed
        title: Figure title

    Returns:
        The matplotlib figure when ``save_path`` is None, else the saved path
    """
    import matplotlib
    try:
        matplotlib.use("Agg")
    except Exception:
        # Backend may already be initialised; keep it
        pass
    import matplotlib.pyplot as plt

    fig, axs = plt.subplots(2, 2, figsize=(10, 6))
    for row, axis in enumerate((trace.x, trace.y)):
        label = "Horizontal (columns)" if axis.axis == "x" else "Vertical (rows)"
        axs[row, 0].plot(axis.signal)
        axs[row, 0].set_title(f"{label} edge projection")

        axs[row, 1].plot(axis.curve.lags, axis.curve.values)
        axs[row, 1].set_title(f"{label} autocorrelation")
        if axis.candidate is not None:
            axs[row, 1].axvline(axis.candidate.value, color="r", linestyle="--")

    period = f"{trace.period:.1f}px" if trace.period is not None else "none"
    fig.suptitle(title or f"Grid debug: period {period} (scale {trace.scale_factor:.3f})")
    fig.tight_layout()

    if save_path is None:
        return fig

    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(save_path)
    plt.close(fig)
    logger.debug("Saved grid debug plot to %s", save_path)
    return save_path


def grid_line_positions(offset: float, grid_size: float, length: int) -> np.ndarray:
    """Pixel positions of grid lines along an axis of ``length`` pixels."""
    if grid_size <= 0 or length <= 0:
        return np.zeros(0, dtype=np.int64)
    start = offset % grid_size
    positions = np.arange(start, length, grid_size)
    return np.unique(np.clip(np.round(positions).astype(np.int64), 0, length - 1))


def render_grid_overlay(
    image: np.ndarray,
    result: GridDetectionResult,
    color: Tuple[int, int, int] = GRID_COLOR,
    thickness: int = 1,
) -> np.ndarray:
    """Draw the detected grid over a copy of ``image`` (RGB output)."""
    if image.ndim == 2:
        overlay = np.dstack([image, image, image])
    else:
        overlay = image[:, :, :3]
    overlay = np.ascontiguousarray(overlay, dtype=np.uint8).copy()
    h, w = overlay.shape[:2]

    for x in grid_line_positions(result.x_offset, result.grid_size, w):
        cv2.line(overlay, (int(x), 0), (int(x), h - 1), color, thickness)
    for y in grid_line_positions(result.y_offset, result.grid_size, h):
        cv2.line(overlay, (0, int(y)), (w - 1, int(y)), color, thickness)

    return overlay
