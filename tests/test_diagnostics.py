"""Tests for debug plots and grid overlays."""

from __future__ import annotations

import numpy as np
from PIL import Image

from battlemap_grid import GridDetectionResult, GridDetector
from battlemap_grid.diagnostics import grid_line_positions, plot_detection_trace, render_grid_overlay


def _make_grid_map(size: int = 400, period: int = 20, phase: int = 7) -> np.ndarray:
    pixels = np.full((size, size, 3), 200, dtype=np.uint8)
    pixels[:, phase::period] = 10
    pixels[phase::period, :] = 10
    return pixels


class TestGridOverlay:
    def test_line_positions(self):
        assert list(grid_line_positions(7, 20, 100)) == [7, 27, 47, 67, 87]

    def test_line_positions_wrap_offset(self):
        assert list(grid_line_positions(45, 20, 50)) == [5, 25, 45]

    def test_line_positions_fractional_size(self):
        assert list(grid_line_positions(0, 10.5, 30)) == [0, 10, 21]

    def test_line_positions_degenerate(self):
        assert grid_line_positions(0, 0, 100).size == 0

    def test_render_overlay_draws_lines(self):
        image = np.full((60, 80, 4), 255, dtype=np.uint8)
        result = GridDetectionResult(grid_size=20.0, x_offset=5.0, y_offset=10.0)
        overlay = render_grid_overlay(image, result)

        assert overlay.shape == (60, 80, 3)
        assert tuple(overlay[33, 25]) == (255, 0, 0), "Vertical line missing at x=25"
        assert tuple(overlay[30, 41]) == (255, 0, 0), "Horizontal line missing at y=30"
        assert tuple(overlay[33, 41]) == (255, 255, 255)
        assert image[33, 25, 1] == 255, "Source image must not be modified"


class TestDebugPlot:
    def test_plot_saved(self, tmp_path):
        trace = GridDetector().analyze(_make_grid_map())
        out = tmp_path / "plots" / "debug.png"
        saved = plot_detection_trace(trace, out, title="debug")
        assert saved == out
        assert out.exists()
        with Image.open(out) as img:
            assert img.size[0] > 0 and img.size[1] > 0

    def test_plot_for_flat_image(self, tmp_path):
        flat = np.full((120, 120, 3), 50, dtype=np.uint8)
        trace = GridDetector().analyze(flat)
        assert trace.period is None
        out = tmp_path / "flat.png"
        plot_detection_trace(trace, out)
        assert out.exists()
