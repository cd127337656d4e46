"""End-to-end tests for battlemap grid detection.

Synthetic maps are flat backgrounds with 1px grid lines.  Sobel responds
on both flanks of such a line, so the recovered offset lands one
processing pixel either side of the drawn line.
"""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from battlemap_grid import (
    DetectionConfig,
    GridDetectionResult,
    GridDetector,
    ImageDecodeError,
    InsufficientSignalError,
    detect_grid,
    estimate_from_manual_points,
)
from battlemap_grid.detector import (
    downscale_image,
    load_rgba,
    open_raster,
    project_edges,
    sobel_magnitude,
    to_grayscale,
)


# ---------------------------------------------------------------------------
# Synthetic image helpers
# ---------------------------------------------------------------------------


def _make_grid_map(
    width: int,
    height: int,
    period: int,
    phase: int = 7,
    background=(226, 214, 186),
    line=(30, 30, 30),
) -> np.ndarray:
    """RGBA map with 1px grid lines every ``period`` pixels starting at ``phase``."""
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[:, :, :3] = background
    pixels[:, :, 3] = 255
    pixels[:, phase::period, :3] = line
    pixels[phase::period, :, :3] = line
    return pixels


def _make_flat_map(width: int = 300, height: int = 300) -> np.ndarray:
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[:] = (120, 140, 90, 255)
    return pixels


def _png_bytes(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


def _naive_sobel(gray: np.ndarray) -> np.ndarray:
    """Reference Sobel with clamped (replicated) borders."""
    kx = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=float)
    ky = np.array([[-1, -2, -1], [0, 0, 0], [1, 2, 1]], dtype=float)
    padded = np.pad(gray, 1, mode="edge")
    h, w = gray.shape
    gx = np.zeros_like(gray)
    gy = np.zeros_like(gray)
    for dy in range(3):
        for dx in range(3):
            window = padded[dy:dy + h, dx:dx + w]
            gx += kx[dy, dx] * window
            gy += ky[dy, dx] * window
    return np.hypot(gx, gy)


# ---------------------------------------------------------------------------
# Tests: Image stages
# ---------------------------------------------------------------------------


class TestImageStages:
    def test_grayscale_weights(self):
        pixels = np.array([[[100, 150, 200, 0], [255, 0, 0, 255]]], dtype=np.uint8)
        gray = to_grayscale(pixels)
        assert gray.shape == (1, 2)
        assert gray[0, 0] == pytest.approx(0.299 * 100 + 0.587 * 150 + 0.114 * 200)
        assert gray[0, 1] == pytest.approx(0.299 * 255)

    def test_sobel_matches_clamped_reference(self):
        rng = np.random.RandomState(7)
        gray = rng.rand(23, 31) * 255
        assert np.allclose(sobel_magnitude(gray), _naive_sobel(gray))

    def test_sobel_flat_image_has_no_edges(self):
        assert np.allclose(sobel_magnitude(np.full((20, 20), 90.0)), 0.0)

    def test_projections(self):
        magnitude = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
        projection_x, projection_y = project_edges(magnitude)
        assert np.allclose(projection_x, [5.0, 7.0, 9.0])
        assert np.allclose(projection_y, [6.0, 15.0])

    def test_downscale_caps_longest_side(self):
        pixels = np.zeros((500, 2000, 4), dtype=np.uint8)
        scaled, scale = downscale_image(pixels, 1600)
        assert scale == pytest.approx(0.8)
        assert scaled.shape[:2] == (400, 1600)

    def test_small_image_not_rescaled(self):
        pixels = np.zeros((300, 200, 4), dtype=np.uint8)
        scaled, scale = downscale_image(pixels, 1600)
        assert scale == 1.0
        assert scaled is pixels


# ---------------------------------------------------------------------------
# Tests: Image sources
# ---------------------------------------------------------------------------


class TestImageSources:
    def test_accepts_path_bytes_file_and_pil(self, tmp_path):
        pixels = _make_grid_map(40, 30, 10)
        path = tmp_path / "map.png"
        Image.fromarray(pixels).save(path)

        from_path = load_rgba(path)
        from_str = load_rgba(str(path))
        from_bytes = load_rgba(_png_bytes(pixels))
        with path.open("rb") as handle:
            from_file = load_rgba(handle)
        with Image.open(path) as img:
            from_pil = load_rgba(img.convert("RGB"))

        for decoded in (from_path, from_str, from_bytes, from_file, from_pil):
            assert decoded.shape == (30, 40, 4)
            assert np.array_equal(decoded[:, :, :3], pixels[:, :, :3])

    def test_rgb_and_grey_arrays_are_promoted(self):
        rgb = np.zeros((5, 6, 3), dtype=np.uint8)
        grey = np.zeros((5, 6), dtype=np.uint8)
        assert load_rgba(rgb).shape == (5, 6, 4)
        assert load_rgba(grey).shape == (5, 6, 4)

    def test_invalid_bytes_raise_decode_error(self):
        with pytest.raises(ImageDecodeError):
            detect_grid(b"definitely not an image")

    def test_missing_file_raises_decode_error(self, tmp_path):
        with pytest.raises(ImageDecodeError):
            detect_grid(tmp_path / "missing.png")

    def test_unsupported_array_shape(self):
        with pytest.raises(ImageDecodeError):
            load_rgba(np.zeros((4, 4, 2), dtype=np.uint8))

    def test_integer_array_matches_uint8(self):
        pixels = _make_grid_map(400, 400, 20, 7)
        assert detect_grid(pixels.astype(np.int64)) == detect_grid(pixels)

    def test_integer_array_is_resampled(self):
        detector = GridDetector(DetectionConfig(max_processing_dimension=200))
        result = detector.detect(_make_grid_map(400, 400, 20, 7).astype(np.int64))
        assert abs(result.grid_size - 20) <= 1

    def test_bool_array_becomes_uint8(self):
        mask = np.zeros((6, 8), dtype=bool)
        mask[:, 3] = True
        rgba = load_rgba(mask)
        assert rgba.dtype == np.uint8
        assert rgba[0, 3, 0] == 255 and rgba[0, 2, 0] == 0

    def test_unsupported_array_dtype(self):
        with pytest.raises(ImageDecodeError):
            load_rgba(np.zeros((4, 4, 3), dtype=np.complex64))

    def test_pixel_limit_reported_as_decode_error(self, tmp_path, monkeypatch):
        path = tmp_path / "huge.png"
        Image.fromarray(_make_flat_map(40, 30)).save(path)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        with pytest.raises(ImageDecodeError, match="pixel limit"):
            detect_grid(path)

    def test_raster_closed_when_block_raises(self, tmp_path, monkeypatch):
        path = tmp_path / "map.png"
        Image.fromarray(_make_flat_map(20, 20)).save(path)

        closed = []
        original_close = Image.Image.close

        def _spy_close(self):
            closed.append(self)
            original_close(self)

        monkeypatch.setattr(Image.Image, "close", _spy_close)

        opened = None
        with pytest.raises(RuntimeError):
            with open_raster(path) as image:
                opened = image
                raise RuntimeError("mid-pipeline failure")

        assert opened is not None
        assert any(image is opened for image in closed), "Raster was not released"


# ---------------------------------------------------------------------------
# Tests: Automatic detection
# ---------------------------------------------------------------------------


class TestAutomaticDetection:
    @pytest.mark.parametrize(
        "width, height, period, phase",
        [
            (400, 400, 20, 7),
            (600, 600, 37, 5),
            (1200, 900, 50, 7),
            (1600, 1600, 137, 11),
        ],
    )
    def test_recovers_period_and_phase(self, width, height, period, phase):
        result = detect_grid(_make_grid_map(width, height, period, phase))
        assert result.method == "auto"
        assert abs(result.grid_size - period) <= 1, f"Expected ~{period}, got {result.grid_size}"
        assert abs(result.x_offset - phase) <= 1
        assert abs(result.y_offset - phase) <= 1

    # Few-cell maps and heavy downscaling: the Sobel response on both flanks
    # of a 1px line puts side peaks two lags short of the true period, and
    # the smallest-lag rule among the top peaks can settle on them.
    @pytest.mark.parametrize(
        "width, height, period, expected_size",
        [
            (200, 200, 20, 18.0),
            (200, 200, 100, 9.0),
            (1000, 800, 100, 98.0),
            (1000, 800, 137, 135.0),
            (3000, 2000, 20, 60.0),
        ],
    )
    def test_thin_line_side_peaks(self, width, height, period, expected_size):
        result = detect_grid(_make_grid_map(width, height, period, 7))
        assert result.method == "auto"
        assert result.grid_size == pytest.approx(expected_size, abs=1e-6)

    def test_thin_line_side_peak_offset(self):
        result = detect_grid(_make_grid_map(1000, 800, 100, 7))
        assert result.grid_size == pytest.approx(98.0)
        assert result.x_offset == pytest.approx(24.0)

    def test_downscaled_large_map(self):
        # 3200px wide is processed at half resolution
        result = detect_grid(_make_grid_map(3200, 2000, 100, 7))
        assert abs(result.grid_size - 100) <= 1, f"Expected ~100, got {result.grid_size}"
        assert abs(result.x_offset - 7) <= 3
        assert abs(result.y_offset - 7) <= 3

    def test_processing_dimension_is_configurable(self):
        config = DetectionConfig(max_processing_dimension=200)
        detector = GridDetector(config)
        trace = detector.analyze(_make_grid_map(400, 400, 20, 7))
        assert trace.scale_factor == pytest.approx(0.5)
        assert (trace.scaled_width, trace.scaled_height) == (200, 200)

        result = detector.resolve(trace)
        assert abs(result.grid_size - 20) <= 1

    def test_noisy_background(self):
        rng = np.random.RandomState(11)
        pixels = _make_grid_map(400, 400, 20, 7).astype(np.int16)
        noise = rng.randint(-10, 11, pixels[:, :, :3].shape)
        pixels[:, :, :3] = np.clip(pixels[:, :, :3] + noise, 0, 255)
        result = detect_grid(pixels.astype(np.uint8))
        assert abs(result.grid_size - 20) <= 1

    def test_flat_image_has_insufficient_signal(self):
        with pytest.raises(InsufficientSignalError):
            detect_grid(_make_flat_map())

    def test_empty_image_is_degenerate(self):
        with pytest.raises(InsufficientSignalError):
            detect_grid(np.zeros((0, 0, 4), dtype=np.uint8))

    def test_idempotent(self):
        pixels = _make_grid_map(400, 400, 20, 7)
        first = detect_grid(pixels)
        second = detect_grid(pixels)
        assert first == second

    def test_scale_invariance(self):
        pixels = _make_grid_map(600, 600, 20, 7)
        doubled = np.repeat(np.repeat(pixels, 2, axis=0), 2, axis=1)
        small = detect_grid(pixels)
        large = detect_grid(doubled)
        assert large.grid_size / small.grid_size == pytest.approx(2.0, abs=0.1)

    def test_scale_invariance_across_processing_cap(self):
        # 2400px is processed at 1600px, 1200px at full size
        pixels = _make_grid_map(1200, 1200, 20, 7)
        doubled = np.repeat(np.repeat(pixels, 2, axis=0), 2, axis=1)
        small = detect_grid(pixels)
        large = detect_grid(doubled)
        assert large.grid_size / small.grid_size == pytest.approx(2.0, abs=0.1)

    def test_trace_exposes_axis_analysis(self):
        trace = GridDetector().analyze(_make_grid_map(400, 300, 20, 7))
        assert trace.x.projection.shape == (400,)
        assert trace.y.projection.shape == (300,)
        assert trace.x.signal.min() == pytest.approx(0.0)
        assert trace.x.signal.max() == pytest.approx(1.0)
        assert trace.x.candidate is not None and trace.x.candidate.value == 20
        assert trace.y.candidate is not None and trace.y.candidate.value == 20


# ---------------------------------------------------------------------------
# Tests: Manual fallback
# ---------------------------------------------------------------------------


class TestManualFallback:
    def test_two_points(self):
        result = detect_grid(_make_flat_map(), [(10, 10), (110, 110)])
        assert result.method == "manual"
        assert result.grid_size == pytest.approx(100)
        assert result.x_offset == pytest.approx(10)
        assert result.y_offset == pytest.approx(10)

    def test_mapping_points(self):
        points = [{"x": 30, "y": 20}, {"x": 80, "y": 70}, {"x": 130, "y": 120}]
        result = estimate_from_manual_points(points)
        assert result.grid_size == pytest.approx(50)
        assert result.x_offset == pytest.approx(30)
        assert result.y_offset == pytest.approx(20)

    def test_manual_points_ignored_when_grid_found(self):
        result = detect_grid(_make_grid_map(400, 400, 20, 7), [(0, 0), (300, 300)])
        assert result.method == "auto"
        assert abs(result.grid_size - 20) <= 1

    def test_single_point_is_not_enough(self):
        with pytest.raises(InsufficientSignalError):
            detect_grid(_make_flat_map(), [(10, 10)])

    def test_coincident_points_are_degenerate(self):
        with pytest.raises(InsufficientSignalError):
            estimate_from_manual_points([(40, 40), (40, 40)])

    def test_empty_image_uses_manual_points(self):
        result = detect_grid(np.zeros((0, 0, 4), dtype=np.uint8), [(0, 0), (64, 64)])
        assert result == GridDetectionResult(grid_size=64.0, x_offset=0.0, y_offset=0.0, method="manual")

    def test_malformed_points_ignored_when_grid_found(self):
        result = detect_grid(_make_grid_map(400, 400, 20, 7), [{"x": 1}, {"x": 2, "y": 3}])
        assert result.method == "auto"
        assert abs(result.grid_size - 20) <= 1

    @pytest.mark.parametrize(
        "points",
        [
            [{"x": 1}, {"x": 2, "y": 3}],
            [(10, 10), "ab"],
            [(10, 10), 5],
            [(float("nan"), 0), (10, 10)],
            [(0, 0), (float("inf"), 10)],
        ],
    )
    def test_unusable_points_are_insufficient(self, points):
        with pytest.raises(InsufficientSignalError):
            detect_grid(_make_flat_map(), points)
