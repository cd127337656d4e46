"""
Batch command line interface for battlemap grid detection.

Runs the detector over image files or directories and reports the grid
size and offset found for each map, as CSV (and optionally JSON), with
optional overlay images and debug plots for inspection.

Usage examples
--------------

Detect grids for every map in ``maps/`` and write ``output/detections.csv``::

    python -m battlemap_grid.cli maps --output-dir output

Detect one map, saving an overlay and a debug plot, with a manual fallback::

    python -m battlemap_grid.cli cave.jpg --overlay --plot \
        --manual-point 10,10 --manual-point 110,110
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from PIL import Image

from .config import DetectionConfig, load_config
from .detector import GridDetector, load_rgba
from .diagnostics import plot_detection_trace, render_grid_overlay
from .errors import GridDetectionError, InsufficientSignalError
from .scene import grid_settings_from_result

logger = logging.getLogger("battlemap_grid")

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".webp", ".gif"}

FIELDNAMES = [
    "image",
    "status",
    "method",
    "grid_size",
    "x_offset",
    "y_offset",
    "scene_grid_size",
    "scene_shift_x",
    "scene_shift_y",
    "error",
]


@dataclass
class BatchConfig:
    """Runtime configuration derived from CLI arguments."""

    inputs: Sequence[Path]
    output_dir: Path
    detection: DetectionConfig
    manual_points: List[Tuple[float, float]]
    no_grid: bool
    save_overlays: bool
    save_plots: bool
    metrics_path: Optional[Path]
    json_path: Optional[Path]


def _setup_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _gather_images(sources: Sequence[Path], recursive: bool) -> List[Path]:
    """Collect candidate image files from the provided locations."""
    seen: set[Path] = set()
    images: List[Path] = []

    for source in sources:
        if source.is_dir():
            iterator: Iterable[Path]
            iterator = source.rglob("*") if recursive else source.iterdir()
            for candidate in iterator:
                if not candidate.is_file():
                    continue
                if candidate.suffix.lower() not in IMAGE_EXTENSIONS:
                    continue
                resolved = candidate.resolve()
                if resolved in seen:
                    continue
                seen.add(resolved)
                images.append(resolved)
        elif source.is_file():
            if source.suffix.lower() not in IMAGE_EXTENSIONS:
                logger.warning("Skipping unsupported file: %s", source)
                continue
            resolved = source.resolve()
            if resolved not in seen:
                seen.add(resolved)
                images.append(resolved)
        else:
            logger.warning("Input path not found: %s", source)

    images.sort()
    return images


def _parse_point(text: str) -> Tuple[float, float]:
    try:
        x, y = (float(part) for part in text.split(","))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected X,Y but got {text!r}") from exc
    return x, y


def _save_overlay(image_path: Path, result, output_dir: Path) -> Path:
    pixels = load_rgba(image_path)
    overlay = render_grid_overlay(pixels, result)
    overlay_path = output_dir / f"{image_path.stem}_grid.png"
    Image.fromarray(overlay).save(overlay_path)
    return overlay_path


def _process_single_image(image_path: Path, cfg: BatchConfig, detector: GridDetector) -> dict:
    """Detect the grid of one image and persist requested artefacts."""
    record = {name: "" for name in FIELDNAMES}
    record["image"] = image_path.name

    trace = None
    try:
        try:
            trace = detector.analyze(image_path)
        except InsufficientSignalError as exc:
            result = detector.fallback(cfg.manual_points, exc)
        else:
            result = detector.resolve(trace, cfg.manual_points)
    except InsufficientSignalError as exc:
        record["status"] = "no_grid"
        record["error"] = str(exc)
        logger.warning("%s: %s", image_path.name, exc)
        if cfg.save_plots and trace is not None:
            plot_detection_trace(trace, cfg.output_dir / f"{image_path.stem}_grid_debug.png")
        return record
    except GridDetectionError as exc:
        record["status"] = "error"
        record["error"] = str(exc)
        logger.error("Failed to process %s: %s", image_path.name, exc)
        return record
    except Exception as exc:  # pylint: disable=broad-except
        record["status"] = "error"
        record["error"] = f"{type(exc).__name__}: {exc}"
        logger.exception("Unexpected failure on %s", image_path.name)
        return record

    settings = grid_settings_from_result(result, no_grid=cfg.no_grid)
    record.update(
        {
            "status": "ok",
            "method": result.method,
            "grid_size": round(result.grid_size, 3),
            "x_offset": round(result.x_offset, 3),
            "y_offset": round(result.y_offset, 3),
            "scene_grid_size": settings.size,
            "scene_shift_x": settings.shift_x,
            "scene_shift_y": settings.shift_y,
        }
    )

    try:
        if cfg.save_overlays:
            _save_overlay(image_path, result, cfg.output_dir)
        if cfg.save_plots and trace is not None:
            plot_detection_trace(
                trace,
                cfg.output_dir / f"{image_path.stem}_grid_debug.png",
                title=f"Grid debug: {image_path.name}",
            )
    except Exception as exc:  # pylint: disable=broad-except
        record["error"] = f"Failed to save artefacts: {exc}"
        logger.warning("Failed to save artefacts for %s: %s", image_path.name, exc)

    logger.info(
        "%s: grid=%.2fpx offset=(%.2f, %.2f) [%s]",
        image_path.name, result.grid_size, result.x_offset, result.y_offset, result.method,
    )
    return record


def _write_metrics_csv(records: List[dict], path: Path) -> None:
    with path.open("w", newline="") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=FIELDNAMES)
        writer.writeheader()
        writer.writerows(records)
    logger.info("Detections written to %s", path)


def _write_json(records: List[dict], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        json.dump(records, f, indent=2)
    logger.info("JSON written to %s", path)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Detect battlemap grid size and offset.")
    parser.add_argument(
        "inputs",
        nargs="+",
        type=Path,
        help="Image files or directories to process.",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Directory for reports, overlays and plots (default: ./output).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="JSON file with detection parameter overrides.",
    )
    parser.add_argument(
        "--max-dimension",
        type=int,
        help="Longest side used for processing (default: 1600).",
    )
    parser.add_argument(
        "--manual-point",
        dest="manual_points",
        action="append",
        type=_parse_point,
        default=[],
        metavar="X,Y",
        help="Calibration point in image pixels; repeat for a fallback when detection fails.",
    )
    parser.add_argument(
        "--no-grid",
        action="store_true",
        help="Report scene settings as gridless.",
    )
    parser.add_argument(
        "--overlay",
        action="store_true",
        help="Save each image with the detected grid drawn on it.",
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        help="Save projection/autocorrelation debug plots.",
    )
    parser.add_argument(
        "--recursive",
        action="store_true",
        help="When inputs include directories, walk them recursively.",
    )
    parser.add_argument(
        "--json",
        dest="json_path",
        type=Path,
        help="Also write the detections as a JSON list to this path.",
    )
    parser.add_argument(
        "--metrics-path",
        type=Path,
        help="CSV summary path (defaults to <output>/detections.csv).",
    )
    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Do not emit the CSV summary.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    _setup_logging(args.debug)

    images = _gather_images(args.inputs, recursive=args.recursive)
    if not images:
        logger.error("No matching images found.")
        return 2

    detection = load_config(args.config) if args.config else DetectionConfig()
    if args.max_dimension:
        detection = replace(detection, max_processing_dimension=args.max_dimension)

    output_dir = args.output_dir.resolve()
    output_dir.mkdir(parents=True, exist_ok=True)

    metrics_path: Optional[Path]
    if args.no_metrics:
        metrics_path = None
    else:
        metrics_path = args.metrics_path.resolve() if args.metrics_path else output_dir / "detections.csv"

    cfg = BatchConfig(
        inputs=images,
        output_dir=output_dir,
        detection=detection,
        manual_points=args.manual_points,
        no_grid=args.no_grid,
        save_overlays=args.overlay,
        save_plots=args.plot,
        metrics_path=metrics_path,
        json_path=args.json_path,
    )

    logger.info("Found %d image(s) to process -> %s", len(images), output_dir)

    detector = GridDetector(cfg.detection)
    records = [_process_single_image(path, cfg, detector) for path in images]

    if cfg.metrics_path:
        _write_metrics_csv(records, cfg.metrics_path)
    if cfg.json_path:
        _write_json(records, cfg.json_path)

    detected = sum(1 for record in records if record["status"] == "ok")
    logger.info("Detected grids in %d of %d image(s)", detected, len(records))
    return 0 if detected else 1


if __name__ == "__main__":
    sys.exit(main())
