"""
Map Analysis CLI Entrypoint.

Responsibility:
    Parse command-line arguments, configure the application, wire together
    the analyzer and its optional models, and write the results.

Usage:
    python main.py --image map.png --detections yolo_output.npy
    python main.py --image map.png --config my_config.yaml   # model.detector_path set
    python main.py --image map.png --detections out.npy --output-mode save_json,save_image

This module is the executable entry point. It should not be imported
by other modules.
"""

import argparse
import dataclasses
import logging
import sys
import time
from pathlib import Path

import cv2
import numpy as np

# Configure logging before importing local modules
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("main")

from mapscene.collaborators import ModelSet
from mapscene.config import AppConfig, load_config, validate_config
from mapscene.model_loader import DnnClassifier, load_model, run_detector
from mapscene.pipeline import AnalysisContext, MapAnalyzer
from mapscene.serializer import save_csv, save_json
from mapscene.visualizer import draw_results


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Map Scene Analysis: production CLI",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--image",
        type=str,
        required=True,
        help="Path to the map image.",
    )
    parser.add_argument(
        "--detections",
        type=str,
        help="Path to a .npy detector output buffer [1, N, C]. "
             "If omitted, model.detector_path from the config is run.",
    )
    parser.add_argument(
        "--prototypes",
        type=str,
        help="Path to a .npy segmentation prototype buffer for mask assembly.",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to YAML configuration file.",
    )
    parser.add_argument(
        "--confidence",
        type=float,
        help="Detection confidence threshold (0.0 - 1.0). Overrides config.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Random seed for heuristic placement. Overrides config.",
    )
    parser.add_argument(
        "--output-mode",
        type=str,
        help="Output mode(s). Use comma-separated values for multiple outputs: "
             "save_json, save_csv, save_image. Overrides config.",
    )
    parser.add_argument(
        "--output-path",
        type=str,
        help="Directory for output artifacts. Overrides config.",
    )

    return parser.parse_args()


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Return a copy of ``config`` with CLI arguments applied."""
    if args.confidence is not None:
        config = dataclasses.replace(
            config,
            detection=dataclasses.replace(config.detection, confidence_threshold=args.confidence),
        )
    if args.seed is not None:
        config = dataclasses.replace(
            config, pipeline=dataclasses.replace(config.pipeline, seed=args.seed),
        )
    if args.output_mode is not None:
        config = dataclasses.replace(
            config, output=dataclasses.replace(config.output, mode=args.output_mode),
        )
    if args.output_path is not None:
        config = dataclasses.replace(
            config, output=dataclasses.replace(config.output, save_path=args.output_path),
        )
    return config


def build_models(config: AppConfig) -> ModelSet:
    """Load the optional collaborators named in the config."""
    if config.model.terrain_classifier_path is None:
        return ModelSet()
    net = load_model(config.model, config.model.terrain_classifier_path)
    return ModelSet(terrain_classifier=DnnClassifier(net, config.model))


def write_outputs(config: AppConfig, image: np.ndarray, results, stem: str) -> None:
    modes = {m.strip() for m in config.output.mode.split(",") if m.strip()}
    out_dir = Path(config.output.save_path)

    if "save_json" in modes:
        save_json(results, str(out_dir / f"{stem}_analysis.json"))
    if "save_csv" in modes:
        save_csv(results, str(out_dir / f"{stem}_analysis.csv"))
    if "save_image" in modes:
        out_dir.mkdir(parents=True, exist_ok=True)
        overlay_path = out_dir / f"{stem}_overlay.png"
        cv2.imwrite(str(overlay_path), draw_results(image, results, config.visualization))
        logger.info("Overlay saved: %s", overlay_path)

        if results.height_field is not None:
            # 16-bit grayscale, 0 = lowest, 65535 = max height
            height_path = out_dir / f"{stem}_height.png"
            cv2.imwrite(str(height_path), (results.height_field * 65535).astype(np.uint16))
            logger.info("Height field saved: %s", height_path)


def main() -> int:
    """Run one analysis."""
    args = parse_args()

    # 1. Load Configuration (CLI args > ENV > YAML > Defaults)
    try:
        config = apply_overrides(load_config(args.config), args)
        validate_config(config)
        logger.info("Configuration active for this run.")
    except Exception as e:
        logger.error("Configuration error: %s", e)
        return 1

    # 2. Load inputs and models
    try:
        image = cv2.imread(args.image, cv2.IMREAD_COLOR)
        if image is None:
            raise FileNotFoundError(f"Could not read image: {args.image}")

        if args.detections is not None:
            buffer = np.load(args.detections)
        else:
            buffer = run_detector(load_model(config.model), image, config.model)

        prototypes = np.load(args.prototypes) if args.prototypes else None
        models = build_models(config)

    except (FileNotFoundError, ValueError, RuntimeError) as e:
        logger.error("Initialization failed: %s", e)
        return 1
    except Exception as e:
        logger.exception("Unexpected initialization error: %s", e)
        return 1

    # 3. Analyze
    analyzer = MapAnalyzer(AnalysisContext(config=config, models=models))
    start_time = time.perf_counter()

    try:
        results = analyzer.analyze(image, buffer, prototypes=prototypes)
        write_outputs(config, image, results, Path(args.image).stem)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 1
    except Exception as e:
        logger.exception("Runtime error during analysis: %s", e)
        return 1

    elapsed = time.perf_counter() - start_time
    logger.info(
        "Analysis finished in %.2fs. Terrain types: %s. Objects: %d.",
        elapsed, ", ".join(results.terrain_types) or "none", len(results.map_objects),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
