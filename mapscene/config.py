"""
Configuration management for the map analysis pipeline.

Provides a layered configuration system with the following precedence
(highest to lowest):

    CLI arguments > Environment variables > YAML config file > Defaults

Design constraints:
    - The system MUST run with zero configuration (safe defaults only).
    - Missing or invalid values fail early and loudly.
    - No decoding, analysis, I/O, or model loading belongs here.

Non-goals:
    - No dynamic reloading.
    - No database-backed or remote configuration.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Project root resolution
# ---------------------------------------------------------------------------
# Resolved relative to this file's location: mapscene/config.py → repository root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def get_project_root() -> Path:
    """Return the resolved project root directory."""
    return _PROJECT_ROOT


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelConfig:
    """Optional ONNX models used by the CLI.

    Attributes:
        detector_path: ONNX detector producing a [1, N, C] buffer. None
                       means detections must be supplied as a buffer.
        terrain_classifier_path: ONNX two-way terrain classifier, or None.
        backend: Compute backend, 'cpu' or 'cuda'.
        input_size: Spatial dimensions (width, height) for the DNN input blob.
        mean_values: Per-channel mean subtraction values (BGR order).
        scale_factor: Pixel value scale factor applied during blob creation.
        swap_rb: Convert BGR input to RGB during blob creation.
    """

    detector_path: Optional[str] = None
    terrain_classifier_path: Optional[str] = None
    backend: str = "cpu"
    input_size: Tuple[int, int] = (640, 640)
    mean_values: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    scale_factor: float = 1.0 / 255.0
    swap_rb: bool = True


@dataclass(frozen=True)
class DetectionConfig:
    """Decoder thresholds and limits.

    Attributes:
        confidence_threshold: Minimum confidence to accept a candidate row.
        nms_threshold: IoU above which a lower-confidence candidate is dropped.
        per_class_nms: Run suppression independently per class.
        max_candidates: Cap on candidates entering NMS. None disables it.
        max_per_class: Per-class cap after per-class NMS. 0 disables it.
        layout: Force an output layout ('generic', 'detect', 'detect_v2',
                'segment'). None auto-detects.
        num_mask_coefficients: Trailing mask columns in segment layouts.
        class_labels: Class names indexed by class id.
    """

    confidence_threshold: float = 0.5
    nms_threshold: float = 0.45
    per_class_nms: bool = False
    max_candidates: Optional[int] = 1000
    max_per_class: int = 0
    layout: Optional[str] = None
    num_mask_coefficients: int = 32
    class_labels: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SegmentationConfig:
    """Region merging.

    Attributes:
        merge_segments: Merge same-label segments before classification.
        merge_threshold: Rectangle IoU above which segments are merged.
    """

    merge_segments: bool = True
    merge_threshold: float = 0.3


@dataclass(frozen=True)
class TerrainConfig:
    """Terrain branch parameters.

    Attributes:
        max_height: Elevation corresponding to a height-field value of 1.0.
        height_map_resolution: Side of the proxy height field without a model.
        height_field_resolution: Side of the whole-map height field; 0
                                 skips building it.
        height_field_smoothing: Blur radius of the whole-map field in cells.
    """

    max_height: float = 100.0
    height_map_resolution: int = 64
    height_field_resolution: int = 256
    height_field_smoothing: int = 3


@dataclass(frozen=True)
class PlacementConfig:
    """Object branch parameters.

    Attributes:
        rotation_strategy: 'aspect_ratio' or 'mask_axis'.
    """

    rotation_strategy: str = "aspect_ratio"


@dataclass(frozen=True)
class ClusteringConfig:
    """Grouping and redistribution.

    Attributes:
        group_similar: Group near-identical objects of the same type.
        similarity_threshold: Mask similarity above which objects group.
        density_multiplier: Target point count per type as a multiple of
                            the detected count.
        distribution_strategy: 'grid', 'path_aligned' or 'feature_adaptive'.
        downsample: 'farthest' or 'kmeans'.
    """

    group_similar: bool = True
    similarity_threshold: float = 0.8
    density_multiplier: float = 1.0
    distribution_strategy: str = "grid"
    downsample: str = "farthest"


@dataclass(frozen=True)
class PipelineConfig:
    """Orchestration.

    Attributes:
        max_concurrency: Segments analyzed in parallel.
        seed: Random seed for heuristics. None is non-deterministic.
        enhance_descriptions: Call the description enhancer when present.
        description_timeout: Seconds to wait for one enhanced description.
    """

    max_concurrency: int = 4
    seed: Optional[int] = None
    enhance_descriptions: bool = True
    description_timeout: float = 10.0


@dataclass(frozen=True)
class OutputConfig:
    """Output behavior configuration.

    Attributes:
        mode: Output mode(s). Supports multiple comma-separated values:
              'save_json', 'save_csv', 'save_image'.
              Example: "save_json,save_image"
        save_path: Directory where output artifacts are written.
    """

    mode: str = "save_json"
    save_path: str = "output/"


@dataclass(frozen=True)
class VisualizationConfig:
    """Visualization rendering parameters.

    Attributes:
        thickness: Line thickness in pixels.
        show_confidence: Whether to render the confidence score label.
        mask_opacity: Blend weight of the segment colour over its mask.
    """

    thickness: int = 2
    show_confidence: bool = True
    mask_opacity: float = 0.4


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration.

    Aggregates all sub-configurations into a single, frozen object.
    """

    model: ModelConfig = field(default_factory=ModelConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    terrain: TerrainConfig = field(default_factory=TerrainConfig)
    placement: PlacementConfig = field(default_factory=PlacementConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_VALID_BACKENDS = {"cpu", "cuda"}
_VALID_OUTPUT_MODES = {"save_json", "save_csv", "save_image"}
_VALID_LAYOUTS = {"generic", "detect", "detect_v2", "segment"}
_VALID_ROTATIONS = {"aspect_ratio", "mask_axis"}
_VALID_STRATEGIES = {"grid", "path_aligned", "feature_adaptive"}
_VALID_DOWNSAMPLERS = {"farthest", "kmeans"}


def _check_unit(name: str, value: float) -> None:
    if not (0.0 <= value <= 1.0):
        raise ValueError(f"{name} must be in [0.0, 1.0], got {value}.")


def _check_choice(name: str, value: str, valid: set) -> None:
    if value not in valid:
        raise ValueError(f"Invalid {name}: '{value}'. Must be one of {sorted(valid)}.")


def validate_config(config: AppConfig) -> None:
    """Validate configuration values. Raises ValueError on invalid state."""

    _check_choice("model.backend", config.model.backend, _VALID_BACKENDS)

    modes = set(m.strip() for m in config.output.mode.split(",") if m.strip())
    invalid_modes = modes - _VALID_OUTPUT_MODES
    if invalid_modes:
        raise ValueError(
            f"Invalid output.mode(s): {invalid_modes}. "
            f"Valid modes: {_VALID_OUTPUT_MODES}. "
            f"Use comma-separated values for multiple outputs."
        )

    if len(config.model.input_size) != 2 or any(d <= 0 for d in config.model.input_size):
        raise ValueError(
            f"model.input_size must be a positive (width, height) tuple, "
            f"got {config.model.input_size}."
        )

    if config.model.scale_factor <= 0:
        raise ValueError(
            f"model.scale_factor must be positive, got {config.model.scale_factor}."
        )

    _check_unit("detection.confidence_threshold", config.detection.confidence_threshold)
    _check_unit("detection.nms_threshold", config.detection.nms_threshold)

    if config.detection.max_candidates is not None and config.detection.max_candidates <= 0:
        raise ValueError(
            f"detection.max_candidates must be positive or None, "
            f"got {config.detection.max_candidates}."
        )

    if config.detection.max_per_class < 0:
        raise ValueError(
            f"detection.max_per_class must be >= 0, got {config.detection.max_per_class}."
        )

    if config.detection.layout is not None:
        _check_choice("detection.layout", config.detection.layout, _VALID_LAYOUTS)

    if config.detection.num_mask_coefficients < 0:
        raise ValueError(
            f"detection.num_mask_coefficients must be >= 0, "
            f"got {config.detection.num_mask_coefficients}."
        )

    _check_unit("segmentation.merge_threshold", config.segmentation.merge_threshold)

    if config.terrain.max_height <= 0:
        raise ValueError(f"terrain.max_height must be positive, got {config.terrain.max_height}.")

    if config.terrain.height_map_resolution < 3:
        raise ValueError(
            f"terrain.height_map_resolution must be >= 3, "
            f"got {config.terrain.height_map_resolution}."
        )

    resolution = config.terrain.height_field_resolution
    if resolution != 0 and resolution < 3:
        raise ValueError(f"terrain.height_field_resolution must be 0 or >= 3, got {resolution}.")

    if config.terrain.height_field_smoothing < 0:
        raise ValueError(
            f"terrain.height_field_smoothing must be >= 0, "
            f"got {config.terrain.height_field_smoothing}."
        )

    _check_choice("placement.rotation_strategy", config.placement.rotation_strategy, _VALID_ROTATIONS)

    _check_unit("clustering.similarity_threshold", config.clustering.similarity_threshold)

    if config.clustering.density_multiplier < 0:
        raise ValueError(
            f"clustering.density_multiplier must be >= 0, "
            f"got {config.clustering.density_multiplier}."
        )

    _check_choice(
        "clustering.distribution_strategy",
        config.clustering.distribution_strategy,
        _VALID_STRATEGIES,
    )
    _check_choice("clustering.downsample", config.clustering.downsample, _VALID_DOWNSAMPLERS)

    if config.pipeline.max_concurrency < 1:
        raise ValueError(
            f"pipeline.max_concurrency must be >= 1, got {config.pipeline.max_concurrency}."
        )

    if config.pipeline.description_timeout <= 0:
        raise ValueError(
            f"pipeline.description_timeout must be positive, "
            f"got {config.pipeline.description_timeout}."
        )

    _check_unit("visualization.mask_opacity", config.visualization.mask_opacity)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def _parse_tuple(value, expected_len: int, cast_type=float):
    """Convert a list from YAML into a tuple of the expected type and length."""
    if isinstance(value, (list, tuple)):
        if len(value) != expected_len:
            raise ValueError(
                f"Expected {expected_len} values, got {len(value)}: {value}"
            )
        return tuple(cast_type(v) for v in value)
    return value


def _parse_bool(value) -> bool:
    """Accept YAML booleans and the strings environment variables carry."""
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Expected a boolean, got '{value}'.")
    return bool(value)


def _parse_optional(value, cast_type):
    if value is None or (isinstance(value, str) and value.strip().lower() in {"", "none", "null"}):
        return None
    return cast_type(value)


def _parse_labels(value) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value)


def _build(cls, raw: dict, parsers: dict):
    """Build a config section from the keys present in ``raw``."""
    unknown = set(raw) - set(parsers)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    kwargs = {key: parse(raw[key]) for key, parse in parsers.items() if key in raw}
    return cls(**kwargs)


def _build_model_config(raw: dict) -> ModelConfig:
    """Build ModelConfig from a raw YAML dict."""
    return _build(ModelConfig, raw, {
        "detector_path": lambda v: _parse_optional(v, str),
        "terrain_classifier_path": lambda v: _parse_optional(v, str),
        "backend": lambda v: str(v).lower(),
        "input_size": lambda v: _parse_tuple(v, 2, int),
        "mean_values": lambda v: _parse_tuple(v, 3, float),
        "scale_factor": float,
        "swap_rb": _parse_bool,
    })


def _build_detection_config(raw: dict) -> DetectionConfig:
    """Build DetectionConfig from a raw YAML dict."""
    return _build(DetectionConfig, raw, {
        "confidence_threshold": float,
        "nms_threshold": float,
        "per_class_nms": _parse_bool,
        "max_candidates": lambda v: _parse_optional(v, int),
        "max_per_class": int,
        "layout": lambda v: _parse_optional(v, lambda s: str(s).lower()),
        "num_mask_coefficients": int,
        "class_labels": _parse_labels,
    })


def _build_segmentation_config(raw: dict) -> SegmentationConfig:
    return _build(SegmentationConfig, raw, {
        "merge_segments": _parse_bool,
        "merge_threshold": float,
    })


def _build_terrain_config(raw: dict) -> TerrainConfig:
    return _build(TerrainConfig, raw, {
        "max_height": float,
        "height_map_resolution": int,
        "height_field_resolution": int,
        "height_field_smoothing": int,
    })


def _build_placement_config(raw: dict) -> PlacementConfig:
    return _build(PlacementConfig, raw, {
        "rotation_strategy": lambda v: str(v).lower(),
    })


def _build_clustering_config(raw: dict) -> ClusteringConfig:
    return _build(ClusteringConfig, raw, {
        "group_similar": _parse_bool,
        "similarity_threshold": float,
        "density_multiplier": float,
        "distribution_strategy": lambda v: str(v).lower(),
        "downsample": lambda v: str(v).lower(),
    })


def _build_pipeline_config(raw: dict) -> PipelineConfig:
    return _build(PipelineConfig, raw, {
        "max_concurrency": int,
        "seed": lambda v: _parse_optional(v, int),
        "enhance_descriptions": _parse_bool,
        "description_timeout": float,
    })


def _build_output_config(raw: dict) -> OutputConfig:
    """Build OutputConfig from a raw YAML dict."""
    return _build(OutputConfig, raw, {
        "mode": lambda v: str(v).lower(),
        "save_path": str,
    })


def _build_visualization_config(raw: dict) -> VisualizationConfig:
    """Build VisualizationConfig from a raw YAML dict."""
    return _build(VisualizationConfig, raw, {
        "thickness": int,
        "show_confidence": _parse_bool,
        "mask_opacity": float,
    })


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MAPSCENE_"


def _apply_env_overrides(raw: dict) -> dict:
    """Apply environment variable overrides to the raw config dict.

    Environment variables follow the pattern:
        MAPSCENE_MODEL_BACKEND=cuda
        MAPSCENE_DETECTION_CONFIDENCE_THRESHOLD=0.7

    The variable name maps to the nested config key by replacing
    underscores after the section name with dots.
    """
    env_map = {
        f"{_ENV_PREFIX}MODEL_BACKEND": ("model", "backend"),
        f"{_ENV_PREFIX}MODEL_DETECTOR_PATH": ("model", "detector_path"),
        f"{_ENV_PREFIX}DETECTION_CONFIDENCE_THRESHOLD": ("detection", "confidence_threshold"),
        f"{_ENV_PREFIX}DETECTION_NMS_THRESHOLD": ("detection", "nms_threshold"),
        f"{_ENV_PREFIX}DETECTION_MAX_CANDIDATES": ("detection", "max_candidates"),
        f"{_ENV_PREFIX}DETECTION_LAYOUT": ("detection", "layout"),
        f"{_ENV_PREFIX}SEGMENTATION_MERGE_THRESHOLD": ("segmentation", "merge_threshold"),
        f"{_ENV_PREFIX}TERRAIN_MAX_HEIGHT": ("terrain", "max_height"),
        f"{_ENV_PREFIX}TERRAIN_HEIGHT_FIELD_RESOLUTION": ("terrain", "height_field_resolution"),
        f"{_ENV_PREFIX}PLACEMENT_ROTATION_STRATEGY": ("placement", "rotation_strategy"),
        f"{_ENV_PREFIX}CLUSTERING_SIMILARITY_THRESHOLD": ("clustering", "similarity_threshold"),
        f"{_ENV_PREFIX}CLUSTERING_DENSITY_MULTIPLIER": ("clustering", "density_multiplier"),
        f"{_ENV_PREFIX}PIPELINE_MAX_CONCURRENCY": ("pipeline", "max_concurrency"),
        f"{_ENV_PREFIX}PIPELINE_SEED": ("pipeline", "seed"),
        f"{_ENV_PREFIX}OUTPUT_MODE": ("output", "mode"),
        f"{_ENV_PREFIX}OUTPUT_SAVE_PATH": ("output", "save_path"),
    }

    for env_var, (section, key) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            raw.setdefault(section, {})[key] = value
            logger.debug("Config override from env: %s=%s", env_var, value)

    return raw


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load and validate application configuration.

    Precedence (highest → lowest):
        Environment variables > YAML file > Hard-coded defaults

    Args:
        config_path: Path to a YAML configuration file. If None,
                     the system runs entirely on defaults (safe for
                     programmatic usage).

    Returns:
        A validated, frozen AppConfig instance.

    Raises:
        FileNotFoundError: If config_path is provided but does not exist.
        ValueError: If any configuration value is invalid.
        yaml.YAMLError: If the YAML file is malformed.
    """
    raw: dict = {}

    # --- Layer 1: YAML file ---
    if config_path is not None:
        resolved = Path(config_path)
        if not resolved.is_absolute():
            resolved = _PROJECT_ROOT / resolved

        if not resolved.is_file():
            raise FileNotFoundError(
                f"Configuration file not found: {resolved}. "
                f"Provide a valid path or omit to use defaults."
            )

        logger.info("Loading config from: %s", resolved)
        with open(resolved, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    # --- Layer 2: Environment variable overrides ---
    raw = _apply_env_overrides(raw)

    # --- Build typed configs ---
    config = AppConfig(
        model=_build_model_config(raw.get("model", {})),
        detection=_build_detection_config(raw.get("detection", {})),
        segmentation=_build_segmentation_config(raw.get("segmentation", {})),
        terrain=_build_terrain_config(raw.get("terrain", {})),
        placement=_build_placement_config(raw.get("placement", {})),
        clustering=_build_clustering_config(raw.get("clustering", {})),
        pipeline=_build_pipeline_config(raw.get("pipeline", {})),
        output=_build_output_config(raw.get("output", {})),
        visualization=_build_visualization_config(raw.get("visualization", {})),
    )

    # --- Validate ---
    validate_config(config)

    logger.debug("Configuration loaded: %s", config)
    return config
