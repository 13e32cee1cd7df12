"""
Terrain branch: height and topology estimation.

With a height model, the predicted field is clamped to [0, 1] and its
mean over the segment mask, scaled by the configured maximum height,
becomes the segment's elevation. Without one, a type-keyed default range
supplies the elevation and the mask itself stands in for the field.

``build_height_field`` produces the whole-map field handed to terrain
synthesis: brightness sets the base relief, bluish pixels sink, every
terrain region is stamped with its type level under a radial falloff, and
a distance-weighted blur removes the seams.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from mapscene.collaborators import HeightEstimator
from mapscene.features import TopologyFeatures, compute_topology
from mapscene.geometry import Rect
from mapscene.image import MASK_THRESHOLD

logger = logging.getLogger(__name__)

# Elevation ranges as fractions of the maximum height.
DEFAULT_HEIGHT_RANGES = {
    "mountain": (0.7, 1.0),
    "peak": (0.8, 1.0),
    "cliff": (0.5, 0.8),
    "ridge": (0.5, 0.75),
    "highland": (0.45, 0.7),
    "hill": (0.3, 0.6),
    "plateau": (0.4, 0.6),
    "valley": (-0.3, -0.1),
    "canyon": (-0.4, -0.2),
    "ravine": (-0.3, -0.15),
}

WATER_TYPES = frozenset({
    "water", "lake", "river", "ocean", "sea", "pond", "stream", "bay",
})

# Small positive relief for everything else (forest, plain, desert, ...).
_JITTER_RANGE = (0.0, 0.05)

_TOKEN = re.compile(r"[a-z]+")


@dataclass(frozen=True)
class TerrainEstimate:
    """Height outputs for one terrain segment."""

    height_map: np.ndarray
    estimated_height: float
    topology: TopologyFeatures


def height_range(terrain_type: str) -> Tuple[float, float]:
    """Default elevation range (fractions of max height) for a terrain type."""
    tokens = _TOKEN.findall(terrain_type.lower())
    if any(t in WATER_TYPES for t in tokens):
        return (0.0, 0.0)
    for token in tokens:
        if token in DEFAULT_HEIGHT_RANGES:
            return DEFAULT_HEIGHT_RANGES[token]
    return _JITTER_RANGE


def default_height(terrain_type: str, max_height: float, rng: np.random.Generator) -> float:
    """Heuristic elevation: water exactly 0, others drawn from their range."""
    low, high = height_range(terrain_type)
    if low == high:
        return low * max_height
    return float(rng.uniform(low, high)) * max_height


def _member(alpha: Optional[np.ndarray], shape) -> np.ndarray:
    if alpha is None:
        return np.ones(shape, dtype=bool)
    if alpha.shape != tuple(shape):
        alpha = cv2.resize(alpha, (shape[1], shape[0]), interpolation=cv2.INTER_LINEAR)
    member = alpha > MASK_THRESHOLD
    if not member.any():
        return np.ones(shape, dtype=bool)
    return member


def proxy_height_field(
    mask: Optional[np.ndarray], shape: Tuple[int, int], level: float
) -> np.ndarray:
    """Flat field at ``level`` inside the mask, 0 outside, normalised to [0, 1]."""
    member = _member(mask, shape)
    return np.where(member, float(np.clip(level, 0.0, 1.0)), 0.0).astype(np.float32)


def estimate_terrain(
    crop: Optional[np.ndarray],
    mask: Optional[np.ndarray],
    terrain_type: str,
    max_height: float,
    rng: np.random.Generator,
    estimator: Optional[HeightEstimator] = None,
    resolution: int = 64,
) -> TerrainEstimate:
    """Estimate elevation, height field and topology for a terrain segment.

    Args:
        crop: BGRA crop of the segment (model input).
        mask: Box-framed alpha mask, or None.
        terrain_type: Detailed (or coarse) terrain label.
        max_height: Elevation corresponding to a field value of 1.0.
        rng: Random generator for heuristic jitter.
        estimator: Optional height model.
        resolution: Side of the proxy field when no model is available.
    """
    if estimator is not None and crop is not None:
        try:
            field = np.asarray(estimator(crop), dtype=np.float32)
            field = np.squeeze(field)
            if field.ndim != 2 or field.size == 0:
                raise ValueError(f"expected a 2D height field, got shape {field.shape}")
        except Exception as e:
            logger.warning("Height estimator failed for '%s', using defaults: %s", terrain_type, e)
        else:
            field = np.clip(field, 0.0, 1.0)
            member = _member(mask, field.shape)
            estimated = float(field[member].mean()) * max_height
            return TerrainEstimate(field, estimated, compute_topology(field))

    estimated = default_height(terrain_type, max_height, rng)
    if mask is not None:
        shape = mask.shape
    else:
        shape = (resolution, resolution)
    level = estimated / max_height if max_height > 0 else 0.0
    field = proxy_height_field(mask, shape, level)
    return TerrainEstimate(field, estimated, compute_topology(field))


# ---------------------------------------------------------------------------
# Whole-map height field
# ---------------------------------------------------------------------------

# Target field level (0-1) per terrain type when stamping regions.
TERRAIN_LEVELS = {
    "mountain": 1.0, "peak": 1.0, "cliff": 0.8, "ridge": 0.75, "hill": 0.7,
    "highland": 0.65, "plateau": 0.6, "forest": 0.5, "woods": 0.5,
    "plain": 0.4, "grassland": 0.4, "desert": 0.35, "valley": 0.3,
    "canyon": 0.25, "ravine": 0.2, "beach": 0.15, "swamp": 0.1, "marsh": 0.1,
}
DEFAULT_TERRAIN_LEVEL = 0.5
WATER_LEVEL = 0.05

MOUNTAIN_TYPES = frozenset({"mountain", "hill", "peak", "ridge", "highland", "plateau"})

# Wetlands are stamped like water even though they are not flat at 0.
_SINK_TYPES = WATER_TYPES | {"swamp", "marsh"}

# Falloff reaches zero at 2/3 of the region size from its centre.
_FALLOFF_RATE = 1.5
_BLEND_WEIGHT = 0.7
_WATER_DAMPING = 0.1


def _tokens(terrain_type: str):
    return _TOKEN.findall(terrain_type.lower())


def terrain_level(terrain_type: str) -> float:
    tokens = _tokens(terrain_type)
    if any(t in WATER_TYPES for t in tokens):
        return WATER_LEVEL
    for token in tokens:
        if token in TERRAIN_LEVELS:
            return TERRAIN_LEVELS[token]
    return DEFAULT_TERRAIN_LEVEL


def color_height_field(image: np.ndarray, resolution: int) -> np.ndarray:
    """Base relief from brightness: brighter is higher, bluish pixels are water.

    Returns a (resolution, resolution) float32 field in [0, 1].
    """
    bgr = np.ascontiguousarray(image[..., :3])
    small = cv2.resize(bgr, (resolution, resolution), interpolation=cv2.INTER_AREA)
    small = small.astype(np.float32) / 255.0
    b, g, r = small[..., 0], small[..., 1], small[..., 2]

    field = np.power((b + g + r) / 3.0, 1.5)
    water = (b > 0.5) & (b > r * 1.5) & (b > g * 1.2)
    field[water] *= _WATER_DAMPING
    return field.astype(np.float32)


def stamp_terrain(
    field: np.ndarray,
    box: Rect,
    terrain_type: str,
    image_width: int,
    image_height: int,
) -> None:
    """Write one terrain region into ``field`` in place.

    Water and wetlands pull the region down to their level, mountainous
    types raise it to a peak that falls off radially, and everything else
    blends towards its level with the same falloff.
    """
    rows, cols = field.shape
    x0 = int(np.clip(np.floor(box.x * cols / image_width), 0, cols - 1))
    y0 = int(np.clip(np.floor(box.y * rows / image_height), 0, rows - 1))
    x1 = int(np.clip(np.ceil(box.x_max * cols / image_width), 0, cols - 1))
    y1 = int(np.clip(np.ceil(box.y_max * rows / image_height), 0, rows - 1))

    cx, cy = (x0 + x1) // 2, (y0 + y1) // 2
    ys, xs = np.mgrid[y0:y1 + 1, x0:x1 + 1]
    dist = np.hypot((xs - cx) / (x1 - x0 + 1), (ys - cy) / (y1 - y0 + 1))
    falloff = np.clip(1.0 - dist * _FALLOFF_RATE, 0.0, 1.0)

    level = terrain_level(terrain_type)
    tokens = _tokens(terrain_type)
    region = field[y0:y1 + 1, x0:x1 + 1]
    if any(t in _SINK_TYPES for t in tokens):
        np.minimum(region, level, out=region)
    elif any(t in MOUNTAIN_TYPES for t in tokens):
        np.maximum(region, level * falloff, out=region)
    else:
        weight = falloff * _BLEND_WEIGHT
        region[...] = region + (level - region) * weight


def smooth_height_field(field: np.ndarray, radius: int = 3) -> np.ndarray:
    """Blur with weights 1 / (1 + distance) over a (2r+1) square window."""
    if radius <= 0:
        return field
    offsets = np.arange(-radius, radius + 1)
    kernel = 1.0 / (1.0 + np.hypot(*np.meshgrid(offsets, offsets)))
    kernel = (kernel / kernel.sum()).astype(np.float32)
    return cv2.filter2D(field, -1, kernel, borderType=cv2.BORDER_REPLICATE)


def build_height_field(
    image: np.ndarray,
    terrain: Sequence[Tuple[Rect, str]],
    resolution: int = 256,
    smoothing: int = 3,
) -> np.ndarray:
    """Whole-map height field in [0, 1], indexed [row, column].

    Args:
        image: BGR or BGRA source image.
        terrain: (pixel bounding box, terrain type) per terrain feature,
                 stamped in order.
        resolution: Side length of the square field.
        smoothing: Blur radius in field cells; 0 disables smoothing.
    """
    height, width = image.shape[:2]
    field = color_height_field(image, resolution)
    for box, terrain_type in terrain:
        stamp_terrain(field, box, terrain_type, width, height)
    field = smooth_height_field(field, smoothing)

    logger.debug(
        "Built %dx%d height field from %d terrain regions.", resolution, resolution, len(terrain)
    )
    return np.clip(field, 0.0, 1.0)
