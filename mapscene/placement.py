"""
Object branch: placement parameters for non-terrain segments.

Position is the box centre in normalised image coordinates. Scale starts
from a type-keyed base size and is stretched by the box aspect ratio.
Rotation comes from a pluggable strategy; the default aspect-ratio rule
is a weak heuristic and is expected to be replaced when better cues
(mask orientation, road alignment) are available.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import numpy as np

from mapscene.geometry import Rect, Vec2, Vec3
from mapscene.masks import mask_orientation

# Base object footprint (x, y, z) in world units.
BASE_SIZES: Dict[str, Vec3] = {
    "building": (10.0, 8.0, 10.0),
    "house": (8.0, 6.0, 8.0),
    "castle": (20.0, 15.0, 20.0),
    "tower": (5.0, 20.0, 5.0),
    "lighthouse": (4.0, 18.0, 4.0),
    "windmill": (6.0, 14.0, 6.0),
    "bridge": (20.0, 3.0, 6.0),
    "road": (10.0, 0.2, 4.0),
    "wall": (10.0, 3.0, 1.0),
    "fence": (8.0, 1.5, 0.3),
    "vehicle": (4.5, 1.6, 2.0),
    "car": (4.5, 1.5, 2.0),
    "truck": (7.0, 3.0, 2.5),
    "boat": (6.0, 2.0, 2.5),
    "ship": (30.0, 8.0, 8.0),
    "tree": (3.0, 8.0, 3.0),
    "rock": (2.0, 1.5, 2.0),
    "monument": (3.0, 6.0, 3.0),
    "statue": (2.0, 4.0, 2.0),
    "dock": (12.0, 1.0, 4.0),
    "farm": (25.0, 5.0, 25.0),
    "well": (2.0, 2.0, 2.0),
}
DEFAULT_BASE_SIZE: Vec3 = (2.0, 2.0, 2.0)

# Aspect ratios beyond these bounds fix the rotation.
HORIZONTAL_ASPECT = 2.0
VERTICAL_ASPECT = 0.5

RotationStrategy = Callable[[Rect, Optional[np.ndarray], np.random.Generator], float]

_TOKEN = re.compile(r"[a-z]+")


@dataclass(frozen=True)
class Placement:
    """Placement parameters for one object segment."""

    normalized_position: Vec2
    estimated_scale: Vec3
    estimated_rotation: float
    placement_confidence: float


def base_size(object_type: str) -> Vec3:
    for token in _TOKEN.findall(object_type.lower()):
        if token in BASE_SIZES:
            return BASE_SIZES[token]
    return DEFAULT_BASE_SIZE


def normalized_position(box: Rect, image_width: int, image_height: int) -> Vec2:
    cx, cy = box.center
    return (cx / image_width, cy / image_height)


def estimate_scale(object_type: str, box: Rect) -> Vec3:
    """Type base size, x stretched for wide boxes, z for tall ones."""
    bx, by, bz = base_size(object_type)
    aspect = box.aspect_ratio
    if aspect <= 0.0:
        return (bx, by, bz)
    if aspect >= 1.0:
        return (bx * aspect, by, bz)
    return (bx, by, bz / aspect)


def aspect_ratio_rotation(box: Rect, mask, rng: np.random.Generator) -> float:
    """0 degrees for strongly horizontal boxes, 90 for strongly vertical, else random."""
    aspect = box.aspect_ratio
    if aspect > HORIZONTAL_ASPECT:
        return 0.0
    if aspect < VERTICAL_ASPECT:
        return 90.0
    return float(rng.uniform(0.0, 360.0))


def mask_axis_rotation(box: Rect, mask, rng: np.random.Generator) -> float:
    """Principal mask axis in [0, 360); aspect-ratio rule without a mask."""
    if mask is None:
        return aspect_ratio_rotation(box, mask, rng)
    return mask_orientation(mask) % 360.0


ROTATION_STRATEGIES: Dict[str, RotationStrategy] = {
    "aspect_ratio": aspect_ratio_rotation,
    "mask_axis": mask_axis_rotation,
}


def estimate_placement(
    object_type: str,
    box: Rect,
    mask,
    image_width: int,
    image_height: int,
    detection_confidence: float,
    classification_confidence: float,
    rng: np.random.Generator,
    rotation: RotationStrategy = aspect_ratio_rotation,
) -> Placement:
    """Compute all placement parameters for an object segment."""
    return Placement(
        normalized_position=normalized_position(box, image_width, image_height),
        estimated_scale=estimate_scale(object_type, box),
        estimated_rotation=rotation(box, mask, rng),
        placement_confidence=detection_confidence * classification_confidence,
    )
