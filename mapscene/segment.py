"""
Segment: a detection plus its pixel-precise mask.

The mask is framed on the segment's bounding box: mask pixel (0, 0) is
the top-left corner of the box, whatever the mask resolution. All
overlap tests fall back to rectangle IoU when a mask is missing.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np

from mapscene.detection import Detection
from mapscene.geometry import Rect, Vec2, rect_iou
from mapscene.image import MASK_THRESHOLD, crop_image, mask_alpha, sample_bilinear
from mapscene.masks import mask_area

Color = Tuple[int, int, int]


@dataclass(frozen=True, eq=False)
class Segment:
    """A detected region with an optional box-framed alpha mask.

    Attributes:
        detection: The detection this segment was built from.
        mask: Alpha plane (or RGBA buffer) normalised to ``bounding_box``.
        bounding_box: Region box; may be refined away from the detection's.
        color: BGR visualization colour.
        is_terrain: Set by binary classification.
        estimated_height: Set by terrain height estimation.
        id: Unique identifier.
    """

    detection: Detection
    mask: Optional[np.ndarray] = None
    bounding_box: Optional[Rect] = None
    color: Color = (255, 255, 255)
    is_terrain: bool = False
    estimated_height: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if self.bounding_box is None:
            object.__setattr__(self, "bounding_box", self.detection.bounding_box)
        if self.mask is not None:
            object.__setattr__(self, "mask", mask_alpha(self.mask))

    @property
    def area(self) -> float:
        """Mask pixel count, or the box area when there is no mask."""
        if self.mask is None:
            return self.bounding_box.area
        return float(mask_area(self.mask))

    @property
    def confidence(self) -> float:
        return self.detection.confidence

    @property
    def class_name(self) -> str:
        return self.detection.class_name

    @property
    def center(self) -> Vec2:
        return self.bounding_box.center

    def normalized_center(self, image_width: int, image_height: int) -> Vec2:
        cx, cy = self.center
        return (cx / image_width, cy / image_height)

    def contains_point(self, point: Vec2) -> bool:
        """True if ``point`` (image pixels) falls inside the segment."""
        box = self.bounding_box
        if not box.contains_point(point):
            return False
        if self.mask is None:
            return True

        h, w = self.mask.shape
        mx = int(np.floor((point[0] - box.x) / box.width * w))
        my = int(np.floor((point[1] - box.y) / box.height * h))
        mx = min(max(mx, 0), w - 1)
        my = min(max(my, 0), h - 1)
        return bool(self.mask[my, mx] > MASK_THRESHOLD)

    def overlap(self, other: "Segment") -> float:
        """Mask IoU when both masks exist, rectangle IoU otherwise."""
        if self.mask is not None and other.mask is not None:
            return mask_iou(self, other)
        return rect_iou(self.bounding_box, other.bounding_box)

    def overlaps_with(
        self, other: Optional["Segment"], threshold: float = 0.5, use_mask: bool = True
    ) -> bool:
        if other is None or not self.bounding_box.overlaps(other.bounding_box):
            return False
        if use_mask:
            return self.overlap(other) >= threshold
        return rect_iou(self.bounding_box, other.bounding_box) >= threshold

    def extract_image(self, source: np.ndarray, apply_mask: bool = True) -> Optional[np.ndarray]:
        """Crop this segment out of ``source`` as a BGRA array."""
        return crop_image(source, self.bounding_box, self.mask, apply_mask=apply_mask)

    def with_classification(self, is_terrain: bool, estimated_height: float = 0.0) -> "Segment":
        return replace(self, is_terrain=is_terrain, estimated_height=estimated_height)

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        return {
            "id": self.id,
            "detection": self.detection.to_dict(),
            "bounding_box": self.bounding_box.to_dict(),
            "area": round(self.area, 2),
            "color": list(self.color),
            "is_terrain": self.is_terrain,
            "estimated_height": round(self.estimated_height, 4),
            "has_mask": self.mask is not None,
        }

    def __repr__(self) -> str:
        kind = "terrain" if self.is_terrain else "object"
        return (
            f"Segment({self.id[:8]}, {self.class_name}, {self.bounding_box}, "
            f"area={self.area:.0f}, {kind})"
        )


def mask_iou(a: Segment, b: Segment) -> float:
    """Pixel-precision IoU of two segments' masks.

    Only the intersection of the two boxes is scanned. Each pixel centre
    there is mapped into both segments' normalised mask frames, sampled
    bilinearly, and thresholded at 0.5. Segments without a mask count
    as fully set inside their box.
    """
    inter = a.bounding_box.intersection(b.bounding_box)
    width = int(np.floor(inter.width))
    height = int(np.floor(inter.height))
    if width <= 0 or height <= 0:
        return 0.0

    xs = inter.x + np.arange(width) + 0.5
    ys = inter.y + np.arange(height) + 0.5
    gx, gy = np.meshgrid(xs, ys)

    in_a = _membership(a, gx, gy)
    in_b = _membership(b, gx, gy)

    union = np.count_nonzero(in_a | in_b)
    if union == 0:
        return 0.0
    return np.count_nonzero(in_a & in_b) / union


def _membership(segment: Segment, gx: np.ndarray, gy: np.ndarray) -> np.ndarray:
    box = segment.bounding_box
    if segment.mask is None:
        return np.ones(gx.shape, dtype=bool)
    u = (gx - box.x) / box.width
    v = (gy - box.y) / box.height
    return sample_bilinear(segment.mask, u, v) > MASK_THRESHOLD
