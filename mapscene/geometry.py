"""
Geometry value types for the map analysis pipeline.

Responsibility:
    Axis-aligned rectangles in pixel space (top-left origin) and the
    rectangle IoU used by every overlap test in the pipeline.

Non-goals:
    - No pixel data (see image.py and masks.py).
    - No rotated or polygonal regions.
"""

import math
from dataclasses import dataclass
from typing import Tuple

Vec2 = Tuple[float, float]
Vec3 = Tuple[float, float, float]


@dataclass(frozen=True, slots=True)
class Rect:
    """Axis-aligned rectangle with a top-left origin.

    Attributes:
        x: Left edge in pixels.
        y: Top edge in pixels.
        width: Extent along x, never negative.
        height: Extent along y, never negative.
    """

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(
                f"Rect dimensions must be non-negative, "
                f"got width={self.width}, height={self.height}."
            )

    @classmethod
    def from_corners(cls, x_min: float, y_min: float, x_max: float, y_max: float) -> "Rect":
        """Build a rectangle from its min/max corners."""
        return cls(x_min, y_min, max(0.0, x_max - x_min), max(0.0, y_max - y_min))

    @classmethod
    def from_center(cls, cx: float, cy: float, width: float, height: float) -> "Rect":
        """Build a rectangle from its centre point and extent."""
        return cls(cx - width / 2, cy - height / 2, width, height)

    @property
    def x_max(self) -> float:
        return self.x + self.width

    @property
    def y_max(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Vec2:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        """Width over height; 1.0 for degenerate rectangles."""
        if self.height <= 0:
            return 1.0
        return self.width / self.height

    def intersection(self, other: "Rect") -> "Rect":
        """Overlapping region, zero-sized when the rectangles are disjoint."""
        return Rect.from_corners(
            max(self.x, other.x),
            max(self.y, other.y),
            min(self.x_max, other.x_max),
            min(self.y_max, other.y_max),
        )

    def union(self, other: "Rect") -> "Rect":
        """Smallest rectangle containing both rectangles."""
        return Rect.from_corners(
            min(self.x, other.x),
            min(self.y, other.y),
            max(self.x_max, other.x_max),
            max(self.y_max, other.y_max),
        )

    def overlaps(self, other: "Rect") -> bool:
        return (
            self.x < other.x_max and other.x < self.x_max
            and self.y < other.y_max and other.y < self.y_max
        )

    def contains(self, other: "Rect") -> bool:
        """True if ``other`` lies entirely inside this rectangle."""
        return (
            self.x <= other.x and self.y <= other.y
            and other.x_max <= self.x_max and other.y_max <= self.y_max
        )

    def contains_point(self, point: Vec2) -> bool:
        """Half-open containment: min edges inclusive, max edges exclusive."""
        px, py = point
        return self.x <= px < self.x_max and self.y <= py < self.y_max

    def clamp_to(self, width: float, height: float) -> "Rect":
        """Clip this rectangle to the ``[0, width] x [0, height]`` frame."""
        return Rect.from_corners(
            min(max(self.x, 0.0), width),
            min(max(self.y, 0.0), height),
            min(max(self.x_max, 0.0), width),
            min(max(self.y_max, 0.0), height),
        )

    def normalized(self, image_width: float, image_height: float) -> "Rect":
        """Express this rectangle in ``[0, 1]`` image coordinates."""
        return Rect(
            self.x / image_width,
            self.y / image_height,
            self.width / image_width,
            self.height / image_height,
        )

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        return {
            "x": round(self.x, 3),
            "y": round(self.y, 3),
            "width": round(self.width, 3),
            "height": round(self.height, 3),
        }


def rect_iou(a: Rect, b: Rect) -> float:
    """Intersection over union of two rectangles.

    Returns 0.0 when the union area is zero, so two degenerate boxes
    never count as overlapping.
    """
    intersection = a.intersection(b).area
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def distance(a: Vec2, b: Vec2) -> float:
    """Euclidean distance between two points."""
    return math.hypot(a[0] - b[0], a[1] - b[1])
